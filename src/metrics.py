from __future__ import annotations

from dataclasses import dataclass, field
from math import ceil, floor


@dataclass(slots=True)
class StreamTimeline:
    # Offsets in seconds from request start, in arrival order.
    content_offsets: list[float]
    total_elapsed_s: float
    reasoning_offsets: list[float] = field(default_factory=list)


@dataclass(slots=True)
class StreamMetrics:
    ttft: float | None
    ttfo: float | None
    itl_values: list[float]
    inter_token_latency: float | None
    inter_event_latency: float | None
    throughput: float
    e2e: float


def _quantile_cont(values: list[float], percentile: float) -> float | None:
    if not values:
        return None
    if len(values) == 1:
        return float(values[0])

    sorted_values = sorted(values)
    position = (len(sorted_values) - 1) * percentile
    lower_index = floor(position)
    upper_index = ceil(position)
    if lower_index == upper_index:
        return float(sorted_values[lower_index])

    left = sorted_values[lower_index]
    right = sorted_values[upper_index]
    fraction = position - lower_index
    return float(left + (right - left) * fraction)


def quantile_summary(values: list[float]) -> dict[str, float | int | None]:
    return {
        "count": len(values),
        "p50": _quantile_cont(values, 0.50),
        "p90": _quantile_cont(values, 0.90),
        "p95": _quantile_cont(values, 0.95),
        "p99": _quantile_cont(values, 0.99),
    }


def compute_throughput(output_tokens: int, elapsed_s: float) -> float:
    if output_tokens <= 0 or elapsed_s <= 0:
        return 0.0
    return output_tokens / elapsed_s


def _mean_gap(offsets: list[float]) -> tuple[list[float], float | None]:
    gaps = [offsets[index] - offsets[index - 1] for index in range(1, len(offsets))]
    if not gaps:
        return gaps, None
    return gaps, sum(gaps) / len(gaps)


def compute_stream_metrics(
    timeline: StreamTimeline, output_tokens: int | None = None
) -> StreamMetrics:
    """Derive per-request metrics from content and reasoning arrival offsets.

    ``output_tokens`` defaults to the number of content arrivals. Throughput
    uses the whole run as denominator, including the wait for the first
    token. TTFT looks at content only; TTFO is the first arrival of either
    content or reasoning.
    """
    e2e = timeline.total_elapsed_s
    offsets = timeline.content_offsets
    if output_tokens is None:
        output_tokens = len(offsets)

    all_offsets = sorted(offsets + timeline.reasoning_offsets)
    itl_values, inter_token_latency = _mean_gap(offsets)
    _, inter_event_latency = _mean_gap(all_offsets)

    return StreamMetrics(
        ttft=offsets[0] if offsets else None,
        ttfo=all_offsets[0] if all_offsets else None,
        itl_values=itl_values,
        inter_token_latency=inter_token_latency,
        inter_event_latency=inter_event_latency,
        throughput=compute_throughput(output_tokens, e2e),
        e2e=e2e,
    )
