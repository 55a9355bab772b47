from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class StreamDelta:
    role: str | None = None
    content: str | None = None
    reasoning: str | None = None


@dataclass(frozen=True, slots=True)
class StreamChoice:
    index: int
    delta: StreamDelta
    finish_reason: str | None = None


@dataclass(frozen=True, slots=True)
class ServerUsage:
    prompt_tokens: int | None
    completion_tokens: int | None
    total_tokens: int | None
    reasoning_tokens: int | None = None


@dataclass(frozen=True, slots=True)
class StreamEvent:
    choices: tuple[StreamChoice, ...] = ()
    usage: ServerUsage | None = None
    done: bool = False

    @property
    def first_delta(self) -> StreamDelta | None:
        if not self.choices:
            return None
        return self.choices[0].delta


@dataclass(frozen=True, slots=True)
class BenchmarkResult:
    input_tokens: int
    output_tokens: int
    ttft_s: float | None
    throughput_tps: float
    total_elapsed_s: float
    # Events whose first-choice delta carried reasoning text.
    reasoning_chunks: int = 0
    # Tokenized or server-reported reasoning length; None when only events were counted.
    reasoning_tokens: int | None = None
    ttfo_s: float | None = None
    inter_token_latency_s: float | None = None
    inter_event_latency_s: float | None = None
    token_count_source: str = "events"
    finish_reason: str | None = None
    server_usage: ServerUsage | None = None
    request_start_unix_ns: int = 0
    request_end_unix_ns: int = 0
