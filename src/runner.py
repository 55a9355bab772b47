from __future__ import annotations

import logging
import time
from typing import Callable

import httpx

from clock import TimeSource
from errors import MissingUsageError, RequestError
from metrics import StreamTimeline, compute_stream_metrics
from records import BenchmarkResult, ServerUsage
from stream import decode_event, iter_sse_data, iter_utf8_lines


logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_S = 600.0
CHAT_COMPLETIONS_PATH = "/chat/completions"
MAX_ERROR_BODY_CHARS = 2000

TOKEN_COUNT_EVENTS = "events"
TOKEN_COUNT_TOKENIZER = "tokenizer"
TOKEN_COUNT_SERVER = "server"


def build_chat_completions_url(endpoint: str) -> str:
    base = endpoint.rstrip("/")
    if base.endswith(CHAT_COMPLETIONS_PATH):
        return base
    return base + CHAT_COMPLETIONS_PATH


class StreamingBenchmarkRunner:
    """Measures TTFT and throughput of a single streaming chat completion.

    Each call to :meth:`run` keeps its counters in local state, so one
    runner may be reused for sequential runs. When no ``client`` is given a
    fresh ``httpx.Client`` is opened and closed around every run.

    Output tokens are counted one of three ways. By default every event with
    non-empty content counts as one token. With ``output_token_counter`` the
    accumulated content text is tokenized once the stream ends. With
    ``use_server_token_count`` the counts come from the usage chunk, which is
    then requested and required.
    """

    def __init__(
        self,
        client: httpx.Client | None = None,
        timeout_s: float | None = DEFAULT_TIMEOUT_S,
        max_tokens: int | None = None,
        temperature: float | None = None,
        include_usage: bool = False,
        extra_headers: dict[str, str] | None = None,
        output_token_counter: Callable[[str], int] | None = None,
        use_server_token_count: bool = False,
        wall_clock: Callable[[], int] = time.time_ns,
    ) -> None:
        if max_tokens is not None and max_tokens < 1:
            raise ValueError("max_tokens must be >= 1")
        if timeout_s is not None and timeout_s <= 0:
            raise ValueError("timeout_s must be > 0")
        if use_server_token_count and output_token_counter is not None:
            raise ValueError("use_server_token_count and output_token_counter are exclusive")
        self.client = client
        self.timeout_s = timeout_s
        self.max_tokens = max_tokens
        self.temperature = temperature
        self.include_usage = include_usage or use_server_token_count
        self.extra_headers = dict(extra_headers or {})
        self.output_token_counter = output_token_counter
        self.use_server_token_count = use_server_token_count
        self.wall_clock = wall_clock

    def run(
        self,
        endpoint: str,
        api_key: str,
        model: str,
        prompt: str,
        input_tokens: int,
        time_source: TimeSource,
    ) -> BenchmarkResult:
        if self.client is not None:
            return self._run_with_client(
                self.client, endpoint, api_key, model, prompt, input_tokens, time_source
            )
        with httpx.Client(timeout=self.timeout_s) as client:
            return self._run_with_client(
                client, endpoint, api_key, model, prompt, input_tokens, time_source
            )

    def build_payload(self, model: str, prompt: str) -> dict[str, object]:
        payload: dict[str, object] = {
            "model": model,
            "messages": [{"role": "user", "content": prompt}],
            "stream": True,
        }
        if self.max_tokens is not None:
            payload["max_tokens"] = self.max_tokens
        if self.temperature is not None:
            payload["temperature"] = self.temperature
        if self.include_usage:
            payload["stream_options"] = {"include_usage": True}
        return payload

    def build_headers(self, api_key: str) -> dict[str, str]:
        headers = {"Accept": "text/event-stream"}
        headers.update(self.extra_headers)
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        return headers

    def _run_with_client(
        self,
        client: httpx.Client,
        endpoint: str,
        api_key: str,
        model: str,
        prompt: str,
        input_tokens: int,
        time_source: TimeSource,
    ) -> BenchmarkResult:
        url = build_chat_completions_url(endpoint)
        payload = self.build_payload(model, prompt)
        headers = self.build_headers(api_key)

        content_offsets: list[float] = []
        reasoning_offsets: list[float] = []
        content_parts: list[str] = []
        reasoning_parts: list[str] = []
        finish_reason: str | None = None
        server_usage: ServerUsage | None = None

        logger.debug("Streaming chat completion: url=%s model=%r", url, model)
        request_start_unix_ns = self.wall_clock()
        start = time_source.now()
        try:
            with client.stream(
                "POST",
                url,
                json=payload,
                headers=headers,
                timeout=self.timeout_s,
            ) as response:
                if not response.is_success:
                    body = response.read().decode("utf-8", errors="replace")
                    raise RequestError(
                        f"Endpoint returned HTTP {response.status_code}",
                        status_code=response.status_code,
                        body=body[:MAX_ERROR_BODY_CHARS],
                    )

                for data in iter_sse_data(iter_utf8_lines(response.iter_bytes())):
                    event = decode_event(data)
                    if event.done:
                        logger.debug("Received terminal sentinel")
                        break

                    if event.usage is not None:
                        server_usage = event.usage
                    for choice in event.choices:
                        if choice.finish_reason:
                            finish_reason = choice.finish_reason

                    delta = event.first_delta
                    if delta is None:
                        continue
                    if delta.content:
                        # TTFT is the first offset and is never revised.
                        content_offsets.append(time_source.since(start))
                        content_parts.append(delta.content)
                    if delta.reasoning:
                        reasoning_offsets.append(time_source.since(start))
                        reasoning_parts.append(delta.reasoning)
        except httpx.TimeoutException as exc:
            raise RequestError(f"Request timed out: {exc}") from exc
        except httpx.HTTPError as exc:
            raise RequestError(f"Request failed: {type(exc).__name__}: {exc}") from exc

        total_elapsed_s = time_source.since(start)
        request_end_unix_ns = self.wall_clock()

        output_tokens, reasoning_tokens, token_count_source = self._resolve_token_counts(
            content_offsets, content_parts, reasoning_parts, server_usage
        )
        metrics = compute_stream_metrics(
            StreamTimeline(
                content_offsets=content_offsets,
                total_elapsed_s=total_elapsed_s,
                reasoning_offsets=reasoning_offsets,
            ),
            output_tokens=output_tokens,
        )
        logger.debug(
            "Stream finished: output_tokens=%d (%s) ttft=%s e2e=%.6f",
            output_tokens,
            token_count_source,
            metrics.ttft,
            metrics.e2e,
        )

        return BenchmarkResult(
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            ttft_s=metrics.ttft,
            throughput_tps=metrics.throughput,
            total_elapsed_s=metrics.e2e,
            reasoning_chunks=len(reasoning_offsets),
            reasoning_tokens=reasoning_tokens,
            ttfo_s=metrics.ttfo,
            inter_token_latency_s=metrics.inter_token_latency,
            inter_event_latency_s=metrics.inter_event_latency,
            token_count_source=token_count_source,
            finish_reason=finish_reason,
            server_usage=server_usage,
            request_start_unix_ns=request_start_unix_ns,
            request_end_unix_ns=request_end_unix_ns,
        )

    def _resolve_token_counts(
        self,
        content_offsets: list[float],
        content_parts: list[str],
        reasoning_parts: list[str],
        server_usage: ServerUsage | None,
    ) -> tuple[int, int | None, str]:
        if self.use_server_token_count:
            if server_usage is None or server_usage.completion_tokens is None:
                raise MissingUsageError("Server did not return token usage")
            reasoning_tokens = server_usage.reasoning_tokens or 0
            # completion_tokens includes reasoning tokens.
            output_tokens = max(server_usage.completion_tokens - reasoning_tokens, 0)
            return output_tokens, reasoning_tokens, TOKEN_COUNT_SERVER

        if self.output_token_counter is not None:
            output_tokens = self.output_token_counter("".join(content_parts))
            reasoning_tokens = (
                self.output_token_counter("".join(reasoning_parts)) if reasoning_parts else 0
            )
            return output_tokens, reasoning_tokens, TOKEN_COUNT_TOKENIZER

        return len(content_offsets), None, TOKEN_COUNT_EVENTS
