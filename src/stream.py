from __future__ import annotations

import json
from typing import Iterable, Iterator

from errors import RequestError, StreamDecodeError
from records import ServerUsage, StreamChoice, StreamDelta, StreamEvent


DONE_SENTINEL = "[DONE]"
DONE_EVENT = StreamEvent(done=True)


def iter_utf8_lines(chunks: Iterable[bytes]) -> Iterator[str]:
    """Split a byte stream on ``\\n`` and decode each line as strict UTF-8.

    Lines are split before decoding, so a multi-byte character cut across
    two network chunks still decodes. Invalid UTF-8 raises
    :class:`StreamDecodeError` instead of being replaced.
    """
    pending = b""
    for chunk in chunks:
        pending += chunk
        *complete, pending = pending.split(b"\n")
        for raw_line in complete:
            yield _decode_line(raw_line)
    if pending:
        yield _decode_line(pending)


def _decode_line(raw_line: bytes) -> str:
    try:
        return raw_line.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise StreamDecodeError(
            f"Invalid UTF-8 in event stream: {exc.reason} at byte {exc.start}",
            raw_line.decode("utf-8", errors="backslashreplace"),
        ) from exc


def iter_sse_data(lines: Iterable[str]) -> Iterator[str]:
    """Yield the data payload of every server-sent event in ``lines``.

    Only ``data`` fields are collected; ``event``, ``id`` and ``retry``
    fields and ``:`` comments are skipped. An event is dispatched on a blank
    line, and whatever is pending when the input ends is flushed.
    """
    data_lines: list[str] = []
    for raw_line in lines:
        line = raw_line.rstrip("\r\n")
        if not line:
            if data_lines:
                yield "\n".join(data_lines)
                data_lines = []
            continue
        if line.startswith(":"):
            continue

        field_name, _, value = line.partition(":")
        if field_name != "data":
            continue
        # A single leading space after the colon is not part of the value.
        if value.startswith(" "):
            value = value[1:]
        data_lines.append(value)

    if data_lines:
        yield "\n".join(data_lines)


def decode_event(payload: str) -> StreamEvent:
    if payload.strip() == DONE_SENTINEL:
        return DONE_EVENT

    try:
        parsed = json.loads(payload)
    except json.JSONDecodeError as exc:
        raise StreamDecodeError(f"Invalid JSON in stream event: {exc.msg}", payload) from exc
    if not isinstance(parsed, dict):
        raise StreamDecodeError("Stream event must be a JSON object", payload)

    error = parsed.get("error")
    if error is not None:
        raise RequestError(f"Server reported an error mid-stream: {_error_message(error)}")

    choices_raw = parsed.get("choices")
    if choices_raw is None:
        choices_raw = []
    if not isinstance(choices_raw, list):
        raise StreamDecodeError("'choices' must be a list", payload)

    choices = tuple(
        _decode_choice(choice_raw, position, payload)
        for position, choice_raw in enumerate(choices_raw)
    )
    return StreamEvent(choices=choices, usage=_decode_usage(parsed.get("usage"), payload))


def _decode_choice(choice_raw: object, position: int, payload: str) -> StreamChoice:
    if not isinstance(choice_raw, dict):
        raise StreamDecodeError(f"choices[{position}] must be an object", payload)

    delta_raw = choice_raw.get("delta")
    if delta_raw is None:
        delta_raw = {}
    if not isinstance(delta_raw, dict):
        raise StreamDecodeError(f"choices[{position}].delta must be an object", payload)

    reasoning = _optional_str(delta_raw, "reasoning_content", payload)
    if reasoning is None:
        reasoning = _optional_str(delta_raw, "reasoning", payload)

    index = choice_raw.get("index", position)
    if not isinstance(index, int) or isinstance(index, bool):
        raise StreamDecodeError(f"choices[{position}].index must be an integer", payload)

    return StreamChoice(
        index=index,
        delta=StreamDelta(
            role=_optional_str(delta_raw, "role", payload),
            content=_optional_str(delta_raw, "content", payload),
            reasoning=reasoning,
        ),
        finish_reason=_optional_str(choice_raw, "finish_reason", payload),
    )


def _decode_usage(usage_raw: object, payload: str) -> ServerUsage | None:
    if usage_raw is None:
        return None
    if not isinstance(usage_raw, dict):
        raise StreamDecodeError("'usage' must be an object", payload)

    details = usage_raw.get("completion_tokens_details")
    reasoning_tokens = None
    if isinstance(details, dict):
        reasoning_tokens = _optional_int(details, "reasoning_tokens", payload)

    return ServerUsage(
        prompt_tokens=_optional_int(usage_raw, "prompt_tokens", payload),
        completion_tokens=_optional_int(usage_raw, "completion_tokens", payload),
        total_tokens=_optional_int(usage_raw, "total_tokens", payload),
        reasoning_tokens=reasoning_tokens,
    )


def _optional_str(data: dict[str, object], key: str, payload: str) -> str | None:
    value = data.get(key)
    if value is None or isinstance(value, str):
        return value
    raise StreamDecodeError(f"'{key}' must be a string or null", payload)


def _optional_int(data: dict[str, object], key: str, payload: str) -> int | None:
    value = data.get(key)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int):
        raise StreamDecodeError(f"'{key}' must be an integer or null", payload)
    return value


def _error_message(error: object) -> str:
    if isinstance(error, dict):
        message = error.get("message")
        if message:
            return str(message)
    return str(error)
