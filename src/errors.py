from __future__ import annotations


class BenchmarkError(Exception):
    """Base class for failures that abort a benchmark run."""


class RequestError(BenchmarkError):
    """The endpoint could not be reached or rejected the request."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        body: str | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class StreamDecodeError(BenchmarkError):
    """A streamed event payload could not be decoded."""

    def __init__(self, message: str, payload: str) -> None:
        super().__init__(message)
        self.payload = payload


class MissingUsageError(BenchmarkError):
    """Server token counts were required but the stream carried no usage."""
