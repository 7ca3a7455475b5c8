"""Error taxonomy for the chapter stream pipeline.

Transport errors (a failed read or a non-success status) and upstream error
frames are fatal to the current stream session and are never retried here.
Each exception carries a stable `error_code` so the batch orchestrator and
the SSE layer can report failures without string matching.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(slots=True)
class StreamError(Exception):
    """Base class for stream session failures."""

    message: str
    error_code: str

    def __str__(self) -> str:  # pragma: no cover - trivial
        return f"{self.error_code}: {self.message}"


class StreamTransportError(StreamError):
    def __init__(self, message: str = "Reading the generation stream failed") -> None:
        super().__init__(message=message, error_code="transport_failed")


class StreamStatusError(StreamError):
    def __init__(self, status_code: int, message: str | None = None) -> None:
        super().__init__(
            message=message or f"Generation stream returned HTTP {status_code}",
            error_code="bad_status",
        )
        self.status_code = status_code


class UpstreamStreamError(StreamError):
    def __init__(self, message: str = "The writer reported an error") -> None:
        super().__init__(message=message, error_code="upstream_error")
