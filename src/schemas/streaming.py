"""Schemas for batch progress SSE streaming."""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


MAX_SSE_EVENT_BYTES: int = 16_384


class BatchSseEvent(BaseModel):
    """Canonical SSE envelope for batch job progress.

    Payloads carry ids, counts and short messages only, never chapter text.
    """

    event: Literal[
        "snapshot",
        "unit.started",
        "unit.progress",
        "unit.terminal",
        "unit.finalized",
        "unit.ready",
        "unit.failed",
        "decision.required",
        "batch.finished",
        "done",
    ]
    job_id: str
    data: dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(extra="forbid")

    def to_sse(self) -> str:
        """Serialize event to SSE format with size validation."""
        payload = self.model_dump_json()
        if len(payload.encode("utf-8")) > MAX_SSE_EVENT_BYTES:
            raise ValueError(
                "SSE payload exceeded MAX_SSE_EVENT_BYTES; keep chapter text out "
                "of batch events."
            )
        return f"event: {self.event}\ndata: {payload}\n\n"
