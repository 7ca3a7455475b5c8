"""Interpretation of frame data payloads.

The writer sends either JSON objects in a handful of shapes or bare text.
Bare text is also used for status narration ("正在生成章节概括..."), which is
told apart from prose only by a denylist of known phrases. That heuristic is
kept for compatibility with the current upstream; structured payloads never
go through it.
"""

from __future__ import annotations

import json
import re
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any


@dataclass(slots=True)
class PayloadChunk:
    """What a single frame contributes to the session."""

    content: str = ""
    memory_bank: dict[str, Any] | None = None
    progress_message: str | None = None
    progress_step: str | None = None
    unit_id: int | None = None

    @property
    def is_progress(self) -> bool:
        return self.progress_message is not None


def build_status_pattern(phrases: Iterable[str]) -> re.Pattern[str] | None:
    """Compile the status-phrase denylist into one alternation."""
    escaped = [re.escape(p) for p in phrases if p]
    if not escaped:
        return None
    return re.compile("|".join(escaped))


def _scalar_text(value: object) -> str:
    """Body text for a JSON scalar; null, booleans and containers give none."""
    if isinstance(value, bool) or value is None:
        return ""
    if isinstance(value, str | int | float):
        return str(value)
    return ""


def _coerce_unit_id(value: object) -> int | None:
    """Parse a persisted id from an int or numeric string."""
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return None


def _from_object(obj: dict[str, Any]) -> PayloadChunk:
    """Read the known keys of a JSON object payload."""
    chunk = PayloadChunk()
    chunk.unit_id = _coerce_unit_id(obj.get("chapterId", obj.get("unitId")))

    if obj.get("message") and obj.get("step"):
        chunk.progress_message = str(obj["message"])
        chunk.progress_step = str(obj["step"])
        return chunk

    memory_bank = obj.get("updatedMemoryBank")
    if isinstance(memory_bank, dict):
        chunk.memory_bank = memory_bank

    delta = obj.get("delta")
    if obj.get("type") == "content":
        chunk.content = _scalar_text(obj.get("content"))
    elif obj.get("generatedContent"):
        chunk.content = _scalar_text(obj["generatedContent"])
    elif isinstance(delta, dict) and delta.get("content"):
        chunk.content = _scalar_text(delta["content"])
    elif obj.get("content"):
        chunk.content = _scalar_text(obj["content"])
    return chunk


def interpret_payload(
    data: str, status_pattern: re.Pattern[str] | None = None
) -> PayloadChunk:
    """Classify one frame's data; never raises."""
    if not data:
        return PayloadChunk()

    try:
        parsed = json.loads(data)
    except (json.JSONDecodeError, ValueError):
        parsed = data
        is_raw = True
    else:
        is_raw = False

    if isinstance(parsed, dict):
        return _from_object(parsed)
    if isinstance(parsed, list):
        return PayloadChunk(content="".join(_scalar_text(v) for v in parsed))

    # Bare JSON literals (numbers, true, null) are prose that happened to parse.
    text = parsed if isinstance(parsed, str) else data
    if not text or (is_raw and not text.strip()):
        return PayloadChunk()
    if status_pattern is not None and status_pattern.search(text):
        return PayloadChunk(progress_message=text.strip())
    return PayloadChunk(content=text)
