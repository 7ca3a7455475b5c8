"""Incremental decoder for the writer's server-sent event stream.

Frames are separated by a blank line. A read boundary may fall anywhere,
including between the two newlines of a separator, so the decoder keeps the
unconsumed tail in `raw_buffer` and only parses frames once their separator
has fully arrived.
"""

from __future__ import annotations

import logging
import re
from collections.abc import AsyncIterator, Iterable
from dataclasses import dataclass

import httpx

from services.streaming.exceptions import StreamStatusError, StreamTransportError


logger = logging.getLogger(__name__)

DONE_SENTINEL = "[DONE]"
DEFAULT_EVENT = "message"
DEFAULT_TERMINAL_EVENTS: frozenset[str] = frozenset({"complete", "done"})

_FRAME_SEPARATOR = "\n\n"
# A lone CR is a line break unless it is the last character of the buffer,
# where the matching LF may still be in flight.
_LONE_CR = re.compile(r"\r(?!\n|$)")


@dataclass(frozen=True, slots=True)
class Frame:
    """One decoded frame: an event name and its (possibly empty) data."""

    event: str = DEFAULT_EVENT
    data: str = ""
    id: str | None = None

    @property
    def is_done_sentinel(self) -> bool:
        return self.data.strip() == DONE_SENTINEL

    def is_terminal(
        self, terminal_events: Iterable[str] = DEFAULT_TERMINAL_EVENTS
    ) -> bool:
        """True when this frame ends the session (terminal name or [DONE])."""
        return self.is_done_sentinel or self.event in set(terminal_events)


def parse_frame(block: str) -> Frame | None:
    """Parse one complete frame block; None when it carries no fields."""
    event: str | None = None
    data_lines: list[str] = []
    frame_id: str | None = None

    for line in block.split("\n"):
        if not line or line.startswith(":"):
            continue
        field, sep, value = line.partition(":")
        if not sep:
            # A bare field name with no colon carries an empty value.
            value = ""
        elif value.startswith(" "):
            value = value[1:]

        if field == "event":
            event = value or DEFAULT_EVENT
        elif field == "data":
            data_lines.append(value)
        elif field == "id":
            frame_id = value
        # `retry` and unknown fields are ignored.

    if event is None and not data_lines:
        return None
    return Frame(event=event or DEFAULT_EVENT, data="\n".join(data_lines), id=frame_id)


class FrameDecoder:
    """Turn arbitrarily chunked text into an ordered list of frames."""

    def __init__(self) -> None:
        self.raw_buffer = ""

    def feed(self, chunk: str) -> list[Frame]:
        """Append a chunk and return every frame it completes."""
        if not chunk:
            return []
        buffer = (self.raw_buffer + chunk).replace("\r\n", "\n")
        self.raw_buffer = _LONE_CR.sub("\n", buffer)

        *complete, self.raw_buffer = self.raw_buffer.split(_FRAME_SEPARATOR)
        frames: list[Frame] = []
        for block in complete:
            frame = parse_frame(block)
            if frame is not None:
                frames.append(frame)
        return frames

    def flush(self) -> list[Frame]:
        """Parse whatever is left once the transport has closed."""
        tail = self.raw_buffer.replace("\r", "\n")
        self.raw_buffer = ""
        frame = parse_frame(tail)
        return [frame] if frame is not None else []


async def aiter_frames(
    response: httpx.Response, decoder: FrameDecoder | None = None
) -> AsyncIterator[Frame]:
    """Yield frames from a streaming httpx response.

    A non-success status is reported before any frame is produced. A read
    failure ends the iteration with `StreamTransportError`; frames already
    yielded stay valid.
    """
    if response.is_error:
        body = (await response.aread()).decode("utf-8", errors="replace")
        raise StreamStatusError(response.status_code, body.strip()[:200] or None)

    decoder = decoder or FrameDecoder()
    try:
        async for chunk in response.aiter_text():
            for frame in decoder.feed(chunk):
                yield frame
    except httpx.TransportError as exc:
        logger.warning("Generation stream read failed: %s", exc.__class__.__name__)
        raise StreamTransportError(f"Stream read failed: {exc}") from exc

    for frame in decoder.flush():
        yield frame
