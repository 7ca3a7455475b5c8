"""State of one chapter generation stream.

A session is fed raw text as it arrives and runs it, in order, through the
frame decoder, the payload interpreter, the title filter and the normalizer.
It turns terminal exactly once: on a terminal frame, an upstream error frame,
a transport failure, or the end of the transport.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

import httpx

from core.config import Settings
from services.streaming.exceptions import (
    StreamError,
    StreamTransportError,
    UpstreamStreamError,
)
from services.streaming.frame_decoder import (
    DEFAULT_TERMINAL_EVENTS,
    Frame,
    FrameDecoder,
    aiter_frames,
)
from services.streaming.normalizer import NormalizerConfig, StreamingNormalizer
from services.streaming.payload import build_status_pattern, interpret_payload
from services.streaming.title_filter import (
    TitleExtractionFilter,
    UnterminatedTitlePolicy,
)


logger = logging.getLogger(__name__)

ERROR_EVENT = "error"


@dataclass(frozen=True, slots=True)
class SessionOptions:
    """Per-session knobs, normally built from application settings."""

    terminal_events: frozenset[str] = DEFAULT_TERMINAL_EVENTS
    status_phrases: tuple[str, ...] = ()
    title_delimiter: str = "$"
    title_policy: UnterminatedTitlePolicy = UnterminatedTitlePolicy.DISCARD
    normalizer: NormalizerConfig = field(default_factory=NormalizerConfig)

    @classmethod
    def from_settings(cls, settings: Settings) -> SessionOptions:
        return cls(
            terminal_events=frozenset(settings.TERMINAL_EVENTS),
            status_phrases=tuple(settings.STATUS_PHRASE_DENYLIST),
            title_delimiter=settings.TITLE_DELIMITER,
            title_policy=UnterminatedTitlePolicy(settings.UNTERMINATED_TITLE_POLICY),
            normalizer=NormalizerConfig(indent=settings.PARAGRAPH_INDENT),
        )


class StreamSession:
    """Decoded, filtered and formatted view of one generation stream."""

    def __init__(
        self,
        options: SessionOptions | None = None,
        *,
        sequence_number: int | None = None,
    ) -> None:
        self.options = options or SessionOptions()
        self.sequence_number = sequence_number
        self.decoder = FrameDecoder()
        self.title_filter = TitleExtractionFilter(
            self.options.title_delimiter, self.options.title_policy
        )
        self.normalizer = StreamingNormalizer(self.options.normalizer)
        self._status_pattern = build_status_pattern(self.options.status_phrases)

        self.memory_bank: dict[str, Any] | None = None
        self.unit_id: int | None = None
        self.progress_messages: list[str] = []
        self.error: StreamError | None = None
        self.terminal = False
        self.terminated = asyncio.Event()

        # Background work tied to this session, stopped by `aclose`.
        self.reader: asyncio.Task[None] | None = None
        self.persist_task: asyncio.Task[None] | None = None
        self.persist_error: str | None = None

    @property
    def raw_buffer(self) -> str:
        return self.decoder.raw_buffer

    @property
    def accumulated_body(self) -> str:
        return self.normalizer.body

    @property
    def formatted_text(self) -> str:
        return self.normalizer.formatted

    @property
    def title(self) -> str | None:
        return self.title_filter.title

    @property
    def succeeded(self) -> bool:
        return self.terminal and self.error is None

    @property
    def persisting(self) -> bool:
        """True while a save of this chapter is still running."""
        return self.persist_task is not None and not self.persist_task.done()

    def feed(self, chunk: str) -> None:
        """Process one read from the transport; ignored once terminal."""
        if self.terminal:
            return
        self._handle_frames(self.decoder.feed(chunk))

    def finish(self, error: StreamError | None = None) -> None:
        """End the session at transport close, optionally with an error."""
        if self.terminal:
            return
        if error is None:
            self._handle_frames(self.decoder.flush())
        self._terminate(error)

    async def consume(self, response: httpx.Response) -> None:
        """Drive the session from a streaming response until it is terminal."""
        try:
            async for frame in aiter_frames(response, self.decoder):
                self._handle_frame(frame)
                if self.terminal:
                    return
        except StreamError as exc:
            self._terminate(exc)
            return
        self._terminate(None)

    async def wait(self) -> None:
        await self.terminated.wait()

    async def aclose(self) -> None:
        """Stop reading and saving; the session ends now if it has not yet."""
        tasks = [
            task
            for task in (self.reader, self.persist_task)
            if task is not None and not task.done()
        ]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self.finish(StreamTransportError("Chapter stream was closed"))

    def _handle_frames(self, frames: Iterable[Frame]) -> None:
        for frame in frames:
            if self.terminal:
                return
            self._handle_frame(frame)

    def _handle_frame(self, frame: Frame) -> None:
        if frame.event == ERROR_EVENT:
            message = frame.data or "Writer reported an error"
            self._terminate(UpstreamStreamError(message))
            return

        if not frame.is_done_sentinel:
            chunk = interpret_payload(frame.data, self._status_pattern)
            if chunk.memory_bank is not None:
                self.memory_bank = chunk.memory_bank
            if chunk.unit_id is not None:
                self.unit_id = chunk.unit_id
            if chunk.is_progress:
                self.progress_messages.append(chunk.progress_message or "")
            elif chunk.content:
                self._append_body(self.title_filter.feed(chunk.content))

        if frame.is_terminal(self.options.terminal_events):
            self._terminate(None)

    def _append_body(self, text: str) -> None:
        if text:
            self.normalizer.append(text)

    def _terminate(self, error: StreamError | None) -> None:
        if self.terminal:
            return
        self._append_body(self.title_filter.finish())
        self.error = error
        self.terminal = True
        self.terminated.set()
        if error is not None:
            logger.warning(
                "Generation stream ended with %s for unit %s",
                error.error_code,
                self.sequence_number,
            )
        else:
            logger.info(
                "Generation stream complete for unit %s (%d chars)",
                self.sequence_number,
                len(self.accumulated_body),
            )
