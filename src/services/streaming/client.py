"""HTTP client for the writer's chapter stream."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import httpx

from core.config import Settings
from schemas.batches import UnitPlan
from services.batch.exceptions import UnitGenerationRejected
from services.streaming.session import SessionOptions, StreamSession


logger = logging.getLogger(__name__)


def build_stream_request_body(
    plan: UnitPlan, memory_bank: dict[str, Any] | None
) -> dict[str, Any]:
    """Shape a unit plan into the writer's request payload."""
    chapter_plan: dict[str, Any] = {
        "chapterNumber": plan.sequence_number,
        "title": plan.title_hint or f"第{plan.sequence_number}章",
        "estimatedWords": plan.estimated_words,
    }
    if plan.key_events:
        chapter_plan["keyEvents"] = plan.key_events
    return {
        "chapterPlan": chapter_plan,
        "memoryBank": memory_bank,
        "userAdjustment": plan.directive or None,
        "promptTemplateId": plan.prompt_template_id,
        "model": plan.model,
    }


class GenerationStreamClient:
    """Opens chapter streams and hands back live sessions."""

    def __init__(self, http_client: httpx.AsyncClient, settings: Settings) -> None:
        self._http = http_client
        self._settings = settings
        self._options = SessionOptions.from_settings(settings)
        self._tasks: dict[asyncio.Task[None], StreamSession] = {}

    def stream_url(self, novel_id: int) -> str:
        base = self._settings.UPSTREAM_BASE_URL.rstrip("/")
        return f"{base}/novel-craft/{novel_id}/write-chapter-stream"

    async def open_session(
        self,
        novel_id: int,
        plan: UnitPlan,
        memory_bank: dict[str, Any] | None = None,
    ) -> StreamSession:
        """Start one chapter stream.

        Raises `UnitGenerationRejected` when the request cannot be sent or the
        writer answers with an error status. Otherwise the returned session is
        filled by a background task and turns terminal on its own.
        """
        request = self._http.build_request(
            "POST",
            self.stream_url(novel_id),
            json=build_stream_request_body(plan, memory_bank),
            headers={"Accept": "text/event-stream"},
        )
        try:
            response = await self._http.send(request, stream=True)
        except httpx.HTTPError as exc:
            logger.warning(
                "Chapter stream request failed for novel %s: %s",
                novel_id,
                exc.__class__.__name__,
            )
            raise UnitGenerationRejected(f"Could not reach the writer: {exc}") from exc

        if response.is_error:
            body = (await response.aread()).decode("utf-8", errors="replace")
            await response.aclose()
            logger.warning(
                "Chapter stream rejected for novel %s with HTTP %s",
                novel_id,
                response.status_code,
            )
            raise UnitGenerationRejected(
                body.strip()[:200] or f"Writer returned HTTP {response.status_code}"
            )

        session = StreamSession(self._options, sequence_number=plan.sequence_number)
        task = asyncio.create_task(self._pump(session, response))
        session.reader = task
        self._tasks[task] = session
        task.add_done_callback(lambda done: self._tasks.pop(done, None))
        return session

    async def _pump(self, session: StreamSession, response: httpx.Response) -> None:
        try:
            await session.consume(response)
        finally:
            await response.aclose()

    async def aclose(self) -> None:
        """Stop any stream still being read."""
        sessions = list(self._tasks.values())
        if sessions:
            await asyncio.gather(*(session.aclose() for session in sessions))
