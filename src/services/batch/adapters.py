"""HTTP-backed collaborators for batch runs.

Chapter records, summarization and placeholder creation all live on the
writer service. These adapters translate its HTTP failures into unit
failures the orchestrator can pause on.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable
from typing import Any

import httpx
from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from core.config import Settings
from schemas.batches import UnitDecision, UnitPlan
from services.batch.exceptions import UnitFinalizeRejected
from services.batch.interfaces import UnitReadinessSignal
from services.batch.models import BatchJob, PendingFailure, UnitRef
from services.streaming.client import GenerationStreamClient
from services.streaming.session import StreamSession


logger = logging.getLogger(__name__)

RETRYABLE_STATUS_CODES = frozenset({429, 502, 503, 504})


def default_title(sequence_number: int) -> str:
    return f"第{sequence_number}章"


def _unwrap(body: Any) -> Any:
    # The writer wraps some responses as {"code", "message", "data"}.
    if isinstance(body, dict) and isinstance(body.get("data"), dict):
        return body["data"]
    return body


def _is_transient(exc: BaseException) -> bool:
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code in RETRYABLE_STATUS_CODES
    return isinstance(exc, httpx.TransportError)


class UpstreamChapters:
    """Chapter records on the writer service.

    Calls are retried with exponential backoff on overload, rate limiting,
    gateway errors and transport failures; anything else fails at once.
    """

    def __init__(self, http_client: httpx.AsyncClient, settings: Settings) -> None:
        self._http = http_client
        self._base = settings.UPSTREAM_BASE_URL.rstrip("/")
        self._attempts = max(1, settings.UPSTREAM_RETRY_ATTEMPTS)
        self._backoff = settings.UPSTREAM_RETRY_BACKOFF_SECONDS
        # (novel_id, sequence_number) -> id of an empty chapter created ahead of time
        self.placeholders: dict[tuple[int, int], int] = {}

    def discard_placeholders(self, novel_id: int, sequence_numbers: Iterable[int]) -> None:
        """Forget placeholders a finished batch created but never filled."""
        for sequence_number in sequence_numbers:
            self.placeholders.pop((novel_id, sequence_number), None)

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        retrying = AsyncRetrying(
            retry=retry_if_exception(_is_transient),
            wait=wait_exponential(multiplier=self._backoff, max=30),
            stop=stop_after_attempt(self._attempts),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                response = await self._http.request(method, f"{self._base}{path}", **kwargs)
                response.raise_for_status()
        return response

    async def create_chapter(
        self, novel_id: int, sequence_number: int, title: str, content: str = ""
    ) -> int:
        response = await self._request(
            "POST",
            "/chapters",
            json={
                "title": title,
                "content": content,
                "chapterNumber": sequence_number,
                "novelId": novel_id,
            },
        )
        created = _unwrap(response.json())
        if not isinstance(created, dict) or created.get("id") is None:
            raise httpx.DecodingError("Chapter creation returned no id")
        return int(created["id"])

    async def update_chapter(self, chapter_id: int, payload: dict[str, Any]) -> None:
        await self._request("PUT", f"/chapters/{chapter_id}", json=payload)

    async def summarize(self, chapter_id: int) -> dict[str, Any]:
        response = await self._request("POST", f"/chapters/{chapter_id}/summarize", json={})
        body = _unwrap(response.json())
        return body if isinstance(body, dict) else {}

    async def latest_sequence(self, novel_id: int) -> int | None:
        """Highest chapter number the novel currently has, if any."""
        response = await self._request("GET", f"/chapters/novel/{novel_id}")
        body = response.json()
        chapters = body.get("data") if isinstance(body, dict) else body
        numbers = [
            int(c["chapterNumber"])
            for c in chapters or []
            if isinstance(c, dict) and c.get("chapterNumber") is not None
        ]
        return max(numbers) if numbers else None


class HttpUnitGenerator:
    """Starts chapter streams and saves each finished chapter."""

    def __init__(
        self, streams: GenerationStreamClient, chapters: UpstreamChapters
    ) -> None:
        self._streams = streams
        self._chapters = chapters
        self._tasks: set[asyncio.Task[None]] = set()

    async def start_unit(self, job: BatchJob, plan: UnitPlan) -> StreamSession:
        session = await self._streams.open_session(job.novel_id, plan, job.context)
        task = asyncio.create_task(self._persist_when_done(job.novel_id, plan, session))
        session.persist_task = task
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return session

    async def _persist_when_done(
        self, novel_id: int, plan: UnitPlan, session: StreamSession
    ) -> None:
        await session.wait()
        if not session.succeeded or session.unit_id is not None:
            # Failed streams are not saved; a chapterId frame means the
            # writer already saved it.
            return

        title = session.title or plan.title_hint or default_title(plan.sequence_number)
        key = (novel_id, plan.sequence_number)
        # Only a save that lands consumes the placeholder.
        placeholder = self._chapters.placeholders.get(key)
        try:
            if placeholder is not None:
                await self._chapters.update_chapter(
                    placeholder,
                    {
                        "title": title,
                        "content": session.formatted_text,
                        "chapterNumber": plan.sequence_number,
                        "novelId": novel_id,
                    },
                )
                unit_id = placeholder
            else:
                unit_id = await self._chapters.create_chapter(
                    novel_id, plan.sequence_number, title, session.formatted_text
                )
        except httpx.HTTPError as exc:
            logger.warning(
                "Saving chapter %d of novel %d failed: %s",
                plan.sequence_number,
                novel_id,
                exc.__class__.__name__,
            )
            session.persist_error = f"Saving chapter {plan.sequence_number} failed: {exc}"
            return
        self._chapters.placeholders.pop(key, None)
        session.unit_id = unit_id
        logger.info(
            "Saved chapter %d of novel %d as %d (%d chars)",
            plan.sequence_number,
            novel_id,
            unit_id,
            len(session.formatted_text),
        )

    async def aclose(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)


class ReadinessRegistry:
    """One readiness signal per novel, shared by every job on that novel."""

    def __init__(self) -> None:
        self._signals: dict[int, UnitReadinessSignal] = {}

    def for_novel(self, novel_id: int) -> UnitReadinessSignal:
        signal = self._signals.get(novel_id)
        if signal is None:
            signal = self._signals[novel_id] = UnitReadinessSignal()
        return signal


class HttpUnitFinalizer:
    """Summarizes a chapter, then creates the next chapter's placeholder."""

    def __init__(self, chapters: UpstreamChapters, readiness: ReadinessRegistry) -> None:
        self._chapters = chapters
        self._readiness = readiness

    async def finalize_unit(
        self, job: BatchJob, unit: UnitRef
    ) -> dict[str, Any] | None:
        try:
            summary = await self._chapters.summarize(unit.unit_id)
        except httpx.HTTPError as exc:
            raise UnitFinalizeRejected(
                f"Summarizing chapter {unit.sequence_number} failed: {exc}"
            ) from exc
        logger.info(
            "Summarized chapter %d of novel %d (%s characters, %s events)",
            unit.sequence_number,
            job.novel_id,
            summary.get("characterCount", 0),
            summary.get("eventCount", 0),
        )

        next_index = unit.unit_index + 1
        if next_index < job.total_units:
            next_plan = job.plans[next_index]
            title = next_plan.title_hint or default_title(next_plan.sequence_number)
            try:
                chapter_id = await self._chapters.create_chapter(
                    job.novel_id, next_plan.sequence_number, title
                )
            except httpx.HTTPError as exc:
                raise UnitFinalizeRejected(
                    f"Creating chapter {next_plan.sequence_number} failed: {exc}"
                ) from exc
            self._chapters.placeholders[(job.novel_id, next_plan.sequence_number)] = (
                chapter_id
            )
            self._readiness.for_novel(job.novel_id).set(next_plan.sequence_number)

        memory_bank = summary.get("memoryBank")
        return memory_bank if isinstance(memory_bank, dict) else None


class PendingDecisions:
    """Decisions submitted through the API, one open slot per job."""

    def __init__(self) -> None:
        self._futures: dict[str, asyncio.Future[UnitDecision]] = {}

    async def decide(self, job: BatchJob, failure: PendingFailure) -> UnitDecision:
        future: asyncio.Future[UnitDecision] = asyncio.get_running_loop().create_future()
        self._futures[job.id] = future
        try:
            return await future
        finally:
            if self._futures.get(job.id) is future:
                del self._futures[job.id]

    def is_pending(self, job_id: str) -> bool:
        future = self._futures.get(job_id)
        return future is not None and not future.done()

    def submit(self, job_id: str, decision: UnitDecision) -> bool:
        """Resolve the job's open decision; False when none is open."""
        if not self.is_pending(job_id):
            return False
        self._futures[job_id].set_result(UnitDecision(decision))
        return True
