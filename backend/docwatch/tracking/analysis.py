import asyncio
from typing import Any

import structlog
from pydantic import BaseModel

from docwatch.errors import DocWatchError
from docwatch.tracking.content import ContentFetcher
from docwatch.tracking.doc_types import DocumentType
from docwatch.tracking.rules import RuleEngine
from docwatch.tracking.snapshots import SnapshotStore, hash_content
from docwatch.tracking.types import ChangeEvent, DiffSummary

log = structlog.get_logger()


class AnalysisRequest(BaseModel):
    event: ChangeEvent
    document_type: DocumentType
    raw_type: str | None = None
    notify_target_id: str
    title: str | None = None


class ChangeAnalysisPipeline:
    """Snapshot, diff and rule evaluation for one persisted change event.

    Nothing here can affect the event itself: every failure is logged and the
    pipeline carries on with whatever it has.
    """

    def __init__(
        self,
        content_fetcher: ContentFetcher,
        snapshot_store: SnapshotStore,
        rule_engine: RuleEngine | None = None,
    ) -> None:
        self.content_fetcher = content_fetcher
        self.snapshot_store = snapshot_store
        self.rule_engine = rule_engine

    async def analyze(self, request: AnalysisRequest) -> DiffSummary | None:
        event = request.event
        diff = await self._snapshot_and_diff(request)

        if self.rule_engine is not None:
            try:
                await self.rule_engine.evaluate(
                    event, diff, notify_target_id=request.notify_target_id, title=request.title
                )
            except DocWatchError as exc:
                log.error("rule_evaluation_failed", document_id=event.document_id, error=str(exc))
        return diff

    async def _snapshot_and_diff(self, request: AnalysisRequest) -> DiffSummary | None:
        event = request.event
        if request.document_type == DocumentType.GENERIC_FILE:
            return None
        try:
            content = await self.content_fetcher.fetch(
                event.document_id, request.document_type, request.raw_type
            )
        except DocWatchError as exc:
            log.warning("content_fetch_failed", document_id=event.document_id, error=str(exc))
            return None
        if content is None:
            return None

        try:
            capture = await self.snapshot_store.capture(event.document_id, content, event.revision)
        except DocWatchError as exc:
            log.error("snapshot_capture_failed", document_id=event.document_id, error=str(exc))
            return None

        if not capture.changed:
            # oversized content is skipped without a diff
            if capture.previous is None or capture.previous.content_hash != hash_content(content):
                return None
            return DiffSummary(summary="no textual changes")
        diff = self.snapshot_store.diff(capture.previous, content)
        log.info(
            "change_analyzed",
            document_id=event.document_id,
            event_id=str(event.id),
            summary=diff.summary,
        )
        return diff


class InlineAnalysisScheduler:
    """Runs the pipeline as in-process tasks."""

    def __init__(self, pipeline: ChangeAnalysisPipeline) -> None:
        self.pipeline = pipeline
        self._tasks: set[asyncio.Task] = set()

    def schedule(self, request: AnalysisRequest) -> asyncio.Task:
        task = asyncio.create_task(self._run(request))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run(self, request: AnalysisRequest) -> DiffSummary | None:
        try:
            return await self.pipeline.analyze(request)
        except Exception as exc:
            log.error("change_analysis_failed", document_id=request.event.document_id, error=str(exc))
            return None

    async def drain(self) -> None:
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


class ArqAnalysisScheduler:
    """Hands the pipeline to the arq worker (``analyze_change`` job).

    The scheduled task resolves to the job's diff, or None when the worker
    does not answer within ``result_timeout``.
    """

    def __init__(self, pool: Any, *, result_timeout: float = 10.0) -> None:
        self.pool = pool
        self.result_timeout = result_timeout
        self._tasks: set[asyncio.Task] = set()

    def schedule(self, request: AnalysisRequest) -> asyncio.Task:
        task = asyncio.create_task(self._enqueue(request))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _enqueue(self, request: AnalysisRequest) -> DiffSummary | None:
        document_id = request.event.document_id
        try:
            job = await self.pool.enqueue_job("analyze_change", request.model_dump(mode="json"))
        except Exception as exc:
            log.error("analysis_enqueue_failed", document_id=document_id, error=str(exc))
            return None
        if job is None:
            return None
        try:
            result = await job.result(timeout=self.result_timeout)
        except asyncio.TimeoutError:
            log.info("analysis_result_pending", document_id=document_id, job_id=job.job_id)
            return None
        except Exception as exc:
            log.warning("analysis_job_failed", document_id=document_id, job_id=job.job_id, error=str(exc))
            return None
        return DiffSummary.model_validate(result) if result else None

    async def drain(self) -> None:
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
