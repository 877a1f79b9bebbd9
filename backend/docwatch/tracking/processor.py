import asyncio
import contextlib
from collections.abc import Callable
from datetime import datetime, timezone

import structlog

from docwatch.errors import PersistenceError
from docwatch.tracking.analysis import AnalysisRequest, ArqAnalysisScheduler, InlineAnalysisScheduler
from docwatch.tracking.events import ChangeEventStore
from docwatch.tracking.metrics import MetricsRecorder
from docwatch.tracking.notifier import NotificationDispatcher
from docwatch.tracking.persistence import TrackedDocumentStore
from docwatch.tracking.registry import TrackedDocumentRegistry
from docwatch.tracking.types import ChangeCandidate, ChangeEvent, DiffSummary, EventSource, TrackedDocument

log = structlog.get_logger()

RECENT_KEYS = 32


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ChangeProcessor:
    """Single consumer that turns change candidates into recorded events.

    Poll results and webhook events share one queue, so every candidate for a
    document is applied in arrival order under that document's lock. After an
    event is stored the notification is chained behind the document's previous
    one, which keeps delivery order equal to persistence order.
    """

    def __init__(
        self,
        registry: TrackedDocumentRegistry,
        event_store: ChangeEventStore,
        document_store: TrackedDocumentStore,
        dispatcher: NotificationDispatcher,
        metrics: MetricsRecorder,
        *,
        analysis: InlineAnalysisScheduler | ArqAnalysisScheduler | None = None,
        analysis_wait: float = 10.0,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.registry = registry
        self.event_store = event_store
        self.document_store = document_store
        self.dispatcher = dispatcher
        self.metrics = metrics
        self.analysis = analysis
        self.analysis_wait = analysis_wait
        self._clock = clock
        self._queue: asyncio.Queue[tuple[ChangeCandidate, asyncio.Future]] = asyncio.Queue()
        self._task: asyncio.Task | None = None
        self._notify_tails: dict[str, asyncio.Task] = {}

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if not self.running:
            self._task = asyncio.create_task(self.run())

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None
        await self.drain_notifications()
        if self.analysis is not None:
            await self.analysis.drain()

    async def submit(self, candidate: ChangeCandidate) -> asyncio.Future:
        """Queue ``candidate``. The future resolves to the stored event, or None."""
        future = asyncio.get_running_loop().create_future()
        await self._queue.put((candidate, future))
        return future

    async def join(self) -> None:
        await self._queue.join()

    async def drain_notifications(self) -> None:
        tails = list(self._notify_tails.values())
        if tails:
            await asyncio.gather(*tails, return_exceptions=True)

    async def run(self) -> None:
        while True:
            candidate, future = await self._queue.get()
            try:
                event = await self.apply_change_event(candidate)
            except Exception as exc:
                log.error(
                    "change_apply_failed",
                    document_id=candidate.document_id,
                    source=candidate.source.value,
                    error=str(exc),
                )
                event = None
            finally:
                self._queue.task_done()
            if not future.done():
                future.set_result(event)

    async def apply_change_event(self, candidate: ChangeCandidate) -> ChangeEvent | None:
        document = self.registry.get(candidate.document_id)
        if document is None:
            log.info(
                "change_candidate_untracked",
                document_id=candidate.document_id,
                source=candidate.source.value,
            )
            return None

        async with self.registry.lock_for(document.document_id):
            if not self.registry.is_current(document):
                return None

            if await self._is_duplicate(document, candidate):
                self.metrics.incr("duplicates_suppressed")
                log.info(
                    "change_duplicate_suppressed",
                    document_id=candidate.document_id,
                    changed_by=candidate.changed_by,
                    changed_at=candidate.changed_at,
                    source=candidate.source.value,
                )
                await self._sync_polled_state(document, candidate)
                return None

            # an older timestamp only matters when someone else made the edit
            if (
                candidate.changed_at < document.last_known_modified_at
                and candidate.changed_by == document.last_known_editor
            ):
                log.info(
                    "change_superseded",
                    document_id=candidate.document_id,
                    changed_at=candidate.changed_at,
                    known_modified_at=document.last_known_modified_at,
                    source=candidate.source.value,
                )
                await self._sync_polled_state(document, candidate)
                return None

            event = ChangeEvent(
                document_id=candidate.document_id,
                change_type=candidate.change_type,
                changed_by=candidate.changed_by,
                changed_at=candidate.changed_at,
                detected_at=self._detected_at(document, candidate),
                source=candidate.source,
                revision=candidate.revision,
            )
            if not await self.event_store.append(event):
                self._remember(document, event)
                self.metrics.incr("duplicates_suppressed")
                await self._sync_polled_state(document, candidate)
                return None

            self._advance(document, candidate, event)
            try:
                await self.document_store.save(document)
            except PersistenceError as exc:
                log.error("tracked_state_save_failed", document_id=document.document_id, error=str(exc))

            self.metrics.incr("changes_detected")
            log.info(
                "change_detected",
                document_id=event.document_id,
                event_id=str(event.id),
                change_type=event.change_type.value,
                changed_by=event.changed_by,
                changed_at=event.changed_at,
                source=event.source.value,
            )

            analysis_task = None
            if self.analysis is not None:
                analysis_task = self.analysis.schedule(
                    AnalysisRequest(
                        event=event,
                        document_type=document.document_type,
                        raw_type=document.raw_type,
                        notify_target_id=document.notify_target_id,
                        title=document.title,
                    )
                )
            self._chain_notification(document, event, analysis_task)
            return event

    async def _is_duplicate(self, document: TrackedDocument, candidate: ChangeCandidate) -> bool:
        if candidate.dedup_key in document.recent_keys:
            return True
        if (
            candidate.changed_at == document.last_known_modified_at
            and candidate.changed_by == document.last_known_editor
        ):
            return True
        return await self.event_store.contains(
            candidate.document_id, candidate.changed_by, candidate.changed_at
        )

    def _detected_at(self, document: TrackedDocument, candidate: ChangeCandidate) -> datetime:
        changed = datetime.fromtimestamp(candidate.changed_at, tz=timezone.utc)
        floor = [self._clock(), changed]
        if document.last_detected_at is not None:
            floor.append(document.last_detected_at)
        return max(floor)

    def _remember(self, document: TrackedDocument, event: ChangeEvent) -> None:
        document.recent_keys.append(event.dedup_key)
        del document.recent_keys[:-RECENT_KEYS]

    def _advance(self, document: TrackedDocument, candidate: ChangeCandidate, event: ChangeEvent) -> None:
        # a late webhook is recorded but does not rewind the known state
        if candidate.source == EventSource.POLL or candidate.changed_at >= document.last_known_modified_at:
            self._set_known_state(document, candidate)
        if candidate.title:
            document.title = candidate.title
        document.last_detected_at = event.detected_at
        self._remember(document, event)

    def _set_known_state(self, document: TrackedDocument, candidate: ChangeCandidate) -> None:
        document.last_known_editor = candidate.changed_by
        document.last_known_modified_at = candidate.changed_at
        if candidate.revision is not None:
            document.last_known_revision = candidate.revision

    async def _sync_polled_state(self, document: TrackedDocument, candidate: ChangeCandidate) -> None:
        """A poll reports the current upstream state even when it records nothing."""
        if candidate.source != EventSource.POLL:
            return
        if (candidate.changed_by, candidate.changed_at) == (
            document.last_known_editor,
            document.last_known_modified_at,
        ):
            return
        self._set_known_state(document, candidate)
        try:
            await self.document_store.save(document)
        except PersistenceError as exc:
            log.error("tracked_state_save_failed", document_id=document.document_id, error=str(exc))

    def _chain_notification(
        self,
        document: TrackedDocument,
        event: ChangeEvent,
        analysis_task: asyncio.Task | None,
    ) -> None:
        previous = self._notify_tails.get(document.document_id)
        target = document.notify_target_id
        task = asyncio.create_task(self._deliver(previous, target, document, event, analysis_task))
        self._notify_tails[document.document_id] = task

        def _release(done: asyncio.Task) -> None:
            if self._notify_tails.get(document.document_id) is done:
                del self._notify_tails[document.document_id]

        task.add_done_callback(_release)

    async def _deliver(
        self,
        previous: asyncio.Task | None,
        target: str,
        document: TrackedDocument,
        event: ChangeEvent,
        analysis_task: asyncio.Task | None,
    ) -> None:
        if previous is not None:
            await asyncio.gather(previous, return_exceptions=True)
        diff = await self._await_diff(event, analysis_task)
        await self.dispatcher.notify(target, event, diff, document)

    async def _await_diff(self, event: ChangeEvent, analysis_task: asyncio.Task | None) -> DiffSummary | None:
        if analysis_task is None:
            return None
        try:
            result = await asyncio.wait_for(asyncio.shield(analysis_task), self.analysis_wait)
        except asyncio.TimeoutError:
            log.info("change_analysis_pending", document_id=event.document_id, event_id=str(event.id))
            return None
        except Exception as exc:
            log.warning("change_analysis_unavailable", document_id=event.document_id, error=str(exc))
            return None
        return result if isinstance(result, DiffSummary) else None
