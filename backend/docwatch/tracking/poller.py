import asyncio
import contextlib
import time
from collections.abc import Awaitable, Callable

import structlog

from docwatch.errors import PermanentAccessError, TransientUpstreamError
from docwatch.tracking.detector import detect_change
from docwatch.tracking.metadata import MetadataClient
from docwatch.tracking.metrics import MetricsRecorder
from docwatch.tracking.processor import ChangeProcessor
from docwatch.tracking.registry import TrackedDocumentRegistry
from docwatch.tracking.types import PollState, TrackedDocument

log = structlog.get_logger()

AccessLostCallback = Callable[[TrackedDocument, str], Awaitable[None]]


class ChangePoller:
    """Periodic metadata polling for every tracked document.

    Each tick starts a poll task for every document that is idle or whose
    failure backoff has elapsed. Tasks run under a semaphore and are never
    awaited by the tick itself, so one slow document cannot hold up the rest.
    """

    def __init__(
        self,
        registry: TrackedDocumentRegistry,
        metadata_client: MetadataClient,
        processor: ChangeProcessor,
        metrics: MetricsRecorder,
        *,
        interval: float = 30.0,
        max_concurrent: int = 10,
        removal_threshold: int = 5,
        max_backoff: float = 600.0,
        on_access_lost: AccessLostCallback | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.registry = registry
        self.metadata_client = metadata_client
        self.processor = processor
        self.metrics = metrics
        self.interval = interval
        self.max_concurrent = max_concurrent
        self.removal_threshold = removal_threshold
        self.max_backoff = max_backoff
        self.on_access_lost = on_access_lost
        self._clock = clock
        self._semaphore = asyncio.Semaphore(max_concurrent)
        self._cursor = 0
        self._task: asyncio.Task | None = None
        self._polls: set[asyncio.Task] = set()

    @property
    def in_flight(self) -> int:
        return len(self._polls)

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._loop())
            log.info("poller_started", interval=self.interval, max_concurrent=self.max_concurrent)

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None
        polls = list(self._polls)
        for task in polls:
            task.cancel()
        if polls:
            await asyncio.gather(*polls, return_exceptions=True)
        log.info("poller_stopped")

    async def _loop(self) -> None:
        while True:
            try:
                self.tick()
            except Exception as exc:
                log.error("poll_tick_failed", error=str(exc))
            await asyncio.sleep(self.interval)

    def tick(self) -> list[asyncio.Task]:
        """Start polls for due documents in round-robin order."""
        self.metrics.mark_tick()
        due = self.registry.due_for_poll(self._clock())
        if not due:
            return []

        start = self._cursor % len(due)
        self._cursor = start + min(len(due), self.max_concurrent)
        started = []
        for document in due[start:] + due[:start]:
            if not self.registry.begin_poll(document):
                continue
            task = asyncio.create_task(self._poll_claimed(document))
            self._polls.add(task)
            task.add_done_callback(self._polls.discard)
            started.append(task)
        return started

    async def wait_idle(self) -> None:
        while self._polls:
            await asyncio.gather(*list(self._polls), return_exceptions=True)

    async def poll_document(self, document: TrackedDocument) -> bool:
        """Poll one document now. False when a poll of it is already running."""
        if not self.registry.begin_poll(document):
            return False
        await self._poll_claimed(document)
        return True

    async def _poll_claimed(self, document: TrackedDocument) -> None:
        try:
            await self._poll(document)
        finally:
            if document.state == PollState.POLLING:
                document.state = PollState.IDLE
            if not self.registry.is_current(document):
                self.registry.discard_lock(document.document_id)

    async def _poll(self, document: TrackedDocument) -> None:
        async with self._semaphore:
            if not self.registry.is_current(document):
                return
            try:
                metadata = await self.metadata_client.fetch_metadata(
                    document.document_id, document.document_type, document.raw_type
                )
            except PermanentAccessError as exc:
                await self._access_error(document, exc)
                return
            except TransientUpstreamError as exc:
                await self._failure(document, str(exc))
                return
            except Exception as exc:
                log.error("poll_unexpected_error", document_id=document.document_id, error=str(exc))
                await self._failure(document, str(exc))
                return

        if not self.registry.is_current(document):
            log.info("poll_result_discarded", document_id=document.document_id)
            return

        self.metrics.incr("poll_successes")
        candidate = detect_change(document, metadata)
        if candidate is not None:
            future = await self.processor.submit(candidate)
            await future

        async with self.registry.lock_for(document.document_id):
            if metadata.title and not document.title:
                document.title = metadata.title
            document.consecutive_access_errors = 0
            document.consecutive_failures = 0
            document.next_poll_at = 0.0
            if document.state == PollState.POLLING:
                document.state = PollState.IDLE

    def _backoff(self, failures: int) -> float:
        return min(self.interval * 2 ** (failures - 1), self.max_backoff)

    async def _failure(self, document: TrackedDocument, error: str) -> None:
        self.metrics.incr("poll_failures")
        async with self.registry.lock_for(document.document_id):
            if not self.registry.is_current(document):
                return
            document.consecutive_failures += 1
            delay = self._backoff(document.consecutive_failures)
            document.next_poll_at = self._clock() + delay
            document.state = PollState.FAILING
        log.warning(
            "poll_failed",
            document_id=document.document_id,
            failures=document.consecutive_failures,
            retry_in=delay,
            error=error,
        )

    async def _access_error(self, document: TrackedDocument, exc: PermanentAccessError) -> None:
        self.metrics.incr("poll_failures")
        removed = False
        async with self.registry.lock_for(document.document_id):
            if not self.registry.is_current(document):
                return
            document.consecutive_access_errors += 1
            document.consecutive_failures += 1
            if document.consecutive_access_errors >= self.removal_threshold:
                await self.registry.remove(document.document_id)
                removed = True
            else:
                document.next_poll_at = self._clock() + self._backoff(document.consecutive_failures)
                document.state = PollState.FAILING

        if not removed:
            log.warning(
                "document_access_error",
                document_id=document.document_id,
                consecutive=document.consecutive_access_errors,
                threshold=self.removal_threshold,
                error=str(exc),
            )
            return

        reason = f"document could not be accessed {document.consecutive_access_errors} times in a row"
        log.error("document_tracking_removed", document_id=document.document_id, reason=reason)
        if self.on_access_lost is not None:
            try:
                await self.on_access_lost(document, reason)
            except Exception as cb_exc:
                log.error("access_lost_handler_failed", document_id=document.document_id, error=str(cb_exc))
