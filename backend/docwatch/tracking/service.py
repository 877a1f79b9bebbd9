from datetime import datetime
from typing import Any

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from docwatch.config import Settings, settings
from docwatch.errors import PersistenceError
from docwatch.feishu.client import FeishuClient
from docwatch.tracking.analysis import (
    ArqAnalysisScheduler,
    ChangeAnalysisPipeline,
    InlineAnalysisScheduler,
)
from docwatch.tracking.content import ContentFetcher
from docwatch.tracking.doc_types import DocumentType, normalize_document_type
from docwatch.tracking.events import ChangeEventStore
from docwatch.tracking.metadata import MetadataClient
from docwatch.tracking.metrics import MetricsRecorder
from docwatch.tracking.notifier import NotificationDispatcher
from docwatch.tracking.persistence import TrackedDocumentStore
from docwatch.tracking.poller import ChangePoller
from docwatch.tracking.processor import ChangeProcessor
from docwatch.tracking.registry import TrackedDocumentRegistry
from docwatch.tracking.rules import RuleEngine, RuleStore
from docwatch.tracking.snapshots import DocumentSnapshot, SnapshotStore
from docwatch.tracking.types import ChangeCandidate, ChangeEvent, PollerMetrics, TrackedDocument
from docwatch.tracking.webhooks import WebhookRegistrar

log = structlog.get_logger()


def build_dispatcher(client: FeishuClient, metrics: MetricsRecorder, config: Settings = settings) -> NotificationDispatcher:
    return NotificationDispatcher(
        client.send_thread_message,
        metrics,
        max_attempts=config.retry_attempts,
        retry_base=config.retry_base_seconds,
        retry_factor=config.retry_factor,
        retry_jitter=config.retry_jitter,
        timeout=config.request_timeout_seconds,
    )


def build_pipeline(
    client: FeishuClient,
    session_factory: async_sessionmaker[AsyncSession],
    dispatcher: NotificationDispatcher,
    config: Settings = settings,
) -> ChangeAnalysisPipeline:
    snapshot_store = SnapshotStore(
        session_factory,
        retention_count=config.snapshot_retention_count,
        retention_days=config.snapshot_retention_days,
        max_bytes=config.snapshot_max_bytes,
    )
    rule_engine = RuleEngine(
        RuleStore(session_factory),
        dispatcher,
        max_attempts=config.retry_attempts,
        retry_base=config.retry_base_seconds,
        retry_factor=config.retry_factor,
        retry_jitter=config.retry_jitter,
        timeout=config.request_timeout_seconds,
    )
    return ChangeAnalysisPipeline(ContentFetcher(client), snapshot_store, rule_engine)


class DocTracker:
    """Command surface for document tracking, and owner of its components."""

    def __init__(
        self,
        *,
        registry: TrackedDocumentRegistry,
        metadata_client: MetadataClient,
        registrar: WebhookRegistrar,
        processor: ChangeProcessor,
        poller: ChangePoller,
        dispatcher: NotificationDispatcher,
        document_store: TrackedDocumentStore,
        event_store: ChangeEventStore,
        snapshot_store: SnapshotStore,
        rule_store: RuleStore,
        metrics: MetricsRecorder,
    ) -> None:
        self.registry = registry
        self.metadata_client = metadata_client
        self.registrar = registrar
        self.processor = processor
        self.poller = poller
        self.dispatcher = dispatcher
        self.document_store = document_store
        self.event_store = event_store
        self.snapshot_store = snapshot_store
        self.rule_store = rule_store
        self.metrics = metrics
        self.poller.on_access_lost = self.handle_access_lost

    @classmethod
    def build(
        cls,
        client: FeishuClient,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        arq_pool: Any = None,
        config: Settings = settings,
    ) -> "DocTracker":
        metrics = MetricsRecorder()
        registry = TrackedDocumentRegistry()
        dispatcher = build_dispatcher(client, metrics, config)
        pipeline = build_pipeline(client, session_factory, dispatcher, config)
        if config.analysis_backend == "arq" and arq_pool is not None:
            analysis = ArqAnalysisScheduler(arq_pool, result_timeout=config.request_timeout_seconds)
        else:
            analysis = InlineAnalysisScheduler(pipeline)

        event_store = ChangeEventStore(session_factory, metrics)
        document_store = TrackedDocumentStore(session_factory)
        processor = ChangeProcessor(
            registry,
            event_store,
            document_store,
            dispatcher,
            metrics,
            analysis=analysis,
            analysis_wait=config.request_timeout_seconds,
        )
        metadata_client = MetadataClient(client)
        poller = ChangePoller(
            registry,
            metadata_client,
            processor,
            metrics,
            interval=config.poll_interval_seconds,
            max_concurrent=config.max_concurrent_polls,
            removal_threshold=config.removal_threshold,
            max_backoff=config.max_poll_backoff_seconds,
        )
        return cls(
            registry=registry,
            metadata_client=metadata_client,
            registrar=WebhookRegistrar(client, metrics),
            processor=processor,
            poller=poller,
            dispatcher=dispatcher,
            document_store=document_store,
            event_store=event_store,
            snapshot_store=pipeline.snapshot_store,
            rule_store=pipeline.rule_engine.store,
            metrics=metrics,
        )

    async def start(self) -> None:
        try:
            documents = await self.document_store.load_all()
        except PersistenceError as exc:
            log.error("tracked_documents_load_failed", error=str(exc))
            documents = []
        for document in documents:
            await self.registry.upsert(document)
        self.processor.start()
        self.poller.start()
        log.info("tracker_started", documents=len(documents))

    async def stop(self) -> None:
        await self.poller.stop()
        await self.processor.stop()
        log.info("tracker_stopped")

    async def watch(
        self,
        document_id: str,
        document_type: DocumentType | str,
        notify_target_id: str,
        raw_type: str | None = None,
    ) -> TrackedDocument:
        """Start tracking, or retarget an existing entry.

        The document is fetched first so an inaccessible one fails here with
        PermanentAccessError instead of being tracked and removed later.
        """
        if isinstance(document_type, str) and not isinstance(document_type, DocumentType):
            raw_type = raw_type or document_type
        metadata = await self.metadata_client.fetch_metadata(document_id, document_type, raw_type)

        existing = self.registry.get(document_id)
        if existing is not None:
            async with self.registry.lock_for(document_id):
                previous_target = existing.notify_target_id
                existing.notify_target_id = notify_target_id
                if metadata.title:
                    existing.title = metadata.title
                if not existing.webhook_active:
                    existing.webhook_active = await self.registrar.register(
                        document_id, existing.document_type, notify_target_id, existing.raw_type
                    )
                await self.document_store.save(existing)
            log.info(
                "document_watch_updated",
                document_id=document_id,
                notify_target_id=notify_target_id,
                previous_target=previous_target,
            )
            return existing

        document = TrackedDocument(
            document_id=document_id,
            document_type=metadata.document_type or normalize_document_type(document_type),
            raw_type=metadata.raw_type or raw_type,
            title=metadata.title,
            notify_target_id=notify_target_id,
            last_known_editor=metadata.last_modified_by,
            last_known_modified_at=metadata.last_modified_at,
            last_known_revision=metadata.revision,
        )
        document.webhook_active = await self.registrar.register(
            document_id, document.document_type, notify_target_id, document.raw_type
        )
        try:
            await self.document_store.save(document)
        except PersistenceError:
            if document.webhook_active:
                await self.registrar.deregister(document_id, document.document_type, document.raw_type)
            raise

        entry, created = await self.registry.upsert(document)
        if not created:
            await self.document_store.save(entry)
        log.info(
            "document_watched",
            document_id=document_id,
            document_type=entry.document_type.value,
            notify_target_id=notify_target_id,
            webhook_active=entry.webhook_active,
        )
        return entry

    async def unwatch(self, document_id: str) -> bool:
        async with self.registry.lock_for(document_id):
            document = await self.registry.remove(document_id)
        self.registry.discard_lock(document_id)
        if document is None:
            return False
        if document.webhook_active:
            await self.registrar.deregister(document_id, document.document_type, document.raw_type)
        await self.document_store.delete(document_id)
        log.info("document_unwatched", document_id=document_id)
        return True

    def list_tracked(self, notify_target_id: str | None = None) -> list[TrackedDocument]:
        return self.registry.list_documents(notify_target_id)

    def status(self) -> PollerMetrics:
        return self.metrics.snapshot(len(self.registry))

    async def handle_access_lost(self, document: TrackedDocument, reason: str) -> None:
        """Called once by the poller after the document was dropped from the registry."""
        await self.dispatcher.notify_tracking_stopped(document, reason)
        if document.webhook_active:
            await self.registrar.deregister(document.document_id, document.document_type, document.raw_type)
        try:
            await self.document_store.delete(document.document_id)
        except PersistenceError as exc:
            log.error("tracked_document_delete_failed", document_id=document.document_id, error=str(exc))

    async def submit_webhook_candidate(self, candidate: ChangeCandidate) -> None:
        self.metrics.incr("webhook_events_received")
        await self.processor.submit(candidate)

    async def list_events(
        self,
        document_id: str,
        since: datetime | None = None,
        until: datetime | None = None,
        limit: int = 100,
    ) -> list[ChangeEvent]:
        return await self.event_store.list_events(document_id, since, until, limit)

    async def list_snapshots(self, document_id: str, limit: int = 20) -> list[DocumentSnapshot]:
        return await self.snapshot_store.history(document_id, limit)
