from datetime import datetime, timezone

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from docwatch.db.models import DocChangeEventRow
from docwatch.errors import PersistenceError
from docwatch.tracking.metrics import MetricsRecorder
from docwatch.tracking.types import ChangeEvent, ChangeType, EventSource

log = structlog.get_logger()


def as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes even for timezone-aware columns
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _to_row(event: ChangeEvent) -> DocChangeEventRow:
    return DocChangeEventRow(
        id=event.id,
        document_id=event.document_id,
        change_type=event.change_type.value,
        changed_by=event.changed_by,
        changed_at=event.changed_at,
        detected_at=event.detected_at,
        source=event.source.value,
        revision=event.revision,
    )


def _from_row(row: DocChangeEventRow) -> ChangeEvent:
    return ChangeEvent(
        id=row.id,
        document_id=row.document_id,
        change_type=ChangeType(row.change_type),
        changed_by=row.changed_by,
        changed_at=row.changed_at,
        detected_at=as_utc(row.detected_at),
        source=EventSource(row.source),
        revision=row.revision,
    )


class ChangeEventStore:
    """Append-only log of change events.

    When the database is unavailable, events are buffered in memory (degraded
    mode) and flushed in order on the next successful write.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        metrics: MetricsRecorder,
    ) -> None:
        self._session_factory = session_factory
        self.metrics = metrics
        self._pending: list[ChangeEvent] = []

    @property
    def degraded(self) -> bool:
        return bool(self._pending)

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    async def append(self, event: ChangeEvent) -> bool:
        """Store ``event``. Returns False when storage rejects it as a duplicate."""
        if self._pending:
            await self._flush_pending()
        if self._pending:
            return self._buffer(event)

        try:
            inserted = await self._insert(event)
        except PersistenceError as exc:
            self._enter_degraded(exc)
            return self._buffer(event)

        if not inserted:
            log.info(
                "change_event_duplicate_rejected",
                document_id=event.document_id,
                changed_by=event.changed_by,
                changed_at=event.changed_at,
            )
        return inserted

    async def contains(self, document_id: str, changed_by: str, changed_at: int) -> bool:
        if any(
            e.document_id == document_id and e.dedup_key == (changed_by, changed_at)
            for e in self._pending
        ):
            return True
        try:
            async with self._session_factory() as session:
                found = (
                    await session.execute(
                        select(DocChangeEventRow.id).where(
                            DocChangeEventRow.document_id == document_id,
                            DocChangeEventRow.changed_by == changed_by,
                            DocChangeEventRow.changed_at == changed_at,
                        )
                    )
                ).scalar_one_or_none()
        except SQLAlchemyError as exc:
            log.warning("change_event_lookup_failed", document_id=document_id, error=str(exc))
            return False
        return found is not None

    async def list_events(
        self,
        document_id: str,
        since: datetime | None = None,
        until: datetime | None = None,
        limit: int = 100,
    ) -> list[ChangeEvent]:
        q = select(DocChangeEventRow).where(DocChangeEventRow.document_id == document_id)
        if since is not None:
            q = q.where(DocChangeEventRow.detected_at >= since)
        if until is not None:
            q = q.where(DocChangeEventRow.detected_at <= until)
        q = q.order_by(DocChangeEventRow.detected_at, DocChangeEventRow.changed_at).limit(limit)

        try:
            async with self._session_factory() as session:
                rows = (await session.execute(q)).scalars().all()
        except SQLAlchemyError as exc:
            raise PersistenceError(f"listing events failed: {exc}") from exc

        events = [_from_row(r) for r in rows]
        for e in self._pending:
            if e.document_id != document_id:
                continue
            if since is not None and e.detected_at < since:
                continue
            if until is not None and e.detected_at > until:
                continue
            events.append(e)
        return events[:limit]

    async def _insert(self, event: ChangeEvent) -> bool:
        try:
            async with self._session_factory() as session:
                session.add(_to_row(event))
                await session.commit()
        except IntegrityError:
            return False
        except (SQLAlchemyError, OSError) as exc:
            raise PersistenceError(str(exc)) from exc
        return True

    def _buffer(self, event: ChangeEvent) -> bool:
        if any(
            e.document_id == event.document_id and e.dedup_key == event.dedup_key
            for e in self._pending
        ):
            return False
        self._pending.append(event)
        return True

    def _enter_degraded(self, exc: Exception) -> None:
        if not self.metrics.persistence_degraded:
            log.error("persistence_degraded", error=str(exc))
        self.metrics.persistence_degraded = True

    async def _flush_pending(self) -> None:
        flushed = 0
        while self._pending:
            try:
                await self._insert(self._pending[0])
            except PersistenceError:
                return
            self._pending.pop(0)
            flushed += 1
        self.metrics.persistence_degraded = False
        log.info("persistence_recovered", flushed=flushed)
