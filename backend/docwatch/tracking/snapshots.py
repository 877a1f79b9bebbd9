import gzip
import hashlib
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import structlog
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from docwatch.db.models import DocSnapshotRow
from docwatch.errors import PersistenceError
from docwatch.tracking.diff import compute_diff
from docwatch.tracking.events import as_utc
from docwatch.tracking.types import DiffSummary

log = structlog.get_logger()


class DocumentSnapshot(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: uuid.UUID
    document_id: str
    revision: int | None = None
    content_hash: str
    content_size: int
    compressed_content: bytes = Field(repr=False)
    captured_at: datetime


@dataclass
class SnapshotCapture:
    snapshot: DocumentSnapshot | None
    previous: DocumentSnapshot | None

    @property
    def changed(self) -> bool:
        return self.snapshot is not None


def hash_content(content: str) -> str:
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


def compress(content: str) -> bytes:
    return gzip.compress(content.encode("utf-8"))


def decompress(data: bytes) -> str:
    return gzip.decompress(data).decode("utf-8")


def _from_row(row: DocSnapshotRow) -> DocumentSnapshot:
    return DocumentSnapshot(
        id=row.id,
        document_id=row.document_id,
        revision=row.revision,
        content_hash=row.content_hash,
        content_size=row.content_size,
        compressed_content=row.compressed_content,
        captured_at=as_utc(row.captured_at),
    )


class SnapshotStore:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        retention_count: int = 10,
        retention_days: int = 90,
        max_bytes: int = 10 * 1024 * 1024,
    ) -> None:
        self._session_factory = session_factory
        self.retention_count = retention_count
        self.retention_days = retention_days
        self.max_bytes = max_bytes

    async def latest(self, document_id: str) -> DocumentSnapshot | None:
        history = await self.history(document_id, limit=1)
        return history[0] if history else None

    async def history(self, document_id: str, limit: int = 20) -> list[DocumentSnapshot]:
        try:
            async with self._session_factory() as session:
                rows = (
                    await session.execute(
                        select(DocSnapshotRow)
                        .where(DocSnapshotRow.document_id == document_id)
                        .order_by(DocSnapshotRow.captured_at.desc())
                        .limit(limit)
                    )
                ).scalars().all()
        except SQLAlchemyError as exc:
            raise PersistenceError(f"loading snapshots for {document_id} failed: {exc}") from exc
        return [_from_row(r) for r in rows]

    async def capture(
        self, document_id: str, content: str, revision: int | None = None
    ) -> SnapshotCapture:
        """Store ``content`` unless it matches the latest snapshot's hash."""
        size = len(content.encode("utf-8"))
        previous = await self.latest(document_id)
        if size > self.max_bytes:
            log.warning("snapshot_too_large", document_id=document_id, size=size, limit=self.max_bytes)
            return SnapshotCapture(snapshot=None, previous=previous)

        content_hash = hash_content(content)
        if previous is not None and previous.content_hash == content_hash:
            log.info("snapshot_unchanged", document_id=document_id, content_hash=content_hash)
            return SnapshotCapture(snapshot=None, previous=previous)

        captured_at = datetime.now(timezone.utc)
        if previous is not None and captured_at <= previous.captured_at:
            captured_at = previous.captured_at + timedelta(microseconds=1)

        row = DocSnapshotRow(
            id=uuid.uuid4(),
            document_id=document_id,
            revision=revision,
            content_hash=content_hash,
            content_size=size,
            compressed_content=compress(content),
            captured_at=captured_at,
        )
        try:
            async with self._session_factory() as session:
                session.add(row)
                await session.flush()
                await self._prune_excess(session, document_id)
                await session.commit()
        except SQLAlchemyError as exc:
            raise PersistenceError(f"storing snapshot for {document_id} failed: {exc}") from exc

        snapshot = _from_row(row)
        log.info(
            "snapshot_stored",
            document_id=document_id,
            revision=revision,
            size=size,
            compressed_size=len(row.compressed_content),
        )
        return SnapshotCapture(snapshot=snapshot, previous=previous)

    def diff(self, previous: DocumentSnapshot | None, current_content: str) -> DiffSummary:
        previous_content = decompress(previous.compressed_content) if previous else None
        return compute_diff(previous_content, current_content)

    async def _prune_excess(self, session: AsyncSession, document_id: str) -> None:
        keep = (
            await session.execute(
                select(DocSnapshotRow.id)
                .where(DocSnapshotRow.document_id == document_id)
                .order_by(DocSnapshotRow.captured_at.desc())
                .limit(self.retention_count)
            )
        ).scalars().all()
        await session.execute(
            delete(DocSnapshotRow).where(
                DocSnapshotRow.document_id == document_id,
                DocSnapshotRow.id.not_in(keep),
            )
        )

    async def prune_expired(self, now: datetime | None = None) -> int:
        cutoff = (now or datetime.now(timezone.utc)) - timedelta(days=self.retention_days)
        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    delete(DocSnapshotRow).where(DocSnapshotRow.captured_at < cutoff)
                )
                await session.commit()
        except SQLAlchemyError as exc:
            raise PersistenceError(f"pruning snapshots failed: {exc}") from exc
        removed = result.rowcount or 0
        log.info("snapshots_pruned", removed=removed, retention_days=self.retention_days)
        return removed
