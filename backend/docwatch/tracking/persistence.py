import structlog
from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from docwatch.db.models import TrackedDocumentRow
from docwatch.errors import PersistenceError
from docwatch.tracking.doc_types import normalize_document_type
from docwatch.tracking.types import TrackedDocument

log = structlog.get_logger()


class TrackedDocumentStore:
    """``tracked_documents`` table. One row per document, retargeted on re-watch."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def load_all(self) -> list[TrackedDocument]:
        try:
            async with self._session_factory() as session:
                rows = (
                    await session.execute(
                        select(TrackedDocumentRow).order_by(TrackedDocumentRow.created_at)
                    )
                ).scalars().all()
        except SQLAlchemyError as exc:
            raise PersistenceError(f"loading tracked documents failed: {exc}") from exc

        documents: dict[str, TrackedDocument] = {}
        for row in rows:
            documents[row.document_id] = TrackedDocument(
                document_id=row.document_id,
                document_type=normalize_document_type(row.document_type),
                raw_type=row.raw_type,
                title=row.title,
                notify_target_id=row.notify_target_id,
                last_known_editor=row.last_known_editor or "",
                last_known_modified_at=row.last_known_modified_at or 0,
                last_known_revision=row.last_known_revision,
                webhook_active=bool(row.webhook_active),
            )
        return list(documents.values())

    async def save(self, document: TrackedDocument) -> None:
        try:
            async with self._session_factory() as session:
                rows = (
                    await session.execute(
                        select(TrackedDocumentRow).where(
                            TrackedDocumentRow.document_id == document.document_id
                        )
                    )
                ).scalars().all()

                row = rows[0] if rows else None
                for extra in rows[1:]:
                    await session.delete(extra)
                if rows[1:]:
                    await session.flush()
                if row is None:
                    row = TrackedDocumentRow(document_id=document.document_id)
                    session.add(row)

                row.document_type = document.document_type.value
                row.raw_type = document.raw_type
                row.title = document.title
                row.notify_target_id = document.notify_target_id
                row.last_known_editor = document.last_known_editor
                row.last_known_modified_at = document.last_known_modified_at
                row.last_known_revision = document.last_known_revision
                row.webhook_active = document.webhook_active
                await session.commit()
        except SQLAlchemyError as exc:
            log.error("tracked_document_save_failed", document_id=document.document_id, error=str(exc))
            raise PersistenceError(f"saving {document.document_id} failed: {exc}") from exc

    async def delete(self, document_id: str) -> None:
        try:
            async with self._session_factory() as session:
                await session.execute(
                    delete(TrackedDocumentRow).where(TrackedDocumentRow.document_id == document_id)
                )
                await session.commit()
        except SQLAlchemyError as exc:
            log.error("tracked_document_delete_failed", document_id=document_id, error=str(exc))
            raise PersistenceError(f"deleting {document_id} failed: {exc}") from exc
