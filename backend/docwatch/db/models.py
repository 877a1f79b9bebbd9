import uuid
from datetime import datetime

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    Index,
    Integer,
    LargeBinary,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


class TrackedDocumentRow(Base):
    __tablename__ = "tracked_documents"
    __table_args__ = (
        UniqueConstraint("document_id", "notify_target_id", name="uq_tracked_documents_document_target"),
        Index("ix_tracked_documents_notify_target_id", "notify_target_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    document_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    document_type: Mapped[str] = mapped_column(String, nullable=False)
    raw_type: Mapped[str | None] = mapped_column(String)
    title: Mapped[str | None] = mapped_column(Text)
    notify_target_id: Mapped[str] = mapped_column(String, nullable=False)
    last_known_editor: Mapped[str] = mapped_column(String, default="")
    last_known_modified_at: Mapped[int] = mapped_column(BigInteger, default=0)
    last_known_revision: Mapped[int | None] = mapped_column(BigInteger)
    webhook_active: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class DocChangeEventRow(Base):
    __tablename__ = "doc_change_events"
    __table_args__ = (
        UniqueConstraint("document_id", "changed_by", "changed_at", name="uq_doc_change_events_dedup"),
        Index("ix_doc_change_events_document_detected", "document_id", "detected_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    document_id: Mapped[str] = mapped_column(String, nullable=False)
    change_type: Mapped[str] = mapped_column(String, nullable=False)
    changed_by: Mapped[str] = mapped_column(String, nullable=False)
    changed_at: Mapped[int] = mapped_column(BigInteger, nullable=False)
    detected_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    source: Mapped[str] = mapped_column(String, nullable=False)
    revision: Mapped[int | None] = mapped_column(BigInteger)


class DocSnapshotRow(Base):
    __tablename__ = "doc_snapshots"
    __table_args__ = (
        Index("ix_doc_snapshots_document_captured", "document_id", "captured_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    document_id: Mapped[str] = mapped_column(String, nullable=False)
    revision: Mapped[int | None] = mapped_column(BigInteger)
    content_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    content_size: Mapped[int] = mapped_column(Integer, default=0)
    compressed_content: Mapped[bytes] = mapped_column(LargeBinary, nullable=False)
    captured_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class ChangeRuleRow(Base):
    __tablename__ = "doc_change_rules"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    document_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    name: Mapped[str] = mapped_column(String, nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    condition_type: Mapped[str] = mapped_column(String, nullable=False, default="any")
    condition_value = mapped_column(JSON, nullable=True)
    action_type: Mapped[str] = mapped_column(String, nullable=False, default="notify")
    action_target: Mapped[str | None] = mapped_column(Text)
    action_template: Mapped[str | None] = mapped_column(Text)
    enabled: Mapped[bool] = mapped_column(Boolean, default=True)
    execution_count: Mapped[int] = mapped_column(Integer, default=0)
    last_executed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
