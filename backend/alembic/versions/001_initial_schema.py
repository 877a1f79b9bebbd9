"""initial schema

Revision ID: 5c0e9a7d41f2
Revises:
Create Date: 2026-10-19
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision = "5c0e9a7d41f2"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # --- tracked_documents ---
    op.create_table(
        "tracked_documents",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("document_id", sa.String, nullable=False),
        sa.Column("document_type", sa.String, nullable=False),
        sa.Column("raw_type", sa.String),
        sa.Column("title", sa.Text),
        sa.Column("notify_target_id", sa.String, nullable=False),
        sa.Column("last_known_editor", sa.String, server_default=""),
        sa.Column("last_known_modified_at", sa.BigInteger, server_default="0"),
        sa.Column("last_known_revision", sa.BigInteger),
        sa.Column("webhook_active", sa.Boolean, server_default="false"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("document_id", "notify_target_id", name="uq_tracked_documents_document_target"),
    )
    op.create_index("ix_tracked_documents_document_id", "tracked_documents", ["document_id"])
    op.create_index("ix_tracked_documents_notify_target_id", "tracked_documents", ["notify_target_id"])

    # --- doc_change_events ---
    op.create_table(
        "doc_change_events",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("document_id", sa.String, nullable=False),
        sa.Column("change_type", sa.String, nullable=False),
        sa.Column("changed_by", sa.String, nullable=False),
        sa.Column("changed_at", sa.BigInteger, nullable=False),
        sa.Column("detected_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("source", sa.String, nullable=False),
        sa.Column("revision", sa.BigInteger),
        sa.UniqueConstraint("document_id", "changed_by", "changed_at", name="uq_doc_change_events_dedup"),
    )
    op.create_index(
        "ix_doc_change_events_document_detected", "doc_change_events", ["document_id", "detected_at"]
    )

    # --- doc_snapshots ---
    op.create_table(
        "doc_snapshots",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("document_id", sa.String, nullable=False),
        sa.Column("revision", sa.BigInteger),
        sa.Column("content_hash", sa.String(64), nullable=False),
        sa.Column("content_size", sa.Integer, server_default="0"),
        sa.Column("compressed_content", sa.LargeBinary, nullable=False),
        sa.Column("captured_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_doc_snapshots_document_captured", "doc_snapshots", ["document_id", "captured_at"])

    # --- doc_change_rules ---
    op.create_table(
        "doc_change_rules",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("document_id", sa.String, nullable=False),
        sa.Column("name", sa.String, nullable=False),
        sa.Column("description", sa.Text),
        sa.Column("condition_type", sa.String, nullable=False, server_default="any"),
        sa.Column("condition_value", postgresql.JSON),
        sa.Column("action_type", sa.String, nullable=False, server_default="notify"),
        sa.Column("action_target", sa.Text),
        sa.Column("action_template", sa.Text),
        sa.Column("enabled", sa.Boolean, server_default="true"),
        sa.Column("execution_count", sa.Integer, server_default="0"),
        sa.Column("last_executed_at", sa.DateTime(timezone=True)),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_doc_change_rules_document_id", "doc_change_rules", ["document_id"])


def downgrade() -> None:
    op.drop_table("doc_change_rules")
    op.drop_table("doc_snapshots")
    op.drop_table("doc_change_events")
    op.drop_table("tracked_documents")
