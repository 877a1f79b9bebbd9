from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, Field

from docwatch.tracking.doc_types import DocumentType
from docwatch.tracking.rules import ActionType, ConditionType
from docwatch.tracking.types import ChangeType, EventSource, PollState


# --- Tracking ---

class WatchIn(BaseModel):
    document: str = Field(description="Document URL or token")
    document_type: str | None = None
    notify_target_id: str


class TrackedDocumentOut(BaseModel):
    document_id: str
    document_type: DocumentType
    raw_type: str | None = None
    title: str | None = None
    notify_target_id: str
    last_known_editor: str
    last_known_modified_at: int
    last_known_revision: int | None = None
    webhook_active: bool
    state: PollState

    model_config = {"from_attributes": True}


class ChangeEventOut(BaseModel):
    id: UUID
    document_id: str
    change_type: ChangeType
    changed_by: str
    changed_at: int
    detected_at: datetime
    source: EventSource
    revision: int | None = None

    model_config = {"from_attributes": True}


class SnapshotOut(BaseModel):
    id: UUID
    document_id: str
    revision: int | None = None
    content_hash: str
    content_size: int
    captured_at: datetime

    model_config = {"from_attributes": True}


class PollerMetricsOut(BaseModel):
    documents_tracked: int
    poll_successes: int
    poll_failures: int
    changes_detected: int
    duplicates_suppressed: int
    notifications_sent: int
    notifications_failed: int
    webhook_events_received: int
    webhook_registration_failures: int
    persistence_degraded: bool
    last_tick_at: datetime | None = None

    model_config = {"from_attributes": True}


# --- Rules ---

class RuleIn(BaseModel):
    name: str
    description: str | None = None
    condition_type: ConditionType = ConditionType.ANY
    condition_value: list[str] = []
    action_type: ActionType = ActionType.NOTIFY
    action_target: str | None = None
    action_template: str | None = None
    enabled: bool = True


class RuleUpdateIn(BaseModel):
    enabled: bool


class RuleOut(BaseModel):
    id: UUID
    document_id: str
    name: str
    description: str | None = None
    condition_type: ConditionType
    condition_value: list[str]
    action_type: ActionType
    action_target: str | None = None
    action_template: str | None = None
    enabled: bool
    execution_count: int
    last_executed_at: datetime | None = None

    model_config = {"from_attributes": True}
