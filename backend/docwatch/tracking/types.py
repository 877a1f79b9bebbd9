import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from docwatch.tracking.doc_types import DocumentType


class ChangeType(str, Enum):
    EDIT = "edit"
    RENAME = "rename"
    MOVE = "move"
    DELETE = "delete"
    UNKNOWN = "unknown"


class EventSource(str, Enum):
    POLL = "poll"
    WEBHOOK = "webhook"


class PollState(str, Enum):
    IDLE = "idle"
    POLLING = "polling"
    FAILING = "failing"
    REMOVED = "removed"


class DeliveryResult(str, Enum):
    DELIVERED = "delivered"
    FAILED = "failed"


class DocMetadata(BaseModel):
    document_id: str
    document_type: DocumentType
    raw_type: str | None = None
    title: str | None = None
    owner_id: str | None = None
    created_at: int | None = None
    last_modified_by: str
    last_modified_at: int
    revision: int | None = None


class ChangeCandidate(BaseModel):
    model_config = ConfigDict(frozen=True)

    document_id: str
    change_type: ChangeType = ChangeType.EDIT
    changed_by: str
    changed_at: int
    source: EventSource
    revision: int | None = None
    title: str | None = None

    @property
    def dedup_key(self) -> tuple[str, int]:
        return (self.changed_by, self.changed_at)


class ChangeEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    document_id: str
    change_type: ChangeType
    changed_by: str
    changed_at: int
    detected_at: datetime
    source: EventSource
    revision: int | None = None

    @property
    def dedup_key(self) -> tuple[str, int]:
        return (self.changed_by, self.changed_at)

    @property
    def changed_at_datetime(self) -> datetime:
        return datetime.fromtimestamp(self.changed_at, tz=timezone.utc)


class DiffSummary(BaseModel):
    added_chars: int = 0
    removed_chars: int = 0
    added_lines: int = 0
    removed_lines: int = 0
    changed_headings: list[str] = Field(default_factory=list)
    summary: str = ""

    @property
    def is_empty(self) -> bool:
        return not (self.added_chars or self.removed_chars)


class PollerMetrics(BaseModel):
    documents_tracked: int = 0
    poll_successes: int = 0
    poll_failures: int = 0
    changes_detected: int = 0
    duplicates_suppressed: int = 0
    notifications_sent: int = 0
    notifications_failed: int = 0
    webhook_events_received: int = 0
    webhook_registration_failures: int = 0
    persistence_degraded: bool = False
    last_tick_at: datetime | None = None


@dataclass
class TrackedDocument:
    document_id: str
    document_type: DocumentType
    notify_target_id: str
    last_known_editor: str = ""
    last_known_modified_at: int = 0
    last_known_revision: int | None = None
    webhook_active: bool = False
    raw_type: str | None = None
    title: str | None = None

    state: PollState = PollState.IDLE
    consecutive_access_errors: int = 0
    consecutive_failures: int = 0
    next_poll_at: float = 0.0
    last_detected_at: datetime | None = None
    recent_keys: list[tuple[str, int]] = field(default_factory=list)

    @property
    def display_name(self) -> str:
        return self.title or self.document_id
