from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from docwatch.db.models import Base
from docwatch.tracking.doc_types import DocumentType
from docwatch.tracking.events import ChangeEventStore
from docwatch.tracking.metrics import MetricsRecorder
from docwatch.tracking.notifier import NotificationDispatcher
from docwatch.tracking.persistence import TrackedDocumentStore
from docwatch.tracking.processor import ChangeProcessor
from docwatch.tracking.registry import TrackedDocumentRegistry
from docwatch.tracking.types import DocMetadata, TrackedDocument


class FakeSender:
    """Stands in for FeishuClient.send_thread_message."""

    def __init__(self, fail_first: int = 0, always_fail: bool = False) -> None:
        self.sent: list[tuple[str, str]] = []
        self.calls = 0
        self.fail_first = fail_first
        self.always_fail = always_fail

    async def __call__(self, target: str, text: str) -> bool:
        self.calls += 1
        if self.always_fail or self.calls <= self.fail_first:
            return False
        self.sent.append((target, text))
        return True


def make_document(document_id: str = "doxcnA1", **overrides) -> TrackedDocument:
    values = {
        "document_id": document_id,
        "document_type": DocumentType.TEXT_DOC,
        "notify_target_id": "oc_thread",
        "last_known_editor": "alice",
        "last_known_modified_at": 100,
        "raw_type": "docx",
        "title": "Roadmap",
    }
    values.update(overrides)
    return TrackedDocument(**values)


def make_metadata(document_id: str = "doxcnA1", editor: str = "alice", modified_at: int = 100, **overrides) -> DocMetadata:
    values = {
        "document_id": document_id,
        "document_type": DocumentType.TEXT_DOC,
        "raw_type": "docx",
        "title": "Roadmap",
        "last_modified_by": editor,
        "last_modified_at": modified_at,
    }
    values.update(overrides)
    return DocMetadata(**values)


@pytest_asyncio.fixture
async def session_factory():
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def metrics():
    return MetricsRecorder()


@pytest.fixture
def sender():
    return FakeSender()


@pytest.fixture
def dispatcher(sender, metrics):
    return NotificationDispatcher(sender, metrics, retry_base=0, retry_jitter=0, timeout=1)


@pytest.fixture
def registry():
    return TrackedDocumentRegistry()


@pytest_asyncio.fixture
async def processor(registry, session_factory, dispatcher, metrics):
    processor = ChangeProcessor(
        registry,
        ChangeEventStore(session_factory, metrics),
        TrackedDocumentStore(session_factory),
        dispatcher,
        metrics,
    )
    processor.start()
    yield processor
    await processor.stop()


@pytest.fixture
def metadata_client():
    client = AsyncMock()
    client.fetch_metadata = AsyncMock(return_value=make_metadata())
    return client
