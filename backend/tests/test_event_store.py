from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.exc import OperationalError

from docwatch.tracking.events import ChangeEventStore
from docwatch.tracking.types import ChangeEvent, ChangeType, EventSource

T0 = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _event(changed_by="alice", changed_at=150, detected_at=T0, document_id="doxcnA1"):
    return ChangeEvent(
        document_id=document_id,
        change_type=ChangeType.EDIT,
        changed_by=changed_by,
        changed_at=changed_at,
        detected_at=detected_at,
        source=EventSource.POLL,
    )


class BrokenSessionFactory:
    """Session factory whose sessions fail like an unreachable database."""

    def __init__(self, inner):
        self.inner = inner
        self.broken = True

    def __call__(self):
        if self.broken:
            raise OperationalError("connect", {}, Exception("database is down"))
        return self.inner()


@pytest.mark.asyncio
async def test_append_and_list(session_factory, metrics):
    store = ChangeEventStore(session_factory, metrics)
    assert await store.append(_event(changed_at=150, detected_at=T0))
    assert await store.append(_event(changed_by="bob", changed_at=200, detected_at=T0 + timedelta(seconds=5)))

    events = await store.list_events("doxcnA1")
    assert [e.changed_by for e in events] == ["alice", "bob"]
    assert events[0].detected_at == T0


@pytest.mark.asyncio
async def test_unique_key_rejects_duplicates(session_factory, metrics):
    store = ChangeEventStore(session_factory, metrics)
    assert await store.append(_event())
    assert not await store.append(_event(detected_at=T0 + timedelta(minutes=1)))
    assert len(await store.list_events("doxcnA1")) == 1
    assert await store.contains("doxcnA1", "alice", 150)
    assert not await store.contains("doxcnA1", "alice", 151)


@pytest.mark.asyncio
async def test_list_events_filters_by_time_range(session_factory, metrics):
    store = ChangeEventStore(session_factory, metrics)
    for i in range(3):
        await store.append(_event(changed_at=100 + i, detected_at=T0 + timedelta(hours=i)))

    events = await store.list_events(
        "doxcnA1", since=T0 + timedelta(minutes=30), until=T0 + timedelta(hours=1, minutes=30)
    )
    assert [e.changed_at for e in events] == [101]


@pytest.mark.asyncio
async def test_degraded_mode_buffers_then_flushes(session_factory, metrics):
    factory = BrokenSessionFactory(session_factory)
    store = ChangeEventStore(factory, metrics)

    assert await store.append(_event(changed_at=150))
    assert store.degraded
    assert metrics.persistence_degraded
    # a buffered duplicate is still rejected
    assert not await store.append(_event(changed_at=150))
    assert await store.contains("doxcnA1", "alice", 150)

    factory.broken = False
    assert await store.append(_event(changed_at=160, detected_at=T0 + timedelta(seconds=1)))
    assert not store.degraded
    assert not metrics.persistence_degraded

    events = await ChangeEventStore(session_factory, metrics).list_events("doxcnA1")
    assert [e.changed_at for e in events] == [150, 160]
