import pytest

from docwatch.tracking.events import ChangeEventStore
from docwatch.tracking.notifier import NotificationDispatcher
from docwatch.tracking.persistence import TrackedDocumentStore
from docwatch.tracking.processor import ChangeProcessor
from docwatch.tracking.types import ChangeCandidate, ChangeType, EventSource

from conftest import FakeSender, make_document


def _candidate(changed_by="bob", changed_at=200, source=EventSource.WEBHOOK, **overrides):
    return ChangeCandidate(
        document_id=overrides.pop("document_id", "doxcnA1"),
        changed_by=changed_by,
        changed_at=changed_at,
        source=source,
        **overrides,
    )


async def _apply(processor, candidate):
    future = await processor.submit(candidate)
    return await future


@pytest.mark.asyncio
async def test_webhook_and_poll_for_same_change_record_one_event(
    processor, registry, session_factory, metrics, sender
):
    await registry.upsert(make_document())

    webhook_event = await _apply(processor, _candidate(source=EventSource.WEBHOOK))
    poll_event = await _apply(processor, _candidate(source=EventSource.POLL))
    await processor.drain_notifications()

    assert webhook_event is not None
    assert poll_event is None
    events = await ChangeEventStore(session_factory, metrics).list_events("doxcnA1")
    assert len(events) == 1
    assert events[0].source == EventSource.WEBHOOK
    assert len(sender.sent) == 1
    assert metrics.get("changes_detected") == 1
    assert metrics.get("duplicates_suppressed") == 1


@pytest.mark.asyncio
async def test_tracked_state_is_updated_and_persisted(processor, registry, session_factory):
    await registry.upsert(make_document())
    await _apply(processor, _candidate(changed_by="bob", changed_at=200, revision=9))

    document = registry.get("doxcnA1")
    assert document.last_known_editor == "bob"
    assert document.last_known_modified_at == 200
    assert document.last_known_revision == 9

    stored = await TrackedDocumentStore(session_factory).load_all()
    assert stored[0].last_known_editor == "bob"
    assert stored[0].last_known_modified_at == 200


@pytest.mark.asyncio
async def test_notifications_follow_persistence_order(processor, registry, sender):
    await registry.upsert(make_document())
    futures = [
        await processor.submit(_candidate(changed_by=editor, changed_at=at))
        for editor, at in [("bob", 150), ("carol", 160), ("dave", 170)]
    ]
    events = [await f for f in futures]
    await processor.drain_notifications()

    detected = [e.detected_at for e in events]
    assert detected == sorted(detected)
    editors = [text.split("Modified by: ")[1].split("\n")[0] for _, text in sender.sent]
    assert editors == ["bob", "carol", "dave"]


@pytest.mark.asyncio
async def test_detected_at_never_precedes_changed_at(processor, registry):
    await registry.upsert(make_document())
    future_change = 4_102_444_800  # 2100-01-01
    event = await _apply(processor, _candidate(changed_at=future_change))
    assert event.detected_at.timestamp() >= future_change


@pytest.mark.asyncio
async def test_failed_notification_keeps_event(registry, session_factory, metrics):
    sender = FakeSender(always_fail=True)
    dispatcher = NotificationDispatcher(sender, metrics, retry_base=0, retry_jitter=0, timeout=1)
    processor = ChangeProcessor(
        registry,
        ChangeEventStore(session_factory, metrics),
        TrackedDocumentStore(session_factory),
        dispatcher,
        metrics,
    )
    processor.start()
    try:
        await registry.upsert(make_document())
        event = await _apply(processor, _candidate())
        await processor.drain_notifications()
    finally:
        await processor.stop()

    assert event is not None
    assert sender.calls == 3
    assert metrics.get("notifications_failed") == 1
    assert len(await ChangeEventStore(session_factory, metrics).list_events("doxcnA1")) == 1
    assert registry.get("doxcnA1").last_known_modified_at == 200


@pytest.mark.asyncio
async def test_older_edit_by_known_editor_is_dropped(processor, registry, session_factory, metrics):
    await registry.upsert(make_document(last_known_editor="carol", last_known_modified_at=300))
    assert await _apply(processor, _candidate(changed_by="carol", changed_at=200)) is None
    assert await ChangeEventStore(session_factory, metrics).list_events("doxcnA1") == []
    assert registry.get("doxcnA1").last_known_modified_at == 300


@pytest.mark.asyncio
async def test_late_webhook_from_other_editor_is_recorded_without_rewinding(
    processor, registry, session_factory, metrics, sender
):
    await registry.upsert(make_document(last_known_editor="carol", last_known_modified_at=300))

    event = await _apply(processor, _candidate(changed_by="bob", changed_at=200))
    await processor.drain_notifications()

    assert event is not None
    assert [e.changed_by for e in await ChangeEventStore(session_factory, metrics).list_events("doxcnA1")] == ["bob"]
    assert len(sender.sent) == 1
    document = registry.get("doxcnA1")
    assert (document.last_known_editor, document.last_known_modified_at) == ("carol", 300)


@pytest.mark.asyncio
async def test_candidate_matching_known_state_is_suppressed(processor, registry, sender):
    await registry.upsert(make_document())
    assert await _apply(processor, _candidate(changed_by="alice", changed_at=100)) is None
    await processor.drain_notifications()
    assert sender.sent == []


@pytest.mark.asyncio
async def test_untracked_document_is_ignored(processor, sender):
    assert await _apply(processor, _candidate(document_id="doxcnGone")) is None
    await processor.drain_notifications()
    assert sender.sent == []


@pytest.mark.asyncio
async def test_rename_updates_title(processor, registry, sender):
    await registry.upsert(make_document())
    event = await _apply(
        processor, _candidate(change_type=ChangeType.RENAME, title="Roadmap v2", source=EventSource.POLL)
    )
    await processor.drain_notifications()

    assert event.change_type == ChangeType.RENAME
    assert registry.get("doxcnA1").title == "Roadmap v2"
    assert "renamed: Roadmap v2" in sender.sent[0][1]
