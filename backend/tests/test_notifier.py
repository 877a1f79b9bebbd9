import asyncio
from datetime import datetime, timezone

import pytest

from docwatch.feishu.messages import build_change_text, build_rule_text, format_timestamp
from docwatch.tracking.notifier import NotificationDispatcher
from docwatch.tracking.types import ChangeEvent, ChangeType, DeliveryResult, DiffSummary, EventSource

from conftest import FakeSender, make_document


def _event():
    return ChangeEvent(
        document_id="doxcnA1",
        change_type=ChangeType.EDIT,
        changed_by="alice",
        changed_at=150,
        detected_at=datetime(2026, 3, 1, tzinfo=timezone.utc),
        source=EventSource.POLL,
    )


class TestMessages:
    def test_minimal_form(self):
        text = build_change_text(_event(), make_document())
        assert text.splitlines() == [
            "\U0001f4dd Document edited: Roadmap",
            "Modified by: alice",
            "Modified at: 1970-01-01 00:02:30 UTC",
        ]

    def test_without_document_uses_id(self):
        assert "Document edited: doxcnA1" in build_change_text(_event())

    def test_with_diff(self):
        diff = DiffSummary(
            added_chars=12,
            removed_chars=3,
            changed_headings=["A", "B", "C", "D", "E", "F", "G"],
            summary="",
        )
        lines = build_change_text(_event(), make_document(), diff).splitlines()
        assert lines[3] == "Changes: +12 / -3 chars"
        assert lines[4] == "Sections: A, B, C, D, E (+2 more)"

    def test_empty_diff_keeps_minimal_form(self):
        assert len(build_change_text(_event(), make_document(), DiffSummary()).splitlines()) == 3

    def test_rule_template_leaves_unknown_keys(self):
        text = build_rule_text("r", _event(), template="{title} by {changed_by} {nope}", title="Roadmap")
        assert text == "Roadmap by alice {nope}"

    def test_format_timestamp(self):
        assert format_timestamp(0) == "1970-01-01 00:00:00 UTC"


@pytest.mark.asyncio
async def test_delivers_on_first_attempt(metrics):
    sender = FakeSender()
    dispatcher = NotificationDispatcher(sender, metrics, retry_base=0, retry_jitter=0)
    result = await dispatcher.notify("oc_thread", _event(), document=make_document())
    assert result == DeliveryResult.DELIVERED
    assert sender.sent[0][0] == "oc_thread"
    assert metrics.get("notifications_sent") == 1


@pytest.mark.asyncio
async def test_retries_until_delivered(metrics):
    sender = FakeSender(fail_first=2)
    dispatcher = NotificationDispatcher(sender, metrics, retry_base=0, retry_jitter=0)
    assert await dispatcher.notify("oc_thread", _event()) == DeliveryResult.DELIVERED
    assert sender.calls == 3


@pytest.mark.asyncio
async def test_gives_up_after_max_attempts(metrics):
    sender = FakeSender(always_fail=True)
    dispatcher = NotificationDispatcher(sender, metrics, retry_base=0, retry_jitter=0)
    assert await dispatcher.notify("oc_thread", _event()) == DeliveryResult.FAILED
    assert sender.calls == 3
    assert metrics.get("notifications_failed") == 1
    assert metrics.get("notifications_sent") == 0


@pytest.mark.asyncio
async def test_timeouts_and_exceptions_count_as_failures(metrics):
    calls = []

    async def flaky(target, text):
        calls.append(target)
        if len(calls) == 1:
            await asyncio.sleep(1)
        if len(calls) == 2:
            raise RuntimeError("connection reset")
        return True

    dispatcher = NotificationDispatcher(flaky, metrics, retry_base=0, retry_jitter=0, timeout=0.01)
    assert await dispatcher.notify("oc_thread", _event()) == DeliveryResult.DELIVERED
    assert len(calls) == 3


@pytest.mark.asyncio
async def test_tracking_stopped_message(metrics):
    sender = FakeSender()
    dispatcher = NotificationDispatcher(sender, metrics)
    await dispatcher.notify_tracking_stopped(make_document(notify_target_id="oc_other"), "gone")
    target, text = sender.sent[0]
    assert target == "oc_other"
    assert "Stopped tracking Roadmap" in text
    assert "Reason: gone" in text
