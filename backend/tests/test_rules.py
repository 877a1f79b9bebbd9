import json
from datetime import datetime, timezone
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from docwatch.tracking.rules import (
    ActionType,
    ChangeRule,
    ConditionType,
    RuleEngine,
    RuleStore,
    condition_matches,
)
from docwatch.tracking.types import ChangeEvent, ChangeType, DiffSummary, EventSource

# 2023-11-14 22:13:20 UTC
CHANGED_AT = 1_700_000_000


def _event(**overrides):
    values = {
        "document_id": "doxcnA1",
        "change_type": ChangeType.EDIT,
        "changed_by": "ou_alice",
        "changed_at": CHANGED_AT,
        "detected_at": datetime(2023, 11, 14, 22, 14, tzinfo=timezone.utc),
        "source": EventSource.POLL,
    }
    values.update(overrides)
    return ChangeEvent(**values)


def _rule(condition_type=ConditionType.ANY, condition_value=None, **overrides):
    return ChangeRule(
        document_id="doxcnA1",
        name=overrides.pop("name", "watch budget"),
        condition_type=condition_type,
        condition_value=condition_value or [],
        **overrides,
    )


class TestConditions:
    def test_any(self):
        assert condition_matches(_rule(), _event(), None)

    def test_modified_by_user(self):
        rule = _rule(ConditionType.MODIFIED_BY_USER, ["ou_bob", "ou_alice"])
        assert condition_matches(rule, _event(), None)
        assert not condition_matches(rule, _event(changed_by="ou_carol"), None)

    def test_change_type(self):
        rule = _rule(ConditionType.CHANGE_TYPE, ["rename"])
        assert condition_matches(rule, _event(change_type=ChangeType.RENAME), None)
        assert not condition_matches(rule, _event(), None)

    def test_time_range_uses_utc_hour_of_change(self):
        assert condition_matches(_rule(ConditionType.TIME_RANGE, ["20-23"]), _event(), None)
        assert condition_matches(_rule(ConditionType.TIME_RANGE, ["22"]), _event(), None)
        assert not condition_matches(_rule(ConditionType.TIME_RANGE, ["9-17"]), _event(), None)

    def test_content_match_needs_a_diff(self):
        rule = _rule(ConditionType.CONTENT_MATCH, ["budget"])
        diff = DiffSummary(added_chars=3, changed_headings=["Budget"], summary='+3/-0 chars in "Budget"')
        assert condition_matches(rule, _event(), diff)
        assert not condition_matches(rule, _event(), None)
        assert not condition_matches(rule, _event(), DiffSummary(changed_headings=["Budget"]))


@pytest.mark.asyncio
async def test_invalid_rules_are_rejected(session_factory):
    store = RuleStore(session_factory)
    with pytest.raises(ValueError):
        await store.create(_rule(ConditionType.MODIFIED_BY_USER, []))
    with pytest.raises(ValueError):
        await store.create(_rule(ConditionType.TIME_RANGE, ["25"]))
    with pytest.raises(ValueError):
        await store.create(_rule(ConditionType.CONTENT_MATCH, ["("]))
    with pytest.raises(ValueError):
        await store.create(_rule(action_type=ActionType.WEBHOOK))
    assert await store.list_rules("doxcnA1") == []


@pytest.mark.asyncio
async def test_store_crud(session_factory):
    store = RuleStore(session_factory)
    rule = await store.create(_rule(ConditionType.CHANGE_TYPE, ["edit"]))

    [loaded] = await store.list_rules("doxcnA1")
    assert loaded.id == rule.id
    assert loaded.condition_value == ["edit"]

    assert await store.set_enabled(rule.id, False, "otherDoc") is None
    disabled = await store.set_enabled(rule.id, False, "doxcnA1")
    assert disabled.enabled is False
    assert await store.list_rules("doxcnA1", enabled_only=True) == []

    assert await store.delete(rule.id, "doxcnA1")
    assert not await store.delete(rule.id, "doxcnA1")


@pytest.mark.asyncio
async def test_notify_action_sends_rule_message(session_factory):
    store = RuleStore(session_factory)
    await store.create(_rule(action_template="{rule}: {title} changed by {changed_by}"))
    dispatcher = AsyncMock()
    dispatcher.send_text = AsyncMock(return_value="delivered")
    engine = RuleEngine(store, dispatcher)

    [result] = await engine.evaluate(_event(), notify_target_id="oc_thread", title="Roadmap")

    assert result.matched and result.executed
    dispatcher.send_text.assert_awaited_once()
    target, text = dispatcher.send_text.await_args.args
    assert target == "oc_thread"
    assert text == "watch budget: Roadmap changed by ou_alice"
    [stored] = await store.list_rules("doxcnA1")
    assert stored.execution_count == 1
    assert stored.last_executed_at is not None


@pytest.mark.asyncio
async def test_webhook_action_posts_event(session_factory):
    received = []

    def handler(request: httpx.Request) -> httpx.Response:
        received.append(json.loads(request.content))
        return httpx.Response(204)

    store = RuleStore(session_factory)
    await store.create(_rule(action_type=ActionType.WEBHOOK, action_target="https://hooks.example.com/doc"))
    engine = RuleEngine(store, AsyncMock(), transport=httpx.MockTransport(handler))

    [result] = await engine.evaluate(_event())

    assert result.executed
    assert received[0]["event"]["changed_by"] == "ou_alice"
    assert received[0]["document"]["id"] == "doxcnA1"


@pytest.mark.asyncio
async def test_failing_rule_does_not_stop_others(session_factory):
    store = RuleStore(session_factory)
    await store.create(
        _rule(name="hook", action_type=ActionType.WEBHOOK, action_target="https://hooks.example.com/down")
    )
    await store.create(_rule(name="notify"))
    dispatcher = AsyncMock()
    dispatcher.send_text = AsyncMock(return_value="delivered")
    engine = RuleEngine(
        store,
        dispatcher,
        retry_jitter=0,
        transport=httpx.MockTransport(lambda request: httpx.Response(503)),
    )

    with patch("docwatch.tracking.rules.asyncio.sleep", new=AsyncMock()):
        results = await engine.evaluate(_event(), notify_target_id="oc_thread")

    by_name = {r.rule_name: r for r in results}
    assert by_name["hook"].matched and not by_name["hook"].executed
    assert "503" in by_name["hook"].error
    assert by_name["notify"].executed
