import asyncio
import re
import uuid
from datetime import datetime, timezone
from enum import Enum

import httpx
import structlog
from pydantic import BaseModel, Field
from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from docwatch.backoff import backoff_delay
from docwatch.db.models import ChangeRuleRow
from docwatch.errors import DeliveryError, PersistenceError
from docwatch.feishu.messages import build_rule_text
from docwatch.tracking.events import as_utc
from docwatch.tracking.notifier import NotificationDispatcher
from docwatch.tracking.types import ChangeEvent, DeliveryResult, DiffSummary

log = structlog.get_logger()


class ConditionType(str, Enum):
    ANY = "any"
    MODIFIED_BY_USER = "modified_by_user"
    CHANGE_TYPE = "change_type"
    TIME_RANGE = "time_range"
    CONTENT_MATCH = "content_match"


class ActionType(str, Enum):
    NOTIFY = "notify"
    WEBHOOK = "webhook"


class ChangeRule(BaseModel):
    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    document_id: str
    name: str
    description: str | None = None
    condition_type: ConditionType = ConditionType.ANY
    condition_value: list[str] = Field(default_factory=list)
    action_type: ActionType = ActionType.NOTIFY
    action_target: str | None = None
    action_template: str | None = None
    enabled: bool = True
    execution_count: int = 0
    last_executed_at: datetime | None = None


class RuleExecution(BaseModel):
    rule_id: uuid.UUID
    rule_name: str
    matched: bool
    executed: bool = False
    error: str | None = None


def _from_row(row: ChangeRuleRow) -> ChangeRule:
    value = row.condition_value
    if isinstance(value, str):
        value = [value]
    return ChangeRule(
        id=row.id,
        document_id=row.document_id,
        name=row.name,
        description=row.description,
        condition_type=ConditionType(row.condition_type),
        condition_value=[str(v) for v in value or []],
        action_type=ActionType(row.action_type),
        action_target=row.action_target,
        action_template=row.action_template,
        enabled=bool(row.enabled),
        execution_count=row.execution_count or 0,
        last_executed_at=as_utc(row.last_executed_at) if row.last_executed_at else None,
    )


def validate_rule(rule: ChangeRule) -> None:
    if rule.condition_type in (
        ConditionType.MODIFIED_BY_USER,
        ConditionType.CHANGE_TYPE,
        ConditionType.TIME_RANGE,
        ConditionType.CONTENT_MATCH,
    ) and not rule.condition_value:
        raise ValueError(f"condition {rule.condition_type.value} needs at least one value")
    if rule.condition_type == ConditionType.TIME_RANGE:
        for value in rule.condition_value:
            _parse_hours(value)
    if rule.condition_type == ConditionType.CONTENT_MATCH:
        for pattern in rule.condition_value:
            try:
                re.compile(pattern)
            except re.error as exc:
                raise ValueError(f"invalid pattern {pattern!r}: {exc}") from exc
    if rule.action_type == ActionType.WEBHOOK and not rule.action_target:
        raise ValueError("webhook action needs a target URL")


def _parse_hours(value: str) -> range:
    """``"9"`` or ``"9-17"`` (end exclusive) as a range of UTC hours."""
    start, _, end = value.partition("-")
    try:
        first = int(start)
        last = int(end) if end else first + 1
    except ValueError as exc:
        raise ValueError(f"invalid hour range {value!r}") from exc
    if not (0 <= first <= 23 and 0 < last <= 24 and first < last):
        raise ValueError(f"invalid hour range {value!r}")
    return range(first, last)


class RuleStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def create(self, rule: ChangeRule) -> ChangeRule:
        validate_rule(rule)
        row = ChangeRuleRow(
            id=rule.id,
            document_id=rule.document_id,
            name=rule.name,
            description=rule.description,
            condition_type=rule.condition_type.value,
            condition_value=rule.condition_value or None,
            action_type=rule.action_type.value,
            action_target=rule.action_target,
            action_template=rule.action_template,
            enabled=rule.enabled,
            execution_count=0,
        )
        try:
            async with self._session_factory() as session:
                session.add(row)
                await session.commit()
        except SQLAlchemyError as exc:
            raise PersistenceError(f"creating rule {rule.name} failed: {exc}") from exc
        log.info("rule_created", rule_id=str(rule.id), document_id=rule.document_id, name=rule.name)
        return rule

    async def list_rules(self, document_id: str, *, enabled_only: bool = False) -> list[ChangeRule]:
        stmt = select(ChangeRuleRow).where(ChangeRuleRow.document_id == document_id)
        if enabled_only:
            stmt = stmt.where(ChangeRuleRow.enabled.is_(True))
        try:
            async with self._session_factory() as session:
                rows = (await session.execute(stmt.order_by(ChangeRuleRow.created_at))).scalars().all()
        except SQLAlchemyError as exc:
            raise PersistenceError(f"loading rules for {document_id} failed: {exc}") from exc
        return [_from_row(r) for r in rows]

    async def set_enabled(
        self, rule_id: uuid.UUID, enabled: bool, document_id: str | None = None
    ) -> ChangeRule | None:
        try:
            async with self._session_factory() as session:
                row = await session.get(ChangeRuleRow, rule_id)
                if row is None or (document_id is not None and row.document_id != document_id):
                    return None
                row.enabled = enabled
                rule = _from_row(row)
                await session.commit()
        except SQLAlchemyError as exc:
            raise PersistenceError(f"updating rule {rule_id} failed: {exc}") from exc
        return rule

    async def delete(self, rule_id: uuid.UUID, document_id: str | None = None) -> bool:
        stmt = delete(ChangeRuleRow).where(ChangeRuleRow.id == rule_id)
        if document_id is not None:
            stmt = stmt.where(ChangeRuleRow.document_id == document_id)
        try:
            async with self._session_factory() as session:
                result = await session.execute(stmt)
                await session.commit()
        except SQLAlchemyError as exc:
            raise PersistenceError(f"deleting rule {rule_id} failed: {exc}") from exc
        return bool(result.rowcount)

    async def record_execution(self, rule_id: uuid.UUID) -> None:
        try:
            async with self._session_factory() as session:
                row = await session.get(ChangeRuleRow, rule_id)
                if row is None:
                    return
                row.execution_count = (row.execution_count or 0) + 1
                row.last_executed_at = datetime.now(timezone.utc)
                await session.commit()
        except SQLAlchemyError as exc:
            raise PersistenceError(f"recording execution of rule {rule_id} failed: {exc}") from exc


def condition_matches(rule: ChangeRule, event: ChangeEvent, diff: DiffSummary | None) -> bool:
    values = rule.condition_value
    kind = rule.condition_type
    if kind == ConditionType.ANY:
        return True
    if kind == ConditionType.MODIFIED_BY_USER:
        return event.changed_by in values
    if kind == ConditionType.CHANGE_TYPE:
        return event.change_type.value in values
    if kind == ConditionType.TIME_RANGE:
        hour = event.changed_at_datetime.hour
        return any(hour in _parse_hours(v) for v in values)
    if kind == ConditionType.CONTENT_MATCH:
        # events analyzed without content never match
        if diff is None or diff.is_empty:
            return False
        haystack = "\n".join([*diff.changed_headings, diff.summary])
        return any(re.search(p, haystack, re.IGNORECASE) for p in values)
    return False


class RuleEngine:
    """Evaluates a document's enabled rules against one change event."""

    def __init__(
        self,
        store: RuleStore,
        dispatcher: NotificationDispatcher,
        *,
        max_attempts: int = 3,
        retry_base: float = 0.5,
        retry_factor: float = 2.0,
        retry_jitter: float = 0.2,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.store = store
        self.dispatcher = dispatcher
        self.max_attempts = max_attempts
        self.retry_base = retry_base
        self.retry_factor = retry_factor
        self.retry_jitter = retry_jitter
        self.timeout = timeout
        self._transport = transport

    async def evaluate(
        self,
        event: ChangeEvent,
        diff: DiffSummary | None = None,
        *,
        notify_target_id: str | None = None,
        title: str | None = None,
    ) -> list[RuleExecution]:
        rules = await self.store.list_rules(event.document_id, enabled_only=True)
        results: list[RuleExecution] = []
        for rule in rules:
            result = RuleExecution(rule_id=rule.id, rule_name=rule.name, matched=False)
            try:
                result.matched = condition_matches(rule, event, diff)
                if result.matched:
                    await self._execute(rule, event, diff, notify_target_id, title)
                    result.executed = True
                    await self.store.record_execution(rule.id)
            except Exception as exc:
                result.error = str(exc) or exc.__class__.__name__
                log.error(
                    "rule_execution_failed",
                    rule_id=str(rule.id),
                    rule=rule.name,
                    document_id=event.document_id,
                    error=result.error,
                )
            else:
                if result.executed:
                    log.info(
                        "rule_executed",
                        rule_id=str(rule.id),
                        rule=rule.name,
                        document_id=event.document_id,
                        action=rule.action_type.value,
                    )
            results.append(result)
        return results

    async def _execute(
        self,
        rule: ChangeRule,
        event: ChangeEvent,
        diff: DiffSummary | None,
        notify_target_id: str | None,
        title: str | None,
    ) -> None:
        if rule.action_type == ActionType.NOTIFY:
            target = rule.action_target or notify_target_id
            if not target:
                raise DeliveryError(f"rule {rule.name} has no notify target")
            text = build_rule_text(rule.name, event, diff, rule.action_template, title)
            result = await self.dispatcher.send_text(
                target, text, kind="rule", document_id=event.document_id
            )
            if result != DeliveryResult.DELIVERED:
                raise DeliveryError(f"rule {rule.name} notification was not delivered")
        elif rule.action_type == ActionType.WEBHOOK:
            await self._post_webhook(rule, event, diff, title)

    async def _post_webhook(
        self,
        rule: ChangeRule,
        event: ChangeEvent,
        diff: DiffSummary | None,
        title: str | None,
    ) -> None:
        payload = {
            "rule": {"id": str(rule.id), "name": rule.name},
            "document": {"id": event.document_id, "title": title},
            "event": event.model_dump(mode="json"),
            "diff": diff.model_dump(mode="json") if diff else None,
        }
        error = ""
        for attempt in range(1, self.max_attempts + 1):
            try:
                async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                    resp = await client.post(rule.action_target, json=payload)
                if resp.status_code < 300:
                    return
                error = f"HTTP {resp.status_code}"
                if resp.status_code < 500 and resp.status_code != 429:
                    break
            except httpx.HTTPError as exc:
                error = str(exc) or exc.__class__.__name__
            if attempt < self.max_attempts:
                delay = backoff_delay(
                    attempt, base=self.retry_base, factor=self.retry_factor, jitter=self.retry_jitter
                )
                log.warning("rule_webhook_retry", rule=rule.name, attempt=attempt, error=error)
                await asyncio.sleep(delay)
        raise DeliveryError(f"webhook {rule.action_target} failed: {error}")
