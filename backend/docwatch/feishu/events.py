import json

import structlog
from fastapi import Request, Response

from docwatch.config import settings
from docwatch.feishu import router
from docwatch.feishu.verify import verify_feishu_signature, verify_token
from docwatch.tracking.types import ChangeCandidate, ChangeType, EventSource

log = structlog.get_logger()

_EVENT_TYPES = {
    "drive.file.edit_v1": ChangeType.EDIT,
    "drive.file.title_updated_v1": ChangeType.RENAME,
    "drive.file.trashed_v1": ChangeType.DELETE,
    "drive.file.deleted_v1": ChangeType.DELETE,
}


def change_type_for(event_type: str) -> ChangeType:
    if event_type in _EVENT_TYPES:
        return _EVENT_TYPES[event_type]
    if "title_updated" in event_type:
        return ChangeType.RENAME
    if "trashed" in event_type or "deleted" in event_type:
        return ChangeType.DELETE
    if "edit" in event_type:
        return ChangeType.EDIT
    return ChangeType.UNKNOWN


def _epoch_seconds(value) -> int | None:
    try:
        number = int(value)
    except (TypeError, ValueError):
        return None
    # header.create_time is in milliseconds
    if number > 10**11:
        number //= 1000
    return number if number > 0 else None


def _operator(event: dict) -> str | None:
    operators = event.get("operator_id_list")
    if not isinstance(operators, list):
        operators = []
    for operator in operators:
        if isinstance(operator, dict):
            found = operator.get("open_id") or operator.get("user_id") or operator.get("union_id")
            if found:
                return found
    operator = event.get("operator_id")
    if isinstance(operator, dict):
        found = operator.get("open_id") or operator.get("user_id") or operator.get("union_id")
        if found:
            return found
    return event.get("user_id") or event.get("open_id")


def parse_change_payload(payload: dict) -> ChangeCandidate | None:
    """Turn a drive event callback into a candidate, or None if it is unusable."""
    header = payload.get("header") or {}
    event = payload.get("event")
    if not isinstance(event, dict) or not isinstance(header, dict):
        return None

    document_id = event.get("file_token") or event.get("doc_token") or event.get("token")
    if not document_id:
        return None

    changed_at = _epoch_seconds(event.get("timestamp")) or _epoch_seconds(header.get("create_time"))
    if changed_at is None:
        return None

    event_type = header.get("event_type") or event.get("type") or ""
    return ChangeCandidate(
        document_id=str(document_id),
        change_type=change_type_for(str(event_type)),
        changed_by=_operator(event) or "unknown",
        changed_at=changed_at,
        source=EventSource.WEBHOOK,
        title=event.get("title"),
    )


@router.post("/docs/change")
async def docs_change(request: Request) -> Response:
    body = await request.body()
    try:
        payload = json.loads(body)
    except ValueError:
        log.warning("webhook_malformed_payload", size=len(body))
        return Response(status_code=400)
    if not isinstance(payload, dict):
        log.warning("webhook_malformed_payload", size=len(body))
        return Response(status_code=400)

    if payload.get("type") == "url_verification":
        if (
            settings.verify_webhooks
            and settings.feishu_verification_token
            and not verify_token(settings.feishu_verification_token, payload)
        ):
            log.warning("webhook_verification_token_invalid", kind="url_verification")
            return Response(status_code=401)
        return Response(
            content=json.dumps({"challenge": payload.get("challenge", "")}),
            media_type="application/json",
        )

    if settings.verify_webhooks:
        if not (settings.feishu_encrypt_key or settings.feishu_verification_token):
            log.error("webhook_verification_unconfigured")
            return Response(status_code=401)
        if settings.feishu_encrypt_key and not verify_feishu_signature(
            settings.feishu_encrypt_key,
            request.headers.get("X-Lark-Request-Timestamp", ""),
            request.headers.get("X-Lark-Request-Nonce", ""),
            body,
            request.headers.get("X-Lark-Signature", ""),
        ):
            log.warning("webhook_signature_invalid")
            return Response(status_code=401)

    if "encrypt" in payload:
        log.warning("webhook_encrypted_payload_dropped")
        return Response(status_code=200)

    if (
        settings.verify_webhooks
        and settings.feishu_verification_token
        and not verify_token(settings.feishu_verification_token, payload)
    ):
        log.warning("webhook_verification_token_invalid", kind="event")
        return Response(status_code=401)

    try:
        candidate = parse_change_payload(payload)
    except (ValueError, TypeError, AttributeError) as exc:
        log.warning("webhook_event_unusable", error=str(exc))
        return Response(status_code=200)
    if candidate is None:
        header = payload.get("header")
        event_type = header.get("event_type") if isinstance(header, dict) else None
        log.info("webhook_event_unusable", event_type=event_type)
        return Response(status_code=200)

    tracker = request.app.state.tracker
    await tracker.submit_webhook_candidate(candidate)
    log.info(
        "webhook_event_queued",
        document_id=candidate.document_id,
        change_type=candidate.change_type.value,
        changed_by=candidate.changed_by,
        changed_at=candidate.changed_at,
    )
    return Response(status_code=200)
