from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Query, Request

from docwatch.api.schemas import (
    ChangeEventOut,
    PollerMetricsOut,
    SnapshotOut,
    TrackedDocumentOut,
    WatchIn,
)
from docwatch.auth.middleware import get_current_user
from docwatch.errors import (
    InvalidDocumentReference,
    PermanentAccessError,
    PersistenceError,
    TransientUpstreamError,
)
from docwatch.tracking.references import parse_document_reference
from docwatch.tracking.service import DocTracker

router = APIRouter(prefix="/tracking")


def _tracker(request: Request) -> DocTracker:
    return request.app.state.tracker


@router.post("/watch", response_model=TrackedDocumentOut)
async def watch_document(
    body: WatchIn,
    request: Request,
    user: dict = Depends(get_current_user),
):
    try:
        ref = parse_document_reference(body.document, body.document_type)
    except InvalidDocumentReference as exc:
        raise HTTPException(status_code=422, detail=str(exc))

    try:
        document = await _tracker(request).watch(
            ref.document_id, ref.document_type, body.notify_target_id, raw_type=ref.raw_type
        )
    except PermanentAccessError:
        raise HTTPException(status_code=404, detail="Document not accessible")
    except TransientUpstreamError:
        raise HTTPException(status_code=503, detail="Document service unavailable, try again")
    except PersistenceError:
        raise HTTPException(status_code=503, detail="Tracking storage unavailable")
    return TrackedDocumentOut.model_validate(document)


@router.delete("/documents/{document_id}", status_code=204)
async def unwatch_document(
    document_id: str,
    request: Request,
    user: dict = Depends(get_current_user),
):
    try:
        removed = await _tracker(request).unwatch(document_id)
    except PersistenceError:
        raise HTTPException(status_code=503, detail="Tracking storage unavailable")
    if not removed:
        raise HTTPException(status_code=404, detail="Document not tracked")


@router.get("/documents", response_model=list[TrackedDocumentOut])
async def list_tracked(
    request: Request,
    notify_target_id: str | None = None,
    user: dict = Depends(get_current_user),
):
    documents = _tracker(request).list_tracked(notify_target_id)
    return [TrackedDocumentOut.model_validate(d) for d in documents]


@router.get("/status", response_model=PollerMetricsOut)
async def tracking_status(
    request: Request,
    user: dict = Depends(get_current_user),
):
    return PollerMetricsOut.model_validate(_tracker(request).status())


@router.get("/documents/{document_id}/events", response_model=list[ChangeEventOut])
async def list_events(
    document_id: str,
    request: Request,
    since: datetime | None = None,
    until: datetime | None = None,
    limit: int = Query(100, ge=1, le=1000),
    user: dict = Depends(get_current_user),
):
    try:
        events = await _tracker(request).list_events(document_id, since, until, limit)
    except PersistenceError:
        raise HTTPException(status_code=503, detail="Tracking storage unavailable")
    return [ChangeEventOut.model_validate(e) for e in events]


@router.get("/documents/{document_id}/snapshots", response_model=list[SnapshotOut])
async def list_snapshots(
    document_id: str,
    request: Request,
    limit: int = Query(20, ge=1, le=100),
    user: dict = Depends(get_current_user),
):
    try:
        snapshots = await _tracker(request).list_snapshots(document_id, limit)
    except PersistenceError:
        raise HTTPException(status_code=503, detail="Tracking storage unavailable")
    return [SnapshotOut.model_validate(s) for s in snapshots]
