import uuid

from fastapi import APIRouter, Depends, HTTPException, Request

from docwatch.api.schemas import RuleIn, RuleOut, RuleUpdateIn
from docwatch.auth.middleware import get_current_user
from docwatch.errors import PersistenceError
from docwatch.tracking.rules import ChangeRule, RuleStore

router = APIRouter(prefix="/tracking/documents/{document_id}/rules")


def _rules(request: Request) -> RuleStore:
    return request.app.state.tracker.rule_store


@router.get("", response_model=list[RuleOut])
async def list_rules(
    document_id: str,
    request: Request,
    user: dict = Depends(get_current_user),
):
    try:
        rules = await _rules(request).list_rules(document_id)
    except PersistenceError:
        raise HTTPException(status_code=503, detail="Rule storage unavailable")
    return [RuleOut.model_validate(r) for r in rules]


@router.post("", response_model=RuleOut, status_code=201)
async def create_rule(
    document_id: str,
    body: RuleIn,
    request: Request,
    user: dict = Depends(get_current_user),
):
    rule = ChangeRule(document_id=document_id, **body.model_dump())
    try:
        created = await _rules(request).create(rule)
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc))
    except PersistenceError:
        raise HTTPException(status_code=503, detail="Rule storage unavailable")
    return RuleOut.model_validate(created)


@router.patch("/{rule_id}", response_model=RuleOut)
async def update_rule(
    document_id: str,
    rule_id: uuid.UUID,
    body: RuleUpdateIn,
    request: Request,
    user: dict = Depends(get_current_user),
):
    try:
        rule = await _rules(request).set_enabled(rule_id, body.enabled, document_id)
    except PersistenceError:
        raise HTTPException(status_code=503, detail="Rule storage unavailable")
    if rule is None:
        raise HTTPException(status_code=404, detail="Rule not found")
    return RuleOut.model_validate(rule)


@router.delete("/{rule_id}", status_code=204)
async def delete_rule(
    document_id: str,
    rule_id: uuid.UUID,
    request: Request,
    user: dict = Depends(get_current_user),
):
    try:
        deleted = await _rules(request).delete(rule_id, document_id)
    except PersistenceError:
        raise HTTPException(status_code=503, detail="Rule storage unavailable")
    if not deleted:
        raise HTTPException(status_code=404, detail="Rule not found")
