"""
Decisions Router — Propose, version, approve, reject and roll back changes.
Every change to a Google Ads entity is recorded here as a versioned decision
before it can be grouped into a change set and exported.
"""

from typing import Optional
from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession
from pydantic import BaseModel, Field
from adaudit.auth import require_auth
from adaudit.database import get_db
from adaudit.models import Decision
from adaudit.services.bulk_service import BulkOperationService
from adaudit.services.decision_service import DecisionService
from adaudit.utils import parse_uuid, isoformat

router = APIRouter()


# ── Request Models ────────────────────────────────────────────────────

class CreateDecisionRequest(BaseModel):
    account_id: str
    audit_id: Optional[str] = None
    module_id: int = Field(ge=1, le=23)
    entity_type: str  # campaign, ad_group, keyword, ...
    entity_id: str
    entity_name: Optional[str] = None
    action_type: str  # pause, enable, update_bid, ...
    before_value: Optional[dict] = None
    after_value: Optional[dict] = None
    rationale: Optional[str] = None
    evidence: Optional[dict] = None


class UpdateDecisionRequest(BaseModel):
    after_value: Optional[dict] = None
    rationale: Optional[str] = None
    evidence: Optional[dict] = None


class RollbackRequest(BaseModel):
    reason: Optional[str] = None


class BulkApproveRequest(BaseModel):
    ids: list[str] = Field(min_length=1)


class BulkRejectRequest(BaseModel):
    ids: list[str] = Field(min_length=1)
    reason: str = Field(min_length=1)


# ── Reads ─────────────────────────────────────────────────────────────

@router.get("/account/{account_id}")
async def list_decisions(
    account_id: str,
    module_id: Optional[int] = Query(None, ge=1, le=23),
    entity_type: Optional[str] = Query(None),
    action_type: Optional[str] = Query(None),
    status: Optional[str] = Query(None),
    current_only: bool = Query(True),
    sort_by: Optional[str] = Query(None),
    sort_order: Optional[str] = Query(None),
    page: int = Query(1, ge=1),
    limit: Optional[int] = Query(None, ge=1),
    db: AsyncSession = Depends(get_db),
):
    """Paginated decisions for an account. Superseded versions only with current_only=false."""
    result = await DecisionService(db).list_decisions(
        parse_uuid(account_id, "account_id"),
        module_id=module_id,
        entity_type=entity_type,
        action_type=action_type,
        status=status,
        current_only=current_only,
        sort_by=sort_by,
        sort_order=sort_order,
        page=page,
        limit=limit,
    )
    return {"data": [serialize_decision(d) for d in result["data"]], "meta": result["meta"]}


@router.get("/account/{account_id}/summary")
async def decisions_summary(account_id: str, db: AsyncSession = Depends(get_db)):
    return await DecisionService(db).summary(parse_uuid(account_id, "account_id"))


@router.get("/group/{group_id}/history")
async def decision_history(group_id: str, db: AsyncSession = Depends(get_db)):
    """Every version of a decision group, oldest first."""
    versions = await DecisionService(db).history(group_id)
    return [serialize_decision(d) for d in versions]


@router.get("/{decision_id}")
async def get_decision(decision_id: str, db: AsyncSession = Depends(get_db)):
    return serialize_decision(await DecisionService(db).get(decision_id))


# ── Writes ────────────────────────────────────────────────────────────

@router.post("", status_code=201)
async def create_decision(
    req: CreateDecisionRequest,
    db: AsyncSession = Depends(get_db),
    actor: str = Depends(require_auth),
):
    decision = await DecisionService(db, actor=actor).create(
        account_id=parse_uuid(req.account_id, "account_id"),
        audit_id=parse_uuid(req.audit_id, "audit_id") if req.audit_id else None,
        module_id=req.module_id,
        entity_type=req.entity_type,
        entity_id=req.entity_id,
        entity_name=req.entity_name,
        action_type=req.action_type,
        before_value=req.before_value,
        after_value=req.after_value,
        rationale=req.rationale,
        evidence=req.evidence,
    )
    return serialize_decision(decision)


@router.patch("/{decision_id}")
async def update_decision(
    decision_id: str,
    req: UpdateDecisionRequest,
    db: AsyncSession = Depends(get_db),
    actor: str = Depends(require_auth),
):
    """Creates a new draft version; the addressed row is kept as history."""
    decision = await DecisionService(db, actor=actor).update(
        decision_id,
        after_value=req.after_value,
        rationale=req.rationale,
        evidence=req.evidence,
    )
    return serialize_decision(decision)


@router.post("/bulk-approve")
async def bulk_approve(
    req: BulkApproveRequest,
    db: AsyncSession = Depends(get_db),
    actor: str = Depends(require_auth),
):
    results = await BulkOperationService(db, actor=actor).bulk_approve(req.ids)
    return _bulk_response(results)


@router.post("/bulk-reject")
async def bulk_reject(
    req: BulkRejectRequest,
    db: AsyncSession = Depends(get_db),
    actor: str = Depends(require_auth),
):
    results = await BulkOperationService(db, actor=actor).bulk_reject(req.ids, req.reason)
    return _bulk_response(results)


@router.post("/{decision_id}/approve")
async def approve_decision(
    decision_id: str,
    db: AsyncSession = Depends(get_db),
    actor: str = Depends(require_auth),
):
    return serialize_decision(await DecisionService(db, actor=actor).approve(decision_id))


@router.post("/{decision_id}/rollback")
async def rollback_decision(
    decision_id: str,
    req: Optional[RollbackRequest] = None,
    db: AsyncSession = Depends(get_db),
    actor: str = Depends(require_auth),
):
    reason = req.reason if req else None
    return serialize_decision(await DecisionService(db, actor=actor).rollback(decision_id, reason=reason))


@router.delete("/{decision_id}")
async def delete_decision(
    decision_id: str,
    db: AsyncSession = Depends(get_db),
    actor: str = Depends(require_auth),
):
    return await DecisionService(db, actor=actor).delete(decision_id)


# ── Serializers ───────────────────────────────────────────────────────

def _bulk_response(results: list) -> dict:
    items = [r if isinstance(r, dict) else serialize_decision(r) for r in results]
    failed = sum(1 for r in results if isinstance(r, dict))
    return {"results": items, "succeeded": len(results) - failed, "failed": failed}


def serialize_decision(d: Decision) -> dict:
    return {
        "id": str(d.id),
        "decision_group_id": str(d.decision_group_id),
        "version": d.version,
        "is_current": d.is_current,
        "superseded_by": str(d.superseded_by) if d.superseded_by else None,
        "account_id": str(d.account_id),
        "audit_id": str(d.audit_id) if d.audit_id else None,
        "module_id": d.module_id,
        "entity_type": d.entity_type,
        "entity_id": d.entity_id,
        "entity_name": d.entity_name,
        "action_type": d.action_type,
        "before_value": d.before_value,
        "after_value": d.after_value,
        "rationale": d.rationale,
        "evidence": d.evidence,
        "status": d.status,
        "change_set_id": str(d.change_set_id) if d.change_set_id else None,
        "exported_at": isoformat(d.exported_at),
        "applied_at": isoformat(d.applied_at),
        "created_by": d.created_by,
        "created_at": isoformat(d.created_at),
    }
