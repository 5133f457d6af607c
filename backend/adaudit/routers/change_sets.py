"""
Change Sets Router — Bundle approved decisions and export them for Google Ads Editor.
Flow: create (draft) -> add/remove decisions -> approve -> preview -> export
-> download -> mark applied once the bundle has been posted.
"""

from typing import Optional
from fastapi import APIRouter, Depends, Query
from fastapi.responses import Response
from sqlalchemy.ext.asyncio import AsyncSession
from pydantic import BaseModel, Field
from adaudit.auth import require_auth
from adaudit.database import get_db
from adaudit.models import ChangeSet, Decision
from adaudit.routers.decisions import serialize_decision
from adaudit.services.change_set_service import ChangeSetService
from adaudit.services.export_service import ExportService
from adaudit.utils import parse_uuid, isoformat

router = APIRouter()


# ── Request Models ────────────────────────────────────────────────────

class CreateChangeSetRequest(BaseModel):
    account_id: str
    audit_id: Optional[str] = None
    name: str
    description: Optional[str] = None
    decision_ids: list[str] = []


class UpdateChangeSetRequest(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None


class AddDecisionsRequest(BaseModel):
    decision_ids: list[str] = Field(min_length=1)


class RemoveDecisionRequest(BaseModel):
    decision_id: str


class ExportRequest(BaseModel):
    account_name: Optional[str] = None  # shown in the bundle README


# ── Reads ─────────────────────────────────────────────────────────────

@router.get("/account/{account_id}/change-sets")
async def list_change_sets(
    account_id: str,
    status: Optional[str] = Query(None),
    sort_by: Optional[str] = Query(None),
    sort_order: Optional[str] = Query(None),
    page: int = Query(1, ge=1),
    limit: Optional[int] = Query(None, ge=1),
    db: AsyncSession = Depends(get_db),
):
    result = await ChangeSetService(db).list_change_sets(
        parse_uuid(account_id, "account_id"),
        status=status,
        sort_by=sort_by,
        sort_order=sort_order,
        page=page,
        limit=limit,
    )
    return {
        "data": [_serialize_change_set(cs, decisions_count=count) for cs, count in result["data"]],
        "meta": result["meta"],
    }


@router.get("/account/{account_id}/exportable-decisions")
async def exportable_decisions(account_id: str, db: AsyncSession = Depends(get_db)):
    """Unattached draft/approved decisions available for a new change set."""
    decisions = await ChangeSetService(db).exportable_decisions(parse_uuid(account_id, "account_id"))
    return [serialize_decision(d) for d in decisions]


@router.get("/change-sets/{change_set_id}")
async def get_change_set(change_set_id: str, db: AsyncSession = Depends(get_db)):
    service = ChangeSetService(db)
    change_set = await service.get(change_set_id)
    return _serialize_change_set(change_set, members=await service.members(change_set.id))


@router.get("/change-sets/{change_set_id}/preview")
async def preview_change_set(change_set_id: str, db: AsyncSession = Depends(get_db)):
    return await ExportService(db).preview(change_set_id)


@router.get("/change-sets/{change_set_id}/download")
async def download_change_set(change_set_id: str, db: AsyncSession = Depends(get_db)):
    """Stream the bundle recorded at export time."""
    artifact = await ExportService(db).download(change_set_id)
    return Response(
        content=artifact.content,
        media_type="application/zip",
        headers={
            "Content-Disposition": f'attachment; filename="{artifact.filename}"',
            "X-Export-Hash": artifact.content_hash,
        },
    )


# ── Writes ────────────────────────────────────────────────────────────

@router.post("/change-sets", status_code=201)
async def create_change_set(
    req: CreateChangeSetRequest,
    db: AsyncSession = Depends(get_db),
    actor: str = Depends(require_auth),
):
    service = ChangeSetService(db, actor=actor)
    change_set = await service.create(
        account_id=parse_uuid(req.account_id, "account_id"),
        audit_id=parse_uuid(req.audit_id, "audit_id") if req.audit_id else None,
        name=req.name,
        description=req.description,
        decision_ids=req.decision_ids,
    )
    return _serialize_change_set(change_set, members=await service.members(change_set.id))


@router.patch("/change-sets/{change_set_id}")
async def update_change_set(
    change_set_id: str,
    req: UpdateChangeSetRequest,
    db: AsyncSession = Depends(get_db),
    actor: str = Depends(require_auth),
):
    change_set = await ChangeSetService(db, actor=actor).update(
        change_set_id, name=req.name, description=req.description,
    )
    return _serialize_change_set(change_set)


@router.post("/change-sets/{change_set_id}/add-decisions")
async def add_decisions(
    change_set_id: str,
    req: AddDecisionsRequest,
    db: AsyncSession = Depends(get_db),
    actor: str = Depends(require_auth),
):
    service = ChangeSetService(db, actor=actor)
    change_set = await service.add_decisions(change_set_id, req.decision_ids)
    return _serialize_change_set(change_set, members=await service.members(change_set.id))


@router.post("/change-sets/{change_set_id}/remove-decision")
async def remove_decision(
    change_set_id: str,
    req: RemoveDecisionRequest,
    db: AsyncSession = Depends(get_db),
    actor: str = Depends(require_auth),
):
    service = ChangeSetService(db, actor=actor)
    change_set = await service.remove_decision(change_set_id, req.decision_id)
    return _serialize_change_set(change_set, members=await service.members(change_set.id))


@router.post("/change-sets/{change_set_id}/approve")
async def approve_change_set(
    change_set_id: str,
    db: AsyncSession = Depends(get_db),
    actor: str = Depends(require_auth),
):
    return _serialize_change_set(await ChangeSetService(db, actor=actor).approve(change_set_id))


@router.post("/change-sets/{change_set_id}/export")
async def export_change_set(
    change_set_id: str,
    req: Optional[ExportRequest] = None,
    db: AsyncSession = Depends(get_db),
    actor: str = Depends(require_auth),
):
    """approved -> exported, cascading every member decision in one unit."""
    change_set = await ExportService(db, actor=actor).export(
        change_set_id, account_name=req.account_name if req else None,
    )
    return _serialize_change_set(change_set)


@router.post("/change-sets/{change_set_id}/mark-applied")
async def mark_applied(
    change_set_id: str,
    db: AsyncSession = Depends(get_db),
    actor: str = Depends(require_auth),
):
    return _serialize_change_set(await ExportService(db, actor=actor).mark_applied(change_set_id))


@router.delete("/change-sets/{change_set_id}")
async def delete_change_set(
    change_set_id: str,
    db: AsyncSession = Depends(get_db),
    actor: str = Depends(require_auth),
):
    """Deletes the set only; its decisions go back to the exportable pool."""
    return await ChangeSetService(db, actor=actor).delete(change_set_id)


# ── Serializers ───────────────────────────────────────────────────────

def _serialize_change_set(
    cs: ChangeSet,
    members: Optional[list[Decision]] = None,
    decisions_count: Optional[int] = None,
) -> dict:
    data = {
        "id": str(cs.id),
        "account_id": str(cs.account_id),
        "audit_id": str(cs.audit_id) if cs.audit_id else None,
        "name": cs.name,
        "description": cs.description,
        "status": cs.status,
        "export_files": cs.export_files,
        "export_hash": cs.export_hash,
        "created_by": cs.created_by,
        "created_at": isoformat(cs.created_at),
        "updated_at": isoformat(cs.updated_at),
        "approved_at": isoformat(cs.approved_at),
        "exported_at": isoformat(cs.exported_at),
        "applied_at": isoformat(cs.applied_at),
    }
    if members is not None:
        data["decisions"] = [serialize_decision(d) for d in members]
        data["decisions_count"] = len(members)
    elif decisions_count is not None:
        data["decisions_count"] = decisions_count
    return data
