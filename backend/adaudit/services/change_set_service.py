"""
Change Set Service — Groups current decisions into named, exportable bundles.

Membership is a back-reference on the decision (decisions.change_set_id).
Attaching is a single compare-and-set UPDATE that only succeeds when the
decision is unattached or already in this set, so two change sets racing for
the same decision cannot both claim it.
"""

import logging
import uuid
from typing import Optional
from sqlalchemy import select, update, delete, func, or_
from sqlalchemy.ext.asyncio import AsyncSession

from adaudit.config import get_settings
from adaudit.errors import (
    ValidationError, NotFoundError, InvalidTransitionError, InvalidStateError, ConflictError,
)
from adaudit.models import (
    ChangeSet, ChangeSetStatus, Decision, ExportArtifact, ATTACHABLE_STATUSES,
)
from adaudit.services.activity import log_activity
from adaudit.services.decision_service import coerce_id
from adaudit.utils import clamp_page, page_meta, utcnow

logger = logging.getLogger(__name__)

SORTABLE_FIELDS = {
    "created_at": ChangeSet.created_at,
    "name": ChangeSet.name,
    "status": ChangeSet.status,
    "exported_at": ChangeSet.exported_at,
}


class ChangeSetService:
    def __init__(self, db: AsyncSession, actor: Optional[str] = None):
        self.db = db
        self.actor = actor

    # ── Reads ─────────────────────────────────────────────────────────

    async def get(self, change_set_id, for_update: bool = False) -> ChangeSet:
        cs_id = coerce_id(change_set_id)
        change_set = None
        if cs_id is not None:
            query = select(ChangeSet).where(ChangeSet.id == cs_id).execution_options(populate_existing=True)
            if for_update:
                query = query.with_for_update()
            change_set = (await self.db.execute(query)).scalar_one_or_none()
        if not change_set:
            raise NotFoundError(f"ChangeSet {change_set_id} not found")
        return change_set

    async def members(self, change_set_id: uuid.UUID) -> list[Decision]:
        """Current decisions attached to the change set, in a stable order."""
        result = await self.db.execute(
            select(Decision)
            .where(
                Decision.change_set_id == change_set_id,
                Decision.is_current.is_(True),
            )
            .order_by(Decision.entity_type, Decision.entity_id, Decision.decision_group_id)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def list_change_sets(
        self,
        account_id: uuid.UUID,
        *,
        status: Optional[str] = None,
        sort_by: Optional[str] = None,
        sort_order: Optional[str] = None,
        page: Optional[int] = None,
        limit: Optional[int] = None,
    ) -> dict:
        settings = get_settings()
        page, limit = clamp_page(page, limit, settings.change_sets_page_limit, settings.max_page_limit)

        query = select(ChangeSet).where(ChangeSet.account_id == account_id)
        if status:
            try:
                query = query.where(ChangeSet.status == ChangeSetStatus(status.strip().lower()).value)
            except ValueError:
                raise ValidationError(f"Unknown status: {status!r}")

        total = (await self.db.execute(
            select(func.count()).select_from(query.subquery())
        )).scalar() or 0

        sort_col = SORTABLE_FIELDS.get(sort_by or "created_at", ChangeSet.created_at)
        ordering = sort_col.asc() if (sort_order or "").upper() == "ASC" else sort_col.desc()
        result = await self.db.execute(
            query.order_by(ordering, ChangeSet.id).offset((page - 1) * limit).limit(limit)
        )
        change_sets = list(result.scalars().all())

        counts = {}
        if change_sets:
            count_result = await self.db.execute(
                select(Decision.change_set_id, func.count(Decision.id))
                .where(
                    Decision.change_set_id.in_([cs.id for cs in change_sets]),
                    Decision.is_current.is_(True),
                )
                .group_by(Decision.change_set_id)
            )
            counts = dict(count_result.all())

        return {
            "data": [(cs, counts.get(cs.id, 0)) for cs in change_sets],
            "meta": page_meta(total, page, limit),
        }

    async def exportable_decisions(self, account_id: uuid.UUID) -> list[Decision]:
        """The unattached draft/approved pool an operator picks from."""
        result = await self.db.execute(
            select(Decision)
            .where(
                Decision.account_id == account_id,
                Decision.is_current.is_(True),
                Decision.status.in_(ATTACHABLE_STATUSES),
                Decision.change_set_id.is_(None),
            )
            .order_by(Decision.module_id.asc(), Decision.entity_type.asc(), Decision.created_at.asc())
        )
        return list(result.scalars().all())

    # ── Writes ────────────────────────────────────────────────────────

    async def create(
        self,
        *,
        account_id: uuid.UUID,
        name: str,
        description: Optional[str] = None,
        audit_id: Optional[uuid.UUID] = None,
        decision_ids: Optional[list] = None,
    ) -> ChangeSet:
        """Create a draft change set, optionally pre-populated. A conflict on any id creates nothing."""
        if not name or not name.strip():
            raise ValidationError("Change set name must not be empty")

        async with self.db.begin_nested():
            change_set = ChangeSet(
                id=uuid.uuid4(),
                account_id=account_id,
                audit_id=audit_id,
                name=name.strip(),
                description=description,
                status=ChangeSetStatus.DRAFT.value,
                created_by=self.actor,
            )
            self.db.add(change_set)
            await self.db.flush()
            if decision_ids:
                await self._attach_all(change_set, decision_ids)

        log_activity(
            self.db,
            actor=self.actor,
            action="change_set_created",
            category="change_sets",
            description=f"Created change set '{change_set.name}' with {len(decision_ids or [])} decisions",
            entity_type="change_set",
            entity_id=str(change_set.id),
        )
        logger.info(f"Change set {change_set.id} created")
        return await self.get(change_set.id)

    async def update(self, change_set_id, *, name: Optional[str] = None, description: Optional[str] = None) -> ChangeSet:
        change_set = await self.get(change_set_id, for_update=True)
        self._require_draft(change_set, "edit")
        if name is not None:
            if not name.strip():
                raise ValidationError("Change set name must not be empty")
            change_set.name = name.strip()
        if description is not None:
            change_set.description = description
        await self.db.flush()
        return await self.get(change_set.id)

    async def add_decisions(self, change_set_id, decision_ids: list) -> ChangeSet:
        """Attach decisions; all-or-nothing across the given ids."""
        change_set = await self.get(change_set_id, for_update=True)
        self._require_draft(change_set, "add decisions to")

        async with self.db.begin_nested():
            await self._attach_all(change_set, decision_ids)

        log_activity(
            self.db,
            actor=self.actor,
            action="change_set_decisions_added",
            category="change_sets",
            description=f"Added {len(decision_ids)} decisions to '{change_set.name}'",
            entity_type="change_set",
            entity_id=str(change_set.id),
            details={"decision_ids": [str(d) for d in decision_ids]},
        )
        return change_set

    async def remove_decision(self, change_set_id, decision_id) -> ChangeSet:
        change_set = await self.get(change_set_id, for_update=True)
        self._require_draft(change_set, "remove decisions from")

        row_id = coerce_id(decision_id)
        removed = 0
        if row_id is not None:
            result = await self.db.execute(
                update(Decision)
                .where(Decision.id == row_id, Decision.change_set_id == change_set.id)
                .values(change_set_id=None)
                .execution_options(synchronize_session=False)
            )
            removed = result.rowcount
        if not removed:
            raise NotFoundError(f"Decision {decision_id} is not part of change set {change_set.id}")

        log_activity(
            self.db,
            actor=self.actor,
            action="change_set_decision_removed",
            category="change_sets",
            description=f"Removed decision {row_id} from '{change_set.name}'",
            entity_type="change_set",
            entity_id=str(change_set.id),
            details={"decision_id": str(row_id)},
        )
        return change_set

    async def approve(self, change_set_id) -> ChangeSet:
        """draft -> approved. Member decisions keep their own status."""
        change_set = await self.get(change_set_id, for_update=True)
        if change_set.status != ChangeSetStatus.DRAFT.value:
            raise InvalidTransitionError(
                f"Only draft change sets can be approved (change set is {change_set.status})"
            )
        if not await self.members(change_set.id):
            raise InvalidStateError("Cannot approve an empty change set")

        result = await self.db.execute(
            update(ChangeSet)
            .where(ChangeSet.id == change_set.id, ChangeSet.status == ChangeSetStatus.DRAFT.value)
            .values(status=ChangeSetStatus.APPROVED.value, approved_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise InvalidTransitionError(f"Change set {change_set.id} changed while being approved")

        log_activity(
            self.db,
            actor=self.actor,
            action="change_set_approved",
            category="change_sets",
            description=f"Approved change set '{change_set.name}'",
            entity_type="change_set",
            entity_id=str(change_set.id),
        )
        logger.info(f"Change set {change_set.id} approved")
        return await self.get(change_set.id)

    async def delete(self, change_set_id) -> dict:
        """Release every member back to the pool, then drop the set and its artifact."""
        change_set = await self.get(change_set_id, for_update=True)
        if change_set.status == ChangeSetStatus.APPLIED.value:
            raise InvalidStateError("Cannot delete an applied change set")

        cs_id, cs_name = change_set.id, change_set.name
        async with self.db.begin_nested():
            released = await self.db.execute(
                update(Decision)
                .where(Decision.change_set_id == cs_id, Decision.is_current.is_(True))
                .values(change_set_id=None)
                .execution_options(synchronize_session=False)
            )
            # Superseded rows lose only the pointer to the deleted set; the rest of their content stays as written
            await self.db.execute(
                update(Decision)
                .where(Decision.change_set_id == cs_id, Decision.is_current.is_(False))
                .values(change_set_id=None)
                .execution_options(synchronize_session=False)
            )
            await self.db.execute(delete(ExportArtifact).where(ExportArtifact.change_set_id == cs_id))
            await self.db.execute(
                delete(ChangeSet)
                .where(ChangeSet.id == cs_id, ChangeSet.status != ChangeSetStatus.APPLIED.value)
                .execution_options(synchronize_session=False)
            )
        self.db.expunge(change_set)

        log_activity(
            self.db,
            actor=self.actor,
            action="change_set_deleted",
            category="change_sets",
            description=f"Deleted change set '{cs_name}', released {released.rowcount} decisions",
            entity_type="change_set",
            entity_id=str(cs_id),
        )
        logger.info(f"Change set {cs_id} deleted")
        return {"deleted": True, "id": str(cs_id)}

    # ── Helpers ───────────────────────────────────────────────────────

    def _require_draft(self, change_set: ChangeSet, verb: str) -> None:
        if change_set.status != ChangeSetStatus.DRAFT.value:
            raise InvalidStateError(f"Cannot {verb} a {change_set.status} change set")

    async def _attach_all(self, change_set: ChangeSet, decision_ids: list) -> None:
        for decision_id in decision_ids:
            await self._attach(change_set, decision_id)

    async def _attach(self, change_set: ChangeSet, decision_id) -> None:
        row_id = coerce_id(decision_id)
        if row_id is not None:
            result = await self.db.execute(
                update(Decision)
                .where(
                    Decision.id == row_id,
                    Decision.is_current.is_(True),
                    Decision.account_id == change_set.account_id,
                    Decision.status.in_(ATTACHABLE_STATUSES),
                    or_(Decision.change_set_id.is_(None), Decision.change_set_id == change_set.id),
                )
                .values(change_set_id=change_set.id)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 1:
                return
        await self._raise_attach_failure(change_set, decision_id, row_id)

    async def _raise_attach_failure(self, change_set: ChangeSet, decision_id, row_id) -> None:
        decision = None
        if row_id is not None:
            decision = (await self.db.execute(
                select(Decision).where(Decision.id == row_id).execution_options(populate_existing=True)
            )).scalar_one_or_none()
        if not decision:
            raise NotFoundError(f"Decision {decision_id} not found", decision_id=str(decision_id))
        if not decision.is_current:
            raise InvalidStateError(
                f"Decision {row_id} is not the current version of its group", decision_id=str(row_id),
            )
        if decision.account_id != change_set.account_id:
            raise ValidationError(
                f"Decision {row_id} belongs to a different account", decision_id=str(row_id),
            )
        if decision.status not in ATTACHABLE_STATUSES:
            raise InvalidStateError(
                f"Decision {row_id} is {decision.status}; only draft or approved decisions can be grouped",
                decision_id=str(row_id),
            )
        raise ConflictError(
            f"Decision {row_id} is already attached to change set {decision.change_set_id}",
            decision_id=str(row_id),
        )
