"""
Decision Service — Versioned decision store and lifecycle controller.

Every proposed change is an append-only chain of versions sharing a
decision_group_id. Exactly one row per group is current; only the current row
takes part in approval, grouping and export.

    draft --approve--> approved --export--> exported --mark_applied--> applied
    rollback: draft | approved | exported  -> rolled_back (terminal)
    delete:   draft | approved | rolled_back

Status writes are single-statement compare-and-set UPDATEs so two requests
racing on the same row can never both win.
"""

import logging
import uuid
from typing import Optional
from sqlalchemy import select, update, delete, func
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from adaudit.config import get_settings
from adaudit.errors import (
    ValidationError, NotFoundError, InvalidTransitionError, InvalidStateError,
)
from adaudit.models import (
    Decision, DecisionStatus, EntityType, ActionType, FROZEN_STATUSES,
    ENTITY_ID_MAX_LENGTH, ENTITY_NAME_MAX_LENGTH,
)
from adaudit.services.activity import log_activity
from adaudit.utils import clamp_page, page_meta

logger = logging.getLogger(__name__)

MODULE_ID_RANGE = range(1, 24)

ROLLBACK_FROM = (
    DecisionStatus.DRAFT.value,
    DecisionStatus.APPROVED.value,
    DecisionStatus.EXPORTED.value,
)
DELETABLE_FROM = (
    DecisionStatus.DRAFT.value,
    DecisionStatus.APPROVED.value,
    DecisionStatus.ROLLED_BACK.value,
)

SORTABLE_FIELDS = {
    "created_at": Decision.created_at,
    "module_id": Decision.module_id,
    "entity_type": Decision.entity_type,
    "action_type": Decision.action_type,
    "status": Decision.status,
    "entity_name": Decision.entity_name,
}


def normalize_entity_type(value: Optional[str]) -> str:
    try:
        return EntityType((value or "").strip().lower()).value
    except ValueError:
        raise ValidationError(f"Unknown entity_type: {value!r}")


def normalize_action_type(value: Optional[str]) -> str:
    try:
        return ActionType((value or "").strip().lower()).value
    except ValueError:
        raise ValidationError(f"Unknown action_type: {value!r}")


def coerce_id(value) -> Optional[uuid.UUID]:
    """UUID or None; an unparseable id simply matches no row."""
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except (ValueError, TypeError):
        return None


class DecisionService:
    def __init__(self, db: AsyncSession, actor: Optional[str] = None):
        self.db = db
        self.actor = actor

    # ── Reads ─────────────────────────────────────────────────────────

    async def find(self, decision_id) -> Optional[Decision]:
        """Load any version by row id, refreshing whatever the session holds."""
        row_id = coerce_id(decision_id)
        if row_id is None:
            return None
        result = await self.db.execute(
            select(Decision)
            .where(Decision.id == row_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get(self, decision_id) -> Decision:
        decision = await self.find(decision_id)
        if not decision:
            raise NotFoundError(f"Decision {decision_id} not found")
        return decision

    async def get_current(self, decision_id) -> Decision:
        """Load a row and require it to be the current version of its group."""
        decision = await self.get(decision_id)
        if not decision.is_current:
            raise InvalidStateError(
                f"Decision {decision_id} is version {decision.version} and has been "
                f"superseded by {decision.superseded_by}",
                decision_id=str(decision.id),
            )
        return decision

    async def history(self, group_id) -> list[Decision]:
        """All versions of a decision group, oldest first."""
        gid = coerce_id(group_id)
        rows = []
        if gid is not None:
            result = await self.db.execute(
                select(Decision)
                .where(Decision.decision_group_id == gid)
                .order_by(Decision.version.asc())
                .execution_options(populate_existing=True)
            )
            rows = list(result.scalars().all())
        if not rows:
            raise NotFoundError(f"No decisions found for group {group_id}")
        return rows

    async def list_decisions(
        self,
        account_id: uuid.UUID,
        *,
        module_id: Optional[int] = None,
        entity_type: Optional[str] = None,
        action_type: Optional[str] = None,
        status: Optional[str] = None,
        current_only: bool = True,
        sort_by: Optional[str] = None,
        sort_order: Optional[str] = None,
        page: Optional[int] = None,
        limit: Optional[int] = None,
    ) -> dict:
        """Paginated listing. Superseded rows only appear with current_only=False."""
        settings = get_settings()
        page, limit = clamp_page(page, limit, settings.decisions_page_limit, settings.max_page_limit)

        query = select(Decision).where(Decision.account_id == account_id)
        if current_only:
            query = query.where(Decision.is_current.is_(True))
        if module_id is not None:
            query = query.where(Decision.module_id == module_id)
        if entity_type:
            query = query.where(Decision.entity_type == normalize_entity_type(entity_type))
        if action_type:
            query = query.where(Decision.action_type == normalize_action_type(action_type))
        if status:
            try:
                query = query.where(Decision.status == DecisionStatus(status.strip().lower()).value)
            except ValueError:
                raise ValidationError(f"Unknown status: {status!r}")

        total = (await self.db.execute(
            select(func.count()).select_from(query.subquery())
        )).scalar() or 0

        sort_col = SORTABLE_FIELDS.get(sort_by or "created_at", Decision.created_at)
        ordering = sort_col.asc() if (sort_order or "").upper() == "ASC" else sort_col.desc()
        result = await self.db.execute(
            query.order_by(ordering, Decision.id).offset((page - 1) * limit).limit(limit)
        )
        return {
            "data": list(result.scalars().all()),
            "meta": page_meta(total, page, limit),
        }

    async def summary(self, account_id: uuid.UUID) -> dict:
        """Counts of current decisions by status, module, entity type and action."""
        base = [Decision.account_id == account_id, Decision.is_current.is_(True)]

        async def _count_by(column) -> dict:
            result = await self.db.execute(
                select(column, func.count(Decision.id)).where(*base).group_by(column).order_by(column)
            )
            return {key: count for key, count in result.all()}

        by_status = await _count_by(Decision.status)
        return {
            "total": sum(by_status.values()),
            "by_status": by_status,
            "by_module": await _count_by(Decision.module_id),
            "by_entity_type": await _count_by(Decision.entity_type),
            "by_action_type": await _count_by(Decision.action_type),
        }

    # ── Writes ────────────────────────────────────────────────────────

    async def create(
        self,
        *,
        account_id: uuid.UUID,
        module_id: int,
        entity_type: str,
        entity_id: str,
        action_type: str,
        audit_id: Optional[uuid.UUID] = None,
        entity_name: Optional[str] = None,
        before_value: Optional[dict] = None,
        after_value: Optional[dict] = None,
        rationale: Optional[str] = None,
        evidence: Optional[dict] = None,
    ) -> Decision:
        """Insert version 1 of a new decision group in draft."""
        entity_type = normalize_entity_type(entity_type)
        action_type = normalize_action_type(action_type)
        if not entity_id or not str(entity_id).strip():
            raise ValidationError("entity_id must not be empty")
        if len(str(entity_id).strip()) > ENTITY_ID_MAX_LENGTH:
            raise ValidationError(f"entity_id must be at most {ENTITY_ID_MAX_LENGTH} characters")
        if entity_name is not None and len(entity_name) > ENTITY_NAME_MAX_LENGTH:
            raise ValidationError(f"entity_name must be at most {ENTITY_NAME_MAX_LENGTH} characters")
        if module_id not in MODULE_ID_RANGE:
            raise ValidationError(f"module_id must be between 1 and 23, got {module_id}")

        decision = Decision(
            id=uuid.uuid4(),
            decision_group_id=uuid.uuid4(),
            version=1,
            is_current=True,
            account_id=account_id,
            audit_id=audit_id,
            module_id=module_id,
            entity_type=entity_type,
            entity_id=str(entity_id).strip(),
            entity_name=entity_name,
            action_type=action_type,
            before_value=before_value,
            after_value=after_value,
            rationale=rationale,
            evidence=evidence,
            status=DecisionStatus.DRAFT.value,
            created_by=self.actor,
        )
        self.db.add(decision)
        await self.db.flush()

        log_activity(
            self.db,
            actor=self.actor,
            action="decision_created",
            category="decisions",
            description=f"Proposed {action_type} for {entity_type} {entity_name or entity_id}",
            entity_type="decision",
            entity_id=str(decision.id),
            details={"module_id": module_id, "decision_group_id": str(decision.decision_group_id)},
        )
        logger.info(f"Decision {decision.id} created ({entity_type}/{action_type})")
        return await self.get(decision.id)

    async def update(
        self,
        decision_id,
        *,
        after_value: Optional[dict] = None,
        rationale: Optional[str] = None,
        evidence: Optional[dict] = None,
    ) -> Decision:
        """
        Issue a new version on top of the current one. The stored row is never
        edited: it only loses is_current and gains superseded_by. The new
        version is an unattached draft.
        """
        current = await self.get_current(decision_id)
        if current.status in FROZEN_STATUSES:
            raise InvalidStateError(
                f"Cannot update a {current.status} decision; roll it back first",
                decision_id=str(current.id),
            )

        merged_after = dict(current.after_value or {})
        if after_value:
            merged_after.update(after_value)

        new_id = uuid.uuid4()
        snapshot = {
            "group_id": current.decision_group_id,
            "version": current.version,
            "status": current.status,
        }
        new_version = Decision(
            id=new_id,
            decision_group_id=current.decision_group_id,
            version=current.version + 1,
            is_current=True,
            account_id=current.account_id,
            audit_id=current.audit_id,
            module_id=current.module_id,
            entity_type=current.entity_type,
            entity_id=current.entity_id,
            entity_name=current.entity_name,
            action_type=current.action_type,
            before_value=current.before_value,
            after_value=merged_after,
            rationale=rationale if rationale is not None else current.rationale,
            evidence=evidence if evidence is not None else current.evidence,
            status=DecisionStatus.DRAFT.value,
            change_set_id=None,
            created_by=self.actor,
        )

        async with self.db.begin_nested():
            flipped = await self.db.execute(
                update(Decision)
                .where(
                    Decision.id == current.id,
                    Decision.is_current.is_(True),
                    Decision.status == snapshot["status"],
                )
                .values(is_current=False, superseded_by=new_id)
                .execution_options(synchronize_session=False)
            )
            if flipped.rowcount != 1:
                raise InvalidStateError(
                    f"Decision {current.id} changed while being updated; reload and retry",
                    decision_id=str(current.id),
                )
            self.db.add(new_version)
            await self.db.flush()

        log_activity(
            self.db,
            actor=self.actor,
            action="decision_updated",
            category="decisions",
            description=f"Version {snapshot['version'] + 1} supersedes version {snapshot['version']}",
            entity_type="decision",
            entity_id=str(new_id),
            details={"previous_id": str(current.id), "decision_group_id": str(snapshot["group_id"])},
        )
        logger.info(f"Decision group {snapshot['group_id']} now at version {snapshot['version'] + 1}")
        await self.find(current.id)  # refresh the superseded row held by the session
        return await self.get(new_id)

    async def approve(self, decision_id, allow_noop: bool = False) -> Decision:
        """
        draft -> approved. With allow_noop an already-approved decision is
        returned unchanged instead of raising (UI retry / double submit).
        """
        row_id = coerce_id(decision_id)
        if row_id is not None:
            result = await self.db.execute(
                update(Decision)
                .where(
                    Decision.id == row_id,
                    Decision.is_current.is_(True),
                    Decision.status == DecisionStatus.DRAFT.value,
                )
                .values(status=DecisionStatus.APPROVED.value)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 1:
                log_activity(
                    self.db,
                    actor=self.actor,
                    action="decision_approved",
                    category="decisions",
                    description=f"Approved decision {row_id}",
                    entity_type="decision",
                    entity_id=str(row_id),
                )
                logger.info(f"Decision {row_id} approved")
                return await self.get(row_id)

        decision = await self.get_current(decision_id)
        if allow_noop and decision.status == DecisionStatus.APPROVED.value:
            return decision
        raise InvalidTransitionError(
            f"Only draft decisions can be approved (decision is {decision.status})",
            decision_id=str(decision.id),
        )

    async def rollback(self, decision_id, reason: Optional[str] = None) -> Decision:
        """
        Abandon the current version: status -> rolled_back, detached from its
        change set. No new version is created. With a reason (bulk reject),
        the reason is appended to the rationale.
        """
        decision = await self.get_current(decision_id)
        if decision.status not in ROLLBACK_FROM:
            raise InvalidTransitionError(
                f"Cannot roll back a {decision.status} decision",
                decision_id=str(decision.id),
            )

        values = {"status": DecisionStatus.ROLLED_BACK.value, "change_set_id": None}
        if reason:
            values["rationale"] = f"{decision.rationale}\n\nRejected: {reason}" if decision.rationale else f"Rejected: {reason}"

        previous_change_set = decision.change_set_id
        result = await self.db.execute(
            update(Decision)
            .where(
                Decision.id == decision.id,
                Decision.is_current.is_(True),
                Decision.status == decision.status,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise InvalidStateError(
                f"Decision {decision.id} changed while being rolled back; reload and retry",
                decision_id=str(decision.id),
            )

        log_activity(
            self.db,
            actor=self.actor,
            action="decision_rejected" if reason else "decision_rolled_back",
            category="decisions",
            description=f"Rolled back decision {decision.id} from {decision.status}",
            entity_type="decision",
            entity_id=str(decision.id),
            details={
                "from_status": decision.status,
                "change_set_id": str(previous_change_set) if previous_change_set else None,
                "reason": reason,
            },
        )
        logger.info(f"Decision {decision.id} rolled back from {decision.status}")
        return await self.get(decision.id)

    async def delete(self, decision_id) -> dict:
        """Delete the whole decision group. Exported/applied decisions are kept for the audit trail."""
        decision = await self.get_current(decision_id)
        if decision.status not in DELETABLE_FROM:
            raise InvalidStateError(
                f"Cannot delete an {decision.status} decision",
                decision_id=str(decision.id),
            )

        group_id = decision.decision_group_id
        frozen = aliased(Decision)
        result = await self.db.execute(
            delete(Decision)
            .where(
                Decision.decision_group_id == group_id,
                ~select(frozen.id)
                .where(
                    frozen.decision_group_id == group_id,
                    frozen.status.in_(FROZEN_STATUSES),
                )
                .exists(),
            )
            .execution_options(synchronize_session=False)
        )
        if not result.rowcount:
            raise InvalidStateError(
                f"Decision {decision.id} changed while being deleted; reload and retry",
                decision_id=str(decision.id),
            )
        self.db.expunge(decision)

        log_activity(
            self.db,
            actor=self.actor,
            action="decision_deleted",
            category="decisions",
            description=f"Deleted decision group {group_id} ({result.rowcount} versions)",
            entity_type="decision",
            entity_id=str(decision.id),
            details={"decision_group_id": str(group_id), "versions": result.rowcount},
        )
        logger.info(f"Decision group {group_id} deleted")
        return {"deleted": True, "id": str(decision.id)}
