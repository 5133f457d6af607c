"""
Bulk Operation Service — Approve/reject many decisions in one call.

Each id is transitioned independently through DecisionService; a failing id
becomes {"id", "error", "detail"} in the result list and never aborts the
rest of the batch.
"""

import logging
from typing import Optional, Union
from sqlalchemy.ext.asyncio import AsyncSession

from adaudit.errors import DecisionEngineError
from adaudit.models import Decision
from adaudit.services.activity import log_activity
from adaudit.services.decision_service import DecisionService

logger = logging.getLogger(__name__)

BulkResult = Union[Decision, dict]


class BulkOperationService:
    def __init__(self, db: AsyncSession, actor: Optional[str] = None):
        self.db = db
        self.actor = actor
        self.decisions = DecisionService(db, actor=actor)

    async def bulk_approve(self, ids: list[str]) -> list[BulkResult]:
        """Approve each id; an already-approved id counts as success."""
        results = []
        for decision_id in ids:
            try:
                results.append(await self.decisions.approve(decision_id, allow_noop=True))
            except DecisionEngineError as e:
                logger.warning(f"Bulk approve: {decision_id} rejected ({e.kind}: {e.message})")
                results.append(_failure(decision_id, e))
        self._log_batch("batch_decisions_approved", "approved", ids, results)
        return results

    async def bulk_reject(self, ids: list[str], reason: str) -> list[BulkResult]:
        """Reject = rollback with the reason appended to each rationale."""
        results = []
        for decision_id in ids:
            try:
                results.append(await self.decisions.rollback(decision_id, reason=reason))
            except DecisionEngineError as e:
                logger.warning(f"Bulk reject: {decision_id} rejected ({e.kind}: {e.message})")
                results.append(_failure(decision_id, e))
        self._log_batch("batch_decisions_rejected", "rejected", ids, results, reason=reason)
        return results

    def _log_batch(self, action: str, verb: str, ids: list[str], results: list[BulkResult], reason: str = None):
        failed = [r for r in results if isinstance(r, dict)]
        log_activity(
            self.db,
            actor=self.actor,
            action=action,
            category="decisions",
            description=f"Batch {verb} {len(ids) - len(failed)} of {len(ids)} decisions",
            details={
                "ids": [str(i) for i in ids],
                "failed": failed,
                "reason": reason,
            },
            status="partial" if failed else "success",
        )


def _failure(decision_id, error: DecisionEngineError) -> dict:
    return {"id": str(decision_id), "error": error.kind, "detail": error.message}
