"""
Activity Service — Appends audit-trail entries in the caller's transaction.
"""

from typing import Optional
from sqlalchemy.ext.asyncio import AsyncSession
from adaudit.models import ActivityLog


def log_activity(
    db: AsyncSession,
    *,
    action: str,
    category: str,
    description: str,
    actor: Optional[str] = None,
    entity_type: Optional[str] = None,
    entity_id: Optional[str] = None,
    details: Optional[dict] = None,
    status: str = "success",
) -> None:
    db.add(ActivityLog(
        actor=actor,
        action=action,
        category=category,
        description=description,
        entity_type=entity_type,
        entity_id=entity_id,
        details=details,
        status=status,
    ))
