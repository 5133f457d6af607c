"""
Shared utility functions.
"""

import logging
import math
import re
import uuid as uuid_mod
from datetime import datetime, timezone
from typing import Optional

from adaudit.errors import ValidationError

logger = logging.getLogger(__name__)


def parse_uuid(value, field_name: str = "id") -> uuid_mod.UUID:
    """
    Parse a string as UUID, raising a typed ValidationError on invalid input
    instead of letting a bare ValueError bubble up as a 500.
    """
    if isinstance(value, uuid_mod.UUID):
        return value
    try:
        return uuid_mod.UUID(value)
    except (ValueError, AttributeError, TypeError):
        raise ValidationError(f"Invalid UUID for '{field_name}': {value!r}")


def utcnow() -> datetime:
    """
    Return the current UTC time as a naive datetime (no tzinfo).
    Naive datetimes are used because our DB columns are TIMESTAMP WITHOUT TIME ZONE.
    """
    return datetime.now(timezone.utc).replace(tzinfo=None)


def isoformat(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def page_meta(total: int, page: int, limit: int) -> dict:
    return {
        "total": total,
        "page": page,
        "limit": limit,
        "total_pages": math.ceil(total / limit) if limit else 0,
    }


def clamp_page(page: Optional[int], limit: Optional[int], default_limit: int, max_limit: int) -> tuple[int, int]:
    """Normalise 1-based page and limit; limit is capped at max_limit."""
    page = page if page and page > 0 else 1
    limit = limit if limit and limit > 0 else default_limit
    return page, min(limit, max_limit)


def safe_filename(name: Optional[str]) -> str:
    """Replace anything that is not alphanumeric, dash or underscore."""
    return re.sub(r"[^a-zA-Z0-9_-]", "_", name or "change_set")
