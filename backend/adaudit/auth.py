"""
Authentication — JWT (operator sessions) and API-key (programmatic) auth.

- Frontend: JWT issued by the account platform. Include: Authorization: Bearer <jwt>
- Automation: API_KEY. Include: Authorization: Bearer <API_KEY>

In development with no API_KEY set, auth is skipped for local dev.
The dependency resolves the actor id recorded as created_by on decisions and
change sets.
"""

import logging
from datetime import datetime, timezone, timedelta
from typing import Optional

from fastapi import Depends, HTTPException
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import JWTError, jwt

from adaudit.config import get_settings

logger = logging.getLogger(__name__)

ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = 60 * 24  # 24 hours

API_KEY_ACTOR = "api-key"
DEV_ACTOR = "dev-no-auth"

_bearer_scheme = HTTPBearer(auto_error=False)


def create_access_token(subject: str, expires_minutes: int = ACCESS_TOKEN_EXPIRE_MINUTES) -> str:
    settings = get_settings()
    expire = datetime.now(timezone.utc) + timedelta(minutes=expires_minutes)
    return jwt.encode({"sub": str(subject), "exp": expire}, settings.secret_key, algorithm=ALGORITHM)


def decode_access_token(token: str) -> Optional[dict]:
    settings = get_settings()
    try:
        return jwt.decode(token, settings.secret_key, algorithms=[ALGORITHM])
    except JWTError:
        return None


async def require_auth(
    credentials: HTTPAuthorizationCredentials = Depends(_bearer_scheme),
) -> str:
    """
    Accept either a JWT or the API_KEY and return the actor id:
    the token's subject, "api-key", or "dev-no-auth" when auth is disabled.
    """
    settings = get_settings()
    api_key = settings.api_key

    # Dev convenience: skip auth when no key is configured
    if not api_key:
        if settings.is_production:
            raise HTTPException(
                status_code=500,
                detail="Server misconfiguration: API_KEY must be set in production.",
            )
        return DEV_ACTOR

    if not credentials:
        raise HTTPException(
            status_code=401,
            detail="Missing authorization. Include header: Authorization: Bearer <token>",
        )

    token = credentials.credentials

    payload = decode_access_token(token)
    if payload and payload.get("sub"):
        return str(payload["sub"])

    if token == api_key:
        return API_KEY_ACTOR

    logger.warning("Rejected request with invalid bearer token")
    raise HTTPException(
        status_code=401,
        detail="Invalid or expired token. Please log in again.",
    )
