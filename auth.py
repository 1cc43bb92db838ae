"""Request gate: bearer-token authentication followed by role authorization.

``get_current_user`` is the FastAPI dependency every protected route uses:

1. Extracts the ``Authorization: Bearer <access_token>`` header. Anything
   else is rejected before the identity provider is contacted.
2. Resolves the token to an identity through the identity provider.
3. Loads the caller's authorization record (role) from the ``profiles``
   table. A valid identity without a record is rejected; no role is assumed.

All three failures answer 401. On success the handler receives an immutable
``schemas.AuthContext``.
"""
from __future__ import annotations

from typing import Annotated, Optional

import structlog
from fastapi import Depends, HTTPException, Request, status
from structlog.contextvars import bind_contextvars
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

import crud
import models
from database import get_db
from schemas import AuthContext, Identity, Role
from supabase_client import IdentityProvider, SupabaseError, get_identity_provider

logger = structlog.get_logger(__name__)

BEARER_PREFIX = "Bearer "


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def extract_bearer_token(authorization: Optional[str]) -> str:
    if not authorization or not authorization.startswith(BEARER_PREFIX):
        raise _unauthorized("Authorization header missing or invalid")
    token = authorization[len(BEARER_PREFIX):].strip()
    if not token:
        raise _unauthorized("Authorization header missing or invalid")
    return token


async def authenticate(token: str, provider: IdentityProvider) -> Identity:
    """Who is calling. Raises HTTPException(401) on any provider failure."""
    try:
        identity = await provider.verify_token(token)
    except SupabaseError as exc:
        logger.warning("Token rejected by identity provider", reason=exc.message)
        raise _unauthorized("Invalid or expired token")
    if identity is None or not identity.id:
        raise _unauthorized("Invalid or expired token")
    return identity


def authorize(db: Session, identity: Identity) -> models.AuthorizationRecord:
    """What the caller may do. Absence of a record is treated as unauthenticated."""
    try:
        record = crud.get_authorization_record(db, identity.id)
    except SQLAlchemyError as exc:
        logger.error("Role lookup failed", user_id=identity.id, exc=str(exc))
        raise _unauthorized("User role not found")
    if record is None:
        logger.warning("No authorization record for identity", user_id=identity.id)
        raise _unauthorized("User role not found")
    return record


# Helper to extract Authorization header (works with FastAPI DI)
def _get_authorization_header(request: Request) -> Optional[str]:
    return request.headers.get("Authorization")


async def get_current_user(
    authorization: Annotated[Optional[str], Depends(_get_authorization_header)],
    provider: IdentityProvider = Depends(get_identity_provider),
    db: Session = Depends(get_db),
) -> AuthContext:
    token = extract_bearer_token(authorization)
    identity = await authenticate(token, provider)
    record = authorize(db, identity)
    try:
        role = Role(record.role)
    except ValueError:
        logger.error("Unknown role on authorization record", user_id=identity.id, role=record.role)
        raise _unauthorized("User role not found")
    bind_contextvars(user_id=identity.id, role=role.value)
    return AuthContext(
        user_id=identity.id,
        email=identity.email or record.email,
        role=role,
        access_token=token,
    )


def require_role(*roles: Role):
    """Dependency factory restricting a route to the given roles (403 otherwise)."""
    allowed = set(roles)

    async def _require_role(current_user: AuthContext = Depends(get_current_user)) -> AuthContext:
        if current_user.role not in allowed:
            logger.warning(
                "Role not permitted for route",
                role=current_user.role.value,
                allowed=sorted(r.value for r in allowed),
            )
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Forbidden")
        return current_user

    return _require_role


require_applicant = require_role(Role.applicant)
require_company = require_role(Role.company)
