"""Request gates for FastAPI routes.

Every gate resolves the bearer token through ``AuthService.authenticate`` and
then narrows access: any signed-in account, admins only, verified email only,
or the owner of a path-addressed account (admins pass every ownership check).

The service's own routes use ``get_current_account``, ``require_admin`` and
``require_owner_or_admin``. ``get_optional_account`` and ``require_verified_email``
are exported for routers mounted alongside them: content that renders
differently for signed-in callers, and features reserved for verified
addresses.
"""

from __future__ import annotations

from typing import Optional

from fastapi import Depends, Header, Path

from authkeep.logging import get_logger
from authkeep.service.auth import AuthContext
from authkeep.service.errors import ForbiddenError
from authkeep.service.runtime import get_runtime

logger = get_logger(__name__)


async def get_current_account(
    authorization: Optional[str] = Header(None),
) -> AuthContext:
    runtime = get_runtime()
    return await runtime.auth.authenticate(authorization)


async def get_optional_account(
    authorization: Optional[str] = Header(None),
) -> Optional[AuthContext]:
    runtime = get_runtime()
    return await runtime.auth.authenticate_optional(authorization)


async def require_admin(
    principal: AuthContext = Depends(get_current_account),
) -> AuthContext:
    if principal.role != "admin":
        logger.warning("admin_gate_refused", account_id=principal.account_id)
        raise ForbiddenError("access denied: admin only")
    return principal


async def require_verified_email(
    principal: AuthContext = Depends(get_current_account),
) -> AuthContext:
    if not principal.is_email_verified:
        raise ForbiddenError(
            "please verify your email address to access this resource",
            detail={"reason": "email_not_verified"},
        )
    return principal


async def require_owner_or_admin(
    account_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_current_account),
) -> AuthContext:
    if principal.role == "admin" or principal.account_id == account_id:
        return principal
    logger.warning(
        "ownership_gate_refused",
        account_id=principal.account_id,
        target_account_id=account_id,
    )
    raise ForbiddenError("access denied: you can only access your own resources")


__all__ = [
    "get_current_account",
    "get_optional_account",
    "require_admin",
    "require_owner_or_admin",
    "require_verified_email",
]
