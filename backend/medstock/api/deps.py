"""MedStock — FastAPI dependencies (auth, DB, permissions, notifications)."""
from typing import Annotated
from uuid import UUID

from fastapi import Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from medstock.db.session import get_db
from medstock.services.notification_gateway import NotificationGateway, get_notification_gateway

DbSession = Annotated[AsyncSession, Depends(get_db)]

# ── Permission keys ─────────────────────────────────────────────────────────
PERM_EXPIRY_CONFIGURE = "expiry:configure"
PERM_EXPIRY_RUN = "expiry:run"
PERM_ALERTS_READ = "alerts:read"
PERM_ALERTS_MANAGE = "alerts:manage"
PERM_QUARANTINE_READ = "quarantine:read"
PERM_QUARANTINE_MANAGE = "quarantine:manage"

# ── Role → permissions matrix ────────────────────────────────────────────────
_ADMIN_PERMS = {
    PERM_EXPIRY_CONFIGURE,
    PERM_EXPIRY_RUN,
    PERM_ALERTS_READ, PERM_ALERTS_MANAGE,
    PERM_QUARANTINE_READ, PERM_QUARANTINE_MANAGE,
}

_HOSPITAL_MANAGER_PERMS = {
    PERM_EXPIRY_RUN,
    PERM_ALERTS_READ, PERM_ALERTS_MANAGE,
    PERM_QUARANTINE_READ, PERM_QUARANTINE_MANAGE,
}

_PHARMACY_STAFF_PERMS = {
    PERM_ALERTS_READ, PERM_ALERTS_MANAGE,
    PERM_QUARANTINE_READ,
}

PERMISSION_MATRIX: dict[str, set[str]] = {
    "ADMIN": _ADMIN_PERMS,
    "HOSPITAL_MANAGER": _HOSPITAL_MANAGER_PERMS,
    "PHARMACY_STAFF": _PHARMACY_STAFF_PERMS,
}


class CurrentUser:
    """User identity from the JWT — set on request.state by middleware."""

    def __init__(self, id: UUID, username: str, role: str):
        self.id = id
        self.username = username
        self.role = role

    def has_permission(self, permission: str) -> bool:
        return permission in PERMISSION_MATRIX.get(self.role, set())


async def require_auth(request: Request) -> CurrentUser:
    """Require authenticated user. Raise 401 if not logged in."""
    user = getattr(request.state, "user", None)
    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
        )
    return user


def require_permission(permission: str):
    """Dependency factory: require specific RBAC permission."""

    async def _check(user: CurrentUser = Depends(require_auth)) -> CurrentUser:
        if not user.has_permission(permission):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Permission denied: '{permission}' required. Your role: {user.role}",
            )
        return user

    return _check


async def get_gateway() -> NotificationGateway:
    return get_notification_gateway()


Gateway = Annotated[NotificationGateway, Depends(get_gateway)]
