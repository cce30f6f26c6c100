"""Shared API dependencies: caller identity, notifier and clock"""

from dataclasses import dataclass

from fastapi import Depends, Header, HTTPException

from homezy.errors import PermissionDeniedError
from homezy.services.notifications import Notifier, get_notifier
from homezy.utils.time import Clock, utcnow

ROLES = ("homeowner", "pro", "admin")


@dataclass(frozen=True)
class Caller:
    """Identity asserted by the auth gateway in front of this service"""
    user_id: str
    role: str


async def get_caller(
    x_user_id: str | None = Header(None),
    x_user_role: str | None = Header(None),
) -> Caller:
    if not x_user_id or not x_user_role:
        raise HTTPException(status_code=401, detail="Missing caller identity headers")
    if x_user_role not in ROLES:
        raise HTTPException(status_code=401, detail=f"Unknown role '{x_user_role}'")
    return Caller(user_id=x_user_id, role=x_user_role)


def require_role(*roles: str):
    async def dependency(caller: Caller = Depends(get_caller)) -> Caller:
        if caller.role not in roles:
            raise PermissionDeniedError(
                f"This action requires role {' or '.join(roles)}",
                role=caller.role,
            )
        return caller
    return dependency


def ensure_self_or_admin(caller: Caller, professional_id: str) -> None:
    if caller.role != "admin" and caller.user_id != professional_id:
        raise PermissionDeniedError("You can only access your own account", professional_id=professional_id)


_notifier: Notifier | None = None


def get_app_notifier() -> Notifier:
    global _notifier
    if _notifier is None:
        _notifier = get_notifier()
    return _notifier


def get_clock() -> Clock:
    return utcnow
