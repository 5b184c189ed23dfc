from collections.abc import Callable

from fastapi import Depends, HTTPException, status

from mobilecrm.core.auth import ActorUser, get_current_user

INSUFFICIENT_PERMISSIONS = "Access denied. Insufficient permissions."


def ensure_role(user: ActorUser, *roles: str) -> None:
    if user.role not in roles:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=INSUFFICIENT_PERMISSIONS)


def require_roles(*roles: str) -> Callable[[ActorUser], ActorUser]:
    def checker(user: ActorUser = Depends(get_current_user)) -> ActorUser:
        ensure_role(user, *roles)
        return user

    return checker
