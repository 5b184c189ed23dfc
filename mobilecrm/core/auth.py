from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import bcrypt
from fastapi import Depends, HTTPException, status
from jose import ExpiredSignatureError, JWTError, jwt
from sqlalchemy.orm import Session
from starlette.requests import Request

from mobilecrm.context import get_correlation_id
from mobilecrm.core.config import get_settings
from mobilecrm.core.context import current_context
from mobilecrm.core.database import get_db
from mobilecrm.identity.models import User
from mobilecrm.metrics import observe_auth_failure


logger = logging.getLogger("mobilecrm.auth")


@dataclass
class AuthUser:
    sub: str
    role: str


@dataclass
class ActorUser:
    user_id: uuid.UUID
    role: str
    team_id: uuid.UUID | None = None
    name: str = ""
    email: str = ""
    correlation_id: str | None = None

    @property
    def is_privileged(self) -> bool:
        return self.role in {"admin", "manager"}


def hash_password(password: str) -> str:
    salt = bcrypt.gensalt(rounds=get_settings().bcrypt_rounds)
    return bcrypt.hashpw(password.encode("utf-8"), salt).decode("utf-8")


def verify_password(password: str, password_hash: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        return False


def create_access_token(user_id: uuid.UUID | str, role: str, expires_minutes: int | None = None) -> str:
    settings = get_settings()
    issued_at = datetime.now(timezone.utc)
    lifetime = timedelta(minutes=expires_minutes if expires_minutes is not None else settings.jwt_expires_minutes)
    claims = {
        "sub": str(user_id),
        "role": role,
        "iat": issued_at,
        "exp": issued_at + lifetime,
    }
    return jwt.encode(claims, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def _reject(reason: str, message: str) -> HTTPException:
    observe_auth_failure(reason)
    logger.warning("auth.rejected", extra={"reason": reason})
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=message,
        headers={"WWW-Authenticate": "Bearer"},
    )


async def get_auth_user(request: Request) -> AuthUser:
    auth_header = request.headers.get("authorization", "")
    scheme, _, token = auth_header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise _reject("missing_token", "Access denied. No token provided.")

    settings = get_settings()
    try:
        payload = jwt.decode(token.strip(), settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except ExpiredSignatureError:
        raise _reject("expired_token", "Token expired.")
    except JWTError:
        raise _reject("invalid_token", "Invalid token.")

    subject = payload.get("sub")
    if not isinstance(subject, str) or not subject:
        raise _reject("invalid_token", "Invalid token.")
    return AuthUser(sub=subject, role=str(payload.get("role", "user")))


def get_current_user(
    request: Request,
    auth_user: AuthUser = Depends(get_auth_user),
    db: Session = Depends(get_db),
) -> ActorUser:
    try:
        user_id = uuid.UUID(auth_user.sub)
    except ValueError:
        raise _reject("invalid_token", "Invalid token.")

    user = db.get(User, user_id)
    if user is None:
        raise _reject("unknown_user", "Invalid token. User not found.")
    if not user.is_active:
        raise _reject("inactive_user", "Account is deactivated.")

    context = current_context(request)
    if context is not None:
        context.user_id = str(user.id)

    # role is read from the store so demotions apply to already issued tokens
    return ActorUser(
        user_id=user.id,
        role=user.role,
        team_id=user.team_id,
        name=user.name,
        email=user.email,
        correlation_id=get_correlation_id(),
    )
