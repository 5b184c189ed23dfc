from __future__ import annotations

import string
import uuid
from contextvars import ContextVar, Token

MAX_CORRELATION_ID_LENGTH = 128
_ALLOWED_CHARS = frozenset(string.ascii_letters + string.digits + "-_.:")

correlation_id_var: ContextVar[str | None] = ContextVar("correlation_id", default=None)


def normalize_correlation_id(raw: str | None) -> str:
    """Accept a client supplied id when it is safe to echo, otherwise mint one."""
    value = "".join(char for char in (raw or "").strip() if char in _ALLOWED_CHARS)
    return value[:MAX_CORRELATION_ID_LENGTH] or str(uuid.uuid4())


def set_correlation_id(value: str | None) -> Token[str | None]:
    return correlation_id_var.set(value)


def reset_correlation_id(token: Token[str | None]) -> None:
    correlation_id_var.reset(token)


def get_correlation_id() -> str | None:
    return correlation_id_var.get()
