from __future__ import annotations

import uuid
from collections import deque
from datetime import datetime, timezone
from typing import Any

from mobilecrm.context import get_correlation_id

# recent entries only; older ones are dropped once the buffer is full
MAX_AUDIT_ENTRIES = 1000
audit_entries: deque[dict[str, Any]] = deque(maxlen=MAX_AUDIT_ENTRIES)


def changed_fields(before: dict[str, Any] | None, after: dict[str, Any] | None) -> list[str]:
    """Top-level keys whose value differs between two snapshots."""
    old = before or {}
    new = after or {}
    return sorted(key for key in old.keys() | new.keys() if old.get(key) != new.get(key))


def record(
    actor_user_id: str,
    entity_type: str,
    entity_id: str,
    action: str,
    before: dict[str, Any] | None,
    after: dict[str, Any] | None,
    correlation_id: str | None = None,
) -> dict[str, Any]:
    entry = {
        "id": str(uuid.uuid4()),
        "occurred_at": datetime.now(timezone.utc).isoformat(),
        "actor_user_id": actor_user_id,
        "entity_type": entity_type,
        "entity_id": entity_id,
        "action": action,
        "before": before,
        "after": after,
        "changes": changed_fields(before, after) if action == "update" else [],
        "correlation_id": correlation_id or get_correlation_id(),
    }
    audit_entries.append(entry)
    return entry


def entries_for(entity_type: str, entity_id: str) -> list[dict[str, Any]]:
    return [entry for entry in audit_entries if (entry["entity_type"], entry["entity_id"]) == (entity_type, entity_id)]
