"""Audit trail helpers."""
from __future__ import annotations

from ..extensions import db
from ..models import Log


def record(action: str, entity: str, entity_id: object, details: str, performed_by: str | None = None) -> Log:
    """Add an audit entry to the current session; the caller commits."""
    entry = Log(
        action=action,
        entity=entity,
        entity_id=str(entity_id) if entity_id is not None else None,
        details=details,
        performed_by=performed_by or "system",
    )
    db.session.add(entry)
    return entry
