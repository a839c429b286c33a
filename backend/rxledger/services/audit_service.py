# Overview: Service-layer operations for audit events; encapsulates business logic and database work.

from __future__ import annotations

from typing import Optional
from datetime import datetime

from ..extensions import db
from ..models import AuditEvent
"""
Audit Invariants (authoritative)

- Append-only audit log for cross-cutting domain events.
- No domain/business logic in the audit log itself.
- occurred_at is business time and defaults to now.
"""


def append_audit_event(
    *,
    event_type: str,
    module: str,
    entity_type: str,
    entity_id=None,
    actor_id: int | None = None,
    note: Optional[str] = None,
    payload: Optional[dict] = None,
    occurred_at: Optional[datetime] = None,
    commit: bool = True,
) -> AuditEvent:
    """
    Append-only audit event.

    - No domain logic here.
    - No deletes/updates of existing events.
    """
    ev = AuditEvent(
        event_type=event_type,
        module=module,
        entity_type=entity_type,
        entity_id=str(entity_id) if entity_id is not None else None,
        actor_id=actor_id,
        note=note,
        payload=payload,
    )
    if occurred_at is not None:
        ev.occurred_at = occurred_at
    db.session.add(ev)
    if commit:
        db.session.commit()
    else:
        db.session.flush()  # ensures ev.id is assigned without committing
    return ev


def list_audit_events(
    *,
    module: str | None = None,
    event_type: str | None = None,
    entity_id=None,
    limit: int = 200,
) -> list[AuditEvent]:
    q = AuditEvent.query
    if module is not None:
        q = q.filter_by(module=module)
    if event_type is not None:
        q = q.filter_by(event_type=event_type)
    if entity_id is not None:
        q = q.filter_by(entity_id=str(entity_id))
    return q.order_by(AuditEvent.occurred_at.desc(), AuditEvent.id.desc()).limit(limit).all()
