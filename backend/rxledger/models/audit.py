from __future__ import annotations

from ..extensions import db
from rxledger.time_utils import to_utc_z, utcnow


class AuditEvent(db.Model):
    """
    Append-only audit spine for cross-cutting domain events
    (sale.completed, stock.received, stocktake.approved, compensation.failed, ...).
    """
    __tablename__ = "audit_events"
    __table_args__ = (
        db.Index("ix_audit_events_entity", "entity_type", "entity_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    event_type = db.Column(db.String(64), nullable=False, index=True)
    # sales, inventory, stocktake, alerts, system
    module = db.Column(db.String(32), nullable=False, index=True)

    entity_type = db.Column(db.String(32), nullable=False)
    entity_id = db.Column(db.String(64), nullable=True)

    actor_id = db.Column(db.Integer, nullable=True)
    note = db.Column(db.Text, nullable=True)
    payload = db.Column(db.JSON, nullable=True)

    occurred_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, index=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "event_type": self.event_type,
            "module": self.module,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "actor_id": self.actor_id,
            "note": self.note,
            "payload": self.payload,
            "occurred_at": to_utc_z(self.occurred_at),
        }


class DataMigration(db.Model):
    """Persisted marker for versioned one-time data migrations."""
    __tablename__ = "data_migrations"

    version = db.Column(db.String(64), primary_key=True)
    description = db.Column(db.String(255), nullable=True)
    result = db.Column(db.JSON, nullable=True)
    applied_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    def to_dict(self) -> dict:
        return {
            "version": self.version,
            "description": self.description,
            "result": self.result,
            "applied_at": to_utc_z(self.applied_at),
        }
