from __future__ import annotations

from ..extensions import db
from rxledger.time_utils import to_utc_z, utcnow


STOCKTAKE_STATUS_COUNTING = "counting"
STOCKTAKE_STATUS_APPROVED = "approved"
STOCKTAKE_STATUS_CANCELLED = "cancelled"
STOCKTAKE_STATUSES = (
    STOCKTAKE_STATUS_COUNTING,
    STOCKTAKE_STATUS_APPROVED,
    STOCKTAKE_STATUS_CANCELLED,
)


class StocktakeSession(db.Model):
    """
    Physical count reconciliation session.

    LIFECYCLE:
    1. counting: items are freely upserted, variance recomputed on each write
    2. approved: variances posted to the movement ledger as stocktake movements
    3. cancelled: terminal, nothing posted
    """
    __tablename__ = "stocktake_sessions"
    __table_args__ = (
        db.UniqueConstraint("session_number", name="uq_stocktake_sessions_number"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    # Document number (e.g., "ST-000001")
    session_number = db.Column(db.String(64), nullable=False)

    status = db.Column(db.String(16), nullable=False, default=STOCKTAKE_STATUS_COUNTING, index=True)
    notes = db.Column(db.Text, nullable=True)

    created_by = db.Column(db.Integer, nullable=True)
    approved_by = db.Column(db.Integer, nullable=True)
    cancelled_by = db.Column(db.Integer, nullable=True)

    started_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    approved_at = db.Column(db.DateTime(timezone=True), nullable=True)
    cancelled_at = db.Column(db.DateTime(timezone=True), nullable=True)
    cancellation_reason = db.Column(db.Text, nullable=True)

    items = db.relationship("StocktakeItem", backref="session", lazy=True, order_by="StocktakeItem.id")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "session_number": self.session_number,
            "status": self.status,
            "notes": self.notes,
            "created_by": self.created_by,
            "approved_by": self.approved_by,
            "cancelled_by": self.cancelled_by,
            "started_at": to_utc_z(self.started_at),
            "completed_at": to_utc_z(self.completed_at),
            "approved_at": to_utc_z(self.approved_at),
            "cancelled_at": to_utc_z(self.cancelled_at),
            "cancellation_reason": self.cancellation_reason,
        }


class StocktakeItem(db.Model):
    """
    Counted quantity for one product within a session.

    Invariant: once adjusted is True, variance equals the quantity of the
    movement referenced by adjustment_movement_id.
    """
    __tablename__ = "stocktake_items"
    __table_args__ = (
        db.UniqueConstraint("session_id", "product_id", name="uq_stocktake_items_session_product"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    session_id = db.Column(db.Integer, db.ForeignKey("stocktake_sessions.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)

    system_quantity = db.Column(db.Integer, nullable=False)
    counted_quantity = db.Column(db.Integer, nullable=False)
    # counted_quantity - system_quantity, recomputed server-side on every write
    variance = db.Column(db.Integer, nullable=False)

    adjusted = db.Column(db.Boolean, nullable=False, default=False)
    adjustment_movement_id = db.Column(db.Integer, db.ForeignKey("stock_movements.id"), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    product = db.relationship("Product")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "session_id": self.session_id,
            "product_id": self.product_id,
            "system_quantity": self.system_quantity,
            "counted_quantity": self.counted_quantity,
            "variance": self.variance,
            "adjusted": self.adjusted,
            "adjustment_movement_id": self.adjustment_movement_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class DocumentSequence(db.Model):
    """
    Atomic document sequences (one row per document type).

    WHY: Prevent race conditions when generating sale and stocktake numbers.
    """
    __tablename__ = "document_sequences"
    __table_args__ = (
        db.UniqueConstraint("document_type", name="uq_doc_sequences_type"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    document_type = db.Column(db.String(32), nullable=False)
    next_number = db.Column(db.Integer, nullable=False, default=1)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "document_type": self.document_type,
            "next_number": self.next_number,
            "updated_at": to_utc_z(self.updated_at),
        }
