from __future__ import annotations

from ..extensions import db
from rxledger.time_utils import to_utc_z, to_iso_date, utcnow


ALERT_LOW_STOCK = "low_stock"
ALERT_OUT_OF_STOCK = "out_of_stock"
ALERT_EXPIRING_SOON = "expiring_soon"
ALERT_EXPIRED = "expired"

SEVERITY_LOW = "low"
SEVERITY_MEDIUM = "medium"
SEVERITY_HIGH = "high"
SEVERITY_CRITICAL = "critical"


class Alert(db.Model):
    """
    Derived stock signal. Regenerable at any time from products, batches and
    the movement ledger; rows exist so users can mark them read.
    """
    __tablename__ = "alerts"
    __table_args__ = (
        # Dedup lookup: (product, type, batch) within the trailing window
        db.Index("ix_alerts_product_type_batch_created", "product_id", "type", "batch_id", "created_at"),
        db.Index("ix_alerts_read_created", "read", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    product_name = db.Column(db.String(255), nullable=True)

    type = db.Column(db.String(32), nullable=False)
    severity = db.Column(db.String(16), nullable=False)
    message = db.Column(db.String(512), nullable=False)

    batch_id = db.Column(db.Integer, db.ForeignKey("stock_batches.id"), nullable=True)
    expiry_date = db.Column(db.Date, nullable=True)

    read = db.Column(db.Boolean, nullable=False, default=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "product_name": self.product_name,
            "type": self.type,
            "severity": self.severity,
            "message": self.message,
            "batch_id": self.batch_id,
            "expiry_date": to_iso_date(self.expiry_date),
            "read": self.read,
            "created_at": to_utc_z(self.created_at),
        }
