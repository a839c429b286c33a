from __future__ import annotations

from ..extensions import db
from rxledger.time_utils import to_utc_z, utcnow


PAYMENT_METHODS = ("cash", "card", "insurance")


class Sale(db.Model):
    """
    Completed sale document.

    A Sale row is only written after every batch deduction and sale movement
    for it has been committed; a sale that fails to commit leaves no row.
    """
    __tablename__ = "sales"
    __table_args__ = (
        db.UniqueConstraint("sale_number", name="uq_sales_sale_number"),
        db.Index("ix_sales_created", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    # Human-readable document number (e.g., "SALE-00000042")
    sale_number = db.Column(db.String(64), nullable=False)

    payment_method = db.Column(db.String(16), nullable=False)

    # All amounts in cents
    subtotal_cents = db.Column(db.Integer, nullable=False, default=0)
    total_cents = db.Column(db.Integer, nullable=False, default=0)
    cost_of_goods_cents = db.Column(db.Integer, nullable=False, default=0)

    cashier_id = db.Column(db.Integer, nullable=True)
    customer_name = db.Column(db.String(255), nullable=True)
    notes = db.Column(db.Text, nullable=True)

    # Refund audit trail
    refunded = db.Column(db.Boolean, nullable=False, default=False)
    refunded_at = db.Column(db.DateTime(timezone=True), nullable=True)
    refunded_by = db.Column(db.Integer, nullable=True)
    refund_reason = db.Column(db.String(255), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, server_default=db.func.now())

    version_id = db.Column(db.Integer, nullable=False, default=1)
    __mapper_args__ = {"version_id_col": version_id}

    lines = db.relationship("SaleLine", backref="sale", lazy=True, order_by="SaleLine.id")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "sale_number": self.sale_number,
            "payment_method": self.payment_method,
            "subtotal_cents": self.subtotal_cents,
            "total_cents": self.total_cents,
            "cost_of_goods_cents": self.cost_of_goods_cents,
            "cashier_id": self.cashier_id,
            "customer_name": self.customer_name,
            "notes": self.notes,
            "refunded": self.refunded,
            "refunded_at": to_utc_z(self.refunded_at),
            "refunded_by": self.refunded_by,
            "refund_reason": self.refund_reason,
            "created_at": to_utc_z(self.created_at),
            "lines": [line.to_dict() for line in self.lines],
        }


class SaleLine(db.Model):
    """One line per FIFO deduction: a sold product quantity from one batch."""
    __tablename__ = "sale_lines"
    __table_args__ = (
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    sale_id = db.Column(db.Integer, db.ForeignKey("sales.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    batch_id = db.Column(db.Integer, db.ForeignKey("stock_batches.id"), nullable=False, index=True)

    quantity = db.Column(db.Integer, nullable=False)
    unit_price_cents = db.Column(db.Integer, nullable=False)
    unit_cost_cents = db.Column(db.Integer, nullable=False)
    line_total_cents = db.Column(db.Integer, nullable=False)

    # Movement written for this deduction
    movement_id = db.Column(db.Integer, db.ForeignKey("stock_movements.id"), nullable=True)

    product = db.relationship("Product")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "sale_id": self.sale_id,
            "product_id": self.product_id,
            "product_name": self.product.name if self.product else None,
            "batch_id": self.batch_id,
            "quantity": self.quantity,
            "unit_price_cents": self.unit_price_cents,
            "unit_cost_cents": self.unit_cost_cents,
            "line_total_cents": self.line_total_cents,
            "movement_id": self.movement_id,
        }
