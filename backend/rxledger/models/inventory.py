from __future__ import annotations

from ..extensions import db
from rxledger.time_utils import to_utc_z, to_iso_date, utcnow


# Movement types (signed quantity; positive = stock in)
MOVEMENT_PURCHASE = "purchase"
MOVEMENT_SALE = "sale"
MOVEMENT_ADJUSTMENT = "adjustment"
MOVEMENT_STOCKTAKE = "stocktake"
MOVEMENT_RETURN = "return"

MOVEMENT_TYPES = (
    MOVEMENT_PURCHASE,
    MOVEMENT_SALE,
    MOVEMENT_ADJUSTMENT,
    MOVEMENT_STOCKTAKE,
    MOVEMENT_RETURN,
)


class Product(db.Model):
    """
    Product master data (single pharmacy location).

    Quantity on hand is NOT a column here. It is always derived from
    StockMovement rows (see services.ledger_service).

    Soft delete: clearing is_active hides the product from alerts, valuation
    and sales while keeping its ledger history.
    """
    __tablename__ = "products"
    __table_args__ = (
        db.Index("ix_products_active_name", "is_active", "name"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    name = db.Column(db.String(255), nullable=False)
    ndc_code = db.Column(db.String(64), nullable=True, index=True)
    barcode = db.Column(db.String(64), nullable=True, index=True)
    category = db.Column(db.String(120), nullable=True)
    manufacturer = db.Column(db.String(255), nullable=True)
    dosage_form = db.Column(db.String(64), nullable=True)
    strength = db.Column(db.String(64), nullable=True)
    description = db.Column(db.Text, nullable=True)

    # Authoritative storage in cents (frontend may only format for display)
    selling_price_cents = db.Column(db.Integer, nullable=False, default=0)

    # Low-stock threshold and suggested reorder size
    reorder_point = db.Column(db.Integer, nullable=False, default=0)
    reorder_quantity = db.Column(db.Integer, nullable=False, default=0)

    is_active = db.Column(db.Boolean, nullable=False, default=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=db.func.now(),
        onupdate=utcnow,
    )

    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<Product id={self.id} name={self.name!r} active={self.is_active}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "ndc_code": self.ndc_code,
            "barcode": self.barcode,
            "category": self.category,
            "manufacturer": self.manufacturer,
            "dosage_form": self.dosage_form,
            "strength": self.strength,
            "description": self.description,
            "selling_price_cents": self.selling_price_cents,
            "reorder_point": self.reorder_point,
            "reorder_quantity": self.reorder_quantity,
            "is_active": self.is_active,
            "version_id": self.version_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class StockBatch(db.Model):
    """
    A received lot of a product, consumed FIFO by expiry date.

    remaining_quantity is the only mutable stock figure in the system. It is
    changed exclusively through batch_service.apply_batch_delta(), a
    compare-and-set update, so concurrent allocations cannot drive it below
    zero. Exhausted batches (remaining_quantity == 0) are kept for history.

    batch_number is a human label and is not unique across time.
    """
    __tablename__ = "stock_batches"
    __table_args__ = (
        db.CheckConstraint("remaining_quantity >= 0", name="ck_stock_batches_remaining_non_negative"),
        db.Index("ix_stock_batches_product_expiry", "product_id", "expiry_date", "id"),
        db.Index("ix_stock_batches_product_remaining", "product_id", "remaining_quantity"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)

    batch_number = db.Column(db.String(64), nullable=False)
    expiry_date = db.Column(db.Date, nullable=False, index=True)

    # Per-unit cost in cents (pack costs are divided by pack_size at intake)
    unit_cost_cents = db.Column(db.Integer, nullable=False)
    pack_size = db.Column(db.Integer, nullable=False, default=1)

    quantity_received = db.Column(db.Integer, nullable=False)
    remaining_quantity = db.Column(db.Integer, nullable=False)

    supplier = db.Column(db.String(255), nullable=True)
    received_date = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, server_default=db.func.now())

    product = db.relationship("Product", backref=db.backref("batches", lazy=True))

    def __repr__(self) -> str:
        return (
            f"<StockBatch id={self.id} product_id={self.product_id} "
            f"batch={self.batch_number!r} remaining={self.remaining_quantity}>"
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "batch_number": self.batch_number,
            "expiry_date": to_iso_date(self.expiry_date),
            "unit_cost_cents": self.unit_cost_cents,
            "pack_size": self.pack_size,
            "quantity_received": self.quantity_received,
            "remaining_quantity": self.remaining_quantity,
            "supplier": self.supplier,
            "received_date": to_utc_z(self.received_date),
            "created_at": to_utc_z(self.created_at),
        }


class StockMovement(db.Model):
    """
    Append-only, signed quantity change against a product (optionally a batch).

    Rows are never updated or deleted. Corrections are new rows (a stocktake
    variance, a return, or a reversal written by a compensation).
    """
    __tablename__ = "stock_movements"
    __table_args__ = (
        db.Index("ix_stock_movements_product_created", "product_id", "created_at"),
        db.Index("ix_stock_movements_reference", "reference"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    batch_id = db.Column(db.Integer, db.ForeignKey("stock_batches.id"), nullable=True, index=True)

    # purchase, sale, adjustment, stocktake, return
    type = db.Column(db.String(32), nullable=False, index=True)

    # Positive = stock in, negative = stock out
    quantity = db.Column(db.Integer, nullable=False)

    unit_cost_cents = db.Column(db.Integer, nullable=False, default=0)
    selling_price_cents = db.Column(db.Integer, nullable=True)

    reason = db.Column(db.String(255), nullable=True)
    # Sale number, stocktake session id, batch id, ...
    reference = db.Column(db.String(64), nullable=True)

    actor_id = db.Column(db.Integer, nullable=True)

    created_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=db.func.now(),
        index=True,
    )

    product = db.relationship("Product")
    batch = db.relationship("StockBatch")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "batch_id": self.batch_id,
            "type": self.type,
            "quantity": self.quantity,
            "unit_cost_cents": self.unit_cost_cents,
            "selling_price_cents": self.selling_price_cents,
            "reason": self.reason,
            "reference": self.reference,
            "actor_id": self.actor_id,
            "created_at": to_utc_z(self.created_at),
        }
