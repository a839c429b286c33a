# Overview: Service-layer operations for stock intake; encapsulates business logic and database work.

from __future__ import annotations

import logging

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from ..extensions import db
from ..errors import DomainError, NotFoundError, ValidationError
from ..models import Product, StockBatch
from ..models.inventory import MOVEMENT_PURCHASE
from ..time_utils import parse_iso_datetime
from ..validation import require_date, require_positive_int
from .alert_service import generate_and_persist
from .audit_service import append_audit_event
from .batch_service import insert_batch
from .ledger_service import record_movement
from .saga import STEP_BATCH_CREATED, Saga
"""
Receiving Invariants (authoritative)

- A batch's unit_cost_cents is a PER-UNIT cost. It is validated here, at
  write time, and never corrected retroactively:
    - unit cost must be > 0
    - when pack_size > 1 the caller supplies the pack cost; the per-unit cost
      is pack cost / pack_size (nearest cent, half-up)
    - per-unit cost <= MAX_UNIT_COST_CENTS
    - quantity * per-unit cost <= MAX_BATCH_VALUE_CENTS
- A received batch is always matched by a purchase movement of +quantity.
  If that movement cannot be written, the batch is removed again.
"""

logger = logging.getLogger(__name__)


def per_unit_cost_cents(cost_cents: int, pack_size: int) -> int:
    """Per-unit cost from a pack cost, rounded half-up to the nearest cent."""
    if pack_size <= 1:
        return cost_cents
    return (cost_cents + pack_size // 2) // pack_size


def validate_unit_cost(
    *,
    quantity: int,
    unit_cost_cents,
    pack_size: int = 1,
    max_unit_cost_cents: int,
    max_batch_value_cents: int,
) -> int:
    """Return the validated per-unit cost in cents, or raise ValidationError."""
    cost = require_positive_int(unit_cost_cents, field_name="unit_cost_cents")
    unit_cost = per_unit_cost_cents(cost, pack_size)
    if unit_cost <= 0:
        raise ValidationError(
            "unit cost rounds to zero for this pack size",
            details={"unit_cost_cents": cost, "pack_size": pack_size},
        )

    if unit_cost > max_unit_cost_cents:
        raise ValidationError(
            f"unit cost {unit_cost} cents exceeds the maximum of {max_unit_cost_cents}",
            details={"unit_cost_cents": unit_cost, "max_unit_cost_cents": max_unit_cost_cents},
        )

    batch_value = quantity * unit_cost
    if batch_value > max_batch_value_cents:
        raise ValidationError(
            "batch value is implausibly high; was a pack cost entered as a unit cost?",
            details={
                "quantity": quantity,
                "unit_cost_cents": unit_cost,
                "batch_value_cents": batch_value,
                "max_batch_value_cents": max_batch_value_cents,
            },
        )
    return unit_cost


def receive_stock(
    product_id: int,
    batch_number: str,
    expiry_date,
    quantity,
    unit_cost_cents,
    supplier: str | None = None,
    pack_size=1,
    received_date=None,
    actor_id: int | None = None,
) -> StockBatch:
    """
    Receive a new batch: insert it, then write its purchase movement.

    Raises ValidationError before any write if the input is malformed or the
    unit cost is outside the configured bounds.
    """
    product = db.session.get(Product, product_id)
    if product is None:
        raise NotFoundError(f"Product {product_id} not found", details={"product_id": product_id})
    if not product.is_active:
        raise ValidationError(f"{product.name} is inactive", details={"product_id": product_id})

    batch_number = (batch_number or "").strip()
    if not batch_number:
        raise ValidationError("batch_number is required")
    if len(batch_number) > 64:
        raise ValidationError("batch_number exceeds max length 64")

    expiry = require_date(expiry_date, field_name="expiry_date")
    quantity = require_positive_int(quantity, field_name="quantity")
    pack_size = require_positive_int(pack_size, field_name="pack_size")

    received_dt = None
    if received_date is not None:
        try:
            received_dt = parse_iso_datetime(received_date) if isinstance(received_date, str) else received_date
        except ValueError:
            raise ValidationError("received_date must be an ISO-8601 datetime")

    cfg = current_app.config
    try:
        unit_cost = validate_unit_cost(
            quantity=quantity,
            unit_cost_cents=unit_cost_cents,
            pack_size=pack_size,
            max_unit_cost_cents=int(cfg.get("MAX_UNIT_COST_CENTS", 10_000_000)),
            max_batch_value_cents=int(cfg.get("MAX_BATCH_VALUE_CENTS", 100_000_000)),
        )
    except ValidationError as exc:
        logger.warning(
            "Rejected unit cost for product %s batch %s: %s %s",
            product_id, batch_number, exc.message, exc.details,
        )
        raise

    supplier = (supplier or "").strip() or None

    batch = insert_batch(
        product_id=product_id,
        batch_number=batch_number,
        expiry_date=expiry,
        quantity=quantity,
        unit_cost_cents=unit_cost,
        pack_size=pack_size,
        supplier=supplier,
        received_date=received_dt,
    )
    batch_id = batch.id

    saga = Saga("receipt", reference=str(batch_id))
    saga.record(STEP_BATCH_CREATED, batch_id=batch_id, quantity=quantity)

    try:
        record_movement(
            product_id=product_id,
            batch_id=batch_id,
            movement_type=MOVEMENT_PURCHASE,
            quantity=quantity,
            unit_cost_cents=unit_cost,
            reason=f"Received from {supplier}" if supplier else "Received",
            reference=str(batch_id),
            actor_id=actor_id,
        )
    except (DomainError, SQLAlchemyError):
        logger.warning("Purchase movement for batch %s failed; removing batch", batch_id)
        saga.compensate()
        raise

    logger.info(
        "Received batch %s (%s) for product %s: qty=%s unit_cost=%s",
        batch_id, batch_number, product_id, quantity, unit_cost,
    )

    try:
        generate_and_persist(product_id)
    except (DomainError, SQLAlchemyError):
        db.session.rollback()
        logger.exception("Alert refresh failed for product %s after receipt", product_id)

    try:
        append_audit_event(
            event_type="stock.received",
            module="inventory",
            entity_type="stock_batch",
            entity_id=batch_id,
            actor_id=actor_id,
            note=f"Batch {batch_number} received",
            payload={"product_id": product_id, "quantity": quantity, "unit_cost_cents": unit_cost},
        )
    except SQLAlchemyError:
        db.session.rollback()
        logger.exception("Audit write failed for batch %s", batch_id)

    return db.session.get(StockBatch, batch_id)
