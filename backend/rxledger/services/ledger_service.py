# Overview: Service-layer operations for the movement ledger; encapsulates business logic and database work.

from __future__ import annotations

import logging

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError

from ..extensions import db
from ..errors import PersistenceError, ValidationError
from ..models import StockMovement
from ..models.inventory import MOVEMENT_TYPES
from .concurrency import commit_step
"""
Movement Ledger Invariants (authoritative)

- Stock movements are append-only; rows are never updated or deleted.
- Current quantity for a product is SUM(quantity) over ALL of its movements.
  It is never stored as a column and the sum is order-independent.
- Movements are listed most-recent-first for display only.
- The ledger itself does not guard against negative stock; allocation does,
  against batch remaining quantities.
"""

logger = logging.getLogger(__name__)


def record_movement(
    *,
    product_id: int,
    movement_type: str,
    quantity: int,
    unit_cost_cents: int = 0,
    batch_id: int | None = None,
    selling_price_cents: int | None = None,
    reason: str | None = None,
    reference: str | None = None,
    actor_id: int | None = None,
    commit: bool = True,
) -> StockMovement:
    """
    Append one immutable movement and return it (with id assigned).

    commit=False leaves the row flushed in the current unit of work.
    """
    if movement_type not in MOVEMENT_TYPES:
        raise ValidationError(f"Invalid movement type: {movement_type}")
    if isinstance(quantity, bool) or not isinstance(quantity, int):
        raise ValidationError("quantity must be an integer")
    if quantity == 0:
        raise ValidationError("quantity cannot be 0")

    movement = StockMovement(
        product_id=product_id,
        batch_id=batch_id,
        type=movement_type,
        quantity=quantity,
        unit_cost_cents=unit_cost_cents or 0,
        selling_price_cents=selling_price_cents,
        reason=reason,
        reference=reference,
        actor_id=actor_id,
    )
    try:
        db.session.add(movement)
        db.session.flush()
    except SQLAlchemyError as exc:
        db.session.rollback()
        raise PersistenceError(
            "Failed to write stock movement",
            details={"product_id": product_id, "type": movement_type, "quantity": quantity},
        ) from exc

    if commit:
        commit_step(f"{movement_type} movement for product {product_id}")

    logger.debug(
        "Recorded %s movement id=%s product=%s batch=%s qty=%s",
        movement_type, movement.id, product_id, batch_id, quantity,
    )
    return movement


def get_current_quantity(product_id: int) -> int:
    """Sum of all signed movement quantities for the product."""
    q = db.session.query(
        func.coalesce(func.sum(StockMovement.quantity), 0)
    ).filter(StockMovement.product_id == product_id)
    return int(q.scalar() or 0)


def get_current_quantities(product_ids=None) -> dict[int, int]:
    """
    Current quantity for many products in one grouped query.

    Products without movements are included (as 0) when product_ids is given.
    """
    q = db.session.query(
        StockMovement.product_id,
        func.coalesce(func.sum(StockMovement.quantity), 0),
    ).group_by(StockMovement.product_id)
    if product_ids is not None:
        product_ids = list(product_ids)
        if not product_ids:
            return {}
        q = q.filter(StockMovement.product_id.in_(product_ids))

    totals = {int(pid): int(total or 0) for pid, total in q.all()}
    if product_ids is not None:
        for pid in product_ids:
            totals.setdefault(pid, 0)
    return totals


def sum_quantities(movements) -> int:
    """Pure aggregation over already-fetched movements (any order)."""
    return sum(int(m.quantity) for m in movements)


def list_movements(
    *,
    product_id: int | None = None,
    reference: str | None = None,
    movement_type: str | None = None,
    limit: int = 200,
) -> list[StockMovement]:
    q = StockMovement.query
    if product_id is not None:
        q = q.filter_by(product_id=product_id)
    if reference is not None:
        q = q.filter_by(reference=reference)
    if movement_type is not None:
        q = q.filter_by(type=movement_type)

    return q.order_by(
        StockMovement.created_at.desc(),
        StockMovement.id.desc(),
    ).limit(limit).all()
