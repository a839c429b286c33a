# Overview: Service-layer operations for stock batches; encapsulates business logic and database work.

from __future__ import annotations

import logging

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError

from ..extensions import db
from ..errors import NotFoundError, PersistenceError, StaleBatchError, ValidationError
from ..models import StockBatch
from .concurrency import commit_step
"""
Batch Store Invariants (authoritative)

- remaining_quantity >= 0 at all times (also a CHECK constraint).
- remaining_quantity only changes through apply_batch_delta(), which is a
  compare-and-set on the previously observed value:
      UPDATE stock_batches SET remaining_quantity = :expected + :delta
      WHERE id = :id AND remaining_quantity = :expected
  A lost race matches zero rows and raises StaleBatchError; it never
  overwrites a concurrent writer's result.
- FIFO order is expiry_date ascending, then id (creation order) for ties.
"""

logger = logging.getLogger(__name__)


def get_batch(batch_id: int) -> StockBatch:
    batch = db.session.get(StockBatch, batch_id)
    if batch is None:
        raise NotFoundError(f"Batch {batch_id} not found", details={"batch_id": batch_id})
    return batch


def list_available_batches(product_id: int) -> list[StockBatch]:
    """Batches with stock left, in FIFO (earliest expiry first) order."""
    return (
        StockBatch.query
        .filter(
            StockBatch.product_id == product_id,
            StockBatch.remaining_quantity > 0,
        )
        .order_by(StockBatch.expiry_date.asc(), StockBatch.id.asc())
        .all()
    )


def list_batches(*, product_id: int | None = None, include_exhausted: bool = False) -> list[StockBatch]:
    q = StockBatch.query
    if product_id is not None:
        q = q.filter(StockBatch.product_id == product_id)
    if not include_exhausted:
        q = q.filter(StockBatch.remaining_quantity > 0)
    return q.order_by(StockBatch.expiry_date.asc(), StockBatch.id.asc()).all()


def insert_batch(
    *,
    product_id: int,
    batch_number: str,
    expiry_date,
    quantity: int,
    unit_cost_cents: int,
    pack_size: int = 1,
    supplier: str | None = None,
    received_date=None,
    commit: bool = True,
) -> StockBatch:
    batch = StockBatch(
        product_id=product_id,
        batch_number=batch_number,
        expiry_date=expiry_date,
        unit_cost_cents=unit_cost_cents,
        pack_size=pack_size,
        quantity_received=quantity,
        remaining_quantity=quantity,
        supplier=supplier,
    )
    if received_date is not None:
        batch.received_date = received_date

    try:
        db.session.add(batch)
        db.session.flush()
    except SQLAlchemyError as exc:
        db.session.rollback()
        raise PersistenceError(
            "Failed to create stock batch",
            details={"product_id": product_id, "batch_number": batch_number},
        ) from exc

    if commit:
        commit_step(f"batch {batch_number} for product {product_id}")
    return batch


def apply_batch_delta(
    batch_id: int,
    *,
    expected_remaining: int,
    delta: int,
    commit: bool = True,
) -> int:
    """
    Compare-and-set remaining_quantity from expected_remaining to
    expected_remaining + delta. Returns the new remaining quantity.

    Raises:
        ValidationError: result would be negative (nothing written)
        StaleBatchError: remaining_quantity no longer equals expected_remaining
        PersistenceError: the store rejected the write
    """
    new_remaining = expected_remaining + delta
    if new_remaining < 0:
        raise ValidationError(
            f"Batch {batch_id} would go negative",
            details={"batch_id": batch_id, "remaining": expected_remaining, "delta": delta},
        )

    stmt = (
        update(StockBatch)
        .where(
            StockBatch.id == batch_id,
            StockBatch.remaining_quantity == expected_remaining,
        )
        .values(remaining_quantity=new_remaining)
    )

    try:
        result = db.session.execute(stmt)
    except SQLAlchemyError as exc:
        db.session.rollback()
        raise PersistenceError(
            f"Failed to update batch {batch_id}",
            details={"batch_id": batch_id, "delta": delta},
        ) from exc

    if result.rowcount != 1:
        db.session.rollback()
        raise StaleBatchError(
            f"Batch {batch_id} changed concurrently",
            details={"batch_id": batch_id, "expected_remaining": expected_remaining, "delta": delta},
        )

    if commit:
        commit_step(f"batch {batch_id} remaining quantity")
    return new_remaining


def shift_batch_quantity(batch_id: int, delta: int, *, attempts: int = 3) -> int:
    """
    Apply delta against whatever the batch currently holds, re-reading the
    value before each compare-and-set attempt.

    Only for corrections (compensations, refunds); sales deduct against the
    snapshot they were planned on.
    """
    last_exc: Exception | None = None
    for _ in range(max(1, attempts)):
        db.session.expire_all()
        batch = get_batch(batch_id)
        try:
            return apply_batch_delta(
                batch_id,
                expected_remaining=int(batch.remaining_quantity),
                delta=delta,
            )
        except StaleBatchError as exc:
            last_exc = exc
            logger.info("Retrying update of batch %s after concurrent change", batch_id)
    raise last_exc


def restore_batch_quantity(batch_id: int, quantity: int, *, attempts: int = 3) -> int:
    """Add quantity back to a batch."""
    if quantity <= 0:
        raise ValidationError("restore quantity must be greater than zero")
    return shift_batch_quantity(batch_id, quantity, attempts=attempts)


def delete_batch(batch_id: int) -> None:
    """Remove a batch that never received its purchase movement."""
    batch = get_batch(batch_id)
    db.session.delete(batch)
    commit_step(f"removal of batch {batch_id}")
