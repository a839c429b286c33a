# backend/rxledger/services/stocktake_service.py
"""
Stocktake (physical count) reconciliation.

WHY: Physical counts drift from the ledger (breakage, theft, data entry).
A stocktake compares counted vs. system quantity per product and posts the
variance back into the movement ledger as stocktake movements.

LIFECYCLE:
1. counting: items freely upserted; variance recomputed on every write
2. approved: each non-zero variance posted as one stocktake movement
3. cancelled: terminal, nothing posted

Approval first moves the session out of counting, then claims each item
(compare-and-set on adjusted) before writing its movement, so an item is
posted at most once even when two approvals overlap. Each item is
all-or-nothing: a failure reverses the movement and releases the claim.
Items are independent of each other: one failing item is reported and does
not block the rest. Re-approving an approved session retries the items that
are still unadjusted.

Stocktake movements correct the ledger quantity only; batch remaining
quantities are left as they are.
"""
from __future__ import annotations

import logging

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError

from ..extensions import db
from ..errors import DomainError, InvalidStateError, NotFoundError, ValidationError
from ..models import Product, StocktakeItem, StocktakeSession
from ..models.documents import (
    STOCKTAKE_STATUS_APPROVED,
    STOCKTAKE_STATUS_CANCELLED,
    STOCKTAKE_STATUS_COUNTING,
    STOCKTAKE_STATUSES,
)
from ..models.inventory import MOVEMENT_STOCKTAKE
from ..time_utils import utcnow
from ..validation import require_non_negative_int, require_positive_int
from .audit_service import append_audit_event
from .concurrency import commit_step, lock_for_update, run_with_retry
from .document_service import next_document_number
from .ledger_service import get_current_quantity, record_movement
from .pagination import paginate
from .saga import STEP_MOVEMENT_WRITTEN, Saga, register_compensation

logger = logging.getLogger(__name__)

STEP_ITEM_CLAIMED = "item_claimed"


def get_session(session_id: int) -> StocktakeSession:
    session = db.session.get(StocktakeSession, session_id)
    if session is None:
        raise NotFoundError(f"Stocktake session {session_id} not found", details={"session_id": session_id})
    return session


def list_sessions(
    *,
    status: str | None = None,
    page: int | None = None,
    per_page: int | None = None,
) -> dict:
    """Stocktake sessions newest first, without their items."""
    query = db.session.query(StocktakeSession)
    if status is not None:
        if status not in STOCKTAKE_STATUSES:
            raise ValidationError(
                f"status must be one of {', '.join(STOCKTAKE_STATUSES)}",
                details={"status": status},
            )
        query = query.filter(StocktakeSession.status == status)
    query = query.order_by(StocktakeSession.started_at.desc(), StocktakeSession.id.desc())

    sessions, pagination = paginate(query, page, per_page)
    items = [session.to_dict() for session in sessions]
    result = {"items": items, "count": len(items)}
    if pagination is not None:
        result["pagination"] = pagination
    return result


def create_session(created_by: int | None = None, notes: str | None = None) -> StocktakeSession:
    """Open a new session in counting status."""
    session_number = next_document_number(document_type="STOCKTAKE", prefix="ST", pad=6)

    session = StocktakeSession(
        session_number=session_number,
        status=STOCKTAKE_STATUS_COUNTING,
        notes=(notes or "").strip() or None,
        created_by=created_by,
    )
    db.session.add(session)
    commit_step(f"stocktake session {session_number}")

    logger.info("Opened stocktake session %s", session_number)
    return session


def upsert_item(session_id: int, product_id: int, counted_quantity) -> StocktakeItem:
    """
    Record the physical count for a product.

    system_quantity is the ledger quantity when the product is first counted
    in this session; a re-count keeps it and only the variance changes.
    Variance is always computed here, never taken from the caller.
    """
    counted = require_non_negative_int(counted_quantity, field_name="counted_quantity")

    def _op() -> StocktakeItem:
        session = lock_for_update(
            db.session.query(StocktakeSession).filter_by(id=session_id)
        ).first()
        if session is None:
            raise NotFoundError(f"Stocktake session {session_id} not found", details={"session_id": session_id})
        if session.status != STOCKTAKE_STATUS_COUNTING:
            raise InvalidStateError(
                f"Cannot record counts on a session in {session.status} status",
                details={"session_id": session_id, "status": session.status},
            )

        if db.session.get(Product, product_id) is None:
            raise NotFoundError(f"Product {product_id} not found", details={"product_id": product_id})

        item = (
            db.session.query(StocktakeItem)
            .filter_by(session_id=session_id, product_id=product_id)
            .first()
        )
        if item is None:
            system_quantity = get_current_quantity(product_id)
            item = StocktakeItem(
                session_id=session_id,
                product_id=product_id,
                system_quantity=system_quantity,
                counted_quantity=counted,
                variance=counted - system_quantity,
            )
            db.session.add(item)
        else:
            if item.adjusted:
                raise InvalidStateError(
                    "Cannot re-count an item whose variance is already posted",
                    details={"session_id": session_id, "product_id": product_id, "item_id": item.id},
                )
            item.counted_quantity = counted
            item.variance = counted - item.system_quantity

        db.session.commit()
        return item

    return run_with_retry(_op)


def _claim_item(item_id: int) -> bool:
    """
    Compare-and-set adjusted False -> True. Only the caller whose UPDATE
    matched the row may post the item's movement.
    """
    stmt = (
        update(StocktakeItem)
        .where(StocktakeItem.id == item_id, StocktakeItem.adjusted.is_(False))
        .values(adjusted=True)
    )
    result = db.session.execute(stmt)
    if result.rowcount != 1:
        db.session.rollback()
        return False
    commit_step(f"claim of stocktake item {item_id}")
    return True


@register_compensation(STEP_ITEM_CLAIMED)
def _release_items(payloads: list[dict]) -> list[dict]:
    unresolved = []
    for p in payloads:
        try:
            db.session.execute(
                update(StocktakeItem)
                .where(StocktakeItem.id == p["item_id"])
                .values(adjusted=False, adjustment_movement_id=None)
            )
            commit_step(f"release of stocktake item {p['item_id']}")
        except (DomainError, SQLAlchemyError) as exc:
            db.session.rollback()
            unresolved.append({"kind": STEP_ITEM_CLAIMED, "item_id": p["item_id"], "error": str(exc)})
    return unresolved


def _post_item_adjustment(session: StocktakeSession, item_id: int, actor_id: int | None) -> int | None:
    """
    Claim one item, write its variance movement and link it.

    Returns the movement id, or None when another approval already claimed
    the item. On failure the movement is offset by a reversal and the claim
    released, so the item ends up either fully adjusted or untouched.
    """
    if not _claim_item(item_id):
        logger.info("Stocktake item %s already claimed by another approval", item_id)
        return None

    saga = Saga("stocktake-item", reference=str(item_id))
    saga.record(STEP_ITEM_CLAIMED, item_id=item_id)

    try:
        item = db.session.get(StocktakeItem, item_id)
        movement = record_movement(
            product_id=item.product_id,
            movement_type=MOVEMENT_STOCKTAKE,
            quantity=item.variance,
            unit_cost_cents=0,
            reason=f"Stocktake adjustment - Session {session.session_number}",
            reference=str(session.id),
            actor_id=actor_id,
        )
        saga.record(
            STEP_MOVEMENT_WRITTEN,
            movement_id=movement.id,
            product_id=movement.product_id,
            batch_id=None,
            type=MOVEMENT_STOCKTAKE,
            quantity=movement.quantity,
            unit_cost_cents=0,
            reference=str(session.id),
            actor_id=actor_id,
        )

        item = db.session.get(StocktakeItem, item_id)
        item.adjustment_movement_id = movement.id
        commit_step(f"stocktake item {item_id}")
    except (DomainError, SQLAlchemyError):
        saga.compensate()
        raise

    return movement.id


def _start_approval(session_id: int, approved_by: int | None) -> bool:
    """
    Move the session from counting to approved before anything is posted,
    so no count can change while variances are being written.

    Returns True if this call made the transition, False if the session was
    already approved.
    """
    now = utcnow()
    stmt = (
        update(StocktakeSession)
        .where(
            StocktakeSession.id == session_id,
            StocktakeSession.status == STOCKTAKE_STATUS_COUNTING,
        )
        .values(
            status=STOCKTAKE_STATUS_APPROVED,
            approved_by=approved_by,
            approved_at=now,
            completed_at=now,
        )
    )
    result = db.session.execute(stmt)
    if result.rowcount == 1:
        commit_step(f"approval of stocktake session {session_id}")
        return True

    db.session.rollback()
    session = get_session(session_id)
    if session.status == STOCKTAKE_STATUS_CANCELLED:
        raise InvalidStateError(
            "Cannot approve a cancelled stocktake session",
            details={"session_id": session_id},
        )
    return False


def approve_session(session_id: int, approved_by: int | None = None) -> dict:
    """
    Mark the session approved, then post every unclaimed non-zero variance.

    Returns {"session_id", "items_adjusted", "errors"}; errors lists
    {item_id, product_id, error} for items that could not be posted.
    """
    session = get_session(session_id)
    if session.status == STOCKTAKE_STATUS_CANCELLED:
        raise InvalidStateError(
            "Cannot approve a cancelled stocktake session",
            details={"session_id": session_id},
        )

    transitioned = False
    if session.status == STOCKTAKE_STATUS_COUNTING:
        transitioned = _start_approval(session_id, approved_by)
        session = get_session(session_id)

    pending = (
        db.session.query(StocktakeItem.id, StocktakeItem.product_id)
        .filter(
            StocktakeItem.session_id == session_id,
            StocktakeItem.adjusted.is_(False),
            StocktakeItem.variance != 0,
        )
        .order_by(StocktakeItem.id.asc())
        .all()
    )

    items_adjusted = 0
    errors: list[dict] = []
    for item_id, product_id in pending:
        try:
            if _post_item_adjustment(session, item_id, approved_by) is not None:
                items_adjusted += 1
        except (DomainError, SQLAlchemyError) as exc:
            db.session.rollback()
            logger.error(
                "Stocktake %s: adjustment for item %s (product %s) failed: %s",
                session.session_number, item_id, product_id, exc,
            )
            errors.append({"item_id": item_id, "product_id": product_id, "error": str(exc)})

    logger.info(
        "Stocktake %s approved: %d item(s) adjusted, %d error(s)",
        session.session_number, items_adjusted, len(errors),
    )
    if transitioned or items_adjusted:
        append_audit_event(
            event_type="stocktake.approved",
            module="stocktake",
            entity_type="stocktake_session",
            entity_id=session.id,
            actor_id=approved_by,
            note=f"Stocktake {session.session_number} approved",
            payload={"items_adjusted": items_adjusted, "errors": len(errors)},
        )

    return {"session_id": session_id, "items_adjusted": items_adjusted, "errors": errors}


def cancel_session(session_id: int, actor_id: int | None = None, reason: str | None = None) -> StocktakeSession:
    """Cancel a session that is still counting. Nothing is posted."""
    def _op() -> StocktakeSession:
        session = lock_for_update(
            db.session.query(StocktakeSession).filter_by(id=session_id)
        ).first()
        if session is None:
            raise NotFoundError(f"Stocktake session {session_id} not found", details={"session_id": session_id})
        if session.status != STOCKTAKE_STATUS_COUNTING:
            raise InvalidStateError(
                f"Cannot cancel a session in {session.status} status",
                details={"session_id": session_id, "status": session.status},
            )

        session.status = STOCKTAKE_STATUS_CANCELLED
        session.cancelled_by = actor_id
        session.cancelled_at = utcnow()
        session.cancellation_reason = (reason or "").strip() or None
        db.session.commit()
        return session

    return run_with_retry(_op)


def get_session_summary(session_id: int) -> dict:
    """Session with its items and variance totals."""
    session = get_session(session_id)
    items = list(session.items)
    return {
        **session.to_dict(),
        "items": [item.to_dict() for item in items],
        "items_counted": len(items),
        "items_with_variance": sum(1 for i in items if i.variance != 0),
        "items_pending": sum(1 for i in items if i.variance != 0 and not i.adjusted),
        "total_variance": sum(i.variance for i in items),
    }


def validate_counted_quantities(counts) -> list[tuple[int, int]]:
    """Normalise a bulk [{product_id, counted_quantity}] payload."""
    if not isinstance(counts, list) or not counts:
        raise ValidationError("items must be a non-empty list")
    normalised = []
    for entry in counts:
        if not isinstance(entry, dict):
            raise ValidationError("each item must be an object")
        product_id = require_positive_int(entry.get("product_id"), field_name="product_id")
        counted = require_non_negative_int(entry.get("counted_quantity"), field_name="counted_quantity")
        normalised.append((product_id, counted))
    return normalised
