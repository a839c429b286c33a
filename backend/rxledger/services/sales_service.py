"""
Sale Transaction Orchestrator

WHY: A sale touches several batches, several movements and a sale record,
and the store gives us no transaction spanning them. Each write is committed
as its own step and recorded on a Saga so a failure part way through can be
compensated instead of leaving stock deducted without a sale.

Lifecycle of process_sale():
    planning -> allocating -> committing -> completed | rolled back

Planning and allocating are pure reads: a sale refused there (validation,
expired head batch, insufficient stock) has written nothing.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, time, timedelta

from sqlalchemy.exc import SQLAlchemyError

from ..extensions import db
from ..errors import (
    DomainError,
    ExpiredStockError,
    InsufficientStockError,
    InvalidStateError,
    NotFoundError,
    PersistenceError,
    SaleFailedError,
    ValidationError,
)
from ..models import Product, Sale, SaleLine
from ..models.inventory import MOVEMENT_RETURN, MOVEMENT_SALE
from ..models.sales import PAYMENT_METHODS
from ..time_utils import today, to_iso_date, utcnow
from ..validation import MAX_PRICE_CENTS, coerce_int, require_date, require_positive_int
from .alert_service import generate_and_persist
from .audit_service import append_audit_event
from .batch_service import apply_batch_delta, list_available_batches, shift_batch_quantity
from .concurrency import commit_step
from .document_service import next_document_number
from .fifo_service import Deduction, fifo_order, plan_allocation
from .ledger_service import record_movement
from .pagination import paginate
from .saga import (
    STEP_BATCH_DEDUCTED,
    STEP_MOVEMENT_WRITTEN,
    Saga,
    register_compensation,
)

logger = logging.getLogger(__name__)


STEP_BATCH_RESTORED = "batch_restored"
STEP_REFUND_MARKED = "refund_marked"


@dataclass
class _PlannedLine:
    product: Product
    quantity: int
    unit_price_cents: int
    deductions: list[Deduction]


def get_sale(sale_id: int) -> Sale:
    sale = db.session.get(Sale, sale_id)
    if sale is None:
        raise NotFoundError(f"Sale {sale_id} not found", details={"sale_id": sale_id})
    return sale


def list_sales(
    *,
    from_date=None,
    to_date=None,
    refunded: bool | None = None,
    page: int | None = None,
    per_page: int | None = None,
) -> dict:
    """
    Sales newest first, optionally filtered and paginated.

    from_date and to_date are inclusive calendar days (UTC).
    """
    query = db.session.query(Sale)
    start = require_date(from_date, field_name="from") if from_date is not None else None
    end = require_date(to_date, field_name="to") if to_date is not None else None
    if start is not None and end is not None and start > end:
        raise ValidationError(
            "from must not be after to",
            details={"from": start.isoformat(), "to": end.isoformat()},
        )
    if start is not None:
        query = query.filter(Sale.created_at >= datetime.combine(start, time.min))
    if end is not None:
        query = query.filter(Sale.created_at < datetime.combine(end + timedelta(days=1), time.min))
    if refunded is not None:
        query = query.filter(Sale.refunded.is_(bool(refunded)))
    query = query.order_by(Sale.created_at.desc(), Sale.id.desc())

    sales, pagination = paginate(query, page, per_page)
    items = [sale.to_dict() for sale in sales]
    result = {"items": items, "count": len(items)}
    if pagination is not None:
        result["pagination"] = pagination
    return result


def _merge_line_items(line_items) -> list[dict]:
    """Validate raw line items and merge repeated products into one line."""
    if not isinstance(line_items, (list, tuple)) or not line_items:
        raise ValidationError("Sale must contain at least one line item")

    merged: dict[int, dict] = {}
    for raw in line_items:
        if not isinstance(raw, dict):
            raise ValidationError("Each line item must be an object")

        product_id = require_positive_int(raw.get("product_id"), field_name="product_id")
        quantity = require_positive_int(raw.get("quantity"), field_name="quantity")

        unit_price = raw.get("unit_price_cents")
        if unit_price is not None:
            unit_price = coerce_int(unit_price, field_name="unit_price_cents")
            if unit_price < 0 or unit_price > MAX_PRICE_CENTS:
                raise ValidationError(
                    "unit_price_cents is out of range",
                    details={"product_id": product_id, "unit_price_cents": unit_price},
                )

        line = merged.get(product_id)
        if line is None:
            merged[product_id] = {"product_id": product_id, "quantity": quantity, "unit_price_cents": unit_price}
            continue

        if unit_price is not None and line["unit_price_cents"] not in (None, unit_price):
            raise ValidationError(
                "Conflicting prices for the same product",
                details={"product_id": product_id},
            )
        line["quantity"] += quantity
        if unit_price is not None:
            line["unit_price_cents"] = unit_price

    return list(merged.values())


def _plan_sale(line_items) -> list[_PlannedLine]:
    """Planning and allocating phases. Reads only."""
    as_of = today()
    planned: list[_PlannedLine] = []

    for item in _merge_line_items(line_items):
        product = db.session.get(Product, item["product_id"])
        if product is None:
            raise NotFoundError(
                f"Product {item['product_id']} not found",
                details={"product_id": item["product_id"]},
            )
        if not product.is_active:
            raise ValidationError(
                f"{product.name} is not available for sale",
                details={"product_id": product.id},
            )

        batches = fifo_order(list_available_batches(product.id))

        # An expired head batch would be consumed first; refuse the whole sale
        if batches and batches[0].expiry_date < as_of:
            head = batches[0]
            raise ExpiredStockError(
                f"{product.name} batch {head.batch_number} expired on {to_iso_date(head.expiry_date)}",
                details={
                    "product_id": product.id,
                    "batch_id": head.id,
                    "expiry_date": to_iso_date(head.expiry_date),
                },
            )

        allocation = plan_allocation(product.id, item["quantity"], batches)
        if not allocation.success:
            raise InsufficientStockError(
                f"{product.name}: {allocation.error}",
                details={
                    "product_id": product.id,
                    "requested": allocation.requested,
                    "available": allocation.available,
                },
            )

        unit_price = item["unit_price_cents"]
        if unit_price is None:
            unit_price = int(product.selling_price_cents or 0)

        planned.append(_PlannedLine(
            product=product,
            quantity=item["quantity"],
            unit_price_cents=unit_price,
            deductions=allocation.deductions,
        ))

    return planned


def _commit_sale(
    planned: list[_PlannedLine],
    saga: Saga,
    *,
    sale_number: str,
    payment_method: str,
    cashier_id: int | None,
    customer_name: str | None,
    notes: str | None,
) -> Sale:
    """Committing phase. Every completed step is recorded on the saga."""
    posted: list[tuple[_PlannedLine, Deduction, int]] = []

    for line in planned:
        for d in line.deductions:
            apply_batch_delta(d.batch_id, expected_remaining=d.expected_remaining, delta=-d.quantity)
            saga.record(STEP_BATCH_DEDUCTED, batch_id=d.batch_id, quantity=d.quantity)

            movement = record_movement(
                product_id=d.product_id,
                batch_id=d.batch_id,
                movement_type=MOVEMENT_SALE,
                quantity=-d.quantity,
                unit_cost_cents=d.unit_cost_cents,
                selling_price_cents=line.unit_price_cents,
                reason="Sale",
                reference=sale_number,
                actor_id=cashier_id,
            )
            saga.record(
                STEP_MOVEMENT_WRITTEN,
                movement_id=movement.id,
                product_id=d.product_id,
                batch_id=d.batch_id,
                type=MOVEMENT_SALE,
                quantity=-d.quantity,
                unit_cost_cents=d.unit_cost_cents,
                reference=sale_number,
                actor_id=cashier_id,
            )
            posted.append((line, d, movement.id))

    sale = Sale(
        sale_number=sale_number,
        payment_method=payment_method,
        cashier_id=cashier_id,
        customer_name=customer_name,
        notes=notes,
    )
    subtotal = 0
    cost_of_goods = 0
    for line, d, movement_id in posted:
        line_total = d.quantity * line.unit_price_cents
        subtotal += line_total
        cost_of_goods += d.quantity * d.unit_cost_cents
        sale.lines.append(SaleLine(
            product_id=d.product_id,
            batch_id=d.batch_id,
            quantity=d.quantity,
            unit_price_cents=line.unit_price_cents,
            unit_cost_cents=d.unit_cost_cents,
            line_total_cents=line_total,
            movement_id=movement_id,
        ))
    sale.subtotal_cents = subtotal
    sale.total_cents = subtotal
    sale.cost_of_goods_cents = cost_of_goods

    try:
        db.session.add(sale)
        db.session.flush()
    except SQLAlchemyError as exc:
        db.session.rollback()
        raise PersistenceError(f"Failed to write sale {sale_number}", details={"sale_number": sale_number}) from exc
    commit_step(f"sale {sale_number}")
    return sale


def _after_commit(sale: Sale, product_ids: list[int]) -> None:
    """Alert refresh and audit. Failures here never undo a completed sale."""
    for product_id in product_ids:
        try:
            generate_and_persist(product_id)
        except (DomainError, SQLAlchemyError):
            db.session.rollback()
            logger.exception("Alert refresh failed for product %s after sale %s", product_id, sale.sale_number)

    try:
        append_audit_event(
            event_type="sale.completed",
            module="sales",
            entity_type="sale",
            entity_id=sale.id,
            actor_id=sale.cashier_id,
            note=f"Sale {sale.sale_number} completed",
            payload={
                "sale_number": sale.sale_number,
                "total_cents": sale.total_cents,
                "lines": len(sale.lines),
            },
        )
    except SQLAlchemyError:
        db.session.rollback()
        logger.exception("Audit write failed for sale %s", sale.sale_number)


def process_sale(
    line_items,
    payment_method: str,
    cashier_id: int | None,
    customer_name: str | None = None,
    notes: str | None = None,
) -> Sale:
    """
    Run one sale end to end.

    Raises:
        ValidationError / NotFoundError: bad input, nothing written
        ExpiredStockError: a product's earliest batch is expired, nothing written
        InsufficientStockError: a line cannot be covered, nothing written
        SaleFailedError: a write failed and every applied step was undone
        CompensationFailure: a write failed and some steps could not be undone
    """
    if payment_method not in PAYMENT_METHODS:
        raise ValidationError(
            f"Invalid payment method: {payment_method}",
            details={"allowed": list(PAYMENT_METHODS)},
        )
    if cashier_id is not None:
        cashier_id = coerce_int(cashier_id, field_name="cashier_id")

    planned = _plan_sale(line_items)

    sale_number = next_document_number(document_type="SALE", prefix="SALE", pad=8)
    saga = Saga("sale", reference=sale_number)

    try:
        sale = _commit_sale(
            planned,
            saga,
            sale_number=sale_number,
            payment_method=payment_method,
            cashier_id=cashier_id,
            customer_name=customer_name,
            notes=notes,
        )
    except (DomainError, SQLAlchemyError) as exc:
        logger.warning("Sale %s failed while committing, rolling back: %s", sale_number, exc)
        saga.compensate()
        cause = exc.code if isinstance(exc, DomainError) else exc.__class__.__name__
        raise SaleFailedError(
            f"Sale {sale_number} failed and stock was restored",
            details={"sale_number": sale_number, "cause": cause, "message": str(exc)},
        ) from exc

    logger.info(
        "Sale %s completed: %d line(s), total %s cents",
        sale.sale_number, len(sale.lines), sale.total_cents,
    )
    _after_commit(sale, [line.product.id for line in planned])
    return sale


@register_compensation(STEP_REFUND_MARKED)
def _unmark_refund(payloads: list[dict]) -> list[dict]:
    unresolved = []
    for p in payloads:
        try:
            sale = get_sale(p["sale_id"])
            sale.refunded = False
            sale.refunded_at = None
            sale.refunded_by = None
            sale.refund_reason = None
            commit_step(f"refund flag of sale {p['sale_id']}")
        except (DomainError, SQLAlchemyError) as exc:
            db.session.rollback()
            unresolved.append({"kind": STEP_REFUND_MARKED, "sale_id": p["sale_id"], "error": str(exc)})
    return unresolved


@register_compensation(STEP_BATCH_RESTORED)
def _take_back_restores(payloads: list[dict]) -> list[dict]:
    unresolved = []
    for p in payloads:
        try:
            shift_batch_quantity(p["batch_id"], -int(p["quantity"]))
        except (DomainError, SQLAlchemyError) as exc:
            db.session.rollback()
            unresolved.append({
                "kind": STEP_BATCH_RESTORED,
                "batch_id": p["batch_id"],
                "quantity": -int(p["quantity"]),
                "error": str(exc),
            })
    return unresolved


def refund_sale(sale_id: int, actor_id: int | None = None, reason: str | None = None) -> Sale:
    """
    Refund a completed sale in full: put every line's quantity back on its
    batch and write matching return movements.

    The refunded flag is claimed first (optimistic version check), so two
    concurrent refunds cannot both restore stock.
    """
    sale = get_sale(sale_id)
    if sale.refunded:
        raise InvalidStateError(
            f"Sale {sale.sale_number} is already refunded",
            details={"sale_id": sale.id},
        )

    sale.refunded = True
    sale.refunded_at = utcnow()
    sale.refunded_by = actor_id
    sale.refund_reason = (reason or "").strip() or None
    commit_step(f"refund flag of sale {sale.sale_number}")

    saga = Saga("refund", reference=sale.sale_number)
    saga.record(STEP_REFUND_MARKED, sale_id=sale.id)

    lines = list(sale.lines)
    try:
        for line in lines:
            shift_batch_quantity(line.batch_id, line.quantity)
            saga.record(STEP_BATCH_RESTORED, batch_id=line.batch_id, quantity=line.quantity)

            movement = record_movement(
                product_id=line.product_id,
                batch_id=line.batch_id,
                movement_type=MOVEMENT_RETURN,
                quantity=line.quantity,
                unit_cost_cents=line.unit_cost_cents,
                selling_price_cents=line.unit_price_cents,
                reason=f"Refund of {sale.sale_number}",
                reference=sale.sale_number,
                actor_id=actor_id,
            )
            saga.record(
                STEP_MOVEMENT_WRITTEN,
                movement_id=movement.id,
                product_id=line.product_id,
                batch_id=line.batch_id,
                type=MOVEMENT_RETURN,
                quantity=line.quantity,
                unit_cost_cents=line.unit_cost_cents,
                reference=sale.sale_number,
                actor_id=actor_id,
            )
    except (DomainError, SQLAlchemyError) as exc:
        logger.warning("Refund of %s failed, rolling back: %s", sale.sale_number, exc)
        saga.compensate()
        raise PersistenceError(
            f"Refund of {sale.sale_number} failed and was rolled back",
            details={"sale_id": sale_id, "rolled_back": True},
        ) from exc

    logger.info("Sale %s refunded by %s", sale.sale_number, actor_id)

    try:
        append_audit_event(
            event_type="sale.refunded",
            module="sales",
            entity_type="sale",
            entity_id=sale.id,
            actor_id=actor_id,
            note=sale.refund_reason,
            payload={"sale_number": sale.sale_number, "total_cents": sale.total_cents},
        )
    except SQLAlchemyError:
        db.session.rollback()
        logger.exception("Audit write failed for refund of %s", sale.sale_number)

    return get_sale(sale_id)
