# Overview: Service-layer operations for inventory; encapsulates business logic and database work.

from __future__ import annotations

import logging

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError

from ..extensions import db
from ..errors import ConflictError, DomainError, NotFoundError, ValidationError
from ..models import Product, StockMovement
from ..models.inventory import MOVEMENT_ADJUSTMENT
from .audit_service import append_audit_event
from .batch_service import apply_batch_delta, get_batch, list_batches
from .concurrency import commit_step, run_with_retry
from .ledger_service import get_current_quantities, get_current_quantity, record_movement
from .pagination import paginate
from .saga import STEP_BATCH_DEDUCTED, Saga
"""
Inventory Invariants (authoritative)

Inventory model:
- Quantity on hand is ledger-derived: SUM(stock_movements.quantity).
  It is never stored on Product.
- Available (sellable) quantity is batch-derived: SUM(remaining_quantity)
  over the product's batches. The two may diverge (a stocktake corrects the
  ledger without touching batches); both are reported, neither is patched
  to match the other.

Products:
- Soft delete only (is_active = False); history is kept.
- Product names are unique among active products (case-insensitive).
"""

logger = logging.getLogger(__name__)

PRODUCT_MUTABLE_FIELDS = {
    "name",
    "ndc_code",
    "barcode",
    "category",
    "manufacturer",
    "dosage_form",
    "strength",
    "description",
    "selling_price_cents",
    "reorder_point",
    "reorder_quantity",
    "is_active",
}


def apply_product_patch(p: Product, patch: dict) -> None:
    for k, v in patch.items():
        if k not in PRODUCT_MUTABLE_FIELDS:
            continue
        setattr(p, k, v)


def get_product(product_id: int) -> Product:
    product = db.session.get(Product, product_id)
    if product is None:
        raise NotFoundError(f"Product {product_id} not found", details={"product_id": product_id})
    return product


def _ensure_unique_name(name: str, *, exclude_id: int | None = None) -> None:
    q = db.session.query(Product.id).filter(
        func.lower(Product.name) == name.lower(),
        Product.is_active.is_(True),
    )
    if exclude_id is not None:
        q = q.filter(Product.id != exclude_id)
    if q.first() is not None:
        raise ConflictError(f"An active product named {name!r} already exists")


def list_products(
    *,
    include_inactive: bool = False,
    page: int | None = None,
    per_page: int | None = None,
) -> dict:
    """
    Products with their ledger quantity, optionally paginated.

    Returns a dict with 'items', 'count' and pagination metadata if paginated.
    """
    base_query = db.session.query(Product)
    if not include_inactive:
        base_query = base_query.filter(Product.is_active.is_(True))
    base_query = base_query.order_by(Product.name.asc(), Product.id.asc())

    products, pagination = paginate(base_query, page, per_page)

    quantities = get_current_quantities([p.id for p in products])
    items = []
    for p in products:
        item = p.to_dict()
        item["quantity"] = quantities.get(p.id, 0)
        items.append(item)

    result = {"items": items, "count": len(items)}
    if pagination is not None:
        result["pagination"] = pagination
    return result


def create_product(*, patch: dict, actor_id: int | None = None) -> Product:
    """Create a product from a validated patch dict."""
    name = patch.get("name")
    if not name:
        raise ValidationError("name is required")
    _ensure_unique_name(name)

    p = Product()
    apply_product_patch(p, patch)
    db.session.add(p)
    commit_step(f"product {name}")

    append_audit_event(
        event_type="product.created",
        module="inventory",
        entity_type="product",
        entity_id=p.id,
        actor_id=actor_id,
        note=f"Created product {p.name}",
    )
    return p


def update_product(product_id: int, *, patch: dict, actor_id: int | None = None) -> Product:
    """
    Apply a validated patch. Product rows carry a version counter, so a
    concurrent edit fails the commit instead of being silently overwritten.
    """
    def _op() -> Product:
        p = get_product(product_id)
        if "name" in patch and patch["name"]:
            _ensure_unique_name(patch["name"], exclude_id=p.id)
        apply_product_patch(p, patch)
        db.session.commit()
        return p

    p = run_with_retry(_op)
    append_audit_event(
        event_type="product.updated",
        module="inventory",
        entity_type="product",
        entity_id=p.id,
        actor_id=actor_id,
        payload={"fields": sorted(patch)},
    )
    return p


def deactivate_product(product_id: int, *, actor_id: int | None = None) -> Product:
    """Soft delete: the product leaves alerts, valuation and sales."""
    p = get_product(product_id)
    if not p.is_active:
        return p
    p.is_active = False
    commit_step(f"deactivation of product {product_id}")

    append_audit_event(
        event_type="product.deactivated",
        module="inventory",
        entity_type="product",
        entity_id=p.id,
        actor_id=actor_id,
    )
    return p


def get_current_stock(product_id: int) -> dict:
    """Ledger quantity plus the product's batches with stock left (FIFO order)."""
    product = get_product(product_id)
    batches = list_batches(product_id=product_id)
    return {
        "product_id": product.id,
        "product_name": product.name,
        "quantity": get_current_quantity(product_id),
        "available_quantity": sum(int(b.remaining_quantity) for b in batches),
        "batches": [b.to_dict() for b in batches],
    }


def write_off_batch(batch_id: int, actor_id: int | None = None, reason: str | None = None) -> StockMovement:
    """
    Remove everything left in a batch from sale (expired, damaged, recalled).

    The batch is zeroed with a compare-and-set first, then an adjustment
    movement of -remaining is written; if that write fails the batch is
    restored.
    """
    batch = get_batch(batch_id)
    remaining = int(batch.remaining_quantity)
    if remaining <= 0:
        raise ValidationError(f"Batch {batch_id} has no stock to write off", details={"batch_id": batch_id})

    product_id = batch.product_id
    reason = (reason or "").strip() or "Write-off"

    apply_batch_delta(batch_id, expected_remaining=remaining, delta=-remaining)
    saga = Saga("write-off", reference=str(batch_id))
    saga.record(STEP_BATCH_DEDUCTED, batch_id=batch_id, quantity=remaining)

    try:
        movement = record_movement(
            product_id=product_id,
            batch_id=batch_id,
            movement_type=MOVEMENT_ADJUSTMENT,
            quantity=-remaining,
            unit_cost_cents=int(batch.unit_cost_cents or 0),
            reason=reason,
            reference=str(batch_id),
            actor_id=actor_id,
        )
    except (DomainError, SQLAlchemyError):
        logger.warning("Write-off movement for batch %s failed; restoring batch", batch_id)
        saga.compensate()
        raise

    logger.info("Wrote off %s unit(s) from batch %s: %s", remaining, batch_id, reason)
    append_audit_event(
        event_type="stock.written_off",
        module="inventory",
        entity_type="stock_batch",
        entity_id=batch_id,
        actor_id=actor_id,
        note=reason,
        payload={"product_id": product_id, "quantity": remaining, "movement_id": movement.id},
    )
    return movement
