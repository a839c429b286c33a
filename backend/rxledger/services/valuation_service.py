# Overview: Inventory valuation (retail and cost basis) and batch data-quality checks.

from __future__ import annotations

import math

from flask import current_app

from ..extensions import db
from ..models import Product
from .batch_service import list_batches
from .ledger_service import get_current_quantities
"""
Valuation Invariants (authoritative)

- Retail value per product = ledger quantity (clamped at 0) * selling price.
- Cost value per product = SUM(remaining_quantity * unit_cost_cents) over
  the product's batches, where:
    - batches are deduplicated by id (first occurrence wins)
    - only batches with unit_cost_cents > 0 and remaining_quantity > 0 count
    - a product that is non-finite or negative after arithmetic is excluded
- Retail and cost come from different state (ledger sum vs batch snapshot)
  and are allowed to diverge. They are never reconciled here.
- All money values are integer cents.
"""


def _unique_batches(batches) -> list:
    seen: set = set()
    unique = []
    for b in batches:
        if b.id in seen:
            continue
        seen.add(b.id)
        unique.append(b)
    return unique


def _usable_value(value) -> bool:
    return math.isfinite(value) and value >= 0


def compute_valuation(products, batches, quantities: dict) -> dict:
    """
    Pure valuation over already-fetched state.

    quantities maps product id -> ledger quantity. Batches for products not
    in `products` are ignored.
    """
    product_ids = {p.id for p in products}
    batches_by_product: dict[int, list] = {}
    excluded: list[dict] = []

    for b in _unique_batches(batches):
        if b.product_id not in product_ids:
            continue
        remaining = b.remaining_quantity or 0
        unit_cost = b.unit_cost_cents or 0
        if unit_cost <= 0:
            excluded.append({"batch_id": b.id, "product_id": b.product_id, "reason": "invalid_unit_cost"})
            continue
        if remaining <= 0:
            excluded.append({"batch_id": b.id, "product_id": b.product_id, "reason": "no_remaining_quantity"})
            continue
        batches_by_product.setdefault(b.product_id, []).append(b)

    total_retail = 0
    total_cost = 0
    per_product: list[dict] = []

    for p in products:
        quantity = max(0, quantities.get(p.id, 0))
        retail = quantity * (p.selling_price_cents or 0)
        if _usable_value(retail):
            total_retail += retail
        else:
            retail = 0

        cost = 0
        available = 0
        for b in batches_by_product.get(p.id, []):
            value = b.remaining_quantity * b.unit_cost_cents
            if not _usable_value(value):
                excluded.append({"batch_id": b.id, "product_id": p.id, "reason": "invalid_value"})
                continue
            cost += value
            available += b.remaining_quantity
        if _usable_value(cost):
            total_cost += cost
        else:
            cost = 0

        per_product.append({
            "product_id": p.id,
            "product_name": p.name,
            "quantity": quantity,
            "available_quantity": available,
            "selling_price_cents": p.selling_price_cents,
            "retail_value_cents": retail,
            "cost_value_cents": cost,
        })

    return {
        "total_retail_value_cents": total_retail,
        "total_cost_value_cents": total_cost,
        "per_product": per_product,
        "excluded_batches": excluded,
    }


def get_valuation() -> dict:
    """Valuation of every active product from the current ledger and batches."""
    products = (
        db.session.query(Product)
        .filter(Product.is_active.is_(True))
        .order_by(Product.name.asc(), Product.id.asc())
        .all()
    )
    quantities = get_current_quantities([p.id for p in products])
    return compute_valuation(products, list_batches(), quantities)


def diagnose_batches(batches, *, max_batch_value_cents: int = 100_000_000) -> dict:
    """
    Data-quality report over a batch list: duplicates, invalid cost or
    quantity, and batches whose value suggests a pack cost entered as a unit
    cost.
    """
    batches = list(batches)

    counts: dict[int, dict] = {}
    for b in batches:
        entry = counts.setdefault(b.id, {"batch_id": b.id, "product_id": b.product_id, "count": 0})
        entry["count"] += 1
    duplicates = [e for e in counts.values() if e["count"] > 1]

    invalid_cost = []
    invalid_quantity = []
    suspect_value = []
    total_value = 0

    for b in _unique_batches(batches):
        unit_cost = b.unit_cost_cents or 0
        remaining = b.remaining_quantity or 0
        if unit_cost <= 0:
            invalid_cost.append({"batch_id": b.id, "product_id": b.product_id, "unit_cost_cents": unit_cost})
            continue
        if remaining <= 0:
            invalid_quantity.append({"batch_id": b.id, "product_id": b.product_id, "remaining_quantity": remaining})
            continue

        value = remaining * unit_cost
        total_value += value
        if value > max_batch_value_cents:
            suspect_value.append({
                "batch_id": b.id,
                "product_id": b.product_id,
                "batch_number": b.batch_number,
                "remaining_quantity": remaining,
                "unit_cost_cents": unit_cost,
                "batch_value_cents": value,
            })

    suspect_value.sort(key=lambda e: e["batch_value_cents"], reverse=True)

    issues = []
    if duplicates:
        issues.append(f"Found {len(duplicates)} duplicate batch ids; they would be counted more than once")
    if invalid_cost:
        issues.append(f"Found {len(invalid_cost)} batches with invalid unit cost (zero or negative)")
    if invalid_quantity:
        issues.append(f"Found {len(invalid_quantity)} batches with invalid quantity (zero or negative)")
    if suspect_value:
        issues.append(
            f"Found {len(suspect_value)} batches valued above {max_batch_value_cents} cents; "
            "check whether a pack cost was entered as a unit cost"
        )

    return {
        "total_batches": len(batches),
        "unique_batches": len(counts),
        "duplicate_batches": duplicates,
        "invalid_cost": invalid_cost,
        "invalid_quantity": invalid_quantity,
        "suspect_value": suspect_value,
        "total_value_cents": total_value,
        "issues": issues,
    }


def get_diagnostics() -> dict:
    return diagnose_batches(
        list_batches(),
        max_batch_value_cents=int(current_app.config.get("MAX_BATCH_VALUE_CENTS", 100_000_000)),
    )
