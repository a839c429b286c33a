# Overview: FIFO (earliest-expiry-first) allocation planning across stock batches.
"""
The allocator is a planning function, not a committer.

plan_allocation() never mutates a batch. It either returns a complete plan
covering the requested quantity or a failure with no deductions; the sale
orchestrator persists the plan (and compensates it on failure).

Each Deduction remembers the remaining quantity it was planned against, so
the commit step can compare-and-set against that snapshot.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date

from ..errors import ValidationError
from .batch_service import list_available_batches


@dataclass(frozen=True)
class Deduction:
    batch_id: int
    product_id: int
    quantity: int
    unit_cost_cents: int
    expected_remaining: int
    expiry_date: date | None = None

    def to_dict(self) -> dict:
        return {
            "batch_id": self.batch_id,
            "product_id": self.product_id,
            "quantity": self.quantity,
            "unit_cost_cents": self.unit_cost_cents,
        }


@dataclass
class AllocationResult:
    product_id: int
    requested: int
    deductions: list[Deduction] = field(default_factory=list)
    success: bool = True
    error: str | None = None
    available: int = 0

    @property
    def allocated(self) -> int:
        return sum(d.quantity for d in self.deductions)

    def to_dict(self) -> dict:
        return {
            "product_id": self.product_id,
            "requested": self.requested,
            "available": self.available,
            "success": self.success,
            "error": self.error,
            "deductions": [d.to_dict() for d in self.deductions],
        }


def fifo_order(batches) -> list:
    """Batches with stock left, earliest expiry first, creation order on ties."""
    usable = [b for b in batches if int(b.remaining_quantity or 0) > 0]
    return sorted(usable, key=lambda b: (b.expiry_date, b.id))


def plan_allocation(product_id: int, requested_quantity: int, batches) -> AllocationResult:
    """
    Apportion requested_quantity across batches in FIFO order.

    Each deduction is min(still requested, batch remaining). If the batches
    cannot cover the full quantity the result is a failure with an empty
    deduction list.
    """
    if isinstance(requested_quantity, bool) or not isinstance(requested_quantity, int):
        raise ValidationError("requested quantity must be an integer")
    if requested_quantity < 0:
        raise ValidationError("requested quantity cannot be negative")

    ordered = fifo_order(batches)
    available = sum(int(b.remaining_quantity) for b in ordered)

    if requested_quantity == 0:
        return AllocationResult(product_id=product_id, requested=0, available=available)

    deductions: list[Deduction] = []
    remaining = requested_quantity
    for batch in ordered:
        if remaining <= 0:
            break
        batch_remaining = int(batch.remaining_quantity)
        take = min(remaining, batch_remaining)
        deductions.append(
            Deduction(
                batch_id=batch.id,
                product_id=product_id,
                quantity=take,
                unit_cost_cents=int(batch.unit_cost_cents or 0),
                expected_remaining=batch_remaining,
                expiry_date=batch.expiry_date,
            )
        )
        remaining -= take

    if remaining > 0:
        return AllocationResult(
            product_id=product_id,
            requested=requested_quantity,
            deductions=[],
            success=False,
            error=f"Insufficient stock. Requested: {requested_quantity}, Available: {available}",
            available=available,
        )

    return AllocationResult(
        product_id=product_id,
        requested=requested_quantity,
        deductions=deductions,
        available=available,
    )


def allocate(product_id: int, requested_quantity: int) -> AllocationResult:
    """Plan an allocation against the current batch snapshot (read-only)."""
    return plan_allocation(product_id, requested_quantity, list_available_batches(product_id))
