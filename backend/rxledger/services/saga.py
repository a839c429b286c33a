# Overview: Compensating-transaction (saga) support for multi-step inventory writes.
"""
The backing store gives this engine no cross-entity transaction, so a
multi-step write (sale, receipt) is run as a saga:

- every committed step is recorded as a SagaStep(kind, payload)
- on failure, compensate() runs the registered inverse for each step kind,
  newest kind first
- an inverse that fails does not stop the others; whatever could not be
  undone is raised as one CompensationFailure listing what is still owed

New step kinds register their inverse with @register_compensation(kind).
"""
from __future__ import annotations

import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Callable

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from ..extensions import db
from ..errors import CompensationFailure, DomainError
from ..models.inventory import MOVEMENT_TYPES

logger = logging.getLogger(__name__)


STEP_BATCH_DEDUCTED = "batch_deducted"
STEP_BATCH_CREATED = "batch_created"
STEP_MOVEMENT_WRITTEN = "movement_written"

# kind -> handler(payloads) -> list of unresolved items
_COMPENSATIONS: dict[str, Callable[[list[dict]], list[dict]]] = {}


def register_compensation(kind: str):
    def decorator(func):
        _COMPENSATIONS[kind] = func
        return func
    return decorator


def registered_kinds() -> list[str]:
    return sorted(_COMPENSATIONS)


@dataclass(frozen=True)
class SagaStep:
    kind: str
    payload: dict


@dataclass
class Saga:
    name: str
    reference: str | None = None
    steps: list[SagaStep] = field(default_factory=list)

    def record(self, kind: str, **payload) -> SagaStep:
        if kind not in _COMPENSATIONS:
            raise ValueError(f"No compensation registered for step kind {kind!r}")
        step = SagaStep(kind=kind, payload=payload)
        self.steps.append(step)
        return step

    def _grouped_newest_first(self) -> "OrderedDict[str, list[dict]]":
        grouped: OrderedDict[str, list[dict]] = OrderedDict()
        for step in reversed(self.steps):
            grouped.setdefault(step.kind, []).append(step.payload)
        return grouped

    def compensate(self) -> int:
        """
        Undo every recorded step. Returns the number of steps compensated.

        Raises CompensationFailure if anything could not be undone.
        """
        db.session.rollback()

        unresolved: list[dict] = []
        for kind, payloads in self._grouped_newest_first().items():
            unresolved.extend(_COMPENSATIONS[kind](payloads))

        if unresolved:
            # quantity is the signed delta still to be applied to the batch
            owed = [u for u in unresolved if "batch_id" in u and u["kind"] != STEP_BATCH_CREATED]
            logger.critical(
                "Compensation failed for %s %s; manual reconciliation required: %s",
                self.name, self.reference, unresolved,
            )
            _record_compensation_failure(self, unresolved)
            raise CompensationFailure(
                f"{self.name} {self.reference} failed and stock state needs review",
                details={
                    "saga": self.name,
                    "reference": self.reference,
                    "owed": [{"batch_id": u["batch_id"], "quantity": u["quantity"]} for u in owed],
                    "unresolved": unresolved,
                },
            )

        logger.info("Compensated %d step(s) for %s %s", len(self.steps), self.name, self.reference)
        return len(self.steps)


def _record_compensation_failure(saga: Saga, unresolved: list[dict]) -> None:
    from .audit_service import append_audit_event

    try:
        append_audit_event(
            event_type="compensation.failed",
            module="inventory",
            entity_type=saga.name,
            entity_id=saga.reference,
            note="Rollback incomplete; batch quantities need manual reconciliation",
            payload={"unresolved": unresolved},
        )
    except SQLAlchemyError:
        db.session.rollback()
        logger.exception("Could not record compensation failure for %s %s", saga.name, saga.reference)


def _compensation_attempts() -> int:
    return int(current_app.config.get("COMPENSATION_ATTEMPTS", 3))


@register_compensation(STEP_BATCH_DEDUCTED)
def _restore_deductions(payloads: list[dict]) -> list[dict]:
    """Add deducted quantity back, one write per batch."""
    from .batch_service import restore_batch_quantity

    owed_by_batch: OrderedDict[int, int] = OrderedDict()
    for p in payloads:
        owed_by_batch[p["batch_id"]] = owed_by_batch.get(p["batch_id"], 0) + int(p["quantity"])

    unresolved = []
    for batch_id, quantity in owed_by_batch.items():
        try:
            restore_batch_quantity(batch_id, quantity, attempts=_compensation_attempts())
        except (DomainError, SQLAlchemyError) as exc:
            db.session.rollback()
            unresolved.append({
                "kind": STEP_BATCH_DEDUCTED,
                "batch_id": batch_id,
                "quantity": quantity,
                "error": str(exc),
            })
    return unresolved


@register_compensation(STEP_MOVEMENT_WRITTEN)
def _offset_movements(payloads: list[dict]) -> list[dict]:
    """Write an offsetting movement; the ledger itself is never edited."""
    from .ledger_service import record_movement

    unresolved = []
    for p in payloads:
        movement_type = p["type"] if p["type"] in MOVEMENT_TYPES else "adjustment"
        try:
            record_movement(
                product_id=p["product_id"],
                batch_id=p.get("batch_id"),
                movement_type=movement_type,
                quantity=-int(p["quantity"]),
                unit_cost_cents=p.get("unit_cost_cents", 0),
                reason=f"Reversal of movement {p['movement_id']}",
                reference=p.get("reference"),
                actor_id=p.get("actor_id"),
            )
        except (DomainError, SQLAlchemyError) as exc:
            db.session.rollback()
            unresolved.append({
                "kind": STEP_MOVEMENT_WRITTEN,
                "movement_id": p["movement_id"],
                "product_id": p["product_id"],
                "quantity": p["quantity"],
                "error": str(exc),
            })
    return unresolved


@register_compensation(STEP_BATCH_CREATED)
def _remove_batches(payloads: list[dict]) -> list[dict]:
    from .batch_service import delete_batch

    unresolved = []
    for p in payloads:
        try:
            delete_batch(p["batch_id"])
        except (DomainError, SQLAlchemyError) as exc:
            db.session.rollback()
            unresolved.append({
                "kind": STEP_BATCH_CREATED,
                "batch_id": p["batch_id"],
                "quantity": p.get("quantity", 0),
                "error": str(exc),
            })
    return unresolved
