# Overview: Service-layer operations for maintenance; encapsulates business logic and database work.

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from ..extensions import db
from ..errors import PersistenceError
from ..models import DataMigration, StockBatch
from .audit_service import append_audit_event
"""
Data Migration Invariants (authoritative)

- Data migrations are versioned; each version runs at most once per
  database and is recorded in data_migrations with its result.
- Migrations run in version order. A failing migration is rolled back,
  left unrecorded and stops the run; later versions wait for it.
- A migration's writes and its marker row are committed together.
- Schema changes belong to Alembic (backend/migrations); these are data only.
"""

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RegisteredMigration:
    version: str
    description: str
    func: Callable[[], dict]


_MIGRATIONS: dict[str, RegisteredMigration] = {}


def register_migration(version: str, description: str):
    def decorator(func):
        if version in _MIGRATIONS:
            raise ValueError(f"Data migration {version} registered twice")
        _MIGRATIONS[version] = RegisteredMigration(version=version, description=description, func=func)
        return func
    return decorator


def list_migrations() -> list[RegisteredMigration]:
    return [_MIGRATIONS[v] for v in sorted(_MIGRATIONS)]


def applied_versions() -> set[str]:
    return {v for (v,) in db.session.query(DataMigration.version).all()}


def run_data_migrations() -> list[str]:
    """Apply every pending migration. Returns the versions applied by this run."""
    done = applied_versions()
    applied: list[str] = []

    for migration in list_migrations():
        if migration.version in done:
            continue

        try:
            result = migration.func() or {}
            db.session.add(DataMigration(
                version=migration.version,
                description=migration.description,
                result=result,
            ))
            db.session.commit()
        except SQLAlchemyError as exc:
            db.session.rollback()
            logger.exception("Data migration %s failed", migration.version)
            raise PersistenceError(
                f"Data migration {migration.version} failed",
                details={"version": migration.version},
            ) from exc

        logger.info("Applied data migration %s: %s", migration.version, result)
        applied.append(migration.version)

    return applied


@register_migration("0001_flag_suspect_unit_costs", "Flag batches whose value suggests a pack cost stored as unit cost")
def flag_suspect_unit_costs() -> dict:
    """
    Record an audit event for every batch valued above MAX_BATCH_VALUE_CENTS.

    Costs are never rewritten; a person decides what the right unit cost was.
    """
    threshold = int(current_app.config.get("MAX_BATCH_VALUE_CENTS", 100_000_000))

    flagged: list[int] = []
    batches = (
        db.session.query(StockBatch)
        .filter(StockBatch.remaining_quantity > 0)
        .order_by(StockBatch.id.asc())
        .all()
    )
    for batch in batches:
        value = int(batch.remaining_quantity) * int(batch.unit_cost_cents or 0)
        if value <= threshold:
            continue
        append_audit_event(
            event_type="batch.suspect_unit_cost",
            module="inventory",
            entity_type="stock_batch",
            entity_id=batch.id,
            note="Batch value exceeds the configured maximum; check whether a pack cost was entered",
            payload={
                "product_id": batch.product_id,
                "batch_number": batch.batch_number,
                "remaining_quantity": batch.remaining_quantity,
                "unit_cost_cents": batch.unit_cost_cents,
                "batch_value_cents": value,
                "threshold_cents": threshold,
            },
            commit=False,
        )
        flagged.append(batch.id)

    return {"flagged": len(flagged), "batch_ids": flagged}
