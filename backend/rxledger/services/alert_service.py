# Overview: Service-layer operations for stock alerts; encapsulates business logic and database work.

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, timedelta

from flask import current_app

from ..extensions import db
from ..errors import NotFoundError
from ..models import Alert, Product
from ..models.alerts import (
    ALERT_EXPIRED,
    ALERT_EXPIRING_SOON,
    ALERT_LOW_STOCK,
    ALERT_OUT_OF_STOCK,
    SEVERITY_CRITICAL,
    SEVERITY_HIGH,
    SEVERITY_MEDIUM,
)
from ..time_utils import days_until, to_iso_date, today as business_today, utcnow
from .batch_service import list_available_batches
from .concurrency import commit_step
from .ledger_service import get_current_quantity
"""
Alert Invariants (authoritative)

- Alerts are derived, never canonical: they can be regenerated at any time
  from products, batches and the movement ledger.
- evaluate_product_alerts() is pure; it only reads what it is given.
- Per product, at most one stock-level candidate:
    quantity == 0                      -> out_of_stock / critical
    quantity <= reorder_point          -> low_stock / high if
                                          quantity <= ratio * reorder_point
                                          else medium
- Per batch with stock left, in expiry order:
    expiry < today                     -> expired / critical
    days until expiry <= 30            -> expiring_soon / high
    days until expiry <= 90            -> expiring_soon / medium
- Dedup: a candidate is not persisted if an alert with the same product and
  type (and batch, when the candidate has one) was created within the
  trailing window (24h by default).
"""

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AlertCandidate:
    product_id: int
    product_name: str
    type: str
    severity: str
    message: str
    batch_id: int | None = None
    expiry_date: date | None = None

    def to_dict(self) -> dict:
        return {
            "product_id": self.product_id,
            "product_name": self.product_name,
            "type": self.type,
            "severity": self.severity,
            "message": self.message,
            "batch_id": self.batch_id,
            "expiry_date": to_iso_date(self.expiry_date),
        }


def evaluate_product_alerts(
    product,
    current_quantity: int,
    batches,
    *,
    today: date | None = None,
    critical_days: int = 30,
    warning_days: int = 90,
    high_ratio: float = 0.3,
) -> list[AlertCandidate]:
    """Alert candidates for one product from an already-fetched snapshot."""
    if not product.is_active:
        return []

    as_of = today or business_today()
    # Ledger adjustments can push the sum below zero; treat that as empty
    quantity = max(0, int(current_quantity))
    reorder_point = int(product.reorder_point or 0)
    candidates: list[AlertCandidate] = []

    if quantity == 0:
        candidates.append(AlertCandidate(
            product_id=product.id,
            product_name=product.name,
            type=ALERT_OUT_OF_STOCK,
            severity=SEVERITY_CRITICAL,
            message=f"{product.name} is out of stock",
        ))
    elif quantity <= reorder_point:
        severity = SEVERITY_HIGH if quantity <= high_ratio * reorder_point else SEVERITY_MEDIUM
        candidates.append(AlertCandidate(
            product_id=product.id,
            product_name=product.name,
            type=ALERT_LOW_STOCK,
            severity=severity,
            message=(
                f"{product.name} is low on stock "
                f"({quantity} remaining, reorder point: {reorder_point})"
            ),
        ))

    stocked = [b for b in batches if int(b.remaining_quantity or 0) > 0]
    for batch in sorted(stocked, key=lambda b: (b.expiry_date, b.id)):
        days_left = days_until(batch.expiry_date, as_of=as_of)
        expiry_text = to_iso_date(batch.expiry_date)

        if batch.expiry_date < as_of:
            alert_type, severity = ALERT_EXPIRED, SEVERITY_CRITICAL
            message = f"{product.name} batch {batch.batch_number} has expired on {expiry_text}"
        elif days_left <= critical_days:
            alert_type, severity = ALERT_EXPIRING_SOON, SEVERITY_HIGH
            message = f"{product.name} batch {batch.batch_number} expires in {days_left} days ({expiry_text})"
        elif days_left <= warning_days:
            alert_type, severity = ALERT_EXPIRING_SOON, SEVERITY_MEDIUM
            message = f"{product.name} batch {batch.batch_number} expires in {days_left} days ({expiry_text})"
        else:
            continue

        candidates.append(AlertCandidate(
            product_id=product.id,
            product_name=product.name,
            type=alert_type,
            severity=severity,
            message=message,
            batch_id=batch.id,
            expiry_date=batch.expiry_date,
        ))

    return candidates


def _thresholds() -> dict:
    cfg = current_app.config
    return {
        "critical_days": int(cfg.get("EXPIRY_CRITICAL_DAYS", 30)),
        "warning_days": int(cfg.get("EXPIRY_WARNING_DAYS", 90)),
        "high_ratio": float(cfg.get("LOW_STOCK_HIGH_RATIO", 0.3)),
    }


def evaluate(product_id: int, *, today: date | None = None) -> list[AlertCandidate]:
    """Read current state for a product and return its alert candidates."""
    product = db.session.get(Product, product_id)
    if product is None:
        raise NotFoundError(f"Product {product_id} not found", details={"product_id": product_id})
    if not product.is_active:
        return []

    return evaluate_product_alerts(
        product,
        get_current_quantity(product_id),
        list_available_batches(product_id),
        today=today,
        **_thresholds(),
    )


def _is_duplicate(candidate: AlertCandidate, since) -> bool:
    q = Alert.query.filter(
        Alert.product_id == candidate.product_id,
        Alert.type == candidate.type,
        Alert.created_at >= since,
    )
    if candidate.batch_id is not None:
        q = q.filter(Alert.batch_id == candidate.batch_id)
    return db.session.query(q.exists()).scalar()


def generate_and_persist(product_id: int, *, today: date | None = None) -> list[Alert]:
    """
    Evaluate a product and insert the candidates not already alerted within
    the dedup window. Idempotent under repeated invocation inside the window.
    """
    window_hours = int(current_app.config.get("ALERT_DEDUP_WINDOW_HOURS", 24))
    since = utcnow() - timedelta(hours=window_hours)

    created: list[Alert] = []
    for candidate in evaluate(product_id, today=today):
        if _is_duplicate(candidate, since):
            continue
        alert = Alert(
            product_id=candidate.product_id,
            product_name=candidate.product_name,
            type=candidate.type,
            severity=candidate.severity,
            message=candidate.message,
            batch_id=candidate.batch_id,
            expiry_date=candidate.expiry_date,
        )
        db.session.add(alert)
        # Flushed per candidate so the next dedup check sees it
        db.session.flush()
        created.append(alert)

    if created:
        commit_step(f"alerts for product {product_id}")
        logger.debug("Created %d alert(s) for product %s", len(created), product_id)
    return created


def refresh_alerts(product_id: int | None = None, *, today: date | None = None) -> int:
    """Regenerate alerts for one product, or every active product. Returns rows created."""
    if product_id is not None:
        return len(generate_and_persist(product_id, today=today))

    product_ids = [
        pid for (pid,) in db.session.query(Product.id)
        .filter(Product.is_active.is_(True))
        .order_by(Product.id.asc())
        .all()
    ]
    total = 0
    for pid in product_ids:
        total += len(generate_and_persist(pid, today=today))
    logger.info("Alert refresh over %d product(s) created %d alert(s)", len(product_ids), total)
    return total


def list_alerts(*, unread_only: bool = False, product_id: int | None = None, limit: int = 200) -> list[Alert]:
    q = Alert.query
    if unread_only:
        q = q.filter(Alert.read.is_(False))
    if product_id is not None:
        q = q.filter(Alert.product_id == product_id)
    return q.order_by(Alert.created_at.desc(), Alert.id.desc()).limit(limit).all()


def mark_alert_read(alert_id: int) -> Alert:
    alert = db.session.get(Alert, alert_id)
    if alert is None:
        raise NotFoundError(f"Alert {alert_id} not found", details={"alert_id": alert_id})
    alert.read = True
    commit_step(f"alert {alert_id} read flag")
    return alert


def mark_all_alerts_read() -> int:
    count = Alert.query.filter(Alert.read.is_(False)).update({"read": True}, synchronize_session=False)
    commit_step("alert read flags")
    return int(count or 0)
