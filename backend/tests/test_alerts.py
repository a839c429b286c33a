"""
Alert generation tests.

evaluate_product_alerts() is pure and tested with plain objects; the
persistence tests cover dedup inside the trailing window and read flags.
"""

from datetime import date, timedelta
from types import SimpleNamespace

import pytest

from rxledger.errors import NotFoundError
from rxledger.models import Alert
from rxledger.services.alert_service import (
    evaluate,
    evaluate_product_alerts,
    generate_and_persist,
    list_alerts,
    mark_alert_read,
    mark_all_alerts_read,
    refresh_alerts,
)
from rxledger.services.ledger_service import record_movement
from rxledger.time_utils import today, utcnow


AS_OF = date(2026, 6, 1)


def _product(reorder_point=100, is_active=True):
    return SimpleNamespace(id=1, name="Amoxicillin 500mg", reorder_point=reorder_point, is_active=is_active)


def _batch(batch_id, expiry, remaining=10, number=None):
    return SimpleNamespace(
        id=batch_id,
        batch_number=number or f"B{batch_id}",
        expiry_date=expiry,
        remaining_quantity=remaining,
    )


def _kinds(candidates):
    return [(c.type, c.severity) for c in candidates]


class TestStockLevelRules:
    def test_at_reorder_point_is_medium(self):
        assert _kinds(evaluate_product_alerts(_product(), 100, [], today=AS_OF)) == [("low_stock", "medium")]

    def test_below_ratio_is_high(self):
        candidates = evaluate_product_alerts(_product(), 25, [], today=AS_OF)
        assert _kinds(candidates) == [("low_stock", "high")]
        assert candidates[0].message == "Amoxicillin 500mg is low on stock (25 remaining, reorder point: 100)"

    def test_ratio_boundary_is_high(self):
        assert _kinds(evaluate_product_alerts(_product(), 30, [], today=AS_OF)) == [("low_stock", "high")]
        assert _kinds(evaluate_product_alerts(_product(), 31, [], today=AS_OF)) == [("low_stock", "medium")]

    def test_above_reorder_point_no_alert(self):
        assert evaluate_product_alerts(_product(), 101, [], today=AS_OF) == []

    def test_zero_is_out_of_stock(self):
        candidates = evaluate_product_alerts(_product(), 0, [], today=AS_OF)
        assert _kinds(candidates) == [("out_of_stock", "critical")]
        assert candidates[0].message == "Amoxicillin 500mg is out of stock"

    def test_negative_ledger_quantity_treated_as_zero(self):
        assert _kinds(evaluate_product_alerts(_product(), -4, [], today=AS_OF)) == [("out_of_stock", "critical")]

    def test_inactive_product_has_no_alerts(self):
        assert evaluate_product_alerts(_product(is_active=False), 0, [_batch(1, AS_OF)], today=AS_OF) == []


class TestExpiryRules:
    @pytest.mark.parametrize(
        "days,expected",
        [
            (-1, ("expired", "critical")),
            (0, ("expiring_soon", "high")),
            (30, ("expiring_soon", "high")),
            (31, ("expiring_soon", "medium")),
            (90, ("expiring_soon", "medium")),
        ],
    )
    def test_thresholds(self, days, expected):
        batch = _batch(1, AS_OF + timedelta(days=days))
        assert _kinds(evaluate_product_alerts(_product(), 500, [batch], today=AS_OF)) == [expected]

    def test_beyond_warning_window_no_alert(self):
        batch = _batch(1, AS_OF + timedelta(days=91))
        assert evaluate_product_alerts(_product(), 500, [batch], today=AS_OF) == []

    def test_messages_and_batch_reference(self):
        expired = _batch(1, date(2026, 5, 20), number="LOT-9")
        soon = _batch(2, AS_OF + timedelta(days=12), number="LOT-10")

        candidates = evaluate_product_alerts(_product(), 500, [soon, expired], today=AS_OF)

        assert [c.batch_id for c in candidates] == [1, 2]
        assert candidates[0].message == "Amoxicillin 500mg batch LOT-9 has expired on 2026-05-20"
        assert candidates[1].message == "Amoxicillin 500mg batch LOT-10 expires in 12 days (2026-06-13)"
        assert candidates[1].to_dict()["expiry_date"] == "2026-06-13"

    def test_exhausted_batch_ignored(self):
        batch = _batch(1, AS_OF - timedelta(days=3), remaining=0)
        assert evaluate_product_alerts(_product(), 500, [batch], today=AS_OF) == []

    def test_custom_thresholds(self):
        batch = _batch(1, AS_OF + timedelta(days=10))
        candidates = evaluate_product_alerts(
            _product(), 500, [batch], today=AS_OF, critical_days=7, warning_days=14
        )
        assert _kinds(candidates) == [("expiring_soon", "medium")]


class TestPersistence:
    def test_generation_is_idempotent_within_window(self, db_session, make_product, raw_batch):
        product = make_product(reorder_point=10)
        raw_batch(product, 5, expires_in_days=20)
        record_movement(product_id=product.id, movement_type="purchase", quantity=5)

        created = generate_and_persist(product.id)
        assert sorted(a.type for a in created) == ["expiring_soon", "low_stock"]

        assert generate_and_persist(product.id) == []
        assert Alert.query.count() == 2

    def test_alerts_regenerate_after_window(self, db_session, make_product, raw_batch):
        product = make_product(reorder_point=10)
        raw_batch(product, 5, expires_in_days=20)
        record_movement(product_id=product.id, movement_type="purchase", quantity=5)
        generate_and_persist(product.id)

        for alert in Alert.query.all():
            alert.created_at = utcnow() - timedelta(hours=25)
        db_session.commit()

        assert len(generate_and_persist(product.id)) == 2
        assert Alert.query.count() == 4

    def test_dedup_is_per_batch(self, db_session, make_product, raw_batch):
        product = make_product(reorder_point=0)
        raw_batch(product, 5, expires_in_days=20, batch_number="A")
        record_movement(product_id=product.id, movement_type="purchase", quantity=5)
        generate_and_persist(product.id)

        raw_batch(product, 5, expires_in_days=25, batch_number="B")
        created = generate_and_persist(product.id)

        assert [a.type for a in created] == ["expiring_soon"]

    def test_evaluate_uses_business_date(self, db_session, make_product, raw_batch):
        product = make_product(reorder_point=0)
        raw_batch(product, 5, expires_in_days=100)
        record_movement(product_id=product.id, movement_type="purchase", quantity=5)

        assert evaluate(product.id) == []
        later = evaluate(product.id, today=today() + timedelta(days=101))
        assert _kinds(later) == [("expired", "critical")]

    def test_unknown_product(self, db_session):
        with pytest.raises(NotFoundError):
            evaluate(4040)

    def test_refresh_skips_inactive_products(self, db_session, make_product):
        make_product(is_active=False)
        active = make_product()

        assert refresh_alerts() == 1
        assert [a.product_id for a in list_alerts()] == [active.id]


class TestReadFlags:
    def test_mark_single_and_all(self, db_session, make_product):
        first = make_product()
        second = make_product()
        refresh_alerts()

        alerts = list_alerts()
        assert len(alerts) == 2

        mark_alert_read(alerts[0].id)
        assert len(list_alerts(unread_only=True)) == 1

        assert mark_all_alerts_read() == 1
        assert list_alerts(unread_only=True) == []
        assert {a.product_id for a in list_alerts(product_id=first.id)} == {first.id}
        assert {a.product_id for a in list_alerts(product_id=second.id)} == {second.id}

    def test_mark_unknown_alert(self, db_session):
        with pytest.raises(NotFoundError):
            mark_alert_read(999)
