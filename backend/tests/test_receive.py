"""
Receiving and write-off tests.

Every received batch is matched by a purchase movement, and unit costs are
validated at write time (pack cost / pack size, upper bounds).
"""

from datetime import timedelta

import pytest

from rxledger.errors import NotFoundError, PersistenceError, ValidationError
from rxledger.models import AuditEvent, StockBatch, StockMovement
from rxledger.services import inventory_service, receive_service
from rxledger.services.inventory_service import get_current_stock, write_off_batch
from rxledger.services.ledger_service import get_current_quantity
from rxledger.services.receive_service import per_unit_cost_cents, receive_stock, validate_unit_cost
from rxledger.time_utils import today


def _bounds(**overrides):
    bounds = {"max_unit_cost_cents": 10_000_000, "max_batch_value_cents": 100_000_000}
    bounds.update(overrides)
    return bounds


class TestUnitCostValidation:
    def test_pack_cost_divided_half_up(self):
        assert per_unit_cost_cents(1000, 3) == 333
        assert per_unit_cost_cents(1001, 2) == 501
        assert per_unit_cost_cents(250, 1) == 250

    def test_pack_size_applied(self):
        assert validate_unit_cost(quantity=10, unit_cost_cents=1200, pack_size=12, **_bounds()) == 100

    def test_zero_and_negative_cost_rejected(self):
        with pytest.raises(ValidationError):
            validate_unit_cost(quantity=1, unit_cost_cents=0, **_bounds())
        with pytest.raises(ValidationError):
            validate_unit_cost(quantity=1, unit_cost_cents=-5, **_bounds())

    def test_cost_rounding_to_zero_rejected(self):
        with pytest.raises(ValidationError):
            validate_unit_cost(quantity=1, unit_cost_cents=1, pack_size=10, **_bounds())

    def test_unit_cost_above_maximum(self):
        with pytest.raises(ValidationError) as exc_info:
            validate_unit_cost(quantity=1, unit_cost_cents=501, **_bounds(max_unit_cost_cents=500))
        assert exc_info.value.details["max_unit_cost_cents"] == 500

    def test_batch_value_above_maximum(self):
        """A pack cost typed as a unit cost shows up as an implausible batch value."""
        with pytest.raises(ValidationError) as exc_info:
            validate_unit_cost(quantity=1000, unit_cost_cents=5000, **_bounds(max_batch_value_cents=1_000_000))
        assert exc_info.value.details["batch_value_cents"] == 5_000_000


class TestReceiveStock:
    def test_creates_batch_and_purchase_movement(self, db_session, make_product):
        product = make_product()
        expiry = today() + timedelta(days=180)

        batch = receive_stock(
            product_id=product.id,
            batch_number=" LOT-A ",
            expiry_date=expiry.isoformat(),
            quantity=24,
            unit_cost_cents=2400,
            pack_size=12,
            supplier="Acme Pharma",
            actor_id=5,
        )

        assert batch.batch_number == "LOT-A"
        assert batch.expiry_date == expiry
        assert batch.unit_cost_cents == 200
        assert batch.quantity_received == 24
        assert batch.remaining_quantity == 24

        movement = StockMovement.query.filter_by(batch_id=batch.id).one()
        assert movement.type == "purchase"
        assert movement.quantity == 24
        assert movement.unit_cost_cents == 200
        assert movement.reason == "Received from Acme Pharma"
        assert movement.reference == str(batch.id)
        assert get_current_quantity(product.id) == 24

        assert AuditEvent.query.filter_by(event_type="stock.received", entity_id=str(batch.id)).count() == 1

    def test_unknown_product(self, db_session):
        with pytest.raises(NotFoundError):
            receive_stock(product_id=999, batch_number="X", expiry_date=today(), quantity=1, unit_cost_cents=1)

    def test_inactive_product(self, db_session, make_product):
        product = make_product(is_active=False)
        with pytest.raises(ValidationError):
            receive_stock(product_id=product.id, batch_number="X", expiry_date=today(), quantity=1, unit_cost_cents=1)

    @pytest.mark.parametrize(
        "field,value",
        [
            ("batch_number", ""),
            ("batch_number", "x" * 65),
            ("expiry_date", "not-a-date"),
            ("quantity", 0),
            ("quantity", "1.5"),
            ("unit_cost_cents", 0),
            ("pack_size", 0),
        ],
    )
    def test_invalid_input_writes_nothing(self, db_session, make_product, field, value):
        product = make_product()
        kwargs = {
            "product_id": product.id,
            "batch_number": "LOT-1",
            "expiry_date": today() + timedelta(days=30),
            "quantity": 10,
            "unit_cost_cents": 100,
        }
        kwargs[field] = value

        with pytest.raises(ValidationError):
            receive_stock(**kwargs)

        assert StockBatch.query.count() == 0
        assert StockMovement.query.count() == 0

    def test_configured_bounds_are_enforced(self, app, db_session, make_product, monkeypatch):
        product = make_product()
        monkeypatch.setitem(app.config, "MAX_UNIT_COST_CENTS", 1000)

        with pytest.raises(ValidationError):
            receive_stock(
                product_id=product.id,
                batch_number="LOT-1",
                expiry_date=today() + timedelta(days=30),
                quantity=1,
                unit_cost_cents=1001,
            )
        assert StockBatch.query.count() == 0

    def test_movement_failure_removes_batch(self, db_session, make_product, monkeypatch):
        product = make_product()

        def failing_movement(**kwargs):
            raise PersistenceError("simulated write failure")

        monkeypatch.setattr(receive_service, "record_movement", failing_movement)

        with pytest.raises(PersistenceError):
            receive_stock(
                product_id=product.id,
                batch_number="LOT-1",
                expiry_date=today() + timedelta(days=30),
                quantity=10,
                unit_cost_cents=100,
            )

        assert StockBatch.query.count() == 0
        assert get_current_quantity(product.id) == 0


class TestCurrentStock:
    def test_reports_ledger_and_batch_quantities(self, db_session, make_product, receive):
        product = make_product()
        late = receive(product, 4, expires_in_days=90)
        early = receive(product, 6, expires_in_days=10)

        stock = get_current_stock(product.id)

        assert stock["quantity"] == 10
        assert stock["available_quantity"] == 10
        assert [b["id"] for b in stock["batches"]] == [early.id, late.id]

    def test_unknown_product(self, db_session):
        with pytest.raises(NotFoundError):
            get_current_stock(404)


class TestWriteOff:
    def test_zeroes_batch_and_writes_adjustment(self, db_session, make_product, receive, reload):
        product = make_product()
        batch = receive(product, 8, expires_in_days=5)

        movement = write_off_batch(batch.id, actor_id=3, reason="Damaged")

        assert movement.type == "adjustment"
        assert movement.quantity == -8
        assert movement.reason == "Damaged"
        assert reload(batch).remaining_quantity == 0
        assert get_current_quantity(product.id) == 0

    def test_default_reason(self, db_session, make_product, receive):
        product = make_product()
        batch = receive(product, 2)
        assert write_off_batch(batch.id).reason == "Write-off"

    def test_exhausted_batch_rejected(self, db_session, make_product, receive):
        product = make_product()
        batch = receive(product, 2)
        write_off_batch(batch.id)

        with pytest.raises(ValidationError):
            write_off_batch(batch.id)

    def test_movement_failure_restores_batch(self, db_session, make_product, receive, reload, monkeypatch):
        product = make_product()
        batch = receive(product, 8)

        def failing_movement(**kwargs):
            raise PersistenceError("simulated write failure")

        monkeypatch.setattr(inventory_service, "record_movement", failing_movement)

        with pytest.raises(PersistenceError):
            write_off_batch(batch.id)

        assert reload(batch).remaining_quantity == 8
        assert get_current_quantity(product.id) == 8
