"""
Movement ledger tests.

Current quantity is derived from movements (SUM of signed quantities) and
never stored; the sum must not depend on insertion order.
"""

import pytest

from rxledger.errors import ValidationError
from rxledger.models import StockMovement
from rxledger.services.ledger_service import (
    get_current_quantities,
    get_current_quantity,
    list_movements,
    record_movement,
    sum_quantities,
)


DELTAS = [50, -7, 12, -20, 3, -1]


class TestCurrentQuantity:
    def test_quantity_is_sum_of_movements_in_any_order(self, db_session, make_product):
        """Two products fed the same movements in opposite orders agree."""
        forward = make_product()
        backward = make_product()

        for delta in DELTAS:
            record_movement(product_id=forward.id, movement_type="adjustment", quantity=delta)
        for delta in reversed(DELTAS):
            record_movement(product_id=backward.id, movement_type="adjustment", quantity=delta)

        assert get_current_quantity(forward.id) == sum(DELTAS)
        assert get_current_quantity(backward.id) == sum(DELTAS)

    def test_quantity_matches_fetched_movements(self, db_session, make_product):
        product = make_product()
        for delta in DELTAS:
            record_movement(product_id=product.id, movement_type="adjustment", quantity=delta)

        movements = db_session.query(StockMovement).filter_by(product_id=product.id).all()
        assert sum_quantities(movements) == get_current_quantity(product.id)
        assert sum_quantities(list(reversed(movements))) == get_current_quantity(product.id)

    def test_product_without_movements_is_zero(self, db_session, make_product):
        product = make_product()
        assert get_current_quantity(product.id) == 0

    def test_bulk_quantities_include_products_without_movements(self, db_session, make_product):
        stocked = make_product()
        empty = make_product()
        record_movement(product_id=stocked.id, movement_type="purchase", quantity=9)

        totals = get_current_quantities([stocked.id, empty.id])
        assert totals == {stocked.id: 9, empty.id: 0}

    def test_bulk_quantities_with_empty_list(self, db_session):
        assert get_current_quantities([]) == {}


class TestRecordMovement:
    def test_rejects_zero_quantity(self, db_session, make_product):
        product = make_product()
        with pytest.raises(ValidationError):
            record_movement(product_id=product.id, movement_type="adjustment", quantity=0)

    def test_rejects_unknown_type(self, db_session, make_product):
        product = make_product()
        with pytest.raises(ValidationError):
            record_movement(product_id=product.id, movement_type="theft", quantity=1)

    def test_rejects_non_integer_quantity(self, db_session, make_product):
        product = make_product()
        with pytest.raises(ValidationError):
            record_movement(product_id=product.id, movement_type="adjustment", quantity=1.5)
        with pytest.raises(ValidationError):
            record_movement(product_id=product.id, movement_type="adjustment", quantity=True)

    def test_movement_fields_are_persisted(self, db_session, make_product):
        product = make_product()
        movement = record_movement(
            product_id=product.id,
            movement_type="sale",
            quantity=-2,
            unit_cost_cents=150,
            selling_price_cents=400,
            reason="Sale",
            reference="SALE-00000001",
            actor_id=7,
        )

        stored = db_session.get(StockMovement, movement.id)
        assert stored.quantity == -2
        assert stored.unit_cost_cents == 150
        assert stored.selling_price_cents == 400
        assert stored.reference == "SALE-00000001"
        assert stored.actor_id == 7


class TestListMovements:
    def test_newest_first(self, db_session, make_product):
        product = make_product()
        first = record_movement(product_id=product.id, movement_type="purchase", quantity=5)
        second = record_movement(product_id=product.id, movement_type="sale", quantity=-1)

        ids = [m.id for m in list_movements(product_id=product.id)]
        assert ids == [second.id, first.id]

    def test_filter_by_type_and_reference(self, db_session, make_product):
        product = make_product()
        record_movement(product_id=product.id, movement_type="purchase", quantity=5, reference="1")
        sale = record_movement(product_id=product.id, movement_type="sale", quantity=-1, reference="SALE-1")

        assert [m.id for m in list_movements(movement_type="sale")] == [sale.id]
        assert [m.id for m in list_movements(reference="SALE-1")] == [sale.id]
