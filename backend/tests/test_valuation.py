"""
Valuation and batch diagnostics tests.
"""

from types import SimpleNamespace

from rxledger.services.stocktake_service import approve_session, create_session, upsert_item
from rxledger.services.valuation_service import (
    compute_valuation,
    diagnose_batches,
    get_diagnostics,
    get_valuation,
)


def _product(pid, price=1000, name=None):
    return SimpleNamespace(id=pid, name=name or f"P{pid}", selling_price_cents=price)


def _batch(bid, pid, remaining, unit_cost, number=None):
    return SimpleNamespace(
        id=bid,
        product_id=pid,
        remaining_quantity=remaining,
        unit_cost_cents=unit_cost,
        batch_number=number or f"B{bid}",
    )


class TestComputeValuation:
    def test_retail_from_ledger_cost_from_batches(self):
        products = [_product(1, price=500)]
        batches = [_batch(10, 1, 4, 120), _batch(11, 1, 6, 100)]

        result = compute_valuation(products, batches, {1: 10})

        assert result["total_retail_value_cents"] == 5000
        assert result["total_cost_value_cents"] == 1080
        row = result["per_product"][0]
        assert row["quantity"] == 10
        assert row["available_quantity"] == 10

    def test_duplicate_batches_counted_once(self):
        batch = _batch(10, 1, 5, 100)
        result = compute_valuation([_product(1)], [batch, batch, batch], {1: 5})
        assert result["total_cost_value_cents"] == 500

    def test_invalid_batches_excluded_with_reason(self):
        batches = [
            _batch(10, 1, 5, 0),
            _batch(11, 1, 0, 100),
            _batch(12, 1, 5, -20),
            _batch(13, 1, 2, 50),
        ]

        result = compute_valuation([_product(1)], batches, {1: 7})

        assert result["total_cost_value_cents"] == 100
        reasons = {e["batch_id"]: e["reason"] for e in result["excluded_batches"]}
        assert reasons == {
            10: "invalid_unit_cost",
            11: "no_remaining_quantity",
            12: "invalid_unit_cost",
        }

    def test_non_finite_value_excluded(self):
        batches = [_batch(10, 1, 5, float("inf")), _batch(11, 1, 1, 100)]
        result = compute_valuation([_product(1)], batches, {1: 6})
        assert result["total_cost_value_cents"] == 100
        assert result["excluded_batches"] == [{"batch_id": 10, "product_id": 1, "reason": "invalid_value"}]

    def test_negative_ledger_quantity_clamped(self):
        result = compute_valuation([_product(1)], [], {1: -3})
        assert result["per_product"][0]["quantity"] == 0
        assert result["total_retail_value_cents"] == 0

    def test_batches_of_other_products_ignored(self):
        result = compute_valuation([_product(1)], [_batch(10, 2, 5, 100)], {1: 0})
        assert result["total_cost_value_cents"] == 0
        assert result["excluded_batches"] == []


class TestValuationFromDatabase:
    def test_retail_and_cost_diverge_after_stocktake(self, db_session, make_product, receive):
        """A stocktake corrects the ledger only, so the two bases drift apart."""
        product = make_product(selling_price_cents=1000)
        receive(product, 10, unit_cost_cents=100)

        session = create_session()
        upsert_item(session.id, product.id, 6)
        approve_session(session.id)

        result = get_valuation()
        assert result["total_retail_value_cents"] == 6000
        assert result["total_cost_value_cents"] == 1000

    def test_inactive_products_excluded(self, db_session, make_product, receive):
        active = make_product(selling_price_cents=200)
        retired = make_product(selling_price_cents=200)
        receive(active, 3)
        receive(retired, 3)
        retired.is_active = False
        db_session.commit()

        result = get_valuation()
        assert [row["product_id"] for row in result["per_product"]] == [active.id]
        assert result["total_retail_value_cents"] == 600


class TestDiagnostics:
    def test_reports_duplicates_and_invalid_rows(self):
        dup = _batch(1, 1, 5, 100)
        report = diagnose_batches([dup, dup, _batch(2, 1, 5, 0), _batch(3, 1, 0, 10)])

        assert report["total_batches"] == 4
        assert report["unique_batches"] == 3
        assert report["duplicate_batches"] == [{"batch_id": 1, "product_id": 1, "count": 2}]
        assert [e["batch_id"] for e in report["invalid_cost"]] == [2]
        assert [e["batch_id"] for e in report["invalid_quantity"]] == [3]
        assert report["total_value_cents"] == 500
        assert len(report["issues"]) == 3

    def test_flags_suspect_values_largest_first(self):
        report = diagnose_batches(
            [_batch(1, 1, 10, 20_000), _batch(2, 1, 100, 50_000), _batch(3, 1, 1, 10)],
            max_batch_value_cents=100_000,
        )
        assert [e["batch_id"] for e in report["suspect_value"]] == [2, 1]
        assert "pack cost" in report["issues"][-1]

    def test_clean_data_has_no_issues(self, db_session, make_product, receive):
        product = make_product()
        receive(product, 5)

        report = get_diagnostics()
        assert report["unique_batches"] == 1
        assert report["issues"] == []
