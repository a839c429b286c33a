"""
Stocktake lifecycle tests.

After approval the ledger quantity of every counted product equals the
physical count, batch remaining quantities are left alone, and one failing
item never blocks the others.
"""

import pytest
from sqlalchemy import update

from rxledger.errors import InvalidStateError, NotFoundError, PersistenceError, ValidationError
from rxledger.extensions import db
from rxledger.models import AuditEvent, StockMovement, StocktakeItem, StocktakeSession
from rxledger.services import stocktake_service
from rxledger.services.concurrency import commit_step
from rxledger.services.ledger_service import get_current_quantity, record_movement
from rxledger.services.stocktake_service import (
    approve_session,
    cancel_session,
    create_session,
    get_session_summary,
    list_sessions,
    upsert_item,
    validate_counted_quantities,
)


class TestCounting:
    def test_session_numbers(self, db_session):
        first = create_session(created_by=1, notes="  Monthly count ")
        second = create_session()
        assert first.session_number == "ST-000001"
        assert first.status == "counting"
        assert first.notes == "Monthly count"
        assert second.session_number == "ST-000002"

    def test_variance_computed_from_ledger(self, db_session, make_product, receive):
        product = make_product()
        receive(product, 10)
        session = create_session()

        item = upsert_item(session.id, product.id, 7)

        assert item.system_quantity == 10
        assert item.counted_quantity == 7
        assert item.variance == -3

    def test_recount_keeps_system_quantity(self, db_session, make_product, receive):
        product = make_product()
        receive(product, 10)
        session = create_session()
        upsert_item(session.id, product.id, 7)

        # Stock moves between the two counts; the snapshot stays
        receive(product, 5)
        item = upsert_item(session.id, product.id, 12)

        assert item.system_quantity == 10
        assert item.variance == 2
        assert StocktakeItem.query.filter_by(session_id=session.id).count() == 1

    def test_negative_count_rejected(self, db_session, make_product):
        product = make_product()
        session = create_session()
        with pytest.raises(ValidationError):
            upsert_item(session.id, product.id, -1)

    def test_unknown_session_and_product(self, db_session, make_product):
        product = make_product()
        session = create_session()
        with pytest.raises(NotFoundError):
            upsert_item(999, product.id, 1)
        with pytest.raises(NotFoundError):
            upsert_item(session.id, 999, 1)

    def test_bulk_payload_validation(self):
        assert validate_counted_quantities([{"product_id": 1, "counted_quantity": "4"}]) == [(1, 4)]
        with pytest.raises(ValidationError):
            validate_counted_quantities([])
        with pytest.raises(ValidationError):
            validate_counted_quantities([{"product_id": 1, "counted_quantity": -2}])


class TestApproval:
    def test_ledger_matches_counts_after_approval(self, db_session, make_product, receive, reload):
        over = make_product()
        under = make_product()
        exact = make_product()
        over_batch = receive(over, 10)
        receive(under, 10)
        receive(exact, 4)

        session = create_session()
        upsert_item(session.id, over.id, 12)
        upsert_item(session.id, under.id, 6)
        upsert_item(session.id, exact.id, 4)

        result = approve_session(session.id, approved_by=9)

        assert result["items_adjusted"] == 2
        assert result["errors"] == []
        assert get_current_quantity(over.id) == 12
        assert get_current_quantity(under.id) == 6
        assert get_current_quantity(exact.id) == 4
        # Batches are not touched by a stocktake
        assert reload(over_batch).remaining_quantity == 10

        summary = get_session_summary(session.id)
        assert summary["status"] == "approved"
        assert summary["approved_by"] == 9
        assert summary["items_counted"] == 3
        assert summary["items_with_variance"] == 2
        assert summary["items_pending"] == 0
        assert summary["total_variance"] == -2

        movements = StockMovement.query.filter_by(type="stocktake", reference=str(session.id)).all()
        assert sorted(m.quantity for m in movements) == [-4, 2]
        assert all(m.reason == f"Stocktake adjustment - Session {session.session_number}" for m in movements)

    def test_failing_item_does_not_block_others(self, db_session, make_product, receive, monkeypatch):
        good = make_product()
        bad = make_product()
        receive(good, 10)
        receive(bad, 10)
        bad_id = bad.id

        session = create_session()
        upsert_item(session.id, good.id, 8)
        upsert_item(session.id, bad_id, 5)

        def flaky_movement(**kwargs):
            if kwargs["product_id"] == bad_id:
                raise PersistenceError("simulated write failure")
            return record_movement(**kwargs)

        monkeypatch.setattr(stocktake_service, "record_movement", flaky_movement)

        result = approve_session(session.id)

        assert result["items_adjusted"] == 1
        assert [e["product_id"] for e in result["errors"]] == [bad_id]
        assert get_current_quantity(good.id) == 8
        assert get_current_quantity(bad_id) == 10
        assert get_session_summary(session.id)["items_pending"] == 1

        # Re-approving the approved session retries only what is left
        monkeypatch.undo()
        retry = approve_session(session.id)
        assert retry["items_adjusted"] == 1
        assert retry["errors"] == []
        assert get_current_quantity(good.id) == 8
        assert get_current_quantity(bad_id) == 5

    def test_item_mark_failure_reverses_movement(self, db_session, make_product, receive, monkeypatch):
        """An item ends up fully adjusted or untouched, never half-way."""
        product = make_product()
        receive(product, 10)
        session = create_session()
        upsert_item(session.id, product.id, 4)

        def failing_commit(description):
            if description.startswith("stocktake item"):
                raise PersistenceError("simulated commit failure")
            return commit_step(description)

        monkeypatch.setattr(stocktake_service, "commit_step", failing_commit)

        result = approve_session(session.id)

        assert result["items_adjusted"] == 0
        assert len(result["errors"]) == 1
        assert get_current_quantity(product.id) == 10
        item = StocktakeItem.query.filter_by(session_id=session.id).one()
        assert item.adjusted is False

    def test_counts_rejected_after_approval(self, db_session, make_product, receive):
        product = make_product()
        receive(product, 3)
        session = create_session()
        upsert_item(session.id, product.id, 3)
        approve_session(session.id)

        with pytest.raises(InvalidStateError):
            upsert_item(session.id, product.id, 2)

    def test_overlapping_approval_posts_each_item_once(self, db_session, make_product, receive, monkeypatch):
        product = make_product()
        receive(product, 10)
        session = create_session()
        upsert_item(session.id, product.id, 7)
        session_id = session.id

        real_post = stocktake_service._post_item_adjustment
        nested = {}

        def post_with_overlap(session, item_id, actor_id):
            # A second approval runs after the first has read its pending list
            if "result" not in nested:
                nested["result"] = None
                nested["result"] = approve_session(session_id)
            return real_post(session, item_id, actor_id)

        monkeypatch.setattr(stocktake_service, "_post_item_adjustment", post_with_overlap)

        outer = approve_session(session_id)

        assert nested["result"]["items_adjusted"] == 1
        assert outer["items_adjusted"] == 0
        assert outer["errors"] == []
        movements = StockMovement.query.filter_by(type="stocktake", reference=str(session_id)).all()
        assert [m.quantity for m in movements] == [-3]
        assert get_current_quantity(product.id) == 7

    def test_counts_frozen_while_approval_posts(self, db_session, make_product, receive, monkeypatch):
        product = make_product()
        receive(product, 10)
        session = create_session()
        upsert_item(session.id, product.id, 7)
        session_id, product_id = session.id, product.id

        real_post = stocktake_service._post_item_adjustment
        rejected = []

        def post_after_recount(session, item_id, actor_id):
            try:
                upsert_item(session_id, product_id, 2)
            except InvalidStateError as exc:
                rejected.append(exc)
            return real_post(session, item_id, actor_id)

        monkeypatch.setattr(stocktake_service, "_post_item_adjustment", post_after_recount)

        result = approve_session(session_id)

        assert len(rejected) == 1
        assert result["items_adjusted"] == 1
        item = StocktakeItem.query.filter_by(session_id=session_id).one()
        assert item.counted_quantity == 7
        assert item.variance == -3
        assert get_current_quantity(product_id) == 7

    def test_adjusted_item_cannot_be_recounted(self, db_session, make_product, receive):
        product = make_product()
        receive(product, 10)
        session = create_session()
        upsert_item(session.id, product.id, 6)
        approve_session(session.id)

        # Even if the session were back in counting, a posted item stays put
        db.session.execute(
            update(StocktakeSession)
            .where(StocktakeSession.id == session.id)
            .values(status="counting")
        )
        db.session.commit()

        with pytest.raises(InvalidStateError):
            upsert_item(session.id, product.id, 9)
        item = StocktakeItem.query.filter_by(session_id=session.id).one()
        assert item.counted_quantity == 6
        assert item.adjusted is True

    def test_failed_status_commit_posts_nothing(self, db_session, make_product, receive, monkeypatch):
        product = make_product()
        receive(product, 10)
        session = create_session()
        upsert_item(session.id, product.id, 4)

        def failing_commit(description):
            if description.startswith("approval of stocktake session"):
                db.session.rollback()
                raise PersistenceError("simulated commit failure")
            return commit_step(description)

        monkeypatch.setattr(stocktake_service, "commit_step", failing_commit)

        with pytest.raises(PersistenceError):
            approve_session(session.id)

        assert get_session_summary(session.id)["status"] == "counting"
        assert StockMovement.query.filter_by(type="stocktake").count() == 0
        assert get_current_quantity(product.id) == 10

    def test_reapproval_with_nothing_pending_is_not_audited(self, db_session, make_product, receive):
        product = make_product()
        receive(product, 5)
        session = create_session()
        upsert_item(session.id, product.id, 3)

        approve_session(session.id)
        again = approve_session(session.id)

        assert again["items_adjusted"] == 0
        events = AuditEvent.query.filter_by(
            event_type="stocktake.approved", entity_id=str(session.id),
        ).all()
        assert len(events) == 1
        assert events[0].payload["items_adjusted"] == 1


class TestCancel:
    def test_cancel_posts_nothing(self, db_session, make_product, receive):
        product = make_product()
        receive(product, 10)
        session = create_session()
        upsert_item(session.id, product.id, 1)

        cancelled = cancel_session(session.id, actor_id=4, reason=" Miscounted ")

        assert cancelled.status == "cancelled"
        assert cancelled.cancellation_reason == "Miscounted"
        assert get_current_quantity(product.id) == 10

        with pytest.raises(InvalidStateError):
            approve_session(session.id)
        with pytest.raises(InvalidStateError):
            cancel_session(session.id)


class TestListing:
    def test_newest_first_with_status_filter(self, db_session):
        first = create_session()
        second = create_session()
        third = create_session()
        cancel_session(second.id)

        everything = list_sessions()
        assert everything["count"] == 3
        assert [s["id"] for s in everything["items"]] == [third.id, second.id, first.id]
        assert "pagination" not in everything

        counting = list_sessions(status="counting")
        assert [s["id"] for s in counting["items"]] == [third.id, first.id]

    def test_pagination(self, db_session):
        for _ in range(3):
            create_session()

        page = list_sessions(page=2, per_page=2)
        assert page["count"] == 1
        assert page["pagination"]["total"] == 3
        assert page["pagination"]["total_pages"] == 2
        assert page["pagination"]["has_prev"] is True
        assert page["pagination"]["has_next"] is False

    def test_unknown_status_rejected(self, db_session):
        with pytest.raises(ValidationError):
            list_sessions(status="approving")
