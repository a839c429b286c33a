# backend/rxledger/routes/inventory.py
"""
Inventory routes: stock view, movement history, receiving, write-offs,
valuation and batch diagnostics.

Time semantics:
- expiry_date is a calendar date (YYYY-MM-DD; a datetime string keeps its date part).
- received_date accepts ISO-8601 with Z/offsets; normalized to UTC-naive internally.
"""
from flask import Blueprint, request
from sqlalchemy.exc import SQLAlchemyError

from ..errors import DomainError, ValidationError
from ..models.inventory import MOVEMENT_TYPES
from ..services import inventory_service, valuation_service
from ..services.batch_service import list_batches
from ..services.ledger_service import list_movements
from ..services.receive_service import receive_stock
from ..validation import coerce_int
from .responses import database_error_response, error_response, query_flag


inventory_bp = Blueprint("inventory", __name__, url_prefix="/api/inventory")

RECEIVE_FIELDS = {
    "product_id",
    "batch_number",
    "expiry_date",
    "quantity",
    "unit_cost_cents",
    "pack_size",
    "supplier",
    "received_date",
    "actor_id",
}
RECEIVE_REQUIRED = {"product_id", "batch_number", "expiry_date", "quantity", "unit_cost_cents"}


@inventory_bp.get("/<int:product_id>/stock")
def get_stock(product_id: int):
    """Ledger quantity plus batches with stock left, earliest expiry first."""
    try:
        return inventory_service.get_current_stock(product_id)
    except DomainError as e:
        return error_response(e)


@inventory_bp.get("/<int:product_id>/movements")
def get_movements(product_id: int):
    """
    Movement history for a product, newest first.

    Query params:
    - type: purchase|sale|adjustment|stocktake|return (optional)
    - limit: int (default 200, max 1000)
    """
    movement_type = request.args.get("type")
    if movement_type is not None and movement_type not in MOVEMENT_TYPES:
        return {"error": f"Invalid movement type: {movement_type}", "code": "validation_error", "details": {}}, 400
    limit = min(request.args.get("limit", default=200, type=int), 1000)

    try:
        inventory_service.get_product(product_id)
    except DomainError as e:
        return error_response(e)

    movements = list_movements(product_id=product_id, movement_type=movement_type, limit=limit)
    return {"items": [m.to_dict() for m in movements], "count": len(movements)}


@inventory_bp.get("/batches")
def get_batches():
    """
    Query params:
    - product_id: int (optional)
    - include_exhausted: bool (optional)
    """
    batches = list_batches(
        product_id=request.args.get("product_id", type=int),
        include_exhausted=query_flag(request.args, "include_exhausted"),
    )
    return {"items": [b.to_dict() for b in batches], "count": len(batches)}


@inventory_bp.post("/receive")
def receive_route():
    """
    Receive a new batch into stock.

    Request body:
    {
        "product_id": int,
        "batch_number": str,
        "expiry_date": "YYYY-MM-DD",
        "quantity": int,
        "unit_cost_cents": int,   // pack cost when pack_size > 1
        "pack_size": int (optional, default 1),
        "supplier": str (optional),
        "received_date": ISO-8601 (optional),
        "actor_id": int (optional)
    }
    """
    payload = request.get_json(silent=True) or {}

    try:
        if not isinstance(payload, dict):
            raise ValidationError("Invalid JSON payload")
        unknown = sorted(k for k in payload if k not in RECEIVE_FIELDS)
        if unknown:
            raise ValidationError(f"Field not allowed: {unknown[0]}")
        missing = sorted(f for f in RECEIVE_REQUIRED if payload.get(f) in (None, ""))
        if missing:
            raise ValidationError(f"Missing required fields: {', '.join(missing)}")

        actor_id = payload.get("actor_id")
        batch = receive_stock(
            product_id=coerce_int(payload["product_id"], field_name="product_id"),
            batch_number=str(payload["batch_number"]),
            expiry_date=payload["expiry_date"],
            quantity=payload["quantity"],
            unit_cost_cents=payload["unit_cost_cents"],
            supplier=payload.get("supplier"),
            pack_size=payload.get("pack_size", 1),
            received_date=payload.get("received_date"),
            actor_id=coerce_int(actor_id, field_name="actor_id") if actor_id is not None else None,
        )
    except DomainError as e:
        return error_response(e)
    except SQLAlchemyError:
        return database_error_response("receiving stock")

    return {
        "batch": batch.to_dict(),
        "stock": inventory_service.get_current_stock(batch.product_id),
    }, 201


@inventory_bp.post("/batches/<int:batch_id>/write-off")
def write_off_route(batch_id: int):
    """Write off everything left in a batch (expired, damaged, recalled)."""
    payload = request.get_json(silent=True) or {}

    try:
        actor_id = payload.get("actor_id")
        movement = inventory_service.write_off_batch(
            batch_id,
            actor_id=coerce_int(actor_id, field_name="actor_id") if actor_id is not None else None,
            reason=payload.get("reason"),
        )
    except DomainError as e:
        return error_response(e)
    except SQLAlchemyError:
        return database_error_response("writing off batch")

    return {"movement": movement.to_dict()}, 201


@inventory_bp.get("/valuation")
def valuation_route():
    """Retail (ledger) and cost (batch) valuation of active products, in cents."""
    return valuation_service.get_valuation()


@inventory_bp.get("/diagnostics")
def diagnostics_route():
    """Batch data-quality report."""
    return valuation_service.get_diagnostics()
