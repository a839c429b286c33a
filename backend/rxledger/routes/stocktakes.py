# backend/rxledger/routes/stocktakes.py
"""
Stocktake (physical count) API routes.
"""
from flask import Blueprint, request
from sqlalchemy.exc import SQLAlchemyError

from ..errors import DomainError, ValidationError
from ..services import stocktake_service
from ..validation import coerce_int
from .responses import database_error_response, error_response


stocktakes_bp = Blueprint("stocktakes", __name__, url_prefix="/api/stocktakes")


def _optional_int(payload: dict, key: str):
    value = payload.get(key)
    return coerce_int(value, field_name=key) if value is not None else None


@stocktakes_bp.route("", methods=["GET"])
def list_sessions():
    """
    List stocktake sessions, newest first.

    Query params:
    - status: counting | approved | cancelled (optional)
    - page: int (optional)
    - per_page: int (optional, default 20, max 100)

    Returns:
        200: {"items", "count", "pagination" (when paginated)}
        400: Unknown status
    """
    try:
        return stocktake_service.list_sessions(
            status=request.args.get("status") or None,
            page=request.args.get("page", type=int),
            per_page=request.args.get("per_page", type=int),
        )
    except DomainError as e:
        return error_response(e)


@stocktakes_bp.route("", methods=["POST"])
def create_session():
    """
    Open a new stocktake session.

    Request body:
    {
        "created_by": int (optional),
        "notes": str (optional)
    }

    Returns:
        201: Session created
        400: Invalid request
    """
    data = request.get_json(silent=True) or {}

    try:
        session = stocktake_service.create_session(
            created_by=_optional_int(data, "created_by"),
            notes=data.get("notes"),
        )
    except DomainError as e:
        return error_response(e)
    except SQLAlchemyError:
        return database_error_response("creating stocktake session")

    return session.to_dict(), 201


@stocktakes_bp.route("/<int:session_id>/items", methods=["PUT"])
def upsert_items(session_id: int):
    """
    Record counted quantities. System quantity and variance are computed
    server-side.

    Request body, either one item:
    {"product_id": int, "counted_quantity": int}
    or several:
    {"items": [{"product_id": int, "counted_quantity": int}, ...]}

    Returns:
        200: Items recorded
        400: Invalid request or session not counting
        404: Session or product not found
    """
    data = request.get_json(silent=True) or {}

    try:
        if not isinstance(data, dict):
            raise ValidationError("Invalid JSON payload")
        entries = data["items"] if "items" in data else [data]
        counts = stocktake_service.validate_counted_quantities(entries)
        items = [
            stocktake_service.upsert_item(session_id, product_id, counted)
            for product_id, counted in counts
        ]
    except DomainError as e:
        return error_response(e)
    except SQLAlchemyError:
        return database_error_response("recording stocktake counts")

    return {"items": [item.to_dict() for item in items], "count": len(items)}


@stocktakes_bp.route("/<int:session_id>/approve", methods=["POST"])
def approve_session(session_id: int):
    """
    Approve a session and post its variances as stocktake movements.

    Request body:
    {
        "approved_by": int (optional)
    }

    Returns:
        200: {"session_id", "items_adjusted", "errors": [...], "session": {...}}
        400: Session cancelled
        404: Session not found
        503: Approval could not be recorded; nothing was posted
    """
    data = request.get_json(silent=True) or {}

    try:
        result = stocktake_service.approve_session(
            session_id,
            approved_by=_optional_int(data, "approved_by"),
        )
        summary = stocktake_service.get_session_summary(session_id)
    except DomainError as e:
        return error_response(e)
    except SQLAlchemyError:
        return database_error_response("approving stocktake session")

    return {**result, "session": summary}


@stocktakes_bp.route("/<int:session_id>/cancel", methods=["POST"])
def cancel_session(session_id: int):
    """
    Cancel a session that is still counting.

    Request body:
    {
        "actor_id": int (optional),
        "reason": str (optional)
    }
    """
    data = request.get_json(silent=True) or {}

    try:
        session = stocktake_service.cancel_session(
            session_id,
            actor_id=_optional_int(data, "actor_id"),
            reason=data.get("reason"),
        )
    except DomainError as e:
        return error_response(e)
    except SQLAlchemyError:
        return database_error_response("cancelling stocktake session")

    return session.to_dict()


@stocktakes_bp.route("/<int:session_id>", methods=["GET"])
def get_session(session_id: int):
    try:
        return stocktake_service.get_session_summary(session_id)
    except DomainError as e:
        return error_response(e)
