# backend/rxledger/routes/sales.py
"""
Sale routes.

POST /api/sales runs the whole sale (FIFO allocation, batch deductions, sale
movements, sale record). Failure bodies carry a code telling the caller what
state stock is in:
- validation_error / insufficient_stock / expired_stock / not_found: nothing happened
- sale_rolled_back: the sale failed and stock was restored
- compensation_failed: stock needs manual review (needs_review: true)
"""
from flask import Blueprint, request
from sqlalchemy.exc import SQLAlchemyError

from ..errors import DomainError, ValidationError
from ..services import sales_service
from ..validation import coerce_int
from .responses import database_error_response, error_response, query_optional_flag


sales_bp = Blueprint("sales", __name__, url_prefix="/api/sales")


def _optional_int(payload: dict, key: str):
    value = payload.get(key)
    return coerce_int(value, field_name=key) if value is not None else None


@sales_bp.get("")
def list_sales_route():
    """
    List sales, newest first.

    Query params:
    - from: ISO date (optional) - first day included
    - to: ISO date (optional) - last day included
    - refunded: bool (optional)
    - page: int (optional) - page number (1-indexed). If omitted, returns all items.
    - per_page: int (optional) - items per page (default 20, max 100)
    """
    try:
        return sales_service.list_sales(
            from_date=request.args.get("from") or None,
            to_date=request.args.get("to") or None,
            refunded=query_optional_flag(request.args, "refunded"),
            page=request.args.get("page", type=int),
            per_page=request.args.get("per_page", type=int),
        )
    except DomainError as e:
        return error_response(e)


@sales_bp.post("")
def create_sale_route():
    """
    Request body:
    {
        "line_items": [{"product_id": int, "quantity": int, "unit_price_cents": int (optional)}],
        "payment_method": "cash" | "card" | "insurance",
        "cashier_id": int (optional),
        "customer_name": str (optional),
        "notes": str (optional)
    }
    """
    payload = request.get_json(silent=True) or {}

    try:
        if not isinstance(payload, dict):
            raise ValidationError("Invalid JSON payload")
        sale = sales_service.process_sale(
            payload.get("line_items"),
            payload.get("payment_method"),
            _optional_int(payload, "cashier_id"),
            customer_name=payload.get("customer_name"),
            notes=payload.get("notes"),
        )
    except DomainError as e:
        return error_response(e)
    except SQLAlchemyError:
        return database_error_response("processing sale")

    return sale.to_dict(), 201


@sales_bp.get("/<int:sale_id>")
def get_sale_route(sale_id: int):
    try:
        return sales_service.get_sale(sale_id).to_dict()
    except DomainError as e:
        return error_response(e)


@sales_bp.post("/<int:sale_id>/refund")
def refund_sale_route(sale_id: int):
    """
    Request body:
    {
        "actor_id": int (optional),
        "reason": str (optional)
    }
    """
    payload = request.get_json(silent=True) or {}

    try:
        sale = sales_service.refund_sale(
            sale_id,
            actor_id=_optional_int(payload, "actor_id"),
            reason=payload.get("reason"),
        )
    except DomainError as e:
        return error_response(e)
    except SQLAlchemyError:
        return database_error_response("refunding sale")

    return sale.to_dict()
