# Overview: Flask API routes for stock alerts; parses input and returns JSON responses.

from flask import Blueprint, request
from sqlalchemy.exc import SQLAlchemyError

from ..errors import DomainError
from ..services import alert_service
from ..validation import coerce_int
from .responses import database_error_response, error_response, query_flag


alerts_bp = Blueprint("alerts", __name__, url_prefix="/api/alerts")


@alerts_bp.get("")
def list_alerts():
    """
    Query params:
    - unread: bool (optional) - only unread alerts
    - product_id: int (optional)
    - limit: int (default 200, max 1000)
    """
    alerts = alert_service.list_alerts(
        unread_only=query_flag(request.args, "unread"),
        product_id=request.args.get("product_id", type=int),
        limit=min(request.args.get("limit", default=200, type=int), 1000),
    )
    return {"items": [a.to_dict() for a in alerts], "count": len(alerts)}


@alerts_bp.post("/refresh")
def refresh_alerts():
    """Re-evaluate one product ({"product_id": int}) or every active product."""
    data = request.get_json(silent=True) or {}

    try:
        product_id = data.get("product_id")
        if product_id is not None:
            product_id = coerce_int(product_id, field_name="product_id")
        created = alert_service.refresh_alerts(product_id=product_id)
    except DomainError as e:
        return error_response(e)
    except SQLAlchemyError:
        return database_error_response("refreshing alerts")

    return {"created": created}


@alerts_bp.post("/<int:alert_id>/read")
def mark_read(alert_id: int):
    try:
        alert = alert_service.mark_alert_read(alert_id)
    except DomainError as e:
        return error_response(e)
    except SQLAlchemyError:
        return database_error_response("marking alert read")
    return alert.to_dict()


@alerts_bp.post("/read-all")
def mark_all_read():
    try:
        updated = alert_service.mark_all_alerts_read()
    except DomainError as e:
        return error_response(e)
    except SQLAlchemyError:
        return database_error_response("marking alerts read")
    return {"updated": updated}
