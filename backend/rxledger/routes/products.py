# Overview: Flask API routes for products operations; parses input and returns JSON responses.

# backend/rxledger/routes/products.py
"""
Product management routes.

Products are soft-deleted (is_active=False) so their ledger history stays
intact. Authentication is handled outside this service; the acting user id,
when known, is passed as actor_id in the payload or query string.
"""
from flask import Blueprint, request
from sqlalchemy.exc import SQLAlchemyError

from ..errors import DomainError
from ..models import Product
from ..services import inventory_service
from ..validation import (
    ModelValidationPolicy,
    coerce_int,
    validate_payload,
    enforce_rules_product,
)
from .responses import database_error_response, error_response, query_flag

PRODUCT_POLICY = ModelValidationPolicy(
    writable_fields=set(inventory_service.PRODUCT_MUTABLE_FIELDS),
    required_on_create={"name"},
)

products_bp = Blueprint("products", __name__, url_prefix="/api/products")


def _actor_id(payload: dict):
    raw = payload.pop("actor_id", None)
    if raw is None:
        raw = request.args.get("actor_id")
    return coerce_int(raw, field_name="actor_id") if raw not in (None, "") else None


@products_bp.get("")
def list_products():
    """
    List products with their ledger quantity.

    Query params:
    - include_inactive: bool (optional)
    - page: int (optional) - page number (1-indexed). If omitted, returns all items.
    - per_page: int (optional) - items per page (default 20, max 100)
    """
    return inventory_service.list_products(
        include_inactive=query_flag(request.args, "include_inactive"),
        page=request.args.get("page", type=int),
        per_page=request.args.get("per_page", type=int),
    )


@products_bp.get("/<int:product_id>")
def get_product(product_id: int):
    try:
        product = inventory_service.get_product(product_id)
    except DomainError as e:
        return error_response(e)
    return product.to_dict()


@products_bp.post("")
def create_product_route():
    """Create a new product."""
    payload = dict(request.get_json(silent=True) or {})

    try:
        actor_id = _actor_id(payload)
        patch = validate_payload(model=Product, payload=payload, policy=PRODUCT_POLICY, partial=False)
        enforce_rules_product(patch)
        created = inventory_service.create_product(patch=patch, actor_id=actor_id)
    except DomainError as e:
        return error_response(e)
    except SQLAlchemyError:
        return database_error_response("creating product")

    return created.to_dict(), 201


@products_bp.patch("/<int:product_id>")
def update_product_route(product_id: int):
    """Partially update a product."""
    payload = dict(request.get_json(silent=True) or {})

    try:
        actor_id = _actor_id(payload)
        patch = validate_payload(model=Product, payload=payload, policy=PRODUCT_POLICY, partial=True)
        enforce_rules_product(patch)
        updated = inventory_service.update_product(product_id, patch=patch, actor_id=actor_id)
    except DomainError as e:
        return error_response(e)
    except SQLAlchemyError:
        return database_error_response("updating product")

    return updated.to_dict()


@products_bp.delete("/<int:product_id>")
def delete_product_route(product_id: int):
    """Soft delete (deactivate) a product."""
    payload = dict(request.get_json(silent=True) or {})

    try:
        product = inventory_service.deactivate_product(product_id, actor_id=_actor_id(payload))
    except DomainError as e:
        return error_response(e)
    except SQLAlchemyError:
        return database_error_response("deactivating product")

    return product.to_dict()
