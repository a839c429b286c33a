# Overview: Maps domain errors to JSON error responses for the API routes.

from flask import current_app

from ..extensions import db
from ..errors import (
    CompensationFailure,
    ConflictError,
    DomainError,
    NotFoundError,
    PersistenceError,
    SaleFailedError,
    StaleBatchError,
    ValidationError,
)

# Most specific first; anything else that is a DomainError is a 400
_STATUS_BY_ERROR = (
    (CompensationFailure, 500),
    (StaleBatchError, 409),
    (SaleFailedError, 503),
    (PersistenceError, 503),
    (NotFoundError, 404),
    (ConflictError, 409),
)


def status_for(exc: DomainError) -> int:
    for cls, status in _STATUS_BY_ERROR:
        if isinstance(exc, cls):
            return status
    return 400


def error_response(exc: DomainError):
    """(body, status) for a domain error: {"error", "code", "details"}."""
    body = exc.to_dict()
    status = status_for(exc)
    if isinstance(exc, CompensationFailure):
        body["needs_review"] = True
        current_app.logger.critical("Stock state needs review: %s %s", exc.message, exc.details)
    return body, status


def database_error_response(what: str):
    db.session.rollback()
    current_app.logger.exception("Database error while %s", what)
    return {"error": "Database error", "code": "database_error"}, 500


def query_flag(args, name: str) -> bool:
    return (args.get(name) or "").strip().lower() in {"1", "true", "yes", "on"}


def query_optional_flag(args, name: str) -> bool | None:
    """Tri-state query flag: absent -> None, true/false words -> bool."""
    raw = (args.get(name) or "").strip().lower()
    if not raw:
        return None
    if raw in {"1", "true", "yes", "on"}:
        return True
    if raw in {"0", "false", "no", "off"}:
        return False
    raise ValidationError(f"{name} must be true or false", details={name: args.get(name)})
