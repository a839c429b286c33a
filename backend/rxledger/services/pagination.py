# backend/rxledger/services/pagination.py
"""Offset pagination shared by the listing services."""
from __future__ import annotations

DEFAULT_PER_PAGE = 20
MAX_PER_PAGE = 100


def paginate(query, page: int | None, per_page: int | None) -> tuple[list, dict | None]:
    """
    Run an ordered query, paginated when page is given.

    Returns (rows, pagination); pagination is None when page is None and
    every row is returned.
    """
    if page is None:
        return query.all(), None

    per_page = min(per_page or DEFAULT_PER_PAGE, MAX_PER_PAGE)
    page = max(page, 1)
    total = query.count()
    total_pages = (total + per_page - 1) // per_page if total > 0 else 1
    rows = query.offset((page - 1) * per_page).limit(per_page).all()
    return rows, {
        "page": page,
        "per_page": per_page,
        "total": total,
        "total_pages": total_pages,
        "has_next": page < total_pages,
        "has_prev": page > 1,
    }
