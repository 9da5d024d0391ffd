"""
Thesis Pipeline
Blueprint helpers.
"""

from flask import request


def paginate_query(query, default_limit=50, max_limit=200):
    """Apply limit/offset pagination to a SQLAlchemy query.

    Query params:
        limit  — max items (default 50, capped at max_limit)
        offset — starting position (default 0)

    Returns:
        (items_list, total_count)
    """
    total = query.count()
    try:
        limit = min(int(request.args.get("limit", default_limit)), max_limit)
    except (ValueError, TypeError):
        limit = default_limit
    try:
        offset = max(int(request.args.get("offset", 0)), 0)
    except (ValueError, TypeError):
        offset = 0
    items = query.limit(limit).offset(offset).all()
    return items, total


def acting_user_id():
    """The acting user, sent by the caller in the X-User-Id header."""
    return (request.headers.get("X-User-Id") or "").strip() or None
