"""
HoldingManager — Approval Workflow & Alerts
Blueprint helpers shared by the API blueprints.
"""

import functools

from flask import g, request

from holdingmanager.services.permission import ROLE_LEVELS, Actor
from holdingmanager.utils.errors import E, api_error


def paginate_query(query, default_limit=50, max_limit=500):
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


def current_actor():
    """Caller identity as asserted by the upstream identity provider.

    Reads X-User-Id / X-User-Role. Returns None when either is missing or
    the role is unknown.
    """
    user_id = (request.headers.get("X-User-Id") or "").strip()
    role = (request.headers.get("X-User-Role") or "").strip()
    if not user_id or role not in ROLE_LEVELS:
        return None
    return Actor(user_id=user_id, role=role)


def actor_required(fn):
    """Reject the request with 401 unless an Actor can be built; sets ``g.actor``."""

    @functools.wraps(fn)
    def wrapper(*args, **kwargs):
        actor = current_actor()
        if actor is None:
            return api_error(
                E.UNAUTHENTICATED,
                "X-User-Id and a known X-User-Role headers are required",
            )
        g.actor = actor
        return fn(*args, **kwargs)

    return wrapper
