"""
Procurement access-control & approval core.
Blueprint registry.
"""

from flask import request


def paginate_query(query, default_limit=200, max_limit=1000):
    """Apply limit/offset pagination to a SQLAlchemy query.

    Query params:
        limit  — max items (default 200, capped at max_limit)
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


def request_json() -> dict:
    """JSON body as a dict; anything else is treated as empty."""
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def all_blueprints():
    from procure.blueprints.access_bp import access_bp
    from procure.blueprints.audit_bp import audit_bp
    from procure.blueprints.health_bp import health_bp
    from procure.blueprints.role_bp import role_bp
    from procure.blueprints.workflow_bp import workflow_bp

    return (health_bp, access_bp, role_bp, workflow_bp, audit_bp)
