"""
Permission Decorators — route protection through the permission resolver.

Usage:
    @bp.route("/api/v1/workflows", methods=["POST"])
    @require_permission("workflow", "create")
    def create_workflow():
        ...

    @bp.route("/api/v1/workflow-instances/statistics")
    @require_permission("workflow", "read", scope="all")
    def statistics():
        ...

    @bp.route("/api/v1/roles/<int:role_id>", methods=["DELETE"])
    @require_role("system_administrator")
    def delete_role(role_id):
        ...

The decision context handed to permission conditions is the merge of
route arguments, query string and JSON body (body wins).  Decisions fail
closed: no authenticated principal → 401, any other deny → 403 with the
reason code.  The allow decision is kept on ``g.permission_decision``.
"""

import functools
import logging

from flask import g, request

from procure.middleware.jwt_auth import current_principal
from procure.services.permission_service import DenyReason, check_role, evaluate_permission
from procure.utils.errors import E, api_error

logger = logging.getLogger(__name__)


def request_context() -> dict:
    """Flat context map for condition evaluation."""
    context: dict = {}
    context.update(request.view_args or {})
    context.update(request.args.to_dict())
    body = request.get_json(silent=True)
    if isinstance(body, dict):
        context.update(body)
    return context


def _deny_response(decision, endpoint: str):
    if decision.reason_code == DenyReason.UNAUTHENTICATED:
        return api_error(E.UNAUTHENTICATED, "Authentication required",
                         details={"reason_code": decision.reason_code.value})
    logger.warning(
        "Access denied on %s: %s", endpoint, decision.reason_code.value,
        extra={"event_type": "access_denied", "reason_code": decision.reason_code.value},
    )
    return api_error(E.FORBIDDEN, "Permission denied", details=decision.to_dict())


def check_permission(resource: str, action: str, scope: str = "own", context: dict | None = None):
    """In-view variant for resources only known after loading the target.

    Returns None when allowed, else the 401/403 response to send back.
    """
    merged = request_context()
    merged.update(context or {})
    decision = evaluate_permission(current_principal(), resource, action, scope, merged)
    if not decision:
        return _deny_response(decision, request.endpoint or "")
    g.permission_decision = decision
    return None


def require_permission(resource: str, action: str, scope: str = "own"):
    """
    Decorator: require the current principal to hold *resource*:*action* at *scope*.

    Args:
        resource: Resource key, e.g. "purchase_order".
        action: Permission action, e.g. "approve".
        scope: Minimum scope ("own", "team", "all").
    """
    def decorator(f):
        @functools.wraps(f)
        def decorated(*args, **kwargs):
            decision = evaluate_permission(
                current_principal(), resource, action, scope, request_context(),
            )
            if not decision:
                return _deny_response(decision, f.__name__)
            g.permission_decision = decision
            return f(*args, **kwargs)
        return decorated
    return decorator


def require_role(*role_names: str):
    """
    Decorator: require the current principal to hold at least ONE of the named roles.
    """
    def decorator(f):
        @functools.wraps(f)
        def decorated(*args, **kwargs):
            decision = check_role(current_principal(), role_names)
            if not decision:
                return _deny_response(decision, f.__name__)
            return f(*args, **kwargs)
        return decorated
    return decorator
