"""
JWT Auth Middleware — parses the Bearer token, sets ``g.jwt_user_id``.

The hook never rejects a request by itself: an absent, expired or invalid
token leaves ``g.jwt_user_id`` as ``None`` and the route decorators in
``permission_required`` answer 401.
"""

import logging

import jwt as pyjwt
from flask import g, request

from procure.models import db
from procure.models.auth import User
from procure.services.jwt_service import decode_access_token
from procure.services.principal import principal_from_user

logger = logging.getLogger(__name__)

# Paths that skip JWT auth entirely
JWT_SKIP_PREFIXES = (
    "/api/v1/health",
)


def init_jwt_middleware(app):
    """Register JWT middleware as a before_request hook."""

    @app.before_request
    def _jwt_auth():
        g.jwt_user_id = None
        g.pop("current_user", None)

        path = request.path
        if not path.startswith("/api/v1/"):
            return
        for prefix in JWT_SKIP_PREFIXES:
            if path.startswith(prefix):
                return

        auth_header = request.headers.get("Authorization", "")
        if not auth_header.startswith("Bearer "):
            return

        token = auth_header[7:]  # Strip "Bearer "

        try:
            payload = decode_access_token(token)
            g.jwt_user_id = int(payload.get("sub"))
        except pyjwt.ExpiredSignatureError:
            logger.info("Expired access token on %s", path)
        except (pyjwt.InvalidTokenError, TypeError, ValueError):
            logger.warning("Invalid access token on %s", path)


def current_user():
    """The enabled, non-removed directory row behind the request token, or None."""
    user_id = getattr(g, "jwt_user_id", None)
    if user_id is None:
        return None
    if "current_user" not in g:
        user = db.session.get(User, user_id)
        g.current_user = user if user is not None and user.is_active else None
    return g.current_user


def current_principal():
    return principal_from_user(current_user())
