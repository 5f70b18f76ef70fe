"""
Procurement access-control & approval core.
Flask Application Factory.

Usage:
    from procure import create_app
    app = create_app()           # defaults to "development"
    app = create_app("testing")  # explicit config
"""

import logging
import os

from flask import Flask, request
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_migrate import Migrate
from sqlalchemy import engine as _sa_engine
from sqlalchemy import event as _sa_event
from sqlalchemy.exc import SQLAlchemyError

from procure.config import config
from procure.core.exceptions import (
    AuthorizationError,
    ConflictError,
    NotFoundError,
    ValidationError,
    WorkflowStateError,
)
from procure.middleware.jwt_auth import init_jwt_middleware
from procure.middleware.logging_config import configure_logging
from procure.middleware.rate_limiter import init_rate_limits
from procure.models import db
from procure.models.immutability import register_immutability_listeners
from procure.utils.errors import E, api_error

logger = logging.getLogger(__name__)


# ── SQLite FK enforcement (global engine event) ─────────────────────────
@_sa_event.listens_for(_sa_engine.Engine, "connect")
def _enable_sqlite_fk(dbapi_conn, connection_record):
    """Enable foreign key enforcement for SQLite connections."""
    if "sqlite" in type(dbapi_conn).__module__:
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


migrate = Migrate()
limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[],                     # no global limit, applied per blueprint
    storage_uri=os.getenv("REDIS_URL", "memory://"),
)


def _register_error_handlers(app):
    @app.errorhandler(NotFoundError)
    def _not_found(e):
        return api_error(E.NOT_FOUND, str(e))

    @app.errorhandler(ValidationError)
    def _validation(e):
        return api_error(E.VALIDATION_CONSTRAINT, str(e), details=e.details)

    @app.errorhandler(ConflictError)
    def _conflict(e):
        code = E.CONFLICT_STATE if e.field == "version" else E.CONFLICT_DUPLICATE
        return api_error(code, str(e), details={"resource": e.resource, "field": e.field})

    @app.errorhandler(WorkflowStateError)
    def _workflow_state(e):
        return api_error(E.CONFLICT_STATE, str(e),
                         details={"instance_id": e.instance_id, "status": e.status, "action": e.action})

    @app.errorhandler(AuthorizationError)
    def _forbidden(e):
        return api_error(E.FORBIDDEN, str(e), details=e.details)

    @app.errorhandler(SQLAlchemyError)
    def _database(e):
        db.session.rollback()
        logger.error("Database error on %s: %s", request.path, e, exc_info=True)
        return api_error(E.DATABASE, "Database error")

    @app.errorhandler(404)
    def not_found(e):
        return {"error": "Not found", "path": request.path}, 404

    @app.errorhandler(405)
    def method_not_allowed(e):
        return {"error": "Method not allowed"}, 405

    @app.errorhandler(429)
    def rate_limited(e):
        return {"error": "Too many requests", "retry_after": e.description}, 429

    @app.errorhandler(500)
    def server_error(e):
        logger.error("500 error: %s", e, exc_info=True)
        return api_error(E.INTERNAL, "Internal server error")


def create_app(config_name=None):
    """
    Create and configure the Flask application.

    Args:
        config_name: Configuration environment name.
                     One of: "development", "testing", "production".
                     Defaults to APP_ENV env var, or "development" if unset.

    Returns:
        Configured Flask application instance.
    """
    if config_name is None:
        config_name = os.getenv("APP_ENV", "development")

    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(config[config_name])

    # ── Structured logging (must be first) ───────────────────────────────
    configure_logging(app)

    # ── Extensions ───────────────────────────────────────────────────────
    db.init_app(app)
    migrate.init_app(app, db)
    limiter.init_app(app)
    cors_origins = app.config.get("CORS_ORIGINS", "*")
    if cors_origins and cors_origins != "*":
        CORS(app, origins=[o.strip() for o in cors_origins.split(",") if o.strip()])
    else:
        CORS(app)

    # ── Terminal-instance and audit immutability (ORM flush guards) ──────
    register_immutability_listeners()

    # ── JWT auth middleware ──────────────────────────────────────────────
    init_jwt_middleware(app)

    # ── Import all models so Alembic can detect them ─────────────────────
    from procure.models import audit as _audit_models        # noqa: F401
    from procure.models import auth as _auth_models          # noqa: F401
    from procure.models import workflow as _workflow_models  # noqa: F401

    if config_name == "development":
        with app.app_context():
            try:
                db.create_all()
                app.logger.info("db.create_all() completed successfully")
            except SQLAlchemyError as e:
                app.logger.warning("db.create_all() failed: %s", e)

    # ── Blueprints ───────────────────────────────────────────────────────
    from procure.blueprints import all_blueprints

    for bp in all_blueprints():
        app.register_blueprint(bp)

    _register_error_handlers(app)

    # ── CLI commands ─────────────────────────────────────────────────────
    @app.cli.command("invalidate-permission-cache")
    def invalidate_permission_cache_cmd():
        """Drop every cached role closure."""
        from procure.services.permission_service import invalidate_all_cache
        invalidate_all_cache()
        logger.info("Permission closure cache cleared.")

    # ── Rate limiting (after blueprints registered) ──────────────────────
    init_rate_limits(app, limiter)

    return app
