"""
Shared pytest fixtures for the procurement core test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - make_permission / make_role / make_user: directory factories
    - auth_headers: Bearer header for a user
    - make_definition: workflow definition factory (via the service)
"""

import pytest

from procure import create_app
from procure.models import db as _db
from procure.models.auth import Permission, Role, User
from procure.services.jwt_service import generate_access_token
from procure.services.permission_service import invalidate_all_cache
from procure.services.workflow_definition_service import create_definition


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    return create_app("testing")


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, rollback after test, recreate tables."""
    with app.app_context():
        # ids are reused across tests; drop cached closures keyed by role id
        invalidate_all_cache()
        yield _db.session
        invalidate_all_cache()
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


# ── Directory factories ──────────────────────────────────────────────────


@pytest.fixture()
def make_permission():
    def _make(resource, action, scope="own", conditions=None, removed=False):
        perm = Permission(
            resource=resource, action=action, scope=scope,
            conditions=conditions, is_system_permission=False, removed=removed,
        )
        _db.session.add(perm)
        _db.session.flush()
        return perm
    return _make


@pytest.fixture()
def make_role():
    def _make(name, permissions=(), inherits_from=(), grants_full_access=False, removed=False):
        role = Role(
            name=name,
            display_name_en=name.replace("_", " ").title(),
            permissions=list(permissions),
            inherits_from=list(inherits_from),
            grants_full_access=grants_full_access,
            is_system_role=False,
            removed=removed,
        )
        _db.session.add(role)
        _db.session.flush()
        return role
    return _make


@pytest.fixture()
def make_user():
    counter = {"n": 0}

    def _make(name=None, roles=(), department=None, enabled=True, removed=False,
              legacy_role_names=None, reports_to=None):
        counter["n"] += 1
        name = name or f"user{counter['n']}"
        user = User(
            email=f"{name}@procure.test",
            name=name,
            department=department,
            enabled=enabled,
            removed=removed,
            roles=list(roles),
            legacy_role_names=list(legacy_role_names or []),
            reports_to=reports_to,
        )
        _db.session.add(user)
        _db.session.flush()
        return user
    return _make


@pytest.fixture()
def auth_headers(app):
    def _headers(user):
        return {"Authorization": f"Bearer {generate_access_token(user.id)}"}
    return _headers


# ── Workflow factories ───────────────────────────────────────────────────


@pytest.fixture()
def make_definition():
    """Create a definition through the service (validated, audited, committed)."""
    counter = {"n": 0}

    def _make(levels, routing_rules=None, document_type="purchase_order", **extra):
        counter["n"] += 1
        data = {
            "workflow_name": extra.pop("workflow_name", f"wf_{document_type}_{counter['n']}"),
            "document_type": document_type,
            "levels": levels,
            "routing_rules": routing_rules or [],
        }
        data.update(extra)
        return create_definition(data)
    return _make
