"""
Shared pytest fixtures for the change engine test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB + cache reset inside an app context (autouse)
    - client: Flask test client (function-scoped)
    - tenant / other_tenant: Pre-created Tenant entities
    - seeded_tenant: Tenant with the default matrix, workflows and categories
    - headers: Builder for X-Tenant-ID / X-User request headers
"""

import pytest

from change_engine import create_app
from change_engine.models import db as _db
from change_engine.models.tenant import Tenant
from change_engine.services import cache_service


def make_tenant(slug, name=None, **kwargs):
    tenant = Tenant(name=name or slug.title(), slug=slug, **kwargs)
    _db.session.add(tenant)
    _db.session.commit()
    return tenant

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
    """Per-test: open app context, reset the settings cache, recreate tables after."""
    with app.app_context():
        cache_service.clear_all()
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()
        cache_service.clear_all()

@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()

# ── Tenant fixtures ──────────────────────────────────────────────────────

@pytest.fixture()
def tenant():
    """Tenant without any change-management settings."""
    return make_tenant("acme", "Acme Corp")

@pytest.fixture()
def other_tenant():
    return make_tenant("globex", "Globex")

@pytest.fixture()
def seeded_tenant(tenant):
    """Tenant seeded with the default matrix, workflows and categories."""
    from change_engine.services.change_settings_service import initialize_defaults
    initialize_defaults(tenant.id, user="admin")
    return tenant

@pytest.fixture()
def category_id(seeded_tenant):
    """Lookup of a seeded category id by name."""
    from change_engine.services.change_settings_service import list_settings

    def lookup(name):
        for row in list_settings(seeded_tenant.id, "change_category"):
            if row["name"] == name:
                return row["id"]
        raise AssertionError(f"category {name!r} not seeded")
    return lookup

@pytest.fixture()
def headers():
    def build(tenant, user="alice", **extra):
        result = {"X-Tenant-ID": str(tenant.id), "X-User": user}
        result.update(extra)
        return result
    return build
