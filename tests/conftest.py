"""
Shared pytest fixtures for the CRA Request Tracker test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - actor_headers: build X-Actor-* headers for API calls
    - make_actor: build an Actor for service-level calls
"""

import pytest

from cra_tracker import create_app
from cra_tracker.auth import Actor
from cra_tracker.models import db as _db
from cra_tracker.models.request import Role


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
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


# ── Actor helpers ────────────────────────────────────────────────────────


def headers_for(role, actor_id=None, name=None, edit_mode=False):
    h = {
        "X-Actor-Id": actor_id or f"{role}-1",
        "X-Actor-Role": role,
        "X-Actor-Name": name or f"{role.title()} User",
    }
    if edit_mode:
        h["X-Edit-Mode"] = "true"
    return h


@pytest.fixture()
def actor_headers():
    """Callable: actor_headers("design") → X-Actor-* header dict."""
    return headers_for


@pytest.fixture()
def make_actor():
    """Callable: make_actor("sales", edit_mode=False) → Actor."""
    def _make(role, actor_id=None, name=None, edit_mode=False):
        role = Role(role)
        return Actor(
            id=actor_id or f"{role.value}-1",
            role=role,
            name=name or f"{role.value.title()} User",
            edit_mode=edit_mode and role == Role.ADMIN,
        )
    return _make
