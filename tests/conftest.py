"""
Shared pytest fixtures for the HoldingManager test suite.

Provides:
    - app: Flask application (session-scoped, in-memory SQLite)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client
    - manager: WorkflowLifecycleManager bound to the app's registry
    - employe / responsable / chef_service / rh / directeur / admin: Actors
    - auth_headers: builds X-User-Id / X-User-Role headers for an Actor
"""

import pytest

from holdingmanager import create_app
from holdingmanager.models import db as _db
from holdingmanager.services.permission import Actor
from holdingmanager.services.workflow_lifecycle import WorkflowLifecycleManager


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


@pytest.fixture()
def manager(app):
    return WorkflowLifecycleManager(app.extensions["workflow_registry"])


# ── Actors ───────────────────────────────────────────────────────────────


@pytest.fixture()
def employe():
    return Actor(user_id="emp-1", role="employe")


@pytest.fixture()
def other_employe():
    return Actor(user_id="emp-2", role="employe")


@pytest.fixture()
def responsable():
    return Actor(user_id="resp-1", role="responsable")


@pytest.fixture()
def chef_service():
    return Actor(user_id="chef-1", role="chef_service")


@pytest.fixture()
def rh():
    return Actor(user_id="rh-1", role="rh")


@pytest.fixture()
def directeur():
    return Actor(user_id="dir-1", role="directeur")


@pytest.fixture()
def admin():
    return Actor(user_id="adm-1", role="admin")


@pytest.fixture()
def auth_headers():
    def _headers(actor):
        return {"X-User-Id": actor.user_id, "X-User-Role": actor.role}
    return _headers


# ── Payloads ─────────────────────────────────────────────────────────────


@pytest.fixture()
def conge_payload():
    return {
        "title": "Congés d'été",
        "data": {"date_debut": "2026-08-03", "date_fin": "2026-08-14", "motif": "Vacances"},
    }


@pytest.fixture()
def achat_payload():
    return {
        "title": "Achat PC portables",
        "amount": 4200,
        "priority": "high",
        "data": {"fournisseur": "Dell", "justification": "Renouvellement du parc"},
    }
