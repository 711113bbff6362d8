"""
Shared pytest fixtures for the Roadmap Sync test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - encryption_key: ENCRYPTION_KEY for the whole session (autouse)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - workspace: Workspace with Source and Target credentials
    - source_payloads: canned Source System entities (normalised shape)
"""

import os

import pytest
from cryptography.fernet import Fernet

from roadmap_sync import create_app
from roadmap_sync.integrations.source_gateway import source_gateway
from roadmap_sync.integrations.target_gateway import target_gateway
from roadmap_sync.models import db as _db


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    application = create_app("testing")
    return application


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(scope="session", autouse=True)
def encryption_key():
    """Stable Fernet key so stored tokens decrypt across fixtures."""
    key = Fernet.generate_key().decode()
    os.environ["ENCRYPTION_KEY"] = key
    yield key


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, rollback after test, recreate tables."""
    with app.app_context():
        source_gateway.reset_circuit()
        target_gateway.reset_circuit()
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


# ── Convenience fixtures ─────────────────────────────────────────────────


@pytest.fixture()
def workspace():
    """Workspace connected to both systems; returns the Workspace row."""
    from roadmap_sync.services.workspace_service import create_workspace, load_workspace

    data = create_workspace({
        "name": "Acme Roadmap",
        "source_token": "pb-token",
        "target_organization": "acme",
        "target_project": "Platform",
        "target_token": "ado-pat",
    })
    return load_workspace(data["id"])


@pytest.fixture()
def source_payloads():
    """A small hierarchy as returned by the source gateway fetch_* methods.

    P1 ─ C1 ─ F1 ─ F2 ─ F3
         C2 ─ F4
    I1 declares C1 and links F2; I2 links F4.
    """
    def entity(sid, **extra):
        return {
            "source_id": sid,
            "name": f"Name {sid}",
            "description": None,
            "status": "active",
            "metadata": {"raw": sid},
            **extra,
        }

    return {
        "products": [entity("P1")],
        "components": [
            entity("C1", product_source_id="P1", parent_component_source_id=None),
            entity("C2", product_source_id="P1", parent_component_source_id=None),
        ],
        "initiatives": [
            entity("I1", product_source_id="P1", component_source_ids=["C1"],
                   timeframe={"startDate": "2026-01-01"}, owner="pm@example.com"),
            entity("I2", product_source_id=None, component_source_ids=[],
                   timeframe=None, owner=None),
        ],
        "features": [
            entity("F1", parent_source_id=None, component_source_id="C1", owner=None,
                   target_start_date="2026-02-01", target_end_date="2026-03-31",
                   initiative_source_ids=[]),
            entity("F2", parent_source_id="F1", component_source_id="C1", owner=None,
                   target_start_date=None, target_end_date=None,
                   initiative_source_ids=["I1"]),
            entity("F3", parent_source_id="F2", component_source_id="C1", owner=None,
                   target_start_date=None, target_end_date=None,
                   initiative_source_ids=[]),
            entity("F4", parent_source_id=None, component_source_id="C2", owner=None,
                   target_start_date=None, target_end_date=None,
                   initiative_source_ids=["I2"]),
        ],
    }
