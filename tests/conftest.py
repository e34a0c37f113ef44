"""
Shared pytest fixtures for the Codex Structure test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - make_model / make_workflow: factories going through the services
"""

import pytest

from codex import create_app
from codex.models import db as _db
from codex.services.schema_registry import SchemaRegistry
from codex.services.workflow_engine import WorkflowEngine


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


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, rollback after test, recreate tables."""
    with app.app_context():
        yield _db.session
        _db.session.rollback()
        _db.session.info.pop("codex_atomic_depth", None)
        _db.drop_all()
        _db.create_all()
        _db.session.remove()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


# ── Convenience fixtures ─────────────────────────────────────────────────


@pytest.fixture()
def make_model(session):
    """Create a Model through the registry: ``make_model("Task", [props], workflow_id=...)``."""

    def _make(name, properties=None, **data):
        return SchemaRegistry(session).upsert_model(
            {"name": name, **data}, properties or [], actor_id="admin",
        )

    return _make


@pytest.fixture()
def make_workflow(session):
    """Create a Workflow from ``[(name, is_initial, [successor names])]`` tuples."""

    def _make(name, states):
        return WorkflowEngine(session).upsert_workflow(
            {"name": name},
            [
                {"name": s, "is_initial": initial, "successor_state_names": succ}
                for s, initial, succ in states
            ],
            actor_id="admin",
        )

    return _make


@pytest.fixture()
def task_workflow(make_workflow):
    """Open → In Progress → Done, plus In Progress → Open."""
    return make_workflow("Task Flow", [
        ("Open", True, ["In Progress"]),
        ("In Progress", False, ["Done", "Open"]),
        ("Done", False, []),
    ])

