"""
Shared pytest fixtures for the Field Labs test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - side_effects: the app's SideEffectQueue, emptied around each test
    - queued_side_effects: same queue switched to "queued" mode for one test
"""

import pytest

from fieldlabs import create_app
from fieldlabs.models import db as _db
from fieldlabs.services.side_effects import get_side_effects


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
        get_side_effects().clear()
        yield
        get_side_effects().clear()
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def side_effects(app):
    """The app's SideEffectQueue (inline mode under TestingConfig)."""
    return get_side_effects()


@pytest.fixture()
def queued_side_effects(side_effects):
    """Switch the queue to queued mode for a single test."""
    side_effects.mode = "queued"
    yield side_effects
    side_effects.mode = "inline"
