"""
Field Labs
Flask Application Factory.

Usage:
    from fieldlabs import create_app
    app = create_app()           # defaults to "development"
    app = create_app("testing")  # explicit config
"""

import logging
import os

from flask import Flask
from flask_migrate import Migrate

from fieldlabs.config import config
from fieldlabs.core.logging_config import configure_logging
from fieldlabs.models import db
from fieldlabs.services.side_effects import init_side_effects

logger = logging.getLogger(__name__)

# ── SQLite FK enforcement + SAVEPOINT support (global engine events) ────
from sqlalchemy import event as _sa_event, engine as _sa_engine


@_sa_event.listens_for(_sa_engine.Engine, "connect")
def _enable_sqlite_fk(dbapi_conn, connection_record):
    """Enable foreign key enforcement for SQLite connections.

    Also turns off pysqlite's own transaction handling so BEGIN is emitted
    by _sqlite_begin below. Without it the driver defers BEGIN to the first
    DML statement, and a SAVEPOINT issued first becomes the outer
    transaction, so RELEASE commits it.
    """
    if "sqlite" in type(dbapi_conn).__module__:
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()
        dbapi_conn.isolation_level = None


@_sa_event.listens_for(_sa_engine.Engine, "begin")
def _sqlite_begin(conn):
    """Emit BEGIN explicitly for SQLite (pairs with isolation_level=None)."""
    if conn.dialect.name == "sqlite":
        conn.exec_driver_sql("BEGIN")


migrate = Migrate()


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
    app.config.from_object(config[config_name]())

    # ── Structured logging (must be first) ───────────────────────────────
    configure_logging(app)

    # ── Extensions ───────────────────────────────────────────────────────
    db.init_app(app)
    migrate.init_app(app, db)
    init_side_effects(app)

    # ── Import all models so Alembic can detect them ─────────────────────
    from fieldlabs.models import activity as _activity_models      # noqa: F401
    from fieldlabs.models import project as _project_models        # noqa: F401
    from fieldlabs.models import sop as _sop_models                # noqa: F401
    from fieldlabs.models import observation as _observation_models  # noqa: F401
    from fieldlabs.models import knowledge as _knowledge_models    # noqa: F401
    from fieldlabs.models import training as _training_models      # noqa: F401

    # ── Auto-create tables (CREATE IF NOT EXISTS) ────────────────────────
    with app.app_context():
        try:
            db.create_all()
            app.logger.info("db.create_all() completed successfully")
        except Exception as e:
            app.logger.warning("db.create_all() failed: %s", e)

    logger.info("Field Labs app created", extra={"event_type": "app.startup"})
    return app
