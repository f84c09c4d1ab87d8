"""
Flask-Migrate / Alembic entry point for Field Labs.

Usage:
    FLASK_APP=wsgi.py flask db init      # first time only (adds env.py + alembic.ini)
    FLASK_APP=wsgi.py flask db upgrade   # applies migrations/versions/
"""

from fieldlabs import create_app

app = create_app()
