"""
Flask-Migrate / Alembic entry point.

Usage:
    flask db upgrade
    flask db migrate -m "description"
    flask status-integrity --limit 50
"""

from cra_tracker import create_app

app = create_app()
