"""
Flask-Migrate / Alembic entry point.

Usage:
    flask db upgrade
    flask db migrate -m "description"
    flask sync-hierarchy <workspace_id>
"""

from roadmap_sync import create_app

app = create_app()
