"""
WorkspaceModel — Abstract base class for workspace-scoped models.

Every table of the Hierarchy Store, the Ledger, the Entity Mapping layer and
the rank history inherits from WorkspaceModel instead of db.Model directly.
This adds:
  - workspace_id FK column with index (ON DELETE CASCADE)
  - query_for_workspace(workspace_id) classmethod
  - shared helpers for uuid primary keys and UTC timestamps
"""

import uuid
from datetime import datetime, timezone

from roadmap_sync.models import db


def _utcnow():
    return datetime.now(timezone.utc)


def _uuid():
    return str(uuid.uuid4())


def _iso(value):
    return value.isoformat() if value else None


class WorkspaceModel(db.Model):
    """Abstract base for workspace-scoped tables."""
    __abstract__ = True

    workspace_id = db.Column(
        db.String(36),
        db.ForeignKey("workspaces.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    @classmethod
    def query_for_workspace(cls, workspace_id):
        """Return a query filtered by workspace_id."""
        return cls.query.filter_by(workspace_id=workspace_id)
