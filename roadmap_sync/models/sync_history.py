"""SyncHistoryRecord — the Ledger of hierarchy sync attempts."""

from sqlalchemy import text

from roadmap_sync.models import db
from roadmap_sync.models.base import WorkspaceModel, _iso, _utcnow, _uuid

SYNC_IN_PROGRESS = "in_progress"
SYNC_COMPLETED = "completed"
SYNC_FAILED = "failed"
SYNC_STATUSES = frozenset({SYNC_IN_PROGRESS, SYNC_COMPLETED, SYNC_FAILED})


class SyncHistoryRecord(WorkspaceModel):
    """
    One hierarchy sync attempt.

    Lifecycle: inserted as in_progress, then exactly one terminal update to
    completed | failed. The partial unique index below allows at most one
    in_progress row per workspace, which serialises runs across processes.
    """

    __tablename__ = "sync_history"
    __table_args__ = (
        db.Index(
            "uq_sync_history_one_active",
            "workspace_id",
            unique=True,
            sqlite_where=text("status = 'in_progress'"),
            postgresql_where=text("status = 'in_progress'"),
        ),
        db.Index("ix_sync_history_ws_started", "workspace_id", "started_at"),
    )

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    status = db.Column(
        db.String(20), nullable=False, default=SYNC_IN_PROGRESS,
        comment="in_progress | completed | failed",
    )
    products_count = db.Column(db.Integer, nullable=False, default=0)
    components_count = db.Column(db.Integer, nullable=False, default=0)
    features_count = db.Column(db.Integer, nullable=False, default=0)
    initiatives_count = db.Column(db.Integer, nullable=False, default=0)
    initiative_features_count = db.Column(db.Integer, nullable=False, default=0)
    component_initiatives_count = db.Column(db.Integer, nullable=False, default=0)
    error_message = db.Column(db.Text, nullable=True)
    started_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    def to_dict(self):
        return {
            "id": self.id,
            "workspace_id": self.workspace_id,
            "status": self.status,
            "products_count": self.products_count,
            "components_count": self.components_count,
            "features_count": self.features_count,
            "initiatives_count": self.initiatives_count,
            "initiative_features_count": self.initiative_features_count,
            "component_initiatives_count": self.component_initiatives_count,
            "error_message": self.error_message,
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
        }

    def __repr__(self):
        return f"<SyncHistoryRecord {self.id[:8]} {self.status}>"
