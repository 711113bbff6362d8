"""EntityMapping — cross-system anchor between a Source entity and a Target item."""

from roadmap_sync.models import db
from roadmap_sync.models.base import WorkspaceModel, _iso, _utcnow, _uuid

MAPPING_UNSYNCED = "unsynced"
MAPPING_SYNCED = "synced"
MAPPING_CONFLICT = "conflict"

SOURCE_TYPES = frozenset({"initiative", "feature", "subfeature"})


class EntityMapping(WorkspaceModel):
    """
    One row per Source entity ever considered for linkage.

    ``target_id`` is written once by a link and only changed afterwards by an
    explicit re-link. ``target_title`` is the last title written to the
    Target System.
    """

    __tablename__ = "entity_mappings"
    __table_args__ = (
        db.UniqueConstraint("workspace_id", "source_id", name="uq_entity_mappings_ws_source"),
        db.Index("ix_entity_mappings_ws_target", "workspace_id", "target_id"),
    )

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    source_id = db.Column(db.String(100), nullable=False)
    source_parent_id = db.Column(db.String(100), nullable=True)
    source_type = db.Column(
        db.String(20), nullable=True,
        comment="initiative | feature | subfeature",
    )
    target_id = db.Column(db.String(50), nullable=True)
    target_title = db.Column(db.String(500), nullable=True)
    sync_status = db.Column(
        db.String(20), nullable=False, default=MAPPING_UNSYNCED,
        comment="unsynced | synced | conflict",
    )
    last_synced_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "workspace_id": self.workspace_id,
            "source_id": self.source_id,
            "source_parent_id": self.source_parent_id,
            "source_type": self.source_type,
            "target_id": self.target_id,
            "target_title": self.target_title,
            "sync_status": self.sync_status,
            "last_synced_at": _iso(self.last_synced_at),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }

    def __repr__(self):
        return f"<EntityMapping {self.source_id}->{self.target_id} {self.sync_status}>"
