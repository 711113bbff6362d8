"""RankingRecord — one item of one extracted board priority order."""

from roadmap_sync.models import db
from roadmap_sync.models.base import WorkspaceModel, _iso, _utcnow


class RankingRecord(WorkspaceModel):
    """
    Rows sharing a ``sync_history_id`` form one extraction batch for a board.
    ``previous_rank`` null means the story was not in the previous batch.
    """

    __tablename__ = "ranking_records"
    __table_args__ = (
        db.Index("ix_ranking_records_ws_board", "workspace_id", "board_id"),
        db.UniqueConstraint("sync_history_id", "story_id", name="uq_ranking_records_batch_story"),
    )

    id = db.Column(db.Integer, primary_key=True, autoincrement=True)
    board_id = db.Column(db.String(100), nullable=False)
    sync_history_id = db.Column(db.String(36), nullable=False, index=True)
    story_id = db.Column(db.String(100), nullable=False)
    story_name = db.Column(db.String(500), nullable=True)
    current_rank = db.Column(db.Integer, nullable=False)
    previous_rank = db.Column(db.Integer, nullable=True)
    matching_id = db.Column(db.String(50), nullable=True)
    is_synced_to_ado = db.Column(db.Boolean, nullable=False, default=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    @property
    def direction(self) -> str:
        if self.previous_rank is None:
            return "new"
        if self.current_rank == self.previous_rank:
            return "unchanged"
        return "up" if self.current_rank < self.previous_rank else "down"

    @property
    def magnitude(self) -> int:
        if self.previous_rank is None:
            return 0
        return abs(self.previous_rank - self.current_rank)

    def to_dict(self):
        return {
            "id": self.id,
            "workspace_id": self.workspace_id,
            "board_id": self.board_id,
            "sync_history_id": self.sync_history_id,
            "story_id": self.story_id,
            "story_name": self.story_name,
            "current_rank": self.current_rank,
            "previous_rank": self.previous_rank,
            "direction": self.direction,
            "magnitude": self.magnitude,
            "matching_id": self.matching_id,
            "is_synced_to_ado": self.is_synced_to_ado,
            "created_at": _iso(self.created_at),
        }
