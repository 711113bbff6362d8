"""
Rank Reconciliation Service — diffs board priority orders between extractions.

Each extraction of a board's ordered items is stored as one batch of
RankingRecord rows sharing a ``sync_history_id``. The newest earlier batch
for the same workspace and board provides ``previous_rank``:

    new        story absent from the previous batch
    unchanged  same rank
    up         lower rank number than before (higher priority)
    down       higher rank number than before

Pushing is a separate, explicit step. Only changed records not yet synced
are sent to the Target System; a partially pushed batch is a normal state.
"""

from __future__ import annotations

import logging
import re
import uuid
from dataclasses import dataclass

from sqlalchemy import func, select

from roadmap_sync.core.exceptions import NotFoundError, TargetWriteError, ValidationError
from roadmap_sync.integrations.target_gateway import target_gateway
from roadmap_sync.middleware.logging_config import log_context
from roadmap_sync.models import db
from roadmap_sync.models.ranking import RankingRecord
from roadmap_sync.services.entity_mapping_service import find_mapping
from roadmap_sync.services.workspace_service import get_workspace_with_target_token, load_workspace

logger = logging.getLogger(__name__)

# Target work-item keys: "1234" or "AB#1234"
_TARGET_KEY = re.compile(r"^(\d+|AB#\d+)$", re.IGNORECASE)

DIRECTION_NEW = "new"
DIRECTION_UNCHANGED = "unchanged"
DIRECTION_UP = "up"
DIRECTION_DOWN = "down"


@dataclass
class RankChange:
    story_id: str
    current_rank: int
    previous_rank: int | None
    direction: str
    magnitude: int

    def to_dict(self) -> dict:
        return {
            "story_id": self.story_id,
            "current_rank": self.current_rank,
            "previous_rank": self.previous_rank,
            "direction": self.direction,
            "magnitude": self.magnitude,
        }


def classify_rankings(current: list[dict], previous: dict[str, int | None]) -> list[RankChange]:
    """Classify every current item against the previous ranks.

    Args:
        current:  ordered items, each with ``story_id`` and ``rank``.
        previous: story_id → previous rank. A missing key or a None rank
                  both mean the item is new.
    """
    changes = []
    for item in current:
        story_id = str(item["story_id"])
        rank = int(item["rank"])
        before = previous.get(story_id)
        if before is None:
            direction, magnitude = DIRECTION_NEW, 0
        elif rank == before:
            direction, magnitude = DIRECTION_UNCHANGED, 0
        elif rank < before:
            direction, magnitude = DIRECTION_UP, before - rank
        else:
            direction, magnitude = DIRECTION_DOWN, rank - before
        changes.append(RankChange(story_id, rank, before, direction, magnitude))
    return changes


def normalize_target_key(value) -> str | None:
    """Return the numeric Target id for "1234" / "AB#1234", else None."""
    if value is None:
        return None
    text = str(value).strip()
    if not _TARGET_KEY.match(text):
        return None
    return re.sub(r"^AB#", "", text, flags=re.IGNORECASE)


def _validate_items(items: list[dict]) -> list[dict]:
    if not isinstance(items, list) or not items:
        raise ValidationError("items must be a non-empty list", details={"items": "required"})
    seen = set()
    cleaned = []
    for index, item in enumerate(items):
        if not isinstance(item, dict) or item.get("story_id") in (None, ""):
            raise ValidationError("every item needs a story_id", details={"index": index})
        try:
            rank = int(item.get("rank", index + 1))
        except (TypeError, ValueError):
            raise ValidationError("rank must be an integer", details={"index": index})
        story_id = str(item["story_id"])
        if story_id in seen:
            raise ValidationError(f"duplicate story_id {story_id}", details={"index": index})
        seen.add(story_id)
        cleaned.append({**item, "story_id": story_id, "rank": rank})
    return cleaned


def _latest_batch_id(workspace_id: str, board_id: str) -> str | None:
    """The batch holding the most recently inserted record for the board."""
    newest = (
        select(func.max(RankingRecord.id))
        .where(RankingRecord.workspace_id == workspace_id, RankingRecord.board_id == board_id)
        .scalar_subquery()
    )
    return db.session.execute(
        select(RankingRecord.sync_history_id).where(RankingRecord.id == newest)
    ).scalar_one_or_none()


def _batch(workspace_id: str, sync_history_id: str) -> list[RankingRecord]:
    stmt = (
        select(RankingRecord)
        .where(
            RankingRecord.workspace_id == workspace_id,
            RankingRecord.sync_history_id == sync_history_id,
        )
        .order_by(RankingRecord.current_rank, RankingRecord.id)
    )
    return list(db.session.execute(stmt).scalars())


def reconcile_ranks(workspace_id: str, board_id: str, items: list[dict]) -> list[dict]:
    """Store a new ranking batch for the board, classified against the last one.

    ``matching_id`` resolution order: the item's own ``matching_id`` when it
    is a Target key, the linked Target id of the story's mapping, the
    previous record's ``matching_id``. Unresolved stays None.

    Returns:
        The new batch, serialised, in rank order.

    Raises:
        NotFoundError: Unknown workspace.
        ValidationError: Malformed items.
    """
    load_workspace(workspace_id)
    items = _validate_items(items)
    board_id = str(board_id)

    previous_id = _latest_batch_id(workspace_id, board_id)
    previous = {r.story_id: r for r in _batch(workspace_id, previous_id)} if previous_id else {}
    changes = classify_rankings(items, {sid: r.current_rank for sid, r in previous.items()})

    batch_id = str(uuid.uuid4())
    records = []
    for item, change in zip(items, changes):
        before = previous.get(change.story_id)
        matching_id = normalize_target_key(item.get("matching_id"))
        if matching_id is None:
            mapping = find_mapping(workspace_id, change.story_id)
            if mapping is not None and mapping.target_id:
                matching_id = mapping.target_id
        if matching_id is None and before is not None:
            matching_id = before.matching_id

        record = RankingRecord(
            workspace_id=workspace_id,
            board_id=board_id,
            sync_history_id=batch_id,
            story_id=change.story_id,
            story_name=item.get("name") or item.get("story_name"),
            current_rank=change.current_rank,
            previous_rank=change.previous_rank,
            matching_id=matching_id,
            is_synced_to_ado=bool(
                change.direction == DIRECTION_UNCHANGED and before is not None and before.is_synced_to_ado
            ),
        )
        db.session.add(record)
        records.append(record)
    db.session.commit()

    summary = {}
    for change in changes:
        summary[change.direction] = summary.get(change.direction, 0) + 1
    logger.info(
        "Ranking batch %s stored board=%s items=%d previous=%s summary=%s",
        batch_id, board_id, len(records), previous_id, summary,
        extra={"workspace_id": workspace_id, "board_id": board_id, "sync_id": batch_id},
    )
    return [r.to_dict() for r in sorted(records, key=lambda r: r.current_rank)]


def latest_rankings(workspace_id: str, board_id: str) -> list[dict]:
    """The newest batch for the board, or an empty list."""
    batch_id = _latest_batch_id(workspace_id, str(board_id))
    if batch_id is None:
        return []
    return [r.to_dict() for r in _batch(workspace_id, batch_id)]


def push_rankings_to_target(workspace_id: str, sync_history_id: str) -> dict:
    """Send changed, not-yet-synced ranks of one batch to the Target System.

    Each success sets ``is_synced_to_ado`` and is committed at once, so a
    failure part-way leaves earlier successes recorded.

    Returns:
        {"updated_count": int, "skipped_count": int,
         "errors": [{"story_id": str, "error": str}, ...]}

    Raises:
        NotFoundError: No batch with that id in the workspace.
        ValidationError: Target connection not configured.
    """
    records = _batch(workspace_id, sync_history_id)
    if not records:
        raise NotFoundError(resource="RankingBatch", resource_id=sync_history_id, workspace_id=workspace_id)

    config = get_workspace_with_target_token(workspace_id)
    updated, skipped, errors = 0, 0, []
    with log_context(workspace_id=workspace_id, sync_id=sync_history_id):
        for record in records:
            if record.is_synced_to_ado or record.direction == DIRECTION_UNCHANGED:
                skipped += 1
                continue
            if not record.matching_id:
                skipped += 1
                errors.append({"story_id": record.story_id, "error": "No Target System id for this story"})
                continue
            try:
                result = target_gateway.update_stack_rank(
                    config, workspace_id, record.matching_id, record.current_rank,
                )
                if not result.ok:
                    raise TargetWriteError(
                        f"Stack rank update failed: {result.error}",
                        target_id=record.matching_id, status_code=result.status_code,
                    )
            except TargetWriteError as exc:
                logger.error("Rank push failed story=%s target=%s: %s", record.story_id, record.matching_id, exc)
                errors.append({"story_id": record.story_id, "error": str(exc)})
                continue

            record.is_synced_to_ado = True
            db.session.commit()
            updated += 1

        logger.info("Rank push updated=%d skipped=%d errors=%d", updated, skipped, len(errors))
    return {"updated_count": updated, "skipped_count": skipped, "errors": errors}
