"""
Sync History Service — accessor over the Ledger of hierarchy sync runs.

A run is one row: inserted as ``in_progress`` by open_run(), finished by
exactly one close_run(). Hierarchy counts are computed live from the
Hierarchy Store rather than read back from the Ledger.

Cross-process exclusion:
  sync_history carries a partial unique index on (workspace_id) for
  status = 'in_progress'. open_run() turns the resulting IntegrityError into
  BusyError, so two service instances cannot open overlapping runs.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from flask import current_app
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError

from roadmap_sync.core.exceptions import BusyError
from roadmap_sync.models import db
from roadmap_sync.models.hierarchy import Component, Feature, Initiative, Product
from roadmap_sync.models.sync_history import (
    SYNC_FAILED,
    SYNC_IN_PROGRESS,
    SYNC_STATUSES,
    SyncHistoryRecord,
)

logger = logging.getLogger(__name__)

_COUNT_FIELDS = (
    "products_count",
    "components_count",
    "features_count",
    "initiatives_count",
    "initiative_features_count",
    "component_initiatives_count",
)


def _stale_minutes(older_than_minutes: int | None) -> int:
    if older_than_minutes is None:
        return current_app.config.get("SYNC_STALE_AFTER_MINUTES", 60)
    return older_than_minutes


def open_run(workspace_id: str) -> SyncHistoryRecord:
    """Insert and commit a new ``in_progress`` run.

    Raises:
        BusyError: A run is already active for this workspace.
    """
    active = db.session.execute(
        select(SyncHistoryRecord.id).where(
            SyncHistoryRecord.workspace_id == workspace_id,
            SyncHistoryRecord.status == SYNC_IN_PROGRESS,
        )
    ).first()
    if active is not None:
        raise BusyError(workspace_id)

    record = SyncHistoryRecord(workspace_id=workspace_id, status=SYNC_IN_PROGRESS)
    db.session.add(record)
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        logger.warning("Concurrent sync run rejected by the datastore workspace=%s", workspace_id)
        raise BusyError(workspace_id)

    logger.info(
        "Sync run opened id=%s workspace=%s", record.id, workspace_id,
        extra={"workspace_id": workspace_id, "sync_id": record.id},
    )
    return record


def close_run(
    sync_id: str,
    status: str,
    counts: dict | None = None,
    error: str | None = None,
) -> SyncHistoryRecord | None:
    """Write the single terminal update of a run and commit.

    The UPDATE only matches a row that is still ``in_progress``; a row that
    is already terminal is left untouched and a warning is logged.

    Args:
        status: ``completed`` or ``failed``.
        counts: any of the ``*_count`` columns.
        error: human-readable cause, stored verbatim.

    Returns:
        The record as stored after the call, or None if it does not exist.
    """
    if status not in SYNC_STATUSES or status == SYNC_IN_PROGRESS:
        raise ValueError(f"Invalid terminal sync status: {status!r}")

    values = {k: v for k, v in (counts or {}).items() if k in _COUNT_FIELDS}
    values.update({
        "status": status,
        "error_message": error,
        "completed_at": datetime.now(timezone.utc),
    })
    result = db.session.execute(
        update(SyncHistoryRecord)
        .where(SyncHistoryRecord.id == sync_id, SyncHistoryRecord.status == SYNC_IN_PROGRESS)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    db.session.commit()

    if result.rowcount == 0:
        logger.warning(
            "Sync run %s was not in progress; terminal update to %s ignored", sync_id, status,
            extra={"sync_id": sync_id},
        )

    record = db.session.get(SyncHistoryRecord, sync_id)
    if record is not None:
        db.session.refresh(record)
    return record


def latest(workspace_id: str) -> SyncHistoryRecord | None:
    """Return the most recently started run for the workspace, if any."""
    stmt = (
        select(SyncHistoryRecord)
        .where(SyncHistoryRecord.workspace_id == workspace_id)
        .order_by(SyncHistoryRecord.started_at.desc())
        .limit(1)
    )
    return db.session.execute(stmt).scalars().first()


def list_runs(workspace_id: str, limit: int = 20) -> list[SyncHistoryRecord]:
    stmt = (
        select(SyncHistoryRecord)
        .where(SyncHistoryRecord.workspace_id == workspace_id)
        .order_by(SyncHistoryRecord.started_at.desc())
        .limit(limit)
    )
    return list(db.session.execute(stmt).scalars())


def counts(workspace_id: str) -> dict:
    """Live row counts of the Hierarchy Store for one workspace."""
    result = {}
    for key, model in (
        ("products", Product),
        ("components", Component),
        ("features", Feature),
        ("initiatives", Initiative),
    ):
        result[key] = db.session.execute(
            select(func.count()).select_from(model).where(model.workspace_id == workspace_id)
        ).scalar_one()
    return result


def reset_stale_runs(workspace_id: str | None = None, older_than_minutes: int | None = None) -> int:
    """Mark abandoned ``in_progress`` runs as failed.

    A run is stale once it has been in progress for longer than
    ``older_than_minutes`` (default SYNC_STALE_AFTER_MINUTES).

    Returns:
        Number of runs reset.
    """
    minutes = _stale_minutes(older_than_minutes)
    cutoff = datetime.now(timezone.utc) - timedelta(minutes=minutes)
    stmt = (
        update(SyncHistoryRecord)
        .where(
            SyncHistoryRecord.status == SYNC_IN_PROGRESS,
            SyncHistoryRecord.started_at < cutoff,
        )
        .values(
            status=SYNC_FAILED,
            error_message=f"Sync run abandoned: no terminal update within {minutes} minutes",
            completed_at=datetime.now(timezone.utc),
        )
        .execution_options(synchronize_session=False)
    )
    if workspace_id is not None:
        stmt = stmt.where(SyncHistoryRecord.workspace_id == workspace_id)
    result = db.session.execute(stmt)
    db.session.commit()

    if result.rowcount:
        logger.warning(
            "Reset %d stale sync run(s) workspace=%s", result.rowcount, workspace_id or "*",
            extra={"workspace_id": workspace_id},
        )
    return result.rowcount
