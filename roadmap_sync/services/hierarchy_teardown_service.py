"""
Hierarchy Teardown Service — deletes a workspace's mirrored hierarchy.

Deletion order:
  1. both junction tables (no self-reference)
  2. Features, leaves first: each pass deletes the Features no other Feature
     points at as its parent, and is committed before the next pass
  3. Initiatives, then Components, then Products (flat deletes)

Cycle policy: if a pass deletes nothing while Features remain (a parent
cycle, or a delete refused by the datastore), the loop stops, the remaining
Feature ids are logged and step 3 is skipped; the call returns False. What
was already deleted stays deleted.
"""

from __future__ import annotations

import logging

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError

from roadmap_sync.models import db
from roadmap_sync.models.hierarchy import (
    Component,
    ComponentInitiativeLink,
    Feature,
    Initiative,
    InitiativeFeatureLink,
    Product,
)
from roadmap_sync.services.workspace_service import load_workspace

logger = logging.getLogger(__name__)


def _leaf_feature_ids(workspace_id: str) -> list[str]:
    """Features of the workspace that no other Feature references as parent."""
    parents = (
        select(Feature.parent_id)
        .where(Feature.workspace_id == workspace_id, Feature.parent_id.is_not(None))
    )
    stmt = select(Feature.id).where(
        Feature.workspace_id == workspace_id,
        Feature.id.not_in(parents),
    )
    return list(db.session.execute(stmt).scalars())


def _delete_feature_batch(workspace_id: str, feature_ids: list[str]) -> int:
    """Delete one pass of leaves and commit; a refused delete counts as 0 rows."""
    try:
        result = db.session.execute(
            delete(Feature)
            .where(Feature.workspace_id == workspace_id, Feature.id.in_(feature_ids))
            .execution_options(synchronize_session=False)
        )
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        logger.exception(
            "Leaf delete refused by the datastore workspace=%s batch=%d",
            workspace_id, len(feature_ids), extra={"workspace_id": workspace_id},
        )
        return 0
    return result.rowcount


def _delete_all(model, workspace_id: str) -> int:
    result = db.session.execute(
        delete(model)
        .where(model.workspace_id == workspace_id)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount


def _remaining_feature_ids(workspace_id: str) -> list[str]:
    return list(db.session.execute(
        select(Feature.id).where(Feature.workspace_id == workspace_id)
    ).scalars())


def clear_hierarchy(workspace_id: str) -> bool:
    """Delete every hierarchy row of the workspace.

    Returns:
        True when every kind reached zero rows; False when the Feature loop
        stopped with rows remaining.

    Raises:
        NotFoundError: Unknown workspace.
    """
    load_workspace(workspace_id)
    log_extra = {"workspace_id": workspace_id}

    links = _delete_all(ComponentInitiativeLink, workspace_id)
    links += _delete_all(InitiativeFeatureLink, workspace_id)
    db.session.commit()
    logger.info("Teardown: deleted %d junction row(s)", links, extra=log_extra)

    passes = 0
    deleted_features = 0
    while True:
        leaves = _leaf_feature_ids(workspace_id)
        if not leaves:
            break
        deleted = _delete_feature_batch(workspace_id, leaves)
        passes += 1
        if deleted == 0:
            break
        deleted_features += deleted

    remaining = _remaining_feature_ids(workspace_id)
    if remaining:
        logger.error(
            "Teardown aborted: %d feature(s) could not be stripped after %d pass(es); "
            "initiatives, components and products were kept. Remaining ids: %s",
            len(remaining), passes, remaining, extra=log_extra,
        )
        return False

    initiatives = _delete_all(Initiative, workspace_id)
    components = _delete_all(Component, workspace_id)
    products = _delete_all(Product, workspace_id)
    db.session.commit()

    logger.info(
        "Teardown complete: features=%d (%d passes) initiatives=%d components=%d products=%d",
        deleted_features, passes, initiatives, components, products, extra=log_extra,
    )
    return True
