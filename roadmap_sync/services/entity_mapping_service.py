"""
Entity Mapping Service — links Source entities to Target System work items.

Each EntityMapping row anchors one Source entity: its Target id, the last
title written to the Target System and a sync status
(unsynced | synced | conflict). This module is the only writer of those rows.

Target System failures are caught here, logged and reported as a boolean
(or None) so a batch loop driven by the caller can move on to the next
entity. Repeated passes are side-effect free where the Target System allows:
  - link_to_target with the same pair is a no-op
  - apply_title_prefix skips the write when the marker is already present
  - create_parent_child_link does NOT pre-check for an existing relation

All outbound HTTP: delegated to
`roadmap_sync.integrations.target_gateway.target_gateway`.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy import select

from roadmap_sync.core.exceptions import NotFoundError, TargetWriteError, ValidationError
from roadmap_sync.integrations.http_gateway import GatewayResult
from roadmap_sync.integrations.target_gateway import target_gateway
from roadmap_sync.models import db
from roadmap_sync.models.mapping import (
    MAPPING_CONFLICT,
    MAPPING_SYNCED,
    MAPPING_UNSYNCED,
    SOURCE_TYPES,
    EntityMapping,
)
from roadmap_sync.services.workspace_service import get_workspace_with_target_token

logger = logging.getLogger(__name__)

# Source level → Target work-item type
_TARGET_TYPES = {
    "initiative": "Epic",
    "feature": "Feature",
    "subfeature": "User Story",
}


# ═════════════════════════════════════════════════════════════════════════════
# Internal helpers
# ═════════════════════════════════════════════════════════════════════════════


def _utcnow():
    return datetime.now(timezone.utc)


def title_marker(source_id: str) -> str:
    """Bracketed tag identifying a Source entity inside a Target title."""
    return f"[PB{source_id}]"


def _raise_for_result(result: GatewayResult, action: str, target_id: str | None = None) -> None:
    if not result.ok:
        raise TargetWriteError(
            f"{action} failed: {result.error}",
            target_id=target_id,
            status_code=result.status_code,
        )


def find_mapping(workspace_id: str, source_id: str) -> EntityMapping | None:
    stmt = select(EntityMapping).where(
        EntityMapping.workspace_id == workspace_id,
        EntityMapping.source_id == str(source_id),
    )
    return db.session.execute(stmt).scalar_one_or_none()


def _require_mapping(workspace_id: str, source_id: str) -> EntityMapping:
    mapping = find_mapping(workspace_id, source_id)
    if mapping is None:
        raise NotFoundError(resource="EntityMapping", resource_id=source_id, workspace_id=workspace_id)
    return mapping


# ═════════════════════════════════════════════════════════════════════════════
# Mapping rows
# ═════════════════════════════════════════════════════════════════════════════


def register_entity(
    workspace_id: str,
    source_id: str,
    source_parent_id: str | None = None,
    source_type: str | None = None,
) -> EntityMapping:
    """Create the mapping for a Source entity, or refresh its parent/type.

    Raises:
        ValidationError: Unknown ``source_type``.
    """
    if source_type is not None and source_type not in SOURCE_TYPES:
        raise ValidationError(
            f"source_type must be one of {sorted(SOURCE_TYPES)}",
            details={"source_type": source_type},
        )
    mapping = find_mapping(workspace_id, source_id)
    if mapping is None:
        mapping = EntityMapping(
            workspace_id=workspace_id,
            source_id=str(source_id),
            sync_status=MAPPING_UNSYNCED,
        )
        db.session.add(mapping)
    mapping.source_parent_id = str(source_parent_id) if source_parent_id else None
    if source_type is not None:
        mapping.source_type = source_type
    db.session.commit()
    return mapping


def find_parent_mapping(workspace_id: str, source_id: str) -> EntityMapping | None:
    """Mapping of the entity's declared Source parent, if both exist."""
    mapping = find_mapping(workspace_id, source_id)
    if mapping is None or not mapping.source_parent_id:
        return None
    return find_mapping(workspace_id, mapping.source_parent_id)


def link_to_target(workspace_id: str, source_id: str, target_id: str) -> bool:
    """Record ``target_id`` for the Source entity.

    Linking the same pair again is a no-op, except that it clears a
    ``conflict`` flag left by an earlier mismatched call. A different
    ``target_id`` than the one already stored is not applied: the mapping is
    flagged ``conflict`` and False is returned; use relink() to override.
    """
    target_id = str(target_id)
    mapping = find_mapping(workspace_id, source_id)
    if mapping is None:
        mapping = EntityMapping(workspace_id=workspace_id, source_id=str(source_id))
        db.session.add(mapping)
    elif mapping.target_id == target_id:
        if mapping.sync_status == MAPPING_CONFLICT:
            mapping.sync_status = MAPPING_SYNCED
            mapping.last_synced_at = _utcnow()
            db.session.commit()
            logger.info(
                "Conflict cleared source=%s target=%s", source_id, target_id,
                extra={"workspace_id": workspace_id},
            )
        return True
    elif mapping.target_id:
        mapping.sync_status = MAPPING_CONFLICT
        db.session.commit()
        logger.warning(
            "Mapping conflict source=%s linked=%s requested=%s",
            source_id, mapping.target_id, target_id,
            extra={"workspace_id": workspace_id},
        )
        return False

    mapping.target_id = target_id
    mapping.sync_status = MAPPING_SYNCED
    mapping.last_synced_at = _utcnow()
    db.session.commit()
    logger.info("Linked source=%s to target=%s", source_id, target_id, extra={"workspace_id": workspace_id})
    return True


def relink(workspace_id: str, source_id: str, target_id: str) -> dict:
    """Explicitly replace the Target id of an existing mapping.

    Raises:
        NotFoundError: No mapping for ``source_id``.
    """
    mapping = _require_mapping(workspace_id, source_id)
    previous = mapping.target_id
    mapping.target_id = str(target_id)
    mapping.target_title = None
    mapping.sync_status = MAPPING_SYNCED
    mapping.last_synced_at = _utcnow()
    db.session.commit()
    logger.info(
        "Re-linked source=%s from target=%s to target=%s", source_id, previous, target_id,
        extra={"workspace_id": workspace_id},
    )
    return mapping.to_dict()


def list_mappings(workspace_id: str, sync_status: str | None = None) -> list[dict]:
    stmt = select(EntityMapping).where(EntityMapping.workspace_id == workspace_id)
    if sync_status:
        stmt = stmt.where(EntityMapping.sync_status == sync_status)
    stmt = stmt.order_by(EntityMapping.created_at)
    return [m.to_dict() for m in db.session.execute(stmt).scalars()]


def get_by_target_id(workspace_id: str, target_id: str) -> dict | None:
    stmt = select(EntityMapping).where(
        EntityMapping.workspace_id == workspace_id,
        EntityMapping.target_id == str(target_id),
    )
    mapping = db.session.execute(stmt).scalars().first()
    return mapping.to_dict() if mapping else None


# ═════════════════════════════════════════════════════════════════════════════
# Target System writes
# ═════════════════════════════════════════════════════════════════════════════


def apply_title_prefix(workspace_id: str, target_id: str, source_id: str, current_title: str) -> bool:
    """Make sure the Target item's title starts with the Source marker.

    No write is issued when ``current_title`` already carries the marker.
    """
    marker = title_marker(source_id)
    current_title = current_title or ""
    if marker in current_title:
        return True

    new_title = f"{marker} {current_title}" if current_title else marker
    config = get_workspace_with_target_token(workspace_id)
    try:
        result = target_gateway.update_item_title(config, workspace_id, str(target_id), new_title)
        _raise_for_result(result, "Title update", target_id)
    except TargetWriteError as exc:
        logger.error(
            "Title prefix failed target=%s source=%s: %s", target_id, source_id, exc,
            extra={"workspace_id": workspace_id},
        )
        return False

    mapping = find_mapping(workspace_id, source_id)
    if mapping is not None and mapping.target_id == str(target_id):
        mapping.target_title = new_title
        mapping.sync_status = MAPPING_SYNCED
        mapping.last_synced_at = _utcnow()
        db.session.commit()
    return True


def create_parent_child_link(workspace_id: str, parent_target_id: str, child_target_id: str) -> bool:
    """Create the parent/child relation in the Target System."""
    config = get_workspace_with_target_token(workspace_id)
    try:
        result = target_gateway.create_parent_child_relationship(
            config, workspace_id, str(parent_target_id), str(child_target_id),
        )
        _raise_for_result(result, "Parent/child link", child_target_id)
    except TargetWriteError as exc:
        logger.error(
            "Parent/child link failed parent=%s child=%s: %s", parent_target_id, child_target_id, exc,
            extra={"workspace_id": workspace_id},
        )
        return False
    return True


def target_type_for(source_type: str) -> str:
    """Target work-item type used for a Source level.

    Raises:
        ValidationError: Unknown ``source_type``.
    """
    try:
        return _TARGET_TYPES[source_type]
    except KeyError:
        raise ValidationError(
            f"No Target work-item type for source_type {source_type!r}",
            details={"source_type": source_type},
        )


def create_target_item(workspace_id: str, source_id: str, title: str, fields: dict | None = None) -> str | None:
    """Create the Target work item for a registered Source entity and link it.

    Already-linked entities are returned as-is without a create call. The new
    item's title carries the Source marker, and it is placed under the
    parent's Target item when the parent is linked.

    Returns:
        The Target id, or None when the Target System refused the create.

    Raises:
        NotFoundError: ``source_id`` is not registered.
        ValidationError: The mapping has no usable ``source_type``.
    """
    mapping = _require_mapping(workspace_id, source_id)
    if mapping.target_id:
        return mapping.target_id

    item_type = target_type_for(mapping.source_type)
    new_title = f"{title_marker(source_id)} {title}".strip()
    config = get_workspace_with_target_token(workspace_id)
    try:
        result = target_gateway.create_item(
            config, workspace_id, item_type, {**(fields or {}), "System.Title": new_title},
        )
        _raise_for_result(result, f"Create {item_type}")
        target_id = (result.data or {}).get("id")
        if target_id is None:
            raise TargetWriteError(f"Create {item_type} returned no id")
    except TargetWriteError as exc:
        logger.error(
            "Target item creation failed source=%s: %s", source_id, exc,
            extra={"workspace_id": workspace_id},
        )
        return None

    target_id = str(target_id)
    link_to_target(workspace_id, source_id, target_id)
    mapping.target_title = new_title
    db.session.commit()

    parent = find_parent_mapping(workspace_id, source_id)
    if parent is not None and parent.target_id:
        create_parent_child_link(workspace_id, parent.target_id, target_id)
    return target_id


def reconcile_entity(workspace_id: str, source_id: str, target_id: str, current_title: str) -> dict:
    """One reconciliation pass for a single entity.

    Steps: link, title marker, then the parent/child relation when the
    parent mapping is linked. Later steps are skipped when linking fails.

    Returns:
        {"linked": bool, "title_prefixed": bool, "parent_linked": bool | None}
        ``parent_linked`` is None when there was no linked parent.
    """
    outcome = {"linked": False, "title_prefixed": False, "parent_linked": None}
    outcome["linked"] = link_to_target(workspace_id, source_id, target_id)
    if not outcome["linked"]:
        return outcome

    outcome["title_prefixed"] = apply_title_prefix(workspace_id, target_id, source_id, current_title)

    parent = find_parent_mapping(workspace_id, source_id)
    if parent is not None and parent.target_id:
        outcome["parent_linked"] = create_parent_child_link(workspace_id, parent.target_id, target_id)
    return outcome
