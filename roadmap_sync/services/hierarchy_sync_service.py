"""
Hierarchy Sync Service — drives one synchronisation run per call.

Flow of start_sync():
  1. Process-local guard: one active run per workspace in this process.
  2. Resolve the Source credential (explicit option wins over stored token).
  3. Reset stale Ledger rows, then open a new ``in_progress`` run
     (the Ledger's partial unique index guards across processes).
  4. Fetch + upsert, committing after each kind:
       products → components → initiatives → features → junctions
  5. Close the run as ``completed`` with counts, or ``failed`` with the
     error message.

Partial progress is kept on failure: a later kind failing never rolls back
an earlier kind that was already committed. Re-running is the retry.

All outbound HTTP: delegated to
`roadmap_sync.integrations.source_gateway.source_gateway`.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import date, datetime, timezone

from flask import current_app, has_app_context
from sqlalchemy import select

from roadmap_sync.core.exceptions import BusyError, ConstraintViolation, ValidationError
from roadmap_sync.integrations.source_gateway import source_gateway
from roadmap_sync.middleware.logging_config import log_context
from roadmap_sync.models import db
from roadmap_sync.models.hierarchy import (
    Component,
    ComponentInitiativeLink,
    Feature,
    Initiative,
    InitiativeFeatureLink,
    Product,
)
from roadmap_sync.models.sync_history import SYNC_COMPLETED, SYNC_FAILED
from roadmap_sync.services import sync_history_service
from roadmap_sync.services.workspace_service import get_workspace_with_source_token

logger = logging.getLogger(__name__)

MIN_DEPTH = 1
MAX_DEPTH = 10

# Process-local single-flight guard: workspace ids with a run in this process.
_active_workspaces: set[str] = set()
_active_lock = threading.Lock()


# ═════════════════════════════════════════════════════════════════════════════
# Options & result
# ═════════════════════════════════════════════════════════════════════════════


@dataclass
class SyncOptions:
    """Parameters of one run. Validated on construction."""
    workspace_id: str
    source_token: str | None = None
    product_id: str | None = None
    initiative_id: str | None = None
    include_features: bool = True
    include_components: bool = True
    include_initiatives: bool = True
    max_depth: int = 5

    def __post_init__(self):
        for flag in ("include_features", "include_components", "include_initiatives"):
            if not isinstance(getattr(self, flag), bool):
                raise ValidationError(
                    f"{flag} must be true or false",
                    details={flag: getattr(self, flag)},
                )
        if isinstance(self.max_depth, bool) or not isinstance(self.max_depth, int) \
                or not MIN_DEPTH <= self.max_depth <= MAX_DEPTH:
            raise ValidationError(
                f"max_depth must be an integer between {MIN_DEPTH} and {MAX_DEPTH}",
                details={"max_depth": self.max_depth},
            )
        if self.product_id and self.initiative_id:
            raise ValidationError(
                "product_id and initiative_id cannot be combined",
                details={"product_id": self.product_id, "initiative_id": self.initiative_id},
            )

    @property
    def scoped(self) -> bool:
        return bool(self.product_id or self.initiative_id)

    @property
    def full(self) -> bool:
        """Unscoped with every kind included: the only shape that may prune junctions."""
        return (
            not self.scoped
            and self.include_features
            and self.include_components
            and self.include_initiatives
        )

    @classmethod
    def from_dict(cls, workspace_id: str, data: dict) -> "SyncOptions":
        default_depth = 5
        if has_app_context():
            default_depth = current_app.config.get("SYNC_DEFAULT_MAX_DEPTH", default_depth)
        return cls(
            workspace_id=workspace_id,
            source_token=data.get("source_token") or data.get("api_key"),
            product_id=data.get("product_id"),
            initiative_id=data.get("initiative_id"),
            include_features=data.get("include_features", True),
            include_components=data.get("include_components", True),
            include_initiatives=data.get("include_initiatives", True),
            max_depth=data.get("max_depth", default_depth),
        )


@dataclass
class SyncResult:
    """Outcome of one run, mirrored from its Ledger row."""
    sync_id: str
    status: str
    products_count: int = 0
    components_count: int = 0
    features_count: int = 0
    initiatives_count: int = 0
    initiative_features_count: int = 0
    component_initiatives_count: int = 0
    error: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @classmethod
    def from_record(cls, record) -> "SyncResult":
        return cls(
            sync_id=record.id,
            status=record.status,
            products_count=record.products_count,
            components_count=record.components_count,
            features_count=record.features_count,
            initiatives_count=record.initiatives_count,
            initiative_features_count=record.initiative_features_count,
            component_initiatives_count=record.component_initiatives_count,
            error=record.error_message,
            started_at=record.started_at,
            completed_at=record.completed_at,
        )

    def to_dict(self) -> dict:
        data = {
            "sync_id": self.sync_id,
            "status": self.status,
            "products_count": self.products_count,
            "components_count": self.components_count,
            "features_count": self.features_count,
            "initiatives_count": self.initiatives_count,
            "initiative_features_count": self.initiative_features_count,
            "component_initiatives_count": self.component_initiatives_count,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }
        if self.error is not None:
            data["error"] = self.error
        return data


# ═════════════════════════════════════════════════════════════════════════════
# Upsert helpers
# ═════════════════════════════════════════════════════════════════════════════


def _utcnow():
    return datetime.now(timezone.utc)


def _parse_date(value) -> date | None:
    if not value:
        return None
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError:
        logger.warning("Ignoring unparseable Source System date %r", value)
        return None


def _upsert(model, workspace_id: str, item: dict, values: dict, now: datetime):
    """Insert or refresh one row keyed by (workspace_id, source_id)."""
    row = db.session.execute(
        select(model).where(model.workspace_id == workspace_id, model.source_id == item["source_id"])
    ).scalar_one_or_none()
    if row is None:
        row = model(workspace_id=workspace_id, source_id=item["source_id"])
        db.session.add(row)

    values = {
        "name": item.get("name") or "",
        "description": item.get("description"),
        "status": item.get("status"),
        "metadata_": item.get("metadata") or {},
        **values,
    }
    for key, value in values.items():
        if getattr(row, key) != value:
            setattr(row, key, value)
    row.synced_at = now
    return row


class _Resolver:
    """Maps Source ids to Store ids: current batch first, then the Store."""

    def __init__(self, workspace_id: str):
        self.workspace_id = workspace_id
        self.batch: dict[type, dict[str, str]] = {}
        self._cache: dict[tuple[type, str], str | None] = {}

    def remember(self, model, rows) -> None:
        self.batch.setdefault(model, {}).update({r.source_id: r.id for r in rows})

    def resolve(self, model, source_id: str | None) -> str | None:
        if not source_id:
            return None
        hit = self.batch.get(model, {}).get(source_id)
        if hit:
            return hit
        key = (model, source_id)
        if key not in self._cache:
            self._cache[key] = db.session.execute(
                select(model.id).where(
                    model.workspace_id == self.workspace_id, model.source_id == source_id,
                )
            ).scalar_one_or_none()
        return self._cache[key]


# ═════════════════════════════════════════════════════════════════════════════
# Per-kind steps
# ═════════════════════════════════════════════════════════════════════════════


def _sync_products(workspace_id: str, items: list[dict], resolver: _Resolver, now) -> int:
    rows = [_upsert(Product, workspace_id, item, {}, now) for item in items]
    db.session.flush()
    resolver.remember(Product, rows)
    db.session.commit()
    return len(rows)


def _sync_components(workspace_id: str, items: list[dict], resolver: _Resolver, now) -> int:
    rows = [
        _upsert(Component, workspace_id, item, {
            "product_id": resolver.resolve(Product, item.get("product_source_id")),
        }, now)
        for item in items
    ]
    db.session.flush()
    resolver.remember(Component, rows)
    db.session.commit()
    return len(rows)


def _sync_initiatives(workspace_id: str, items: list[dict], resolver: _Resolver, now) -> int:
    rows = [
        _upsert(Initiative, workspace_id, item, {
            "product_id": resolver.resolve(Product, item.get("product_source_id")),
            "timeframe": item.get("timeframe"),
            "owner": item.get("owner"),
        }, now)
        for item in items
    ]
    db.session.flush()
    resolver.remember(Initiative, rows)
    db.session.commit()
    return len(rows)


def _sync_features(workspace_id: str, items: list[dict], resolver: _Resolver, now) -> int:
    """Upsert features, then resolve parents in a second pass.

    Raises:
        ConstraintViolation: A parent assignment would close a cycle.
    """
    # Pass 1: rows without touching parent_id
    rows = [
        _upsert(Feature, workspace_id, item, {
            "component_id": resolver.resolve(Component, item.get("component_source_id")),
            "owner": item.get("owner"),
            "target_start_date": _parse_date(item.get("target_start_date")),
            "target_end_date": _parse_date(item.get("target_end_date")),
        }, now)
        for item in items
    ]
    db.session.flush()
    resolver.remember(Feature, rows)

    # Pass 2: parent links, guarded against cycles over the whole workspace tree
    parent_of = dict(db.session.execute(
        select(Feature.id, Feature.parent_id).where(Feature.workspace_id == workspace_id)
    ).all())
    # Batch rows get their parents re-assigned one by one below; their old
    # parents must not take part in the cycle walk.
    for row in rows:
        parent_of[row.id] = None
    for item, row in zip(items, rows):
        parent_sid = item.get("parent_source_id")
        parent_id = resolver.resolve(Feature, parent_sid)
        if parent_sid and parent_id is None:
            logger.warning(
                "Feature %s references unknown parent %s; parent left empty",
                item["source_id"], parent_sid,
            )
        if parent_id is not None:
            cursor, seen = parent_id, set()
            while cursor is not None and cursor not in seen:
                if cursor == row.id:
                    raise ConstraintViolation(
                        f"Feature {item['source_id']} cannot be placed under {parent_sid}: "
                        "the parent chain would become cyclic"
                    )
                seen.add(cursor)
                cursor = parent_of.get(cursor)
        if row.parent_id != parent_id:
            row.parent_id = parent_id
        parent_of[row.id] = parent_id

    db.session.commit()
    return len(rows)


def _sync_junctions(
    workspace_id: str,
    initiatives: list[dict],
    features: list[dict],
    resolver: _Resolver,
    prune: bool,
) -> tuple[int, int]:
    """Upsert both junction sets; prune undeclared rows on full runs.

    Returns:
        (initiative_feature_links, component_initiative_links) written this run.
    """
    # Initiative ↔ Feature, as declared
    if_pairs: set[tuple[str, str]] = set()
    for item in features:
        feature_id = resolver.resolve(Feature, item["source_id"])
        for init_sid in item.get("initiative_source_ids") or []:
            initiative_id = resolver.resolve(Initiative, init_sid)
            if feature_id and initiative_id:
                if_pairs.add((initiative_id, feature_id))

    existing_if = {
        (link.initiative_id, link.feature_id): link
        for link in InitiativeFeatureLink.query_for_workspace(workspace_id).all()
    }
    for pair in if_pairs:
        if pair not in existing_if:
            db.session.add(InitiativeFeatureLink(
                workspace_id=workspace_id, initiative_id=pair[0], feature_id=pair[1],
            ))

    # Component ↔ Initiative: direct declarations first, then derived via features
    ci_links: dict[tuple[str, str], str | None] = {}
    for item in initiatives:
        initiative_id = resolver.resolve(Initiative, item["source_id"])
        for comp_sid in item.get("component_source_ids") or []:
            component_id = resolver.resolve(Component, comp_sid)
            if component_id and initiative_id:
                ci_links[(component_id, initiative_id)] = None
    direct_pairs = set(ci_links)

    for item in features:
        component_id = resolver.resolve(Component, item.get("component_source_id"))
        if not component_id:
            continue
        feature_id = resolver.resolve(Feature, item["source_id"])
        for init_sid in item.get("initiative_source_ids") or []:
            initiative_id = resolver.resolve(Initiative, init_sid)
            if initiative_id and (component_id, initiative_id) not in ci_links:
                ci_links[(component_id, initiative_id)] = feature_id

    existing_ci = {
        (link.component_id, link.initiative_id): link
        for link in ComponentInitiativeLink.query_for_workspace(workspace_id).all()
    }
    for pair, via_feature_id in ci_links.items():
        is_direct = pair in direct_pairs
        link = existing_ci.get(pair)
        if link is None:
            db.session.add(ComponentInitiativeLink(
                workspace_id=workspace_id,
                component_id=pair[0],
                initiative_id=pair[1],
                direct_link=is_direct,
                link_via_feature_id=via_feature_id,
            ))
        elif is_direct:
            link.direct_link = True
            link.link_via_feature_id = None
        elif not link.direct_link or prune:
            # A direct row is only downgraded when this run saw every declaration.
            link.direct_link = False
            link.link_via_feature_id = via_feature_id

    if prune:
        removed = 0
        for pair, link in existing_if.items():
            if pair not in if_pairs:
                db.session.delete(link)
                removed += 1
        for pair, link in existing_ci.items():
            if pair not in ci_links:
                db.session.delete(link)
                removed += 1
        if removed:
            logger.info("Pruned %d stale junction row(s)", removed)

    db.session.commit()
    return len(if_pairs), len(ci_links)


def _run_sync(workspace, options: SyncOptions, counts: dict) -> None:
    """Fetch and upsert every included kind, filling ``counts`` as it goes."""
    wid = workspace.id
    now = _utcnow()
    resolver = _Resolver(wid)

    products = source_gateway.fetch_products(workspace, wid, product_id=options.product_id)
    counts["products_count"] = _sync_products(wid, products, resolver, now)

    components: list[dict] = []
    if options.include_components:
        components = source_gateway.fetch_components(workspace, wid, product_id=options.product_id)
        counts["components_count"] = _sync_components(wid, components, resolver, now)

    initiatives: list[dict] = []
    if options.include_initiatives:
        initiatives = source_gateway.fetch_initiatives(workspace, wid, initiative_id=options.initiative_id)
        counts["initiatives_count"] = _sync_initiatives(wid, initiatives, resolver, now)

    features: list[dict] = []
    if options.include_features:
        features = source_gateway.fetch_features(
            workspace, wid,
            max_depth=options.max_depth,
            product_id=options.product_id,
            initiative_id=options.initiative_id,
            component_source_ids=[c["source_id"] for c in components],
            initiative_source_ids=(
                [i["source_id"] for i in initiatives] if options.include_initiatives else None
            ),
        )
        counts["features_count"] = _sync_features(wid, features, resolver, now)

    (
        counts["initiative_features_count"],
        counts["component_initiatives_count"],
    ) = _sync_junctions(wid, initiatives, features, resolver, prune=options.full)


# ═════════════════════════════════════════════════════════════════════════════
# Public API
# ═════════════════════════════════════════════════════════════════════════════


def start_sync(options: SyncOptions) -> SyncResult:
    """Run one hierarchy sync and return its outcome.

    A failed run is returned, not raised: the result has ``status="failed"``
    and ``error`` set to the message recorded in the Ledger.

    Raises:
        BusyError: A run is already active for the workspace. Nothing is written.
        NotFoundError: Unknown workspace.
        ValidationError: No Source credential available.
    """
    wid = options.workspace_id
    with _active_lock:
        if wid in _active_workspaces:
            raise BusyError(wid)
        _active_workspaces.add(wid)

    try:
        workspace = get_workspace_with_source_token(wid, options.source_token)
        sync_history_service.reset_stale_runs(wid)
        record = sync_history_service.open_run(wid)
        counts = {
            "products_count": 0,
            "components_count": 0,
            "features_count": 0,
            "initiatives_count": 0,
            "initiative_features_count": 0,
            "component_initiatives_count": 0,
        }
        with log_context(workspace_id=wid, sync_id=record.id):
            logger.info(
                "Hierarchy sync started scope=%s max_depth=%d",
                options.product_id or options.initiative_id or "all", options.max_depth,
            )
            try:
                _run_sync(workspace, options, counts)
            except Exception as exc:
                logger.exception("Hierarchy sync failed")
                db.session.rollback()
                record = sync_history_service.close_run(
                    record.id, SYNC_FAILED, counts, error=str(exc) or exc.__class__.__name__,
                )
            else:
                record = sync_history_service.close_run(record.id, SYNC_COMPLETED, counts)
                logger.info("Hierarchy sync completed counts=%s", counts)

        return SyncResult.from_record(record)
    finally:
        with _active_lock:
            _active_workspaces.discard(wid)


def sync_product(workspace_id: str, product_id: str, source_token: str | None = None,
                 max_depth: int | None = None) -> SyncResult:
    """Sync one Product and everything beneath it."""
    options = SyncOptions.from_dict(workspace_id, {
        "source_token": source_token,
        "product_id": product_id,
        **({"max_depth": max_depth} if max_depth is not None else {}),
    })
    return start_sync(options)


def sync_initiative(workspace_id: str, initiative_id: str, source_token: str | None = None,
                    max_depth: int | None = None) -> SyncResult:
    """Sync one Initiative with its linked Features; Components are not fetched."""
    options = SyncOptions.from_dict(workspace_id, {
        "source_token": source_token,
        "initiative_id": initiative_id,
        "include_features": True,
        "include_components": False,
        "include_initiatives": True,
        **({"max_depth": max_depth} if max_depth is not None else {}),
    })
    return start_sync(options)


def is_sync_in_progress(workspace_id: str) -> bool:
    """True while this process is running a sync for the workspace."""
    with _active_lock:
        return workspace_id in _active_workspaces


def get_latest_sync_history(workspace_id: str) -> dict | None:
    record = sync_history_service.latest(workspace_id)
    return record.to_dict() if record else None


def get_hierarchy_counts(workspace_id: str) -> dict:
    return sync_history_service.counts(workspace_id)
