"""
Source System gateway — product-management REST API (Productboard v1 shape).

Reads Products, Components, Initiatives and Features for one workspace and
normalises every payload into a plain dict the orchestrator can upsert:

    {
        "source_id": str, "name": str, "description": str | None,
        "status": str | None, "metadata": dict,   # raw payload minus dedicated fields
        ... per-kind keys (product_source_id, parent_source_id, ...)
    }

Lists are paginated by following ``links.next`` until it is absent.
The ``fetch_*`` operations raise SourceFetchError on a failed call or an
unparseable payload; ``request()`` itself never raises.

Usage:
    from roadmap_sync.integrations.source_gateway import source_gateway
    products = source_gateway.fetch_products(workspace, workspace.id)
"""

from __future__ import annotations

import logging
from collections import deque
from typing import Any
from urllib.parse import urljoin

from flask import current_app, has_app_context

from roadmap_sync.core.exceptions import SourceFetchError
from roadmap_sync.integrations.http_gateway import HttpGateway

logger = logging.getLogger(__name__)

_DEFAULT_BASE_URL = "https://api.productboard.com"

# Safety stop for runaway cursors.
_MAX_PAGES = 500

# Payload fields kept in dedicated columns; everything else goes to metadata.
_DEDICATED_FIELDS = frozenset({
    "id", "name", "description", "status", "owner", "parent", "product",
    "components", "timeframe", "targetStart", "targetEnd", "initiative_ids",
    "subFeatures", "links",
})


def _ref_id(ref: Any) -> str | None:
    """Return the id of a ``{"id": ...}`` reference, tolerating bare ids."""
    if isinstance(ref, dict):
        value = ref.get("id")
        return str(value) if value is not None else None
    if ref is not None:
        return str(ref)
    return None


def _status_name(status: Any) -> str | None:
    if isinstance(status, dict):
        return status.get("name")
    return status


def _owner_email(owner: Any) -> str | None:
    if isinstance(owner, dict):
        return owner.get("email") or owner.get("name")
    return owner


def _clean_metadata(payload: dict) -> dict:
    return {k: v for k, v in payload.items() if k not in _DEDICATED_FIELDS}


def _base_fields(payload: dict) -> dict:
    if not isinstance(payload, dict) or payload.get("id") is None:
        raise SourceFetchError(f"Malformed Source System entity: {payload!r:.200}")
    return {
        "source_id": str(payload["id"]),
        "name": payload.get("name") or "",
        "description": payload.get("description"),
        "status": _status_name(payload.get("status")),
        "metadata": _clean_metadata(payload),
    }


def normalize_product(payload: dict) -> dict:
    return _base_fields(payload)


def normalize_component(payload: dict) -> dict:
    item = _base_fields(payload)
    parent = payload.get("parent") or {}
    item["product_source_id"] = _ref_id(parent.get("product")) if isinstance(parent, dict) else None
    item["parent_component_source_id"] = _ref_id(parent.get("component")) if isinstance(parent, dict) else None
    return item


def normalize_initiative(payload: dict) -> dict:
    item = _base_fields(payload)
    item["product_source_id"] = _ref_id(payload.get("product"))
    item["component_source_ids"] = [
        cid for cid in (_ref_id(c) for c in payload.get("components") or []) if cid
    ]
    item["timeframe"] = payload.get("timeframe")
    item["owner"] = _owner_email(payload.get("owner"))
    return item


def normalize_feature(payload: dict) -> dict:
    """Normalise a feature; ``component_source_id`` is the direct component only."""
    item = _base_fields(payload)
    parent = payload.get("parent") or {}
    if not isinstance(parent, dict):
        parent = {}
    timeframe = payload.get("timeframe") or {}
    item.update({
        "parent_source_id": _ref_id(parent.get("feature")),
        "component_source_id": _ref_id(parent.get("component")),
        "owner": _owner_email(payload.get("owner")),
        "target_start_date": timeframe.get("startDate") or payload.get("targetStart"),
        "target_end_date": timeframe.get("endDate") or payload.get("targetEnd"),
        "initiative_source_ids": [],
    })
    return item


class SourceGateway(HttpGateway):
    """Source System REST API gateway.

    Instantiate once at module level (module-level singleton pattern).
    ``config`` is the Workspace row with the decrypted token attached as
    ``_plaintext_source_token`` by the calling service.
    """

    system_name = "Source System"

    def _auth_headers(self, config: Any) -> dict:
        return {
            "Authorization": f"Bearer {config._plaintext_source_token}",
            "X-Version": "1",
        }

    @staticmethod
    def _base_url(config: Any) -> str:
        url = getattr(config, "source_api_url", None)
        if not url and has_app_context():
            url = current_app.config.get("SOURCE_API_URL")
        return (url or _DEFAULT_BASE_URL).rstrip("/")

    # ── Low-level reads ───────────────────────────────────────────────────────

    def _get(self, config: Any, workspace_id: str, url: str, params: dict | None = None) -> dict:
        result = self.request("GET", url, config=config, workspace_id=workspace_id, params=params)
        if not result.ok:
            raise SourceFetchError(
                f"Source System request failed for {url}: {result.error}",
                status_code=result.status_code,
            )
        if not isinstance(result.data, dict):
            raise SourceFetchError(f"Unexpected Source System payload for {url}")
        return result.data

    def _get_one(self, config: Any, workspace_id: str, path: str) -> dict:
        body = self._get(config, workspace_id, f"{self._base_url(config)}{path}")
        data = body.get("data")
        if not isinstance(data, dict):
            raise SourceFetchError(f"Unexpected Source System payload for {path}")
        return data

    def _get_all(self, config: Any, workspace_id: str, path: str) -> list[dict]:
        """Follow ``links.next`` until exhausted and return every ``data`` item."""
        base = self._base_url(config)
        url: str | None = f"{base}{path}"
        items: list[dict] = []
        pages = 0
        while url:
            body = self._get(config, workspace_id, url)
            page = body.get("data") or []
            if not isinstance(page, list):
                raise SourceFetchError(f"Unexpected Source System payload for {path}")
            items.extend(page)
            pages += 1
            next_url = (body.get("links") or {}).get("next")
            if next_url and pages >= _MAX_PAGES:
                raise SourceFetchError(f"Pagination for {path} exceeded {_MAX_PAGES} pages")
            url = urljoin(base + "/", next_url) if next_url else None
        logger.debug("Fetched %d item(s) from %s in %d page(s)", len(items), path, pages)
        return items

    # ── Source System operations ──────────────────────────────────────────────

    def fetch_products(self, config: Any, workspace_id: str, product_id: str | None = None) -> list[dict]:
        """Return every product, or only ``product_id`` when scoped."""
        if product_id:
            return [normalize_product(self._get_one(config, workspace_id, f"/products/{product_id}"))]
        return [normalize_product(p) for p in self._get_all(config, workspace_id, "/products")]

    def fetch_components(self, config: Any, workspace_id: str, product_id: str | None = None) -> list[dict]:
        """Return components; when scoped to a product, only those beneath it.

        Nested components inherit the product of their parent component.
        """
        components = [normalize_component(c) for c in self._get_all(config, workspace_id, "/components")]
        by_id = {c["source_id"]: c for c in components}

        for component in components:
            seen = {component["source_id"]}
            cursor = component
            while not cursor.get("product_source_id") and cursor.get("parent_component_source_id"):
                parent = by_id.get(cursor["parent_component_source_id"])
                if parent is None or parent["source_id"] in seen:
                    break
                seen.add(parent["source_id"])
                cursor = parent
            component["product_source_id"] = cursor.get("product_source_id")

        if product_id:
            components = [c for c in components if c["product_source_id"] == str(product_id)]
        return components

    def fetch_initiatives(self, config: Any, workspace_id: str, initiative_id: str | None = None) -> list[dict]:
        """Return every initiative, or only ``initiative_id`` when scoped."""
        if initiative_id:
            return [normalize_initiative(self._get_one(config, workspace_id, f"/initiatives/{initiative_id}"))]
        return [normalize_initiative(i) for i in self._get_all(config, workspace_id, "/initiatives")]

    def fetch_initiative_feature_ids(self, config: Any, workspace_id: str, initiative_id: str) -> list[str]:
        """Return the ids of features linked to one initiative."""
        links = self._get_all(config, workspace_id, f"/initiatives/{initiative_id}/links/features")
        return [fid for fid in (_ref_id(link) for link in links) if fid]

    def fetch_features(
        self,
        config: Any,
        workspace_id: str,
        *,
        max_depth: int = 5,
        product_id: str | None = None,
        initiative_id: str | None = None,
        component_source_ids: list[str] | None = None,
        initiative_source_ids: list[str] | None = None,
    ) -> list[dict]:
        """Return features down to ``max_depth`` levels, with declared initiative links.

        Depth is measured along the parent chain: a feature whose parent is not
        a feature is a root at depth 1. Features that never reach a root (a
        parent cycle in the Source data) are dropped with a warning.

        Args:
            max_depth:              deepest level returned (roots are 1).
            product_id:             keep features under ``component_source_ids``.
            initiative_id:          keep features linked to this initiative
                                    plus their sub-features.
            component_source_ids:   components in scope for a product-scoped run.
            initiative_source_ids:  initiatives whose feature links are read;
                                    defaults to ``[initiative_id]`` when scoped.
        """
        features = [normalize_feature(f) for f in self._get_all(config, workspace_id, "/features")]
        by_id = {f["source_id"]: f for f in features}
        children: dict[str, list[str]] = {}
        for f in features:
            parent = f["parent_source_id"]
            if parent and parent in by_id:
                children.setdefault(parent, []).append(f["source_id"])

        # Breadth-first from the roots gives every reachable feature its depth
        # and lets sub-features inherit their ancestor's component.
        depth: dict[str, int] = {}
        queue = deque()
        for f in features:
            if not f["parent_source_id"] or f["parent_source_id"] not in by_id:
                depth[f["source_id"]] = 1
                queue.append(f["source_id"])
        while queue:
            fid = queue.popleft()
            for child_id in children.get(fid, []):
                if child_id in depth:
                    continue
                depth[child_id] = depth[fid] + 1
                child = by_id[child_id]
                if not child["component_source_id"]:
                    child["component_source_id"] = by_id[fid]["component_source_id"]
                queue.append(child_id)

        unreachable = [fid for fid in by_id if fid not in depth]
        if unreachable:
            logger.warning(
                "Dropping %d feature(s) with a cyclic parent chain workspace=%s ids=%s",
                len(unreachable), workspace_id, unreachable[:20],
            )

        selected = [f for f in features if depth.get(f["source_id"], max_depth + 1) <= max_depth]

        if initiative_source_ids is None:
            initiative_source_ids = [initiative_id] if initiative_id else []
        linked: dict[str, list[str]] = {}
        for init_id in initiative_source_ids:
            for fid in self.fetch_initiative_feature_ids(config, workspace_id, init_id):
                linked.setdefault(fid, []).append(str(init_id))
        for f in selected:
            f["initiative_source_ids"] = linked.get(f["source_id"], [])

        if product_id or initiative_id:
            if initiative_id:
                seeds = {fid for fid, inits in linked.items() if str(initiative_id) in inits}
            else:
                in_scope = set(component_source_ids or [])
                seeds = {f["source_id"] for f in features if f["component_source_id"] in in_scope}
            scope = set()
            stack = list(seeds)
            while stack:
                fid = stack.pop()
                if fid in scope:
                    continue
                scope.add(fid)
                stack.extend(children.get(fid, []))
            selected = [f for f in selected if f["source_id"] in scope]

        logger.info(
            "Fetched %d feature(s) workspace=%s max_depth=%d (of %d total)",
            len(selected), workspace_id, max_depth, len(features),
        )
        return selected


# Module-level singleton: import this instance in services.
# In tests, patch its methods via:
#   from roadmap_sync.integrations import source_gateway as sg_module
#   patch.object(sg_module.source_gateway, "fetch_products", ...)
source_gateway = SourceGateway()
