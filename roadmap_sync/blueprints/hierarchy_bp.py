"""Hierarchy blueprint — sync runs, teardown and the Ledger.

Endpoint groups:
  Sync            POST   /api/v1/workspaces/<wid>/hierarchy/sync
                  POST   /api/v1/workspaces/<wid>/hierarchy/products/<source_id>/sync
                  POST   /api/v1/workspaces/<wid>/hierarchy/initiatives/<source_id>/sync
  Teardown        DELETE /api/v1/workspaces/<wid>/hierarchy
  Counts          GET    /api/v1/workspaces/<wid>/hierarchy/counts
  Ledger          GET    /api/v1/workspaces/<wid>/hierarchy/sync-history
                  GET    /api/v1/workspaces/<wid>/hierarchy/sync-history/latest
                  POST   /api/v1/workspaces/<wid>/hierarchy/sync-history/reset-stale

A failed run still answers 200: the body is the SyncResult with
status="failed" and the Ledger's error message. A concurrent run answers 409.
"""

from __future__ import annotations

import logging

from flask import Blueprint, jsonify, request

from roadmap_sync.blueprints.errors import register_error_handlers
from roadmap_sync.services import hierarchy_sync_service as hss
from roadmap_sync.services import sync_history_service
from roadmap_sync.services.hierarchy_teardown_service import clear_hierarchy
from roadmap_sync.services.workspace_service import load_workspace
from roadmap_sync.utils.errors import E, api_error

logger = logging.getLogger(__name__)

hierarchy_bp = Blueprint("hierarchy", __name__, url_prefix="/api/v1/workspaces/<wid>/hierarchy")
register_error_handlers(hierarchy_bp)


# ═════════════════════════════════════════════════════════════════════════
# Sync
# ═════════════════════════════════════════════════════════════════════════


@hierarchy_bp.route("/sync", methods=["POST"])
def start_sync(wid):
    """Body: {source_token?, product_id?, initiative_id?, include_features?,
    include_components?, include_initiatives?, max_depth?}"""
    data = request.get_json(silent=True) or {}
    result = hss.start_sync(hss.SyncOptions.from_dict(wid, data))
    return jsonify(result.to_dict()), 200


@hierarchy_bp.route("/products/<source_id>/sync", methods=["POST"])
def sync_product(wid, source_id):
    data = request.get_json(silent=True) or {}
    result = hss.sync_product(wid, source_id, data.get("source_token"), data.get("max_depth"))
    return jsonify(result.to_dict()), 200


@hierarchy_bp.route("/initiatives/<source_id>/sync", methods=["POST"])
def sync_initiative(wid, source_id):
    data = request.get_json(silent=True) or {}
    result = hss.sync_initiative(wid, source_id, data.get("source_token"), data.get("max_depth"))
    return jsonify(result.to_dict()), 200


# ═════════════════════════════════════════════════════════════════════════
# Teardown & counts
# ═════════════════════════════════════════════════════════════════════════


@hierarchy_bp.route("", methods=["DELETE"])
def delete_hierarchy(wid):
    if hss.is_sync_in_progress(wid):
        return api_error(E.SYNC_BUSY, "Cannot clear the hierarchy while a sync is running")
    return jsonify({"cleared": clear_hierarchy(wid)}), 200


@hierarchy_bp.route("/counts", methods=["GET"])
def get_counts(wid):
    load_workspace(wid)
    return jsonify(hss.get_hierarchy_counts(wid)), 200


# ═════════════════════════════════════════════════════════════════════════
# Ledger
# ═════════════════════════════════════════════════════════════════════════


@hierarchy_bp.route("/sync-history", methods=["GET"])
def list_sync_history(wid):
    load_workspace(wid)
    limit = min(request.args.get("limit", 20, type=int), 100)
    runs = sync_history_service.list_runs(wid, limit=limit)
    return jsonify({"items": [r.to_dict() for r in runs], "total": len(runs)}), 200


@hierarchy_bp.route("/sync-history/latest", methods=["GET"])
def latest_sync_history(wid):
    load_workspace(wid)
    latest = hss.get_latest_sync_history(wid)
    if latest is None:
        return api_error(E.NOT_FOUND, "No sync has been run for this workspace")
    return jsonify(latest), 200


@hierarchy_bp.route("/sync-history/reset-stale", methods=["POST"])
def reset_stale(wid):
    load_workspace(wid)
    data = request.get_json(silent=True) or {}
    count = sync_history_service.reset_stale_runs(wid, data.get("older_than_minutes"))
    return jsonify({"reset_count": count}), 200
