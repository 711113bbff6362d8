"""Entity mapping blueprint.

Endpoints:
  GET  /api/v1/workspaces/<wid>/mappings?sync_status=
  POST /api/v1/workspaces/<wid>/mappings/<source_id>/link
       body {target_id, current_title?, relink?}

``link`` runs one reconciliation pass (link, title marker, parent relation)
when ``current_title`` is given, otherwise only links. ``relink: true``
replaces an existing Target id.
"""

from __future__ import annotations

import logging

from flask import Blueprint, jsonify, request

from roadmap_sync.blueprints.errors import register_error_handlers
from roadmap_sync.core.exceptions import ValidationError
from roadmap_sync.services import entity_mapping_service as ems
from roadmap_sync.services.workspace_service import load_workspace

logger = logging.getLogger(__name__)

mapping_bp = Blueprint("mapping", __name__, url_prefix="/api/v1/workspaces/<wid>/mappings")
register_error_handlers(mapping_bp)


@mapping_bp.route("", methods=["GET"])
def list_mappings(wid):
    load_workspace(wid)
    items = ems.list_mappings(wid, sync_status=request.args.get("sync_status"))
    return jsonify({"items": items, "total": len(items)}), 200


@mapping_bp.route("/<source_id>/link", methods=["POST"])
def link(wid, source_id):
    load_workspace(wid)
    data = request.get_json(silent=True) or {}
    target_id = str(data.get("target_id") or "").strip()
    if not target_id:
        raise ValidationError("target_id is required", details={"target_id": "required"})

    if data.get("relink"):
        return jsonify({"mapping": ems.relink(wid, source_id, target_id)}), 200

    if "current_title" in data:
        outcome = ems.reconcile_entity(wid, source_id, target_id, data.get("current_title") or "")
    else:
        outcome = {"linked": ems.link_to_target(wid, source_id, target_id)}

    mapping = ems.find_mapping(wid, source_id)
    # Linking only fails on a conflicting Target id
    status = 200 if outcome["linked"] else 409
    return jsonify({**outcome, "mapping": mapping.to_dict() if mapping else None}), status
