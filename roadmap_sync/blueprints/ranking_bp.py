"""Ranking blueprint — board priority snapshots and the push to the Target System.

Endpoints:
  POST /api/v1/workspaces/<wid>/boards/<board_id>/rankings   body {items: [{story_id, name, rank, matching_id?}]}
  GET  /api/v1/workspaces/<wid>/boards/<board_id>/rankings
  POST /api/v1/workspaces/<wid>/rankings/<sync_history_id>/push
"""

from __future__ import annotations

import logging

from flask import Blueprint, jsonify, request

from roadmap_sync.blueprints.errors import register_error_handlers
from roadmap_sync.services import rank_reconciliation_service as rrs
from roadmap_sync.services.workspace_service import load_workspace

logger = logging.getLogger(__name__)

ranking_bp = Blueprint("ranking", __name__, url_prefix="/api/v1/workspaces/<wid>")
register_error_handlers(ranking_bp)


@ranking_bp.route("/boards/<board_id>/rankings", methods=["POST"])
def reconcile(wid, board_id):
    data = request.get_json(silent=True) or {}
    records = rrs.reconcile_ranks(wid, board_id, data.get("items"))
    return jsonify({
        "sync_history_id": records[0]["sync_history_id"] if records else None,
        "items": records,
    }), 201


@ranking_bp.route("/boards/<board_id>/rankings", methods=["GET"])
def latest(wid, board_id):
    load_workspace(wid)
    records = rrs.latest_rankings(wid, board_id)
    return jsonify({
        "sync_history_id": records[0]["sync_history_id"] if records else None,
        "items": records,
    }), 200


@ranking_bp.route("/rankings/<sync_history_id>/push", methods=["POST"])
def push(wid, sync_history_id):
    load_workspace(wid)
    return jsonify(rrs.push_rankings_to_target(wid, sync_history_id)), 200
