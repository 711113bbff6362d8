"""Workspace blueprint — connection settings per workspace.

Endpoints:
  POST /api/v1/workspaces
  GET  /api/v1/workspaces/<wid>
  PUT  /api/v1/workspaces/<wid>

Tokens are accepted on write (``source_token`` / ``target_token``) and never
returned; responses only carry has_source_token / has_target_token.
"""

from __future__ import annotations

import logging

from flask import Blueprint, jsonify, request

from roadmap_sync.blueprints.errors import register_error_handlers
from roadmap_sync.services import workspace_service

logger = logging.getLogger(__name__)

workspace_bp = Blueprint("workspace", __name__, url_prefix="/api/v1")
register_error_handlers(workspace_bp)


@workspace_bp.route("/workspaces", methods=["POST"])
def create_workspace():
    """Body: {name, source_api_url?, source_token?, target_organization?, target_project?, target_token?}"""
    data = request.get_json(silent=True) or {}
    return jsonify(workspace_service.create_workspace(data)), 201


@workspace_bp.route("/workspaces/<wid>", methods=["GET"])
def get_workspace(wid):
    return jsonify(workspace_service.get_workspace(wid)), 200


@workspace_bp.route("/workspaces/<wid>", methods=["PUT"])
def update_workspace(wid):
    data = request.get_json(silent=True) or {}
    return jsonify(workspace_service.update_workspace(wid, data)), 200
