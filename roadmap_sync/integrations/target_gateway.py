"""
Target System gateway — work-item REST API (Azure DevOps shape, api-version 7.0).

Every write is a JSON-patch document sent as ``application/json-patch+json``
and authenticated with a personal access token over HTTP Basic auth.

Operations (all return GatewayResult; callers check ``.ok``):
  update_item_title                 replace /fields/System.Title
  create_parent_child_relationship  add a Hierarchy-Reverse relation on the child
  create_item                       POST /_apis/wit/workitems/$<type>
  update_stack_rank                 add /fields/Microsoft.VSTS.Common.StackRank

Usage:
    from roadmap_sync.integrations.target_gateway import target_gateway
    result = target_gateway.update_item_title(workspace, workspace.id, "1234", "[PB42] Title")
"""

from __future__ import annotations

import base64
import logging
from typing import Any
from urllib.parse import quote

from flask import current_app, has_app_context

from roadmap_sync.integrations.http_gateway import GatewayResult, HttpGateway

logger = logging.getLogger(__name__)

API_VERSION = "7.0"
JSON_PATCH = "application/json-patch+json"

HIERARCHY_REVERSE = "System.LinkTypes.Hierarchy-Reverse"
TITLE_FIELD = "System.Title"
STACK_RANK_FIELD = "Microsoft.VSTS.Common.StackRank"

_DEFAULT_BASE_URL = "https://dev.azure.com"


class TargetGateway(HttpGateway):
    """Target System work-item gateway.

    ``config`` is the Workspace row (target_organization, target_project) with
    the decrypted PAT attached as ``_plaintext_target_token``.
    """

    system_name = "Target System"
    content_type = JSON_PATCH

    def _auth_headers(self, config: Any) -> dict:
        raw = f":{config._plaintext_target_token}".encode("utf-8")
        return {"Authorization": f"Basic {base64.b64encode(raw).decode('ascii')}"}

    @staticmethod
    def _org_url(config: Any) -> str:
        base = current_app.config.get("TARGET_API_URL") if has_app_context() else None
        return f"{(base or _DEFAULT_BASE_URL).rstrip('/')}/{config.target_organization}"

    def _workitems_url(self, config: Any) -> str:
        return f"{self._org_url(config)}/{config.target_project}/_apis/wit/workitems"

    def _patch(self, config: Any, workspace_id: str, target_id: str, ops: list[dict]) -> GatewayResult:
        url = f"{self._workitems_url(config)}/{target_id}"
        return self.request(
            "PATCH", url,
            config=config, workspace_id=workspace_id,
            json_body=ops, params={"api-version": API_VERSION},
        )

    # ── Target System operations ──────────────────────────────────────────────

    def update_item_title(self, config: Any, workspace_id: str, target_id: str, new_title: str) -> GatewayResult:
        return self._patch(config, workspace_id, target_id, [
            {"op": "replace", "path": f"/fields/{TITLE_FIELD}", "value": new_title},
        ])

    def create_parent_child_relationship(
        self,
        config: Any,
        workspace_id: str,
        parent_target_id: str,
        child_target_id: str,
    ) -> GatewayResult:
        """Attach ``child_target_id`` under ``parent_target_id``.

        The relation is added on the child, pointing at its parent. No check
        for an existing relation is made; the Target System decides whether a
        duplicate add is accepted.
        """
        parent_url = f"{self._org_url(config)}/_apis/wit/workItems/{parent_target_id}"
        return self._patch(config, workspace_id, child_target_id, [
            {
                "op": "add",
                "path": "/relations/-",
                "value": {"rel": HIERARCHY_REVERSE, "url": parent_url},
            },
        ])

    def create_item(self, config: Any, workspace_id: str, item_type: str, fields: dict) -> GatewayResult:
        """Create a work item of ``item_type``; ``result.data["id"]`` is the new id.

        Args:
            fields: reference name → value, e.g. {"System.Title": "..."}.
        """
        url = f"{self._workitems_url(config)}/${quote(item_type)}"
        ops = [{"op": "add", "path": f"/fields/{name}", "value": value} for name, value in fields.items()]
        return self.request(
            "POST", url,
            config=config, workspace_id=workspace_id,
            json_body=ops, params={"api-version": API_VERSION},
        )

    def update_stack_rank(self, config: Any, workspace_id: str, target_id: str, rank: int | float) -> GatewayResult:
        return self._patch(config, workspace_id, target_id, [
            {"op": "add", "path": f"/fields/{STACK_RANK_FIELD}", "value": rank},
        ])


# Module-level singleton: import this instance in services.
# In tests, patch its methods via:
#   from roadmap_sync.integrations import target_gateway as tg_module
#   patch.object(tg_module.target_gateway, "update_item_title", ...)
target_gateway = TargetGateway()
