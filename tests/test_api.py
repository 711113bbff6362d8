"""API-level tests for the Roadmap Sync blueprints.

Service behaviour is covered by the service test modules; these tests pin
the HTTP contract: routes, status codes and error envelopes.
"""

from unittest.mock import MagicMock, patch

import roadmap_sync.integrations.source_gateway as sg_module
import roadmap_sync.integrations.target_gateway as tg_module
from roadmap_sync.core.exceptions import SourceFetchError
from roadmap_sync.integrations.http_gateway import GatewayResult
from roadmap_sync.models import db
from roadmap_sync.models.sync_history import SyncHistoryRecord
from roadmap_sync.services import hierarchy_sync_service as hss
from roadmap_sync.utils.errors import _DEFAULT_STATUS, E


def _patch_source(payloads, **overrides):
    mocks = {
        "fetch_products": MagicMock(return_value=payloads["products"]),
        "fetch_components": MagicMock(return_value=payloads["components"]),
        "fetch_initiatives": MagicMock(return_value=payloads["initiatives"]),
        "fetch_features": MagicMock(return_value=payloads["features"]),
    }
    mocks.update(overrides)
    return patch.multiple(sg_module.source_gateway, **mocks)


def _ok_result(data=None) -> GatewayResult:
    return GatewayResult(ok=True, status_code=200, data=data or {}, error=None, duration_ms=5)


# ── Health ───────────────────────────────────────────────────────────────────


class TestHealth:

    def test_ready(self, client):
        res = client.get("/api/v1/health/ready")
        assert res.status_code == 200
        assert res.get_json()["status"] == "ok"

    def test_live_checks_database(self, client):
        res = client.get("/api/v1/health/live")
        body = res.get_json()
        assert res.status_code == 200
        assert body["checks"]["database"]["status"] == "ok"
        assert body["checks"]["redis"]["status"] == "skipped"

    def test_responses_carry_request_headers(self, client):
        res = client.get("/api/v1/health/ready", headers={"X-Request-ID": "req-123"})
        assert res.headers["X-Request-ID"] == "req-123"
        assert "X-Request-Duration-Ms" in res.headers


# ── Error envelope ───────────────────────────────────────────────────────────


class TestErrorCodes:

    def test_every_code_has_a_default_status(self):
        codes = {value for name, value in vars(E).items() if name.isupper()}
        assert codes == set(_DEFAULT_STATUS)


# ── Workspaces ───────────────────────────────────────────────────────────────


class TestWorkspaceApi:

    def test_create_never_returns_tokens(self, client):
        res = client.post("/api/v1/workspaces", json={
            "name": "Acme", "source_token": "secret", "target_token": "pat",
        })

        assert res.status_code == 201
        body = res.get_json()
        assert body["has_source_token"] is True
        assert body["has_target_token"] is True
        assert "encrypted_source_token" not in body
        assert "secret" not in res.get_data(as_text=True)

    def test_create_requires_name(self, client):
        res = client.post("/api/v1/workspaces", json={})
        assert res.status_code == 422
        assert res.get_json()["code"] == "ERR_VALIDATION_INVALID"

    def test_update_and_get(self, client, workspace):
        res = client.put(f"/api/v1/workspaces/{workspace.id}", json={"target_project": "Core"})
        assert res.status_code == 200

        res = client.get(f"/api/v1/workspaces/{workspace.id}")
        assert res.get_json()["target_project"] == "Core"

    def test_unknown_workspace(self, client):
        res = client.get("/api/v1/workspaces/missing")
        assert res.status_code == 404
        assert res.get_json()["code"] == "ERR_NOT_FOUND"


# ── Hierarchy ────────────────────────────────────────────────────────────────


class TestHierarchyApi:

    def test_sync_returns_result(self, client, workspace, source_payloads):
        with _patch_source(source_payloads):
            res = client.post(f"/api/v1/workspaces/{workspace.id}/hierarchy/sync", json={"max_depth": 3})

        assert res.status_code == 200
        body = res.get_json()
        assert body["status"] == "completed"
        assert body["features_count"] == 4
        assert "error" not in body

    def test_failed_sync_is_reported_in_body(self, client, workspace, source_payloads):
        failing = MagicMock(side_effect=SourceFetchError("HTTP 502 from Source System"))
        with _patch_source(source_payloads, fetch_components=failing):
            res = client.post(f"/api/v1/workspaces/{workspace.id}/hierarchy/sync")

        assert res.status_code == 200
        body = res.get_json()
        assert body["status"] == "failed"
        assert body["error"] == "HTTP 502 from Source System"
        assert body["products_count"] == 1

    def test_busy_workspace_returns_409(self, client, workspace, source_payloads):
        db.session.add(SyncHistoryRecord(workspace_id=workspace.id, status="in_progress"))
        db.session.commit()

        with _patch_source(source_payloads):
            res = client.post(f"/api/v1/workspaces/{workspace.id}/hierarchy/sync")

        assert res.status_code == 409
        assert res.get_json()["code"] == "SYNC_BUSY"

    def test_invalid_depth_returns_422(self, client, workspace):
        res = client.post(f"/api/v1/workspaces/{workspace.id}/hierarchy/sync", json={"max_depth": 42})
        assert res.status_code == 422
        assert "max_depth" in res.get_json()["details"]

    def test_string_flag_returns_422_without_fetching(self, client, workspace, source_payloads):
        components = MagicMock(return_value=source_payloads["components"])
        with _patch_source(source_payloads, fetch_components=components):
            res = client.post(
                f"/api/v1/workspaces/{workspace.id}/hierarchy/sync",
                json={"include_components": "false"},
            )

        assert res.status_code == 422
        assert "include_components" in res.get_json()["details"]
        assert components.call_count == 0
        assert hss.get_latest_sync_history(workspace.id) is None

    def test_scoped_sync_routes(self, client, workspace, source_payloads):
        components = MagicMock(return_value=source_payloads["components"])
        with _patch_source(source_payloads, fetch_components=components):
            res = client.post(f"/api/v1/workspaces/{workspace.id}/hierarchy/products/P1/sync")
            assert res.status_code == 200
            res = client.post(f"/api/v1/workspaces/{workspace.id}/hierarchy/initiatives/I1/sync")
            assert res.status_code == 200

        # Initiative runs do not read components
        assert components.call_count == 1

    def test_counts_history_and_latest(self, client, workspace, source_payloads):
        base = f"/api/v1/workspaces/{workspace.id}/hierarchy"
        assert client.get(f"{base}/sync-history/latest").status_code == 404

        with _patch_source(source_payloads):
            client.post(f"{base}/sync")

        counts = client.get(f"{base}/counts").get_json()
        assert counts == {"products": 1, "components": 2, "features": 4, "initiatives": 2}

        history = client.get(f"{base}/sync-history").get_json()
        assert history["total"] == 1
        assert history["items"][0]["status"] == "completed"

        latest = client.get(f"{base}/sync-history/latest").get_json()
        assert latest["id"] == history["items"][0]["id"]

    def test_reset_stale(self, client, workspace):
        db.session.add(SyncHistoryRecord(workspace_id=workspace.id, status="in_progress"))
        db.session.commit()

        res = client.post(
            f"/api/v1/workspaces/{workspace.id}/hierarchy/sync-history/reset-stale",
            json={"older_than_minutes": 0},
        )

        assert res.status_code == 200
        assert res.get_json()["reset_count"] == 1

    def test_delete_clears_hierarchy(self, client, workspace, source_payloads):
        base = f"/api/v1/workspaces/{workspace.id}/hierarchy"
        with _patch_source(source_payloads):
            client.post(f"{base}/sync")

        res = client.delete(base)

        assert res.status_code == 200
        assert res.get_json() == {"cleared": True}
        assert client.get(f"{base}/counts").get_json()["features"] == 0

    def test_delete_refused_while_syncing(self, client, workspace):
        with patch.object(hss, "is_sync_in_progress", return_value=True):
            res = client.delete(f"/api/v1/workspaces/{workspace.id}/hierarchy")

        assert res.status_code == 409

    def test_unknown_workspace_counts(self, client):
        assert client.get("/api/v1/workspaces/missing/hierarchy/counts").status_code == 404


# ── Mappings & rankings ──────────────────────────────────────────────────────


class TestMappingApi:

    def test_link_conflict_and_relink(self, client, workspace):
        base = f"/api/v1/workspaces/{workspace.id}/mappings"

        res = client.post(f"{base}/42/link", json={"target_id": "1234"})
        assert res.status_code == 200
        assert res.get_json()["mapping"]["sync_status"] == "synced"

        res = client.post(f"{base}/42/link", json={"target_id": "9999"})
        assert res.status_code == 409
        assert res.get_json()["mapping"]["sync_status"] == "conflict"

        res = client.post(f"{base}/42/link", json={"target_id": "9999", "relink": True})
        assert res.status_code == 200
        assert res.get_json()["mapping"]["target_id"] == "9999"

        listed = client.get(base).get_json()
        assert listed["total"] == 1

    def test_link_with_title_runs_reconciliation(self, client, workspace):
        with patch.object(tg_module.target_gateway, "update_item_title", return_value=_ok_result()) as mock_update:
            res = client.post(
                f"/api/v1/workspaces/{workspace.id}/mappings/42/link",
                json={"target_id": "1234", "current_title": "Checkout"},
            )

        assert res.status_code == 200
        assert res.get_json()["title_prefixed"] is True
        mock_update.assert_called_once()

    def test_link_requires_target_id(self, client, workspace):
        res = client.post(f"/api/v1/workspaces/{workspace.id}/mappings/42/link", json={})
        assert res.status_code == 422


class TestRankingApi:

    def test_store_read_and_push(self, client, workspace):
        base = f"/api/v1/workspaces/{workspace.id}"

        res = client.post(f"{base}/boards/b1/rankings", json={"items": [
            {"story_id": "A", "name": "Alpha", "matching_id": "AB#11"},
            {"story_id": "B", "name": "Beta"},
        ]})
        assert res.status_code == 201
        batch_id = res.get_json()["sync_history_id"]
        assert [i["direction"] for i in res.get_json()["items"]] == ["new", "new"]

        res = client.get(f"{base}/boards/b1/rankings")
        assert res.get_json()["sync_history_id"] == batch_id

        with patch.object(tg_module.target_gateway, "update_stack_rank", return_value=_ok_result()):
            res = client.post(f"{base}/rankings/{batch_id}/push")

        assert res.status_code == 200
        assert res.get_json()["updated_count"] == 1

    def test_bad_items_return_422(self, client, workspace):
        res = client.post(f"/api/v1/workspaces/{workspace.id}/boards/b1/rankings", json={"items": []})
        assert res.status_code == 422

    def test_push_unknown_batch_returns_404(self, client, workspace):
        res = client.post(f"/api/v1/workspaces/{workspace.id}/rankings/nope/push")
        assert res.status_code == 404
