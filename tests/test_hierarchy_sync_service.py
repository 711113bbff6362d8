"""Unit tests for roadmap_sync.services.hierarchy_sync_service.

Test strategy
-------------
All Source System reads are mocked with patch.multiple on the module-level
``source_gateway`` singleton; every test works on the canned hierarchy of
the ``source_payloads`` fixture:

    P1 ─ C1 ─ F1 ─ F2 ─ F3
         C2 ─ F4
    I1 declares C1 and links F2; I2 links F4.

Coverage
--------
    1. Full run: rows, parents, junctions, Ledger
    2. Idempotence: a second identical run changes nothing
    3. Partial failure keeps earlier kinds and records the error
    4. Busy guard: in-process and Ledger-level
    5. Stale run reset before a new run opens
    6. Narrowed entry points (product / initiative)
    7. Feature parent cycles and unknown parents
    8. Option validation and credentials
"""

import logging
from datetime import date, datetime, timedelta, timezone
from unittest.mock import MagicMock, patch

import pytest
from cryptography.fernet import Fernet
from sqlalchemy import func, select

import roadmap_sync.integrations.source_gateway as sg_module
from roadmap_sync.core.exceptions import (
    BusyError,
    NotFoundError,
    SourceFetchError,
    ValidationError,
)
from roadmap_sync.middleware.logging_config import SyncContextFilter
from roadmap_sync.models import db
from roadmap_sync.models.hierarchy import (
    Component,
    ComponentInitiativeLink,
    Feature,
    Initiative,
    InitiativeFeatureLink,
    Product,
)
from roadmap_sync.models.sync_history import SyncHistoryRecord
from roadmap_sync.services import hierarchy_sync_service as hss
from roadmap_sync.services.workspace_service import create_workspace


# ── Helpers ──────────────────────────────────────────────────────────────────


@pytest.fixture()
def mock_source(source_payloads):
    """Patch every fetch_* method of the source gateway with the canned data."""
    mocks = {
        "fetch_products": MagicMock(return_value=source_payloads["products"]),
        "fetch_components": MagicMock(return_value=source_payloads["components"]),
        "fetch_initiatives": MagicMock(return_value=source_payloads["initiatives"]),
        "fetch_features": MagicMock(return_value=source_payloads["features"]),
    }
    with patch.multiple(sg_module.source_gateway, **mocks):
        yield mocks


def _count(model, workspace_id: str) -> int:
    return db.session.execute(
        select(func.count()).select_from(model).where(model.workspace_id == workspace_id)
    ).scalar_one()


def _by_source(model, workspace_id: str) -> dict:
    rows = db.session.execute(select(model).where(model.workspace_id == workspace_id)).scalars()
    return {r.source_id: r for r in rows}


def _runs(workspace_id: str) -> list[SyncHistoryRecord]:
    return list(db.session.execute(
        select(SyncHistoryRecord).where(SyncHistoryRecord.workspace_id == workspace_id)
    ).scalars())


def _full_options(workspace_id: str, **kwargs) -> hss.SyncOptions:
    return hss.SyncOptions(workspace_id=workspace_id, **kwargs)


# ── Tests ────────────────────────────────────────────────────────────────────


class TestFullSync:

    def test_full_run_mirrors_the_hierarchy(self, workspace, mock_source):
        """Given the canned hierarchy, a full run stores every row and link.

        Then: counts are reported, parents and components resolved to Store
              ids, and the Ledger row is completed.
        """
        result = hss.start_sync(_full_options(workspace.id))

        assert result.status == "completed"
        assert result.error is None
        assert (result.products_count, result.components_count) == (1, 2)
        assert (result.initiatives_count, result.features_count) == (2, 4)
        assert result.initiative_features_count == 2
        assert result.component_initiatives_count == 2

        products = _by_source(Product, workspace.id)
        components = _by_source(Component, workspace.id)
        features = _by_source(Feature, workspace.id)
        assert components["C1"].product_id == products["P1"].id
        assert features["F1"].parent_id is None
        assert features["F2"].parent_id == features["F1"].id
        assert features["F3"].parent_id == features["F2"].id
        assert features["F4"].component_id == components["C2"].id
        assert features["F1"].target_start_date == date(2026, 2, 1)
        assert features["F1"].metadata_ == {"raw": "F1"}

        runs = _runs(workspace.id)
        assert len(runs) == 1
        assert runs[0].status == "completed"
        assert runs[0].features_count == 4
        assert runs[0].completed_at is not None

    def test_component_initiative_links_direct_and_derived(self, workspace, mock_source):
        hss.start_sync(_full_options(workspace.id))

        components = _by_source(Component, workspace.id)
        initiatives = _by_source(Initiative, workspace.id)
        features = _by_source(Feature, workspace.id)
        links = {
            (link.component_id, link.initiative_id): link
            for link in ComponentInitiativeLink.query_for_workspace(workspace.id).all()
        }

        direct = links[(components["C1"].id, initiatives["I1"].id)]
        assert direct.direct_link is True
        assert direct.link_via_feature_id is None

        derived = links[(components["C2"].id, initiatives["I2"].id)]
        assert derived.direct_link is False
        assert derived.link_via_feature_id == features["F4"].id

    def test_second_identical_run_is_idempotent(self, workspace, mock_source):
        hss.start_sync(_full_options(workspace.id))
        first_ids = {sid: f.id for sid, f in _by_source(Feature, workspace.id).items()}

        result = hss.start_sync(_full_options(workspace.id))

        assert result.status == "completed"
        assert {sid: f.id for sid, f in _by_source(Feature, workspace.id).items()} == first_ids
        assert _count(Product, workspace.id) == 1
        assert _count(Component, workspace.id) == 2
        assert _count(InitiativeFeatureLink, workspace.id) == 2
        assert _count(ComponentInitiativeLink, workspace.id) == 2
        assert [r.status for r in _runs(workspace.id)] == ["completed", "completed"]

    def test_changed_fields_update_rows_in_place(self, workspace, mock_source, source_payloads):
        hss.start_sync(_full_options(workspace.id))
        feature_id = _by_source(Feature, workspace.id)["F1"].id

        source_payloads["features"][0]["name"] = "Renamed"
        hss.start_sync(_full_options(workspace.id))

        row = _by_source(Feature, workspace.id)["F1"]
        assert row.id == feature_id
        assert row.name == "Renamed"

    def test_full_run_prunes_undeclared_links(self, workspace, mock_source, source_payloads):
        hss.start_sync(_full_options(workspace.id))

        source_payloads["features"][1]["initiative_source_ids"] = []
        result = hss.start_sync(_full_options(workspace.id))

        assert result.initiative_features_count == 1
        assert _count(InitiativeFeatureLink, workspace.id) == 1

    def test_max_depth_is_passed_to_the_feature_fetch(self, workspace, mock_source):
        hss.start_sync(_full_options(workspace.id, max_depth=3))

        assert mock_source["fetch_features"].call_args.kwargs["max_depth"] == 3


class TestPartialFailure:

    def test_failed_feature_fetch_keeps_earlier_kinds(self, workspace, mock_source):
        """Given features cannot be read, earlier kinds stay committed.

        Then: the result and the Ledger row are failed with the message, and
              no run is left in progress.
        """
        mock_source["fetch_features"].side_effect = SourceFetchError(
            "Source System request failed for /features: HTTP 500", status_code=500,
        )

        result = hss.start_sync(_full_options(workspace.id))

        assert result.status == "failed"
        assert "HTTP 500" in result.error
        assert result.to_dict()["error"] == result.error
        assert result.products_count == 1
        assert result.features_count == 0
        assert _count(Product, workspace.id) == 1
        assert _count(Component, workspace.id) == 2
        assert _count(Initiative, workspace.id) == 2
        assert _count(Feature, workspace.id) == 0

        runs = _runs(workspace.id)
        assert runs[0].status == "failed"
        assert runs[0].error_message == result.error
        assert not hss.is_sync_in_progress(workspace.id)

    def test_run_logs_carry_workspace_and_sync_ids(self, workspace, mock_source):
        records = []

        class _Collect(logging.Handler):
            def emit(self, record):
                records.append(record)

        handler = _Collect()
        handler.addFilter(SyncContextFilter())
        service_logger = logging.getLogger(hss.__name__)
        previous_level = service_logger.level
        service_logger.addHandler(handler)
        service_logger.setLevel(logging.INFO)
        try:
            result = hss.start_sync(_full_options(workspace.id))
        finally:
            service_logger.removeHandler(handler)
            service_logger.setLevel(previous_level)

        messages = [r.getMessage() for r in records]
        assert any(m.startswith("Hierarchy sync completed") for m in messages)
        assert {r.sync_id for r in records} == {result.sync_id}
        assert {r.workspace_id for r in records} == {workspace.id}

    def test_completed_result_has_no_error_key(self, workspace, mock_source):
        result = hss.start_sync(_full_options(workspace.id))

        assert "error" not in result.to_dict()


class TestBusyGuard:

    def test_active_ledger_row_rejects_a_new_run(self, workspace, mock_source):
        db.session.add(SyncHistoryRecord(workspace_id=workspace.id, status="in_progress"))
        db.session.commit()

        with pytest.raises(BusyError):
            hss.start_sync(_full_options(workspace.id))

        assert len(_runs(workspace.id)) == 1
        mock_source["fetch_products"].assert_not_called()

    def test_nested_run_in_same_process_is_rejected(self, workspace, mock_source, source_payloads):
        """A second start while the first is fetching raises BusyError at once."""
        seen = {}

        def _fetch_products(*args, **kwargs):
            seen["in_progress"] = hss.is_sync_in_progress(workspace.id)
            try:
                hss.start_sync(_full_options(workspace.id))
            except BusyError as exc:
                seen["error"] = exc
            return source_payloads["products"]

        mock_source["fetch_products"].side_effect = _fetch_products

        result = hss.start_sync(_full_options(workspace.id))

        assert result.status == "completed"
        assert seen["in_progress"] is True
        assert isinstance(seen["error"], BusyError)
        assert len(_runs(workspace.id)) == 1
        assert not hss.is_sync_in_progress(workspace.id)

    def test_other_workspace_is_not_blocked(self, workspace, mock_source):
        db.session.add(SyncHistoryRecord(workspace_id=workspace.id, status="in_progress"))
        db.session.commit()
        other = create_workspace({"name": "Other", "source_token": "tok"})

        result = hss.start_sync(_full_options(other["id"]))

        assert result.status == "completed"


class TestStaleRuns:

    def test_stale_run_is_failed_before_a_new_run_opens(self, workspace, mock_source):
        stale = SyncHistoryRecord(
            workspace_id=workspace.id,
            status="in_progress",
            started_at=datetime.now(timezone.utc) - timedelta(hours=2),
        )
        db.session.add(stale)
        db.session.commit()
        stale_id = stale.id

        result = hss.start_sync(_full_options(workspace.id))

        assert result.status == "completed"
        old = db.session.get(SyncHistoryRecord, stale_id)
        db.session.refresh(old)
        assert old.status == "failed"
        assert "abandoned" in old.error_message


class TestNarrowedRuns:

    def test_sync_product_scopes_every_fetch(self, workspace, mock_source):
        result = hss.sync_product(workspace.id, "P1")

        assert result.status == "completed"
        assert mock_source["fetch_products"].call_args.kwargs["product_id"] == "P1"
        assert mock_source["fetch_components"].call_args.kwargs["product_id"] == "P1"
        feature_kwargs = mock_source["fetch_features"].call_args.kwargs
        assert feature_kwargs["product_id"] == "P1"
        assert sorted(feature_kwargs["component_source_ids"]) == ["C1", "C2"]

    def test_scoped_run_does_not_prune_links(self, workspace, mock_source, source_payloads):
        hss.start_sync(_full_options(workspace.id))

        mock_source["fetch_features"].return_value = [source_payloads["features"][0]]
        hss.sync_product(workspace.id, "P1")

        assert _count(InitiativeFeatureLink, workspace.id) == 2
        assert _count(Feature, workspace.id) == 4

    def test_sync_initiative_skips_components(self, workspace, mock_source):
        result = hss.sync_initiative(workspace.id, "I1", max_depth=2)

        assert result.status == "completed"
        mock_source["fetch_components"].assert_not_called()
        assert mock_source["fetch_initiatives"].call_args.kwargs["initiative_id"] == "I1"
        feature_kwargs = mock_source["fetch_features"].call_args.kwargs
        assert feature_kwargs["initiative_id"] == "I1"
        assert feature_kwargs["max_depth"] == 2

    def test_excluded_kinds_are_not_fetched(self, workspace, mock_source):
        result = hss.start_sync(_full_options(workspace.id, include_features=False))

        assert result.features_count == 0
        mock_source["fetch_features"].assert_not_called()


class TestFeatureParents:

    def test_parent_cycle_fails_the_run(self, workspace, mock_source, source_payloads):
        features = source_payloads["features"]
        features[0]["parent_source_id"] = "F2"  # F1 → F2 → F1
        mock_source["fetch_features"].return_value = features[:2]

        result = hss.start_sync(_full_options(workspace.id))

        assert result.status == "failed"
        assert "cyclic" in result.error
        assert _count(Feature, workspace.id) == 0
        assert _count(Product, workspace.id) == 1

    def test_unknown_parent_is_left_empty(self, workspace, mock_source, source_payloads):
        orphan = dict(source_payloads["features"][3], source_id="F9", parent_source_id="ghost")
        mock_source["fetch_features"].return_value = [orphan]

        result = hss.start_sync(_full_options(workspace.id))

        assert result.status == "completed"
        assert _by_source(Feature, workspace.id)["F9"].parent_id is None


class TestOptionsAndCredentials:

    @pytest.mark.parametrize("depth", [0, 11, "3", True])
    def test_invalid_max_depth_is_rejected(self, depth):
        with pytest.raises(ValidationError):
            hss.SyncOptions(workspace_id="w", max_depth=depth)

    @pytest.mark.parametrize("value", ["false", 0, None])
    def test_non_boolean_flags_are_rejected(self, value):
        with pytest.raises(ValidationError):
            hss.SyncOptions.from_dict("w", {"include_components": value})

    def test_boolean_flags_narrow_the_run(self):
        options = hss.SyncOptions.from_dict("w", {"include_components": False})

        assert options.include_components is False
        assert options.full is False

    def test_product_and_initiative_cannot_be_combined(self):
        with pytest.raises(ValidationError):
            hss.SyncOptions(workspace_id="w", product_id="P1", initiative_id="I1")

    def test_from_dict_accepts_api_key_and_config_default_depth(self, app):
        options = hss.SyncOptions.from_dict("w", {"api_key": "k"})

        assert options.source_token == "k"
        assert options.max_depth == app.config["SYNC_DEFAULT_MAX_DEPTH"]
        assert options.full is True

    def test_missing_credential_raises_before_any_write(self, mock_source):
        bare = create_workspace({"name": "No token"})

        with pytest.raises(ValidationError):
            hss.start_sync(_full_options(bare["id"]))

        assert _runs(bare["id"]) == []

    def test_explicit_token_wins_over_stored_one(self, workspace, mock_source):
        hss.start_sync(_full_options(workspace.id, source_token="override"))

        config = mock_source["fetch_products"].call_args.args[0]
        assert config._plaintext_source_token == "override"

    def test_stored_token_is_decrypted(self, workspace, mock_source):
        hss.start_sync(_full_options(workspace.id))

        config = mock_source["fetch_products"].call_args.args[0]
        assert config._plaintext_source_token == "pb-token"

    def test_token_under_rotated_key_is_rejected_before_any_write(self, workspace, mock_source, monkeypatch):
        monkeypatch.setenv("ENCRYPTION_KEY", Fernet.generate_key().decode())

        with pytest.raises(ValidationError):
            hss.start_sync(_full_options(workspace.id))

        assert _runs(workspace.id) == []
        mock_source["fetch_products"].assert_not_called()
        assert not hss.is_sync_in_progress(workspace.id)

    def test_unknown_workspace(self, mock_source):
        with pytest.raises(NotFoundError):
            hss.start_sync(_full_options("does-not-exist"))
        assert not hss.is_sync_in_progress("does-not-exist")
