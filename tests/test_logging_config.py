"""Tests for roadmap_sync.middleware.logging_config."""

import json
import logging

import pytest

from roadmap_sync.middleware.logging_config import (
    ConsoleFormatter,
    JSONFormatter,
    SyncContextFilter,
    bind_log_context,
    configure_logging,
    current_log_context,
    log_context,
)


def _record(msg="hello", **extra) -> logging.LogRecord:
    record = logging.LogRecord("roadmap_sync.test", logging.INFO, __file__, 1, msg, (), None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestLogContext:

    def test_bound_ids_are_stamped_on_records(self):
        record = _record()
        with log_context(workspace_id="w1", sync_id="s1"):
            SyncContextFilter().filter(record)

        assert record.workspace_id == "w1"
        assert record.sync_id == "s1"
        assert current_log_context() == {}

    def test_explicit_extra_wins_over_bound_value(self):
        record = _record(sync_id="batch-9")
        with log_context(workspace_id="w1", sync_id="s1"):
            SyncContextFilter().filter(record)

        assert record.sync_id == "batch-9"
        assert record.workspace_id == "w1"

    def test_nested_contexts_merge_and_restore(self):
        with log_context(request_id="r1", workspace_id="w1"):
            with log_context(sync_id="s1", board_id=None):
                assert current_log_context() == {"request_id": "r1", "workspace_id": "w1", "sync_id": "s1"}
            assert current_log_context() == {"request_id": "r1", "workspace_id": "w1"}

    def test_unknown_field_is_rejected(self):
        with pytest.raises(ValueError):
            bind_log_context(tenant_id="x")


class TestFormatters:

    def test_json_line_carries_context_and_request_fields(self):
        record = _record("Slow request", workspace_id="w1", sync_id="s1", status=200, duration_ms=12.5)

        entry = json.loads(JSONFormatter().format(record))

        assert entry["msg"] == "Slow request"
        assert entry["level"] == "INFO"
        assert entry["workspace_id"] == "w1"
        assert entry["sync_id"] == "s1"
        assert entry["status"] == 200
        assert "board_id" not in entry

    def test_console_line_appends_short_ids(self):
        line = ConsoleFormatter().format(_record("Linked", workspace_id="w1", board_id="b7"))

        assert "roadmap_sync.test: Linked" in line
        assert line.endswith("workspace=w1 board=b7")


class TestConfigureLogging:

    def test_repeated_setup_keeps_a_single_handler(self, app):
        configure_logging(app)
        configure_logging(app)

        ours = [h for h in logging.getLogger().handlers if h.get_name() == "roadmap_sync"]
        assert len(ours) == 1
        assert isinstance(ours[0].formatter, ConsoleFormatter)
        assert any(isinstance(f, SyncContextFilter) for f in ours[0].filters)
