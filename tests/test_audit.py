"""Tests for the audit trail module."""

import json
import re
from datetime import UTC, datetime
from unittest.mock import patch

import pytest

from trustgate.audit import (
    AuditEvent,
    AuditLogger,
    AuditOutcome,
    AuditSource,
    generate_event_id,
    log_api_event,
    log_auth_event,
    log_org_event,
    log_tool_event,
)


@pytest.fixture
def audit_dir(tmp_path):
    return tmp_path / "audit"


@pytest.fixture
def audit_logger(test_settings, audit_dir):
    """Audit logger writing to a temporary directory."""
    return AuditLogger(test_settings, log_directory=audit_dir, file_logging=True)


def _today_file(audit_dir):
    return audit_dir / f"audit-{datetime.now(UTC):%Y-%m-%d}.jsonl"


class TestAuditEvent:
    """Tests for AuditEvent and event IDs."""

    def test_event_id_format(self):
        """Event IDs are 16 lowercase hex characters."""
        event_id = generate_event_id()
        assert re.fullmatch(r"[0-9a-f]{16}", event_id)

    def test_event_ids_are_unique(self):
        """Consecutive event IDs differ."""
        ids = {generate_event_id() for _ in range(100)}
        assert len(ids) == 100

    def test_event_is_frozen(self, audit_logger):
        """Events cannot be modified after logging."""
        event = audit_logger.log_event("test_action", AuditOutcome.SUCCESS)
        with pytest.raises(Exception):
            event.action = "changed"

    def test_json_line_contains_all_fields(self, audit_logger):
        """Serialized events carry every field with snake_case names."""
        event = audit_logger.log_event(
            "test_action",
            AuditOutcome.FAILURE,
            AuditSource.GATEWAY,
            subject_id="octocat",
        )
        record = json.loads(event.to_json_line())

        assert record["action"] == "test_action"
        assert record["outcome"] == "failure"
        assert record["source"] == "gateway"
        assert record["subject_id"] == "octocat"
        assert "organization_id" in record
        assert "ip_address" in record
        assert datetime.fromisoformat(record["timestamp"]).tzinfo is not None


class TestAuditLogger:
    """Tests for AuditLogger buffering and persistence."""

    def test_log_event_buffers_without_io(self, audit_logger, audit_dir):
        """Logging appends to the buffer and writes nothing."""
        event = audit_logger.log_event("test_action", AuditOutcome.SUCCESS)

        assert isinstance(event, AuditEvent)
        assert audit_logger.events == (event,)
        assert not audit_dir.exists()

    def test_flush_writes_jsonl_and_clears_buffer(self, audit_logger, audit_dir):
        """Flushed events round-trip through the daily file."""
        first = audit_logger.log_event("first", AuditOutcome.SUCCESS)
        second = audit_logger.log_event("second", AuditOutcome.FAILURE)

        assert audit_logger.flush_to_disk() == 2
        assert audit_logger.events == ()

        lines = _today_file(audit_dir).read_text().splitlines()
        records = [json.loads(line) for line in lines]
        assert [r["action"] for r in records] == ["first", "second"]
        assert [r["outcome"] for r in records] == ["success", "failure"]
        assert [r["event_id"] for r in records] == [first.event_id, second.event_id]

    def test_flush_appends(self, audit_logger, audit_dir):
        """Consecutive flushes append to the same daily file."""
        audit_logger.log_event("first", AuditOutcome.SUCCESS)
        audit_logger.flush_to_disk()
        audit_logger.log_event("second", AuditOutcome.SUCCESS)
        audit_logger.flush_to_disk()

        assert len(_today_file(audit_dir).read_text().splitlines()) == 2

    def test_flush_empty_buffer(self, audit_logger):
        """Flushing an empty buffer is a no-op."""
        assert audit_logger.flush_to_disk() == 0

    def test_flush_disabled(self, test_settings, audit_dir):
        """Without file logging events stay in the buffer."""
        audit = AuditLogger(test_settings, log_directory=audit_dir, file_logging=False)
        audit.log_event("test_action", AuditOutcome.SUCCESS)

        assert audit.flush_to_disk() == 0
        assert len(audit.events) == 1
        assert not audit_dir.exists()

    def test_flush_failure_keeps_buffer(self, audit_logger):
        """A failed write is logged and the events are kept."""
        audit_logger.log_event("test_action", AuditOutcome.SUCCESS)

        with patch("pathlib.Path.open", side_effect=OSError("disk full")):
            assert audit_logger.flush_to_disk() == 0

        assert len(audit_logger.events) == 1

    def test_high_water_mark_flushes_inline(self, audit_logger, audit_dir):
        """Reaching the buffer limit outside a loop flushes immediately."""
        for i in range(AuditLogger.MAX_BUFFER_SIZE):
            audit_logger.log_event(f"action_{i}", AuditOutcome.SUCCESS)

        assert audit_logger.events == ()
        lines = _today_file(audit_dir).read_text().splitlines()
        assert len(lines) == AuditLogger.MAX_BUFFER_SIZE

    @pytest.mark.asyncio
    async def test_high_water_mark_schedules_flush(self, audit_logger, audit_dir):
        """Inside a running loop the flush runs on the next iteration."""
        import asyncio

        for i in range(AuditLogger.MAX_BUFFER_SIZE):
            audit_logger.log_event(f"action_{i}", AuditOutcome.SUCCESS)

        assert len(audit_logger.events) == AuditLogger.MAX_BUFFER_SIZE
        await asyncio.sleep(0)
        assert audit_logger.events == ()

    @pytest.mark.asyncio
    async def test_start_and_shutdown(self, audit_logger, audit_dir):
        """Start creates the directory; shutdown flushes remaining events."""
        await audit_logger.start()
        assert audit_dir.is_dir()
        assert audit_logger.get_stats()["running"] is True

        audit_logger.log_event("test_action", AuditOutcome.SUCCESS)
        await audit_logger.shutdown()

        records = [
            json.loads(line) for line in _today_file(audit_dir).read_text().splitlines()
        ]
        assert [r["action"] for r in records] == [
            "audit_logger_initialized",
            "test_action",
        ]
        assert audit_logger.get_stats()["running"] is False

    def test_clear_buffer(self, audit_logger):
        """clear_buffer drops events."""
        audit_logger.log_event("test_action", AuditOutcome.SUCCESS)
        audit_logger.clear_buffer()
        assert audit_logger.get_stats()["buffered_events"] == 0


class TestAuditHelpers:
    """Tests for the convenience helpers."""

    def test_helpers_prefix_actions(self, audit_logger):
        """Each helper tags its action and source."""
        auth = log_auth_event(audit_logger, "token_resolved", AuditOutcome.SUCCESS)
        api = log_api_event(audit_logger, "get_repo", AuditOutcome.SUCCESS, resource="o/r")
        tool = log_tool_event(audit_logger, "search", AuditOutcome.FAILURE)
        org = log_org_event(
            audit_logger,
            "membership_checked",
            AuditOutcome.SUCCESS,
            organization_id="acme",
            subject_id="octocat",
        )

        assert (auth.action, auth.source) == ("auth_token_resolved", "token_manager")
        assert (api.action, api.source, api.resource) == ("api_get_repo", "api_client", "o/r")
        assert (tool.action, tool.source) == ("tool_search", "tool_execution")
        assert (org.action, org.organization_id) == ("org_membership_checked", "acme")
