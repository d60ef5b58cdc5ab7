"""Tests for the tool call audit log."""

from unittest.mock import AsyncMock

import pytest

from micromanager.services.audit import AuditLog, AuditTransitionError, tool_display_info


class TestDisplayInfo:
    """Tests for user-facing tool labels."""

    def test_known_tool(self):
        """Test the label of a registered tool."""
        assert tool_display_info("list_events") == ("📅 Checking calendar", "Looking for upcoming events")

    def test_unknown_tool_fallback(self):
        """Test the generic label for tools without an entry."""
        assert tool_display_info("frobnicate") == ("🔧 frobnicate", "Using tool")


class TestInMemoryAuditStore:
    """Tests for entry lifecycle rules in the store."""

    @pytest.mark.asyncio
    async def test_open_then_close(self, audit_log, audit_store):
        """Test pending → success with display info and duration."""
        assert await audit_log.open("run_1", "call_1", "get_weather", {"city": "Oslo"}, user_id="user-1")

        [entry] = await audit_store.list_run("run_1")
        assert entry.status == "pending"
        assert entry.display_title == "🌤️ Checking weather"
        assert entry.arguments == {"city": "Oslo"}
        assert entry.user_id == "user-1"

        assert await audit_log.close("run_1", "call_1", "success")

        [entry] = await audit_store.list_run("run_1")
        assert entry.status == "success"
        assert entry.error is None
        assert entry.duration_ms is not None

    @pytest.mark.asyncio
    async def test_terminal_status_is_final(self, audit_store, audit_log):
        """Test that a closed entry never transitions again."""
        await audit_log.open("run_1", "call_1", "get_weather", {})
        await audit_log.close("run_1", "call_1", "error", "boom")

        with pytest.raises(AuditTransitionError):
            await audit_store.finish("run_1", "call_1", "success", None)

        [entry] = await audit_store.list_run("run_1")
        assert entry.status == "error"
        assert entry.error == "boom"

    @pytest.mark.asyncio
    async def test_duplicate_key_rejected(self, audit_log, audit_store):
        """Test one entry per (run, call)."""
        await audit_log.open("run_1", "call_1", "get_weather", {})

        assert not await audit_log.open("run_1", "call_1", "get_weather", {})
        assert len(await audit_store.list_run("run_1")) == 1

    @pytest.mark.asyncio
    async def test_entries_scoped_to_run_in_creation_order(self, audit_log):
        """Test querying by run id."""
        await audit_log.open("run_1", "call_1", "get_user_context", {})
        await audit_log.open("run_2", "call_1", "get_weather", {})
        await audit_log.open("run_1", "call_2", "list_events", {})

        entries = await audit_log.entries("run_1")

        assert [entry.call_id for entry in entries] == ["call_1", "call_2"]
        assert [entry.tool_name for entry in entries] == ["get_user_context", "list_events"]


class TestAuditLogBestEffort:
    """Tests that audit failures never escape."""

    @pytest.mark.asyncio
    async def test_open_failure_swallowed(self):
        """Test that a failing store insert is reported as False, not raised."""
        store = AsyncMock()
        store.insert.side_effect = ConnectionError("db down")

        assert await AuditLog(store).open("run_1", "call_1", "get_weather", {}) is False
        store.insert.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_close_failure_swallowed_without_retry(self):
        """Test that a failing finish is attempted exactly once."""
        store = AsyncMock()
        store.finish.side_effect = ConnectionError("db down")

        assert await AuditLog(store).close("run_1", "call_1", "success") is False
        store.finish.assert_awaited_once_with("run_1", "call_1", "success", None)

    @pytest.mark.asyncio
    async def test_close_unknown_entry_swallowed(self, audit_log):
        """Test closing an entry whose open write was lost."""
        assert await audit_log.close("run_1", "missing", "error", "x") is False

    @pytest.mark.asyncio
    async def test_close_requires_terminal_status(self, audit_log):
        """Test that pending is not a valid close status."""
        with pytest.raises(ValueError):
            await audit_log.close("run_1", "call_1", "pending")
