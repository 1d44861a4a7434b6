"""Tests for core/command_store.py — tokens, connections, command queue and results."""

import pytest

from core.command_store import CommandStore
from core.models import Command, CommandStatus
from tests.conftest import TEST_TOKEN


def _cmd(command_id, text="echo hi"):
    return Command(command_id=command_id, text=text)


class TestTokens:

    def test_generated_token_format(self):
        token = CommandStore.generate_token()
        assert token.startswith("hsb_")
        assert len(token) == 4 + 64

    def test_set_token_replaces_previous(self, store):
        token = CommandStore.generate_token()
        store.set_token("user-1", token)
        assert store.verify_token(token) == "user-1"
        assert store.verify_token(TEST_TOKEN) is None

    def test_set_token_rejects_bad_format(self, store):
        with pytest.raises(ValueError):
            store.set_token("user-3", "not-a-token")

    def test_verify_unknown_or_malformed(self, store):
        assert store.verify_token("hsb_" + "00" * 32) is None
        assert store.verify_token("garbage") is None
        assert store.verify_token(TEST_TOKEN) == "user-1"

    def test_regenerate_invalidates_old_token_and_connections(self, store, connection_id):
        new = store.regenerate_token("user-1")
        assert new != TEST_TOKEN
        assert store.verify_token(TEST_TOKEN) is None
        assert store.verify_token(new) == "user-1"
        assert store.is_connected(connection_id) is False


class TestConnections:

    def test_connect_with_invalid_token(self, store):
        result = store.connect("hsb_" + "00" * 32, "laptop", "1.0.0", "docker")
        assert result == {"success": False, "error": "Invalid token"}

    def test_connect_rejects_unknown_mode(self, store):
        result = store.connect(TEST_TOKEN, "laptop", "1.0.0", "vm")
        assert result["success"] is False

    def test_connect_registers_live_connection(self, store, connection_id):
        conn = store.get_connection(connection_id)
        assert conn.user_id == "user-1"
        assert conn.container_id == "c0ffee"
        assert store.is_connected(connection_id) is True
        assert [c.connection_id for c in store.list_connections("user-1")] == [connection_id]

    def test_os_info_only_kept_for_dangerous_mode(self, store):
        os_info = {"platform": "linux", "arch": "x64", "release": "6.1", "hostname": "box"}
        docker = store.connect(TEST_TOKEN, "a", "1.0.0", "docker", os_info=os_info)
        host = store.connect(TEST_TOKEN, "b", "1.0.0", "dangerous", os_info=os_info)
        assert store.get_connection(docker["connectionId"]).os_info is None
        assert store.get_connection(host["connectionId"]).os_info.hostname == "box"

    def test_liveness_window(self, store, clock, connection_id):
        clock.advance(29)
        assert store.is_connected(connection_id) is True
        clock.advance(2)
        assert store.is_connected(connection_id) is False
        assert store.heartbeat(connection_id) == {"success": True}
        assert store.is_connected(connection_id) is True

    def test_heartbeat_after_disconnect_fails(self, store, connection_id):
        assert store.disconnect(connection_id) == {"success": True}
        assert store.heartbeat(connection_id)["success"] is False
        assert store.list_connections("user-1") == []

    def test_disconnect_unknown_is_harmless(self, store):
        assert store.disconnect("nope") == {"success": True}

    def test_stale_sweep(self, store, clock, connection_id):
        clock.advance(61)
        assert store.cleanup_stale_connections() == 1
        assert store.get_connection(connection_id).status == "disconnected"
        assert store.cleanup_stale_connections() == 0

    def test_connection_counts(self, store, clock, connection_id):
        assert store.connection_counts() == {"total": 1, "live": 1}
        clock.advance(31)
        assert store.connection_counts() == {"total": 1, "live": 0}


class TestCommandQueue:

    def test_enqueue_requires_owned_connection(self, store, connection_id):
        with pytest.raises(KeyError):
            store.enqueue("user-2", connection_id, _cmd("c1"))
        with pytest.raises(KeyError):
            store.enqueue("user-1", "missing", _cmd("c1"))

    def test_duplicate_command_id(self, store, connection_id):
        store.enqueue("user-1", connection_id, _cmd("c1"))
        with pytest.raises(ValueError):
            store.enqueue("user-1", connection_id, _cmd("c1"))

    def test_pending_is_oldest_first_and_capped(self, store, clock, connection_id):
        for i in range(12):
            store.enqueue("user-1", connection_id, _cmd(f"c{i}", f"echo {i}"))
            clock.advance(1)
        pending = store.get_pending_commands(connection_id)["commands"]
        assert len(pending) == 10
        assert pending[0]["commandId"] == "c0"
        assert pending[0]["command"] == "echo 0"
        assert pending[-1]["commandId"] == "c9"

    def test_pending_only_for_that_connection(self, store, connection_id):
        other = store.connect(TEST_TOKEN, "desktop", "1.0.0", "docker")["connectionId"]
        store.enqueue("user-1", connection_id, _cmd("c1"))
        assert store.get_pending_commands(other) == {"commands": []}

    def test_claim_once(self, store, connection_id):
        store.enqueue("user-1", connection_id, _cmd("c1"))
        assert store.mark_command_executing("c1") == {"success": True, "claimed": True}
        assert store.mark_command_executing("c1") == {"success": True, "claimed": False}
        assert store.mark_command_executing("unknown") == {"success": False, "claimed": False}
        assert store.command_status("c1") == CommandStatus.EXECUTING
        assert store.get_pending_commands(connection_id) == {"commands": []}


class TestResults:

    def test_submit_and_read(self, store, connection_id):
        store.enqueue("user-1", connection_id, _cmd("c1"))
        store.mark_command_executing("c1")
        assert store.submit_result("c1", "user-1", "hi\n", "", 0, 12) == {"success": True}
        result = store.get_result("c1")
        assert result.stdout == "hi\n"
        assert result.exit_code == 0
        assert result.duration_ms == 12
        assert store.command_status("c1") == CommandStatus.COMPLETED

    def test_last_write_wins(self, store, connection_id):
        store.enqueue("user-1", connection_id, _cmd("c1"))
        store.submit_result("c1", "user-1", "first", "", 0, 1)
        store.submit_result("c1", "user-1", "second", "", 3, 2)
        assert store.get_result("c1").stdout == "second"
        assert store.get_result("c1").exit_code == 3

    def test_foreign_user_rejected(self, store, connection_id):
        store.enqueue("user-1", connection_id, _cmd("c1"))
        assert store.submit_result("c1", "user-2", "x", "", 0, 1)["success"] is False
        assert store.get_result("c1") is None

    def test_abandoned_result_is_discarded(self, store, connection_id):
        store.enqueue("user-1", connection_id, _cmd("c1"))
        assert store.mark_abandoned("c1") is True
        assert store.submit_result("c1", "user-1", "late", "", 0, 1) == {"success": True}
        assert store.get_result("c1") is None
        assert store.command_status("c1") == CommandStatus.ABANDONED

    def test_cannot_abandon_completed(self, store, connection_id):
        store.enqueue("user-1", connection_id, _cmd("c1"))
        store.submit_result("c1", "user-1", "done", "", 0, 1)
        assert store.mark_abandoned("c1") is False

    def test_delete_result(self, store, connection_id):
        store.enqueue("user-1", connection_id, _cmd("c1"))
        store.submit_result("c1", "user-1", "done", "", 0, 1)
        store.delete_result("c1")
        assert store.get_result("c1") is None


def test_cleanup_old_commands(store, clock, connection_id):
    store.enqueue("user-1", connection_id, _cmd("done"))
    store.enqueue("user-1", connection_id, _cmd("waiting"))
    store.submit_result("done", "user-1", "ok", "", 0, 1)
    store.disconnect(connection_id)

    clock.advance(2 * 60 * 60)
    counts = store.cleanup_old_commands()
    assert counts == {"commands": 1, "results": 1, "connections": 0}
    assert store.command_status("done") is None
    assert store.command_status("waiting") == CommandStatus.PENDING

    clock.advance(25 * 60 * 60)
    assert store.cleanup_old_commands()["connections"] == 1
    assert store.get_connection(connection_id) is None
