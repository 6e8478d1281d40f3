#!/usr/bin/env python3
"""
Unit tests for the SSH connection pool
"""

import sys
import threading
import time
import pytest
from pathlib import Path
from unittest.mock import MagicMock

import paramiko

sys.path.insert(0, str(Path(__file__).parent.parent.parent / "src"))

from core.errors import ConnectivityError, ValidationError
from vps import commands
from vps.ssh_pool import ConnectionManager, CommandResult

KEY = MagicMock(name="pkey")


def make_client(exit_code=0, stdout=b"ok", stderr=b"", active=True):
    client = MagicMock()
    transport = MagicMock()
    transport.is_active.return_value = active
    client.get_transport.return_value = transport

    stdout_ch = MagicMock()
    stdout_ch.channel.recv_exit_status.return_value = exit_code
    stdout_ch.read.return_value = stdout
    stderr_ch = MagicMock()
    stderr_ch.read.return_value = stderr
    client.exec_command.return_value = (MagicMock(), stdout_ch, stderr_ch)
    return client


def factory_of(*clients):
    queue = list(clients)
    factory = MagicMock(side_effect=lambda: queue.pop(0))
    return factory


# ── CommandResult ────────────────────────────────────────────────

class TestCommandResult:

    def test_success_is_exit_zero(self):
        assert CommandResult(command="ls", exit_code=0, output="x").success is True
        assert CommandResult(command="ls", exit_code=2, output="").success is False

    def test_to_dict_includes_success(self):
        d = CommandResult(command="ls", exit_code=0, output="out").to_dict()
        assert d["command"] == "ls"
        assert d["success"] is True


# ── Pooling ──────────────────────────────────────────────────────

class TestConnectionPooling:

    def test_first_call_opens_connection(self):
        client = make_client()
        pool = ConnectionManager(client_factory=factory_of(client))

        conn = pool.get_or_create_connection("1.2.3.4", "root", KEY, "vps-1")

        assert conn.host == "1.2.3.4"
        assert conn.vps_id == "vps-1"
        client.connect.assert_called_once()
        kwargs = client.connect.call_args.kwargs
        assert kwargs["hostname"] == "1.2.3.4"
        assert kwargs["username"] == "root"
        assert kwargs["pkey"] is KEY
        assert pool.has_connection("vps-1")

    def test_healthy_connection_is_reused(self):
        client = make_client()
        factory = factory_of(client)
        pool = ConnectionManager(client_factory=factory)

        first = pool.get_or_create_connection("1.2.3.4", "root", KEY, "vps-1")
        second = pool.get_or_create_connection("1.2.3.4", "root", KEY, "vps-1")

        assert first is second
        assert factory.call_count == 1
        # reuse was preceded by the liveness probe
        assert client.exec_command.call_args.args[0] == "echo ok"

    def test_stale_connection_reconnects_once(self):
        stale = make_client()
        fresh = make_client()
        factory = factory_of(stale, fresh)
        pool = ConnectionManager(client_factory=factory)

        pool.get_or_create_connection("1.2.3.4", "root", KEY, "vps-1")
        stale.exec_command.side_effect = paramiko.SSHException("channel closed")

        conn = pool.get_or_create_connection("1.2.3.4", "root", KEY, "vps-1")

        assert conn.client is fresh
        assert factory.call_count == 2
        stale.close.assert_called_once()
        assert pool.get_stats()["reconnects"] == 1

    def test_inactive_transport_counts_as_stale(self):
        stale = make_client(active=False)
        fresh = make_client()
        pool = ConnectionManager(client_factory=factory_of(stale, fresh))

        pool.get_or_create_connection("1.2.3.4", "root", KEY, "vps-1")
        conn = pool.get_or_create_connection("1.2.3.4", "root", KEY, "vps-1")

        assert conn.client is fresh

    def test_failed_reconnect_raises_connectivity_error(self):
        stale = make_client()
        broken = make_client()
        broken.connect.side_effect = OSError("connection refused")
        pool = ConnectionManager(client_factory=factory_of(stale, broken))

        pool.get_or_create_connection("1.2.3.4", "root", KEY, "vps-1")
        stale.exec_command.side_effect = EOFError()

        with pytest.raises(ConnectivityError):
            pool.get_or_create_connection("1.2.3.4", "root", KEY, "vps-1")
        assert not pool.has_connection("vps-1")

    def test_auth_failure_raises_connectivity_error(self):
        client = make_client()
        client.connect.side_effect = paramiko.AuthenticationException("denied")
        pool = ConnectionManager(client_factory=factory_of(client))

        with pytest.raises(ConnectivityError) as exc:
            pool.get_or_create_connection("1.2.3.4", "root", KEY, "vps-1")
        assert "auth" in str(exc.value)
        assert exc.value.context["vps_id"] == "vps-1"

    def test_connections_keyed_by_vps(self):
        a, b = make_client(), make_client()
        pool = ConnectionManager(client_factory=factory_of(a, b))

        conn_a = pool.get_or_create_connection("1.1.1.1", "root", KEY, "vps-a")
        conn_b = pool.get_or_create_connection("2.2.2.2", "root", KEY, "vps-b")

        assert conn_a.client is a
        assert conn_b.client is b
        assert pool.get_stats()["pooled_connections"] == ["vps-a", "vps-b"]

    def test_evict_closes_and_removes(self):
        client = make_client()
        pool = ConnectionManager(client_factory=factory_of(client))
        pool.get_or_create_connection("1.2.3.4", "root", KEY, "vps-1")

        assert pool.evict_connection("vps-1") is True
        assert pool.evict_connection("vps-1") is False
        client.close.assert_called_once()

    def test_close_all(self):
        a, b = make_client(), make_client()
        pool = ConnectionManager(client_factory=factory_of(a, b))
        pool.get_or_create_connection("1.1.1.1", "root", KEY, "vps-a")
        pool.get_or_create_connection("2.2.2.2", "root", KEY, "vps-b")

        pool.close_all()

        assert pool.get_stats()["pooled_connections"] == []
        a.close.assert_called_once()
        b.close.assert_called_once()


# ── Command execution ────────────────────────────────────────────

class TestExecuteCommand:

    def _conn(self, client):
        pool = ConnectionManager(client_factory=factory_of(client))
        return pool, pool.get_or_create_connection("1.2.3.4", "root", KEY, "vps-1")

    def test_nonzero_exit_is_returned_not_raised(self):
        client = make_client(exit_code=1, stdout=b"", stderr=b"Error: release not found")
        pool, conn = self._conn(client)

        result = pool.execute_command(conn, commands.helm_status("app", "ns"))

        assert result.success is False
        assert result.exit_code == 1
        assert "release not found" in result.stderr

    def test_renders_command_objects(self):
        client = make_client(stdout=b"deployed")
        pool, conn = self._conn(client)

        result = pool.execute_command(conn, commands.helm_uninstall("code-server-app-1001", "code-server"))

        sent = client.exec_command.call_args.args[0]
        assert sent == "helm uninstall code-server-app-1001 --namespace code-server"
        assert result.output == "deployed"
        assert result.host == "1.2.3.4"

    def test_timeout_is_passed_through(self):
        client = make_client()
        pool, conn = self._conn(client)

        pool.execute_command(conn, "uptime", timeout=660)

        assert client.exec_command.call_args.kwargs["timeout"] == 660

    def test_stdin_is_written_for_file_uploads(self):
        client = make_client(stdout=b"")
        stdin_ch = MagicMock()
        stdout_ch = client.exec_command.return_value[1]
        stderr_ch = client.exec_command.return_value[2]
        client.exec_command.return_value = (stdin_ch, stdout_ch, stderr_ch)
        pool, conn = self._conn(client)

        pool.upload_file(conn, "key: value\n", "/opt/xanthus/apps/a/values.yaml")

        stdin_ch.write.assert_called_once_with("key: value\n")
        stdin_ch.channel.shutdown_write.assert_called_once()
        assert client.exec_command.call_args.args[0].startswith("tee /opt/xanthus/apps/a/values.yaml")

    def test_transport_error_marks_unhealthy(self):
        client = make_client()
        pool, conn = self._conn(client)
        client.exec_command.side_effect = paramiko.SSHException("broken pipe")

        with pytest.raises(ConnectivityError):
            pool.execute_command(conn, "uptime")
        assert conn.healthy is False

    def test_commands_on_one_connection_are_serialized(self):
        client = make_client()
        pool, conn = self._conn(client)
        in_flight = []
        overlaps = []

        def slow_exec(text, timeout=None):
            in_flight.append(text)
            if len(in_flight) > 1:
                overlaps.append(text)
            time.sleep(0.01)
            in_flight.remove(text)
            stdout_ch = MagicMock()
            stdout_ch.channel.recv_exit_status.return_value = 0
            stdout_ch.read.return_value = b""
            stderr_ch = MagicMock()
            stderr_ch.read.return_value = b""
            return MagicMock(), stdout_ch, stderr_ch

        client.exec_command.side_effect = slow_exec
        threads = [threading.Thread(target=pool.execute_command, args=(conn, f"cmd-{i}")) for i in range(5)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert overlaps == []

    def test_exec_log_and_stats(self):
        client = make_client()
        pool, conn = self._conn(client)
        pool.execute_command(conn, "uptime")

        log = pool.get_exec_log()
        assert log[0]["command"] == "uptime"
        stats = pool.get_stats()
        assert stats["total_commands"] == 1
        assert stats["failures"] == 0

    def test_exec_log_is_bounded_and_keeps_no_output(self):
        client = make_client(stdout=b"s3cret")
        pool = ConnectionManager(client_factory=factory_of(client), exec_log_size=3)
        conn = pool.get_or_create_connection("1.2.3.4", "root", KEY, "vps-1")

        result = pool.execute_command(conn, commands.kubectl_get_secret_field("dev1", "code-server"))
        for i in range(4):
            pool.execute_command(conn, f"cmd-{i}")

        assert result.output == "s3cret"
        log = pool.get_exec_log(limit=10)
        assert [e["command"] for e in log] == ["cmd-3", "cmd-2", "cmd-1"]
        assert all("output" not in e and "stderr" not in e for e in log)
        assert "s3cret" not in repr(log)
        assert pool.get_stats()["total_commands"] == 5


# ── Keys ─────────────────────────────────────────────────────────

class TestLoadKey:

    def test_empty_key_rejected(self):
        with pytest.raises(ValidationError):
            ConnectionManager.load_key("   ")

    def test_garbage_key_rejected(self):
        with pytest.raises(ValidationError):
            ConnectionManager.load_key("not a private key")

    def test_pkey_passes_through(self):
        assert ConnectionManager.load_key(KEY) is KEY
