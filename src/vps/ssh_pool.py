#!/usr/bin/env python3
"""
SSH Connection Pool — Keyed Remote Sessions for the Deployment Engine

Keeps one live SSH session per VPS so every application on that VPS
shares a connection. Sessions are opened lazily, probed before reuse,
and reopened at most once when a probe finds them stale.

Rules:
- Key-based auth only (Ed25519, RSA, ECDSA private keys)
- One in-flight command per connection (per-connection mutex)
- Timeout on every command
- Every exec is recorded in a bounded exec log (command, exit code and
  timing only; output never leaves the CommandResult)

Usage:
    pool = ConnectionManager()
    conn = pool.get_or_create_connection("203.0.113.7", "root", key_pem, "VPS-7")
    result = pool.execute_command(conn, commands.helm_status("app-1001", "code-server"))
    pool.evict_connection("VPS-7")
"""

import io
import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, field, asdict
from typing import Deque, Dict, Any, List, Callable, Union

import paramiko

from core.errors import ConnectivityError, ValidationError
from .commands import Command, probe, write_file

logger = logging.getLogger(__name__)

KEY_CLASSES = [paramiko.Ed25519Key, paramiko.RSAKey, paramiko.ECDSAKey]


@dataclass
class CommandResult:
    """Result of one remote command."""
    command: str
    exit_code: int
    output: str
    stderr: str = ""
    duration_ms: float = 0.0
    host: str = ""
    timestamp: float = field(default_factory=time.time)

    @property
    def success(self) -> bool:
        return self.exit_code == 0

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["success"] = self.success
        return d

    def log_entry(self) -> Dict[str, Any]:
        """Exec-log view: stdout/stderr may hold secrets and are dropped."""
        return {
            "command": self.command,
            "exit_code": self.exit_code,
            "success": self.success,
            "duration_ms": self.duration_ms,
            "host": self.host,
            "timestamp": self.timestamp,
        }


@dataclass
class PooledConnection:
    """A pooled SSH session, keyed by VPS id."""
    vps_id: str
    host: str
    user: str
    port: int
    client: Any = field(repr=False)
    last_used: float = field(default_factory=time.time)
    healthy: bool = True
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    @property
    def active(self) -> bool:
        transport = self.client.get_transport()
        return transport is not None and transport.is_active()


class ConnectionManager:
    """
    Process-wide pool of SSH sessions.

    Construct once and pass by reference; ``evict_connection`` is the
    only way an entry leaves the pool besides ``close_all``.
    """

    DEFAULT_TIMEOUT = 30
    DEFAULT_PORT = 22
    PROBE_TIMEOUT = 10
    EXEC_LOG_SIZE = 500

    def __init__(
        self,
        port: int = None,
        connect_timeout: int = None,
        command_timeout: int = None,
        client_factory: Callable[[], Any] = None,
        exec_log_size: int = None,
    ):
        self.port = port or self.DEFAULT_PORT
        self.connect_timeout = connect_timeout or self.DEFAULT_TIMEOUT
        self.command_timeout = command_timeout or self.DEFAULT_TIMEOUT
        self._client_factory = client_factory or paramiko.SSHClient
        self._pool: Dict[str, PooledConnection] = {}
        self._pool_lock = threading.Lock()
        self._open_locks: Dict[str, threading.Lock] = {}
        self._exec_log: Deque[Dict[str, Any]] = deque(maxlen=exec_log_size or self.EXEC_LOG_SIZE)
        self._exec_lock = threading.Lock()
        self._total_commands = 0
        self._failed_commands = 0
        self._reconnects = 0

        logger.info(
            f"ConnectionManager initialized (port={self.port}, "
            f"connect_timeout={self.connect_timeout}s, command_timeout={self.command_timeout}s)"
        )

    # ── Keys ─────────────────────────────────────────────────────

    @staticmethod
    def load_key(key_material: Union[str, paramiko.PKey]):
        """Parse a PEM/OpenSSH private key string. PKey objects pass through."""
        if not isinstance(key_material, str):
            return key_material
        if not key_material.strip():
            raise ValidationError("empty SSH private key")

        key_file = io.StringIO(key_material)
        for key_class in KEY_CLASSES:
            try:
                key_file.seek(0)
                return key_class.from_private_key(key_file)
            except (paramiko.SSHException, ValueError):
                continue
        raise ValidationError("could not parse SSH private key")

    # ── Pool ─────────────────────────────────────────────────────

    def _open_lock(self, vps_id: str) -> threading.Lock:
        with self._pool_lock:
            return self._open_locks.setdefault(vps_id, threading.Lock())

    def _open(self, host: str, user: str, pkey, vps_id: str) -> PooledConnection:
        client = self._client_factory()
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        try:
            client.connect(
                hostname=host,
                port=self.port,
                username=user,
                pkey=pkey,
                timeout=self.connect_timeout,
                allow_agent=False,
                look_for_keys=False,
            )
        except paramiko.AuthenticationException as e:
            raise ConnectivityError(
                f"SSH auth failed for {user}@{host}", vps_id=vps_id, host=host,
            ) from e
        except (paramiko.SSHException, OSError, EOFError) as e:
            raise ConnectivityError(
                f"SSH connection to {host} failed: {e}", vps_id=vps_id, host=host,
            ) from e

        logger.info(f"SSH connected to {user}@{host}:{self.port} (vps={vps_id})")
        return PooledConnection(
            vps_id=vps_id, host=host, user=user, port=self.port, client=client,
        )

    def _is_healthy(self, conn: PooledConnection) -> bool:
        if not conn.healthy or not conn.active:
            return False
        try:
            result = self.execute_command(conn, probe(), timeout=self.PROBE_TIMEOUT)
        except ConnectivityError:
            return False
        return result.success

    def get_or_create_connection(
        self, host: str, user: str, key_material, vps_id: str,
    ) -> PooledConnection:
        """
        Return a healthy pooled connection for ``vps_id``, opening one if needed.

        A stale pooled session is evicted and reopened exactly once; if that
        reopen fails the ConnectivityError is surfaced to the caller.
        """
        with self._open_lock(vps_id):
            with self._pool_lock:
                existing = self._pool.get(vps_id)

            if existing is not None:
                if self._is_healthy(existing):
                    existing.last_used = time.time()
                    return existing
                logger.warning(f"[SSH] stale connection for vps={vps_id}, reconnecting")
                self.evict_connection(vps_id)
                self._reconnects += 1

            pkey = self.load_key(key_material)
            conn = self._open(host, user, pkey, vps_id)
            with self._pool_lock:
                self._pool[vps_id] = conn
            return conn

    def evict_connection(self, vps_id: str) -> bool:
        """Close and drop the pooled session for ``vps_id``. Returns True if one existed."""
        with self._pool_lock:
            conn = self._pool.pop(vps_id, None)
        if conn is None:
            return False
        try:
            conn.client.close()
        except (paramiko.SSHException, OSError) as e:
            logger.debug(f"Error closing SSH session for vps={vps_id}: {e}")
        logger.info(f"SSH connection evicted (vps={vps_id})")
        return True

    def close_all(self):
        with self._pool_lock:
            vps_ids = list(self._pool)
        for vps_id in vps_ids:
            self.evict_connection(vps_id)

    def has_connection(self, vps_id: str) -> bool:
        with self._pool_lock:
            return vps_id in self._pool

    # ── Command Execution ────────────────────────────────────────

    def execute_command(
        self, conn: PooledConnection, command: Union[Command, str], timeout: int = None,
    ) -> CommandResult:
        """
        Run a command on a pooled connection and wait for it to finish.

        A non-zero exit code is returned, not raised. Transport failures
        mark the connection unhealthy and raise ConnectivityError.
        """
        text = command.render() if isinstance(command, Command) else command
        stdin_data = command.stdin if isinstance(command, Command) else None
        cmd_timeout = timeout or self.command_timeout
        start = time.time()

        with conn.lock:
            try:
                stdin_ch, stdout_ch, stderr_ch = conn.client.exec_command(
                    text, timeout=cmd_timeout,
                )
                if stdin_data is not None:
                    stdin_ch.write(stdin_data)
                    stdin_ch.channel.shutdown_write()

                exit_code = stdout_ch.channel.recv_exit_status()
                stdout = stdout_ch.read().decode("utf-8", errors="replace").strip()
                stderr = stderr_ch.read().decode("utf-8", errors="replace").strip()
            except (paramiko.SSHException, OSError, EOFError) as e:
                conn.healthy = False
                logger.warning(f"[SSH] {text[:80]} -> transport error: {e}")
                raise ConnectivityError(
                    f"SSH command failed on {conn.host}: {e}",
                    vps_id=conn.vps_id, command=text,
                ) from e
            conn.last_used = time.time()

        result = CommandResult(
            command=text,
            exit_code=exit_code,
            output=stdout,
            stderr=stderr,
            duration_ms=round((time.time() - start) * 1000, 1),
            host=conn.host,
        )
        with self._exec_lock:
            self._exec_log.append(result.log_entry())
            self._total_commands += 1
            if not result.success:
                self._failed_commands += 1

        level = logging.INFO if result.success else logging.WARNING
        logger.log(
            level,
            f"[SSH] {text[:80]} -> exit={result.exit_code} "
            f"({result.duration_ms:.0f}ms)"
        )
        return result

    def upload_file(self, conn: PooledConnection, content: str, remote_path: str) -> CommandResult:
        return self.execute_command(conn, write_file(remote_path, content))

    # ── Audit ────────────────────────────────────────────────────

    def get_exec_log(self, limit: int = 50) -> List[Dict[str, Any]]:
        """Most recent first. Entries carry no command output."""
        with self._exec_lock:
            entries = list(self._exec_log)[-limit:]
        return [dict(e) for e in reversed(entries)]

    def get_stats(self) -> Dict[str, Any]:
        with self._exec_lock:
            total, failures = self._total_commands, self._failed_commands
        with self._pool_lock:
            pooled = sorted(self._pool)
        return {
            "total_commands": total,
            "successes": total - failures,
            "failures": failures,
            "pooled_connections": pooled,
            "reconnects": self._reconnects,
        }

    def __repr__(self) -> str:
        return f"ConnectionManager(pooled={len(self._pool)}, port={self.port})"
