"""Terminal sessions: hands the terminal transport a verified connection and a port."""

from __future__ import annotations

import logging
import threading
import time
import uuid
from dataclasses import dataclass, field, asdict
from typing import Any, Dict, List, Optional, Tuple

from core.errors import NotFoundError, ValidationError
from .ssh_pool import ConnectionManager

logger = logging.getLogger(__name__)


@dataclass
class TerminalSession:
    id: str
    port: int
    status: str
    entity_id: str
    host: str
    user: str
    created_at: float = field(default_factory=time.time)

    def handle(self) -> Dict[str, Any]:
        return {"id": self.id, "port": self.port, "status": self.status}

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class TerminalSessionFactory:
    """Allocates terminal sessions on top of the shared connection pool."""

    def __init__(self, pool: ConnectionManager, port_range: Tuple[int, int] = (7681, 7780)) -> None:
        low, high = port_range
        if low > high:
            raise ValidationError(f"invalid port range {port_range}")
        self.pool = pool
        self._ports = range(low, high + 1)
        self._sessions: Dict[str, TerminalSession] = {}
        self._lock = threading.Lock()

    def _free_port(self) -> Optional[int]:
        used = {s.port for s in self._sessions.values()}
        for port in self._ports:
            if port not in used:
                return port
        return None

    def create_session(self, entity_id: str, host: str, user: str, key_material) -> TerminalSession:
        """Verify the host answers over SSH, then reserve a port for the transport."""
        self.pool.get_or_create_connection(host, user, key_material, entity_id)
        with self._lock:
            port = self._free_port()
            if port is None:
                raise ValidationError("no free terminal ports", entity_id=entity_id)
            session = TerminalSession(
                id=uuid.uuid4().hex[:12],
                port=port,
                status="running",
                entity_id=entity_id,
                host=host,
                user=user,
            )
            self._sessions[session.id] = session
        logger.info(f"Terminal session {session.id} for {entity_id} on port {port}")
        return session

    def stop_session(self, session_id: str) -> TerminalSession:
        with self._lock:
            session = self._sessions.pop(session_id, None)
        if session is None:
            raise NotFoundError(f"terminal session {session_id} not found")
        session.status = "stopped"
        return session

    def get_session(self, session_id: str) -> TerminalSession:
        with self._lock:
            session = self._sessions.get(session_id)
        if session is None:
            raise NotFoundError(f"terminal session {session_id} not found")
        return session

    def list_sessions(self) -> List[Dict[str, Any]]:
        with self._lock:
            return [s.handle() for s in self._sessions.values()]
