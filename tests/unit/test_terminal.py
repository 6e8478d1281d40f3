#!/usr/bin/env python3
"""
Unit tests for terminal sessions
"""

import sys
import pytest
from pathlib import Path
from unittest.mock import MagicMock

sys.path.insert(0, str(Path(__file__).parent.parent.parent / "src"))

from core.errors import ConnectivityError, NotFoundError, ValidationError
from vps.terminal import TerminalSessionFactory
from fakes import FakePool


class TestTerminalSessionFactory:

    def test_create_returns_handle(self):
        factory = TerminalSessionFactory(FakePool(), port_range=(7681, 7690))

        session = factory.create_session("vps-1", "203.0.113.7", "root", "KEY")

        assert session.handle() == {"id": session.id, "port": 7681, "status": "running"}
        assert factory.get_session(session.id) is session

    def test_ports_are_not_reused_while_open(self):
        factory = TerminalSessionFactory(FakePool(), port_range=(7681, 7682))
        a = factory.create_session("vps-1", "203.0.113.7", "root", "KEY")
        b = factory.create_session("vps-1", "203.0.113.7", "root", "KEY")

        assert {a.port, b.port} == {7681, 7682}
        with pytest.raises(ValidationError):
            factory.create_session("vps-1", "203.0.113.7", "root", "KEY")

        factory.stop_session(a.id)
        assert factory.create_session("vps-1", "203.0.113.7", "root", "KEY").port == a.port

    def test_unreachable_host_reserves_nothing(self):
        pool = MagicMock()
        pool.get_or_create_connection.side_effect = ConnectivityError("refused")
        factory = TerminalSessionFactory(pool)

        with pytest.raises(ConnectivityError):
            factory.create_session("vps-1", "203.0.113.7", "root", "KEY")
        assert factory.list_sessions() == []

    def test_stop(self):
        factory = TerminalSessionFactory(FakePool())
        session = factory.create_session("vps-1", "203.0.113.7", "root", "KEY")

        assert factory.stop_session(session.id).status == "stopped"
        with pytest.raises(NotFoundError):
            factory.get_session(session.id)
        with pytest.raises(NotFoundError):
            factory.stop_session(session.id)

    def test_invalid_range(self):
        with pytest.raises(ValidationError):
            TerminalSessionFactory(FakePool(), port_range=(8000, 7000))
