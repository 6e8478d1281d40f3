#!/usr/bin/env python3
"""
Unit tests for the remote KV store client
"""

import sys
import pytest
import requests
from pathlib import Path
from unittest.mock import MagicMock

sys.path.insert(0, str(Path(__file__).parent.parent.parent / "src"))

from core.errors import ConnectivityError, NotFoundError, StoreError
from store.client import RemoteStoreClient, FetchResult


def _resp(status=200, payload=None, text=""):
    resp = MagicMock()
    resp.status_code = status
    resp.json.return_value = payload
    resp.text = text
    return resp


def _client(session):
    return RemoteStoreClient(base_url="https://kv.example.com/", api_token="tok", session=session)


class TestStoreInit:

    def test_base_url_trailing_slash_stripped(self):
        client = _client(MagicMock())
        assert client.base_url == "https://kv.example.com"

    def test_token_from_env(self, monkeypatch):
        monkeypatch.setenv("STORE_API_TOKEN", "env-tok")
        client = RemoteStoreClient(base_url="https://kv", session=MagicMock())
        assert client.api_token == "env-tok"

    def test_bearer_header(self):
        client = _client(MagicMock())
        assert client._headers()["Authorization"] == "Bearer tok"


class TestSingleKey:

    def test_get_addresses_scope_and_key(self):
        session = MagicMock()
        session.request.return_value = _resp(payload={"id": "app-1001"})
        client = _client(session)

        assert client.get("app", "app-1001") == {"id": "app-1001"}
        method, url = session.request.call_args.args
        assert method == "GET"
        assert url == "https://kv.example.com/values/app:app-1001"

    def test_get_404_raises_not_found(self):
        session = MagicMock()
        session.request.return_value = _resp(status=404)
        with pytest.raises(NotFoundError):
            _client(session).get("app", "missing")

    def test_5xx_raises_connectivity(self):
        session = MagicMock()
        session.request.return_value = _resp(status=503, text="unavailable")
        with pytest.raises(ConnectivityError):
            _client(session).get("app", "x")

    def test_4xx_raises_store_error(self):
        session = MagicMock()
        session.request.return_value = _resp(status=403, text="forbidden")
        with pytest.raises(StoreError) as exc:
            _client(session).put("app", "x", {"a": 1})
        assert exc.value.status_code == 403

    def test_transport_failure_raises_connectivity(self):
        session = MagicMock()
        session.request.side_effect = requests.exceptions.ConnectionError("refused")
        with pytest.raises(ConnectivityError):
            _client(session).get("app", "x")

    def test_put_sends_json(self):
        session = MagicMock()
        session.request.return_value = _resp()
        _client(session).put("vps", "vps-1:config", {"public_ip": "1.2.3.4"})

        assert session.request.call_args.args[0] == "PUT"
        assert session.request.call_args.kwargs["json"] == {"public_ip": "1.2.3.4"}

    def test_exists(self):
        session = MagicMock()
        session.request.side_effect = [_resp(payload={}), _resp(status=404)]
        client = _client(session)
        assert client.exists("app", "a") is True
        assert client.exists("app", "b") is False

    def test_list_keys_strips_scope(self):
        session = MagicMock()
        session.request.return_value = _resp(payload={"result": [
            {"name": "app:app-1"}, {"name": "app:app-1:password"}, {"name": "app:app-2"},
        ]})
        keys = _client(session).list_keys("app")

        assert keys == ["app-1", "app-1:password", "app-2"]
        assert session.request.call_args.kwargs["params"] == {"prefix": "app:"}


class TestFetchMany:

    def _session(self, values):
        def respond(method, url, **kwargs):
            key = url.rsplit("/", 1)[-1].split(":", 1)[1]
            value = values.get(key)
            if isinstance(value, Exception):
                raise value
            if value is None:
                return _resp(status=404)
            return _resp(payload=value)

        session = MagicMock()
        session.request.side_effect = respond
        return session

    def test_returns_exactly_the_successful_subset(self):
        session = self._session({
            "a": {"n": 1},
            "b": requests.exceptions.Timeout("slow"),
            "c": {"n": 3},
            "d": None,
        })
        result = _client(session).fetch_many("app", ["a", "b", "c", "d"], max_workers=3)

        assert isinstance(result, FetchResult)
        assert result.found == {"a": {"n": 1}, "c": {"n": 3}}
        assert sorted(result.missing) == ["b", "d"]
        assert result.complete is False

    def test_never_raises_when_everything_fails(self):
        session = MagicMock()
        session.request.side_effect = requests.exceptions.ConnectionError("down")
        result = _client(session).fetch_many("app", ["a", "b"])

        assert result.found == {}
        assert sorted(result.missing) == ["a", "b"]

    def test_empty_input(self):
        result = _client(MagicMock()).fetch_many("app", [])
        assert result.requested == 0

    def test_duplicate_keys_fetched_once(self):
        session = self._session({"a": {"n": 1}})
        _client(session).fetch_many("app", ["a", "a", "a"])
        assert session.request.call_count == 1

    def test_list_records_skips_secrets(self):
        def respond(method, url, **kwargs):
            if url.endswith("/keys"):
                return _resp(payload=[{"name": "app:app-1"}, {"name": "app:app-1:password"}])
            return _resp(payload={"id": "app-1"})

        session = MagicMock()
        session.request.side_effect = respond
        records = _client(session).list_records("app")

        assert records == {"app-1": {"id": "app-1"}}
