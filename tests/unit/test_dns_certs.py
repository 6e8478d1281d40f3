#!/usr/bin/env python3
"""
Unit tests for the Cloudflare DNS client and certificate manager
"""

import sys
import pytest
import requests
from pathlib import Path
from unittest.mock import patch, MagicMock

sys.path.insert(0, str(Path(__file__).parent.parent.parent / "src"))

from core.errors import ConnectivityError, NotFoundError, OrchestrationError, ValidationError
from deploy.certs import CertificateManager, fingerprint, marker_key
from deploy.dns import BASE_URL, CloudflareDNS, record_name
from fakes import CERT_PEM, FakePool, seeded_store


def _resp(payload=None, status=200):
    resp = MagicMock()
    resp.status_code = status
    resp.json.return_value = payload if payload is not None else {"success": True, "result": []}
    resp.text = ""
    return resp


ZONE = _resp({"success": True, "result": [{"id": "zone-1"}]})


class TestRecordName:

    def test_subdomain(self):
        assert record_name("dev1", "example.com") == "dev1.example.com"

    def test_apex(self):
        assert record_name("", "example.com") == "example.com"
        assert record_name("*", "example.com") == "example.com"


class TestCloudflareDNS:

    @patch("deploy.dns.requests.request")
    def test_upsert_creates_missing_record(self, mock_request):
        mock_request.side_effect = [
            ZONE,
            _resp({"success": True, "result": []}),
            _resp({"success": True, "result": {"id": "rec-1"}}),
        ]
        change = CloudflareDNS(api_token="tok").upsert_a_record("dev1", "example.com", "203.0.113.7")

        assert change.action == "created"
        assert change.created is True
        assert change.record_id == "rec-1"
        method, url = mock_request.call_args.args
        assert (method, url) == ("POST", f"{BASE_URL}/zones/zone-1/dns_records")
        body = mock_request.call_args.kwargs["json"]
        assert body == {"type": "A", "name": "dev1.example.com", "content": "203.0.113.7",
                        "proxied": True, "ttl": 1}

    @patch("deploy.dns.requests.request")
    def test_upsert_identical_record_is_unchanged(self, mock_request):
        mock_request.side_effect = [
            ZONE,
            _resp({"success": True, "result": [{"id": "rec-1", "content": "203.0.113.7"}]}),
        ]
        change = CloudflareDNS(api_token="tok").upsert_a_record("dev1", "example.com", "203.0.113.7")

        assert change.action == "unchanged"
        assert mock_request.call_count == 2

    @patch("deploy.dns.requests.request")
    def test_upsert_updates_changed_ip(self, mock_request):
        mock_request.side_effect = [
            ZONE,
            _resp({"success": True, "result": [{"id": "rec-1", "content": "198.51.100.1"}]}),
            _resp({"success": True, "result": {"id": "rec-1"}}),
        ]
        change = CloudflareDNS(api_token="tok").upsert_a_record("dev1", "example.com", "203.0.113.7")

        assert change.action == "updated"
        assert mock_request.call_args.args == ("PUT", f"{BASE_URL}/zones/zone-1/dns_records/rec-1")

    @patch("deploy.dns.requests.request")
    def test_delete_existing_and_absent(self, mock_request):
        mock_request.side_effect = [
            ZONE,
            _resp({"success": True, "result": [{"id": "rec-1", "content": "1.1.1.1"}]}),
            _resp({"success": True, "result": {"id": "rec-1"}}),
            _resp({"success": True, "result": []}),
        ]
        dns = CloudflareDNS(api_token="tok")

        assert dns.delete_a_record("dev1", "example.com").action == "deleted"
        # zone id is cached; only the record lookup is repeated
        assert dns.delete_a_record("dev1", "example.com").action == "absent"
        assert mock_request.call_count == 4

    @patch("deploy.dns.requests.request")
    def test_unknown_zone(self, mock_request):
        mock_request.return_value = _resp({"success": True, "result": []})
        with pytest.raises(NotFoundError):
            CloudflareDNS(api_token="tok").zone_id("example.org")

    @patch("deploy.dns.requests.request")
    def test_api_failures(self, mock_request):
        dns = CloudflareDNS(api_token="tok")

        mock_request.side_effect = requests.exceptions.ConnectionError("down")
        with pytest.raises(ConnectivityError):
            dns.zone_id("example.com")

        mock_request.side_effect = None
        mock_request.return_value = _resp({"success": False, "errors": [{"code": 9109}]})
        with pytest.raises(ValidationError):
            dns.zone_id("example.com")


class TestCertificateManager:

    def _conn(self, pool):
        return pool.get_or_create_connection("203.0.113.7", "root", "KEY", "vps-1")

    def test_first_apply_writes_secret_and_marker(self):
        store, pool = seeded_store(), FakePool()
        certs = CertificateManager(store, pool)

        assert certs.ensure(self._conn(pool), "203.0.113.7", "example.com", "code-server") is True

        assert pool.ran("kubectl create secret tls example.com-tls -n code-server")
        assert CERT_PEM in pool.stdin
        marker = store.data[f"vps:{marker_key('203.0.113.7', 'example.com', 'code-server')}"]
        assert marker["fingerprint"] == fingerprint(CERT_PEM)

    def test_second_apply_is_skipped(self):
        store, pool = seeded_store(), FakePool()
        certs = CertificateManager(store, pool)
        certs.ensure(self._conn(pool), "203.0.113.7", "example.com", "code-server")
        issued = len(pool.commands)

        assert certs.ensure(self._conn(pool), "203.0.113.7", "example.com", "code-server") is False
        assert pool.commands[issued:] == ["kubectl get secret example.com-tls -n code-server -o name"]

    def test_missing_secret_is_reapplied_despite_marker(self):
        store, pool = seeded_store(), FakePool()
        certs = CertificateManager(store, pool)
        certs.ensure(self._conn(pool), "203.0.113.7", "example.com", "code-server")
        pool.on("get secret example.com-tls", exit_code=1, stderr='secrets "example.com-tls" not found')

        assert certs.ensure(self._conn(pool), "203.0.113.7", "example.com", "code-server") is True
        assert len(pool.ran("create secret tls example.com-tls")) == 2

    def test_forget_namespace_drops_only_its_markers(self):
        store, pool = seeded_store(), FakePool()
        certs = CertificateManager(store, pool)
        certs.ensure(self._conn(pool), "203.0.113.7", "example.com", "code-server")
        certs.ensure(self._conn(pool), "203.0.113.7", "example.com", "argocd")

        dropped = certs.forget_namespace("203.0.113.7", "code-server")

        assert dropped == [marker_key("203.0.113.7", "example.com", "code-server")]
        assert f"vps:{marker_key('203.0.113.7', 'example.com', 'argocd')}" in store.data

    def test_rotated_certificate_is_reapplied(self):
        store, pool = seeded_store(), FakePool()
        certs = CertificateManager(store, pool)
        certs.ensure(self._conn(pool), "203.0.113.7", "example.com", "code-server")
        store.data["domain:example.com:ssl_config"]["certificate"] = "-----NEW-----"

        assert certs.ensure(self._conn(pool), "203.0.113.7", "example.com", "code-server") is True

    def test_other_namespace_gets_its_own_secret(self):
        store, pool = seeded_store(), FakePool()
        certs = CertificateManager(store, pool)
        certs.ensure(self._conn(pool), "203.0.113.7", "example.com", "code-server")

        assert certs.ensure(self._conn(pool), "203.0.113.7", "example.com", "argocd") is True

    def test_unconfigured_domain(self):
        store, pool = seeded_store(), FakePool()
        with pytest.raises(NotFoundError):
            CertificateManager(store, pool).ensure(self._conn(pool), "203.0.113.7", "example.org", "ns")

    def test_remote_failure_raises(self):
        store, pool = seeded_store(), FakePool().on("secret tls", exit_code=1, stderr="forbidden")
        with pytest.raises(OrchestrationError):
            CertificateManager(store, pool).ensure(self._conn(pool), "203.0.113.7", "example.com", "ns")
        assert not any(k.startswith("vps:203.0.113.7:ssl") for k in store.data)
