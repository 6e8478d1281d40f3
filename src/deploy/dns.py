#!/usr/bin/env python3
"""
Cloudflare DNS Client — A-Record Upsert and Removal for Applications

Implements:
- zone_id(domain) -> str
- find_a_record(zone_id, name) -> dict | None
- upsert_a_record(subdomain, domain, ip) -> DNSChange
- delete_a_record(subdomain, domain) -> DNSChange

Records are created proxied with automatic TTL. Upsert and delete are
idempotent: an identical record is left alone, a missing one is not an error.
"""

import logging
import os
import time
from dataclasses import dataclass, field, asdict
from typing import Optional, Dict, Any

import requests

from core.errors import ConnectivityError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)

BASE_URL = "https://api.cloudflare.com/client/v4"


def record_name(subdomain: str, domain: str) -> str:
    """Bare domain for an empty or ``*`` subdomain."""
    if not subdomain or subdomain == "*":
        return domain
    return f"{subdomain}.{domain}"


@dataclass
class DNSChange:
    """What an upsert/delete actually did."""
    name: str
    action: str          # created | updated | unchanged | deleted | absent
    record_id: Optional[str] = None
    content: str = ""
    timestamp: float = field(default_factory=time.time)

    @property
    def created(self) -> bool:
        return self.action == "created"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class CloudflareDNS:
    """
    Cloudflare DNS API client.

    Auth: Bearer token from CLOUDFLARE_API_TOKEN env var or constructor arg.
    """

    DEFAULT_TIMEOUT = 30

    def __init__(self, api_token: str = None, timeout: int = None, proxied: bool = True):
        self.api_token = api_token or os.environ.get("CLOUDFLARE_API_TOKEN", "")
        self.timeout = timeout or self.DEFAULT_TIMEOUT
        self.proxied = proxied
        self._zone_ids: Dict[str, str] = {}
        self._request_count = 0
        self._error_count = 0

        if not self.api_token:
            logger.warning("No Cloudflare API token configured. Set CLOUDFLARE_API_TOKEN env var.")

    def _headers(self) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.api_token}",
        }

    def _request(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        url = f"{BASE_URL}{path}"
        self._request_count += 1
        try:
            resp = requests.request(
                method, url, headers=self._headers(), timeout=self.timeout, **kwargs,
            )
        except (requests.exceptions.Timeout, requests.exceptions.ConnectionError) as e:
            self._error_count += 1
            logger.error(f"Cloudflare API unreachable: {method} {path}: {e}")
            raise ConnectivityError(f"Cloudflare API unreachable: {e}") from e

        if resp.status_code == 404:
            self._error_count += 1
            raise NotFoundError(f"Cloudflare resource not found: {path}")
        if resp.status_code >= 400:
            self._error_count += 1
            logger.warning(
                f"Cloudflare API error: {method} {path} -> "
                f"{resp.status_code} {resp.text[:300]}"
            )
            if resp.status_code >= 500:
                raise ConnectivityError(f"Cloudflare API error {resp.status_code}")
            raise ValidationError(f"Cloudflare rejected {method} {path}: {resp.text[:200]}")

        body = resp.json()
        if not body.get("success", True):
            raise ValidationError(f"Cloudflare error: {body.get('errors')}")
        return body

    def zone_id(self, domain: str) -> str:
        if domain in self._zone_ids:
            return self._zone_ids[domain]
        zones = self._request("GET", "/zones", params={"name": domain}).get("result") or []
        if not zones:
            raise NotFoundError(f"no Cloudflare zone for {domain}", domain=domain)
        self._zone_ids[domain] = zones[0]["id"]
        return self._zone_ids[domain]

    def find_a_record(self, zone_id: str, name: str) -> Optional[Dict[str, Any]]:
        records = self._request(
            "GET", f"/zones/{zone_id}/dns_records", params={"type": "A", "name": name},
        ).get("result") or []
        return records[0] if records else None

    def upsert_a_record(self, subdomain: str, domain: str, ip: str) -> DNSChange:
        name = record_name(subdomain, domain)
        zone = self.zone_id(domain)
        existing = self.find_a_record(zone, name)
        body = {"type": "A", "name": name, "content": ip, "proxied": self.proxied, "ttl": 1}

        if existing is None:
            created = self._request("POST", f"/zones/{zone}/dns_records", json=body).get("result") or {}
            change = DNSChange(name=name, action="created", record_id=created.get("id"), content=ip)
        elif existing.get("content") == ip:
            change = DNSChange(name=name, action="unchanged", record_id=existing.get("id"), content=ip)
        else:
            self._request("PUT", f"/zones/{zone}/dns_records/{existing['id']}", json=body)
            change = DNSChange(name=name, action="updated", record_id=existing.get("id"), content=ip)

        logger.info(f"[DNS] A {name} -> {ip}: {change.action}")
        return change

    def delete_a_record(self, subdomain: str, domain: str) -> DNSChange:
        name = record_name(subdomain, domain)
        zone = self.zone_id(domain)
        existing = self.find_a_record(zone, name)
        if existing is None:
            logger.info(f"[DNS] A {name}: already absent")
            return DNSChange(name=name, action="absent")
        self._request("DELETE", f"/zones/{zone}/dns_records/{existing['id']}")
        logger.info(f"[DNS] A {name}: deleted")
        return DNSChange(name=name, action="deleted", record_id=existing["id"])

    def get_stats(self) -> Dict[str, Any]:
        return {"requests": self._request_count, "errors": self._error_count}
