#!/usr/bin/env python3
"""
Remote Store Client — Typed KV Access for the Deployment Engine

All durable state (application records, VPS configs, encrypted secrets)
lives in a remote key-value service. Keys are addressed as ``scope:key``;
values are JSON documents.

Implements:
- get(scope, key) -> value              (NotFoundError on 404)
- put(scope, key, value)
- delete(scope, key)
- list_keys(scope, prefix) -> [key]
- fetch_many(scope, keys) -> FetchResult (bounded fan-out, tolerates failures)
- list_records(scope, prefix) -> {key: value} (secret entries excluded)
"""

import logging
import os
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Optional, Dict, Any, List, Iterable
from urllib.parse import quote

import requests

from core.errors import ConnectivityError, NotFoundError, StoreError

logger = logging.getLogger(__name__)

SECRET_SUFFIX = ":password"


@dataclass
class FetchResult:
    """Outcome of a fetch-many: what came back and what did not."""
    found: Dict[str, Any] = field(default_factory=dict)
    missing: List[str] = field(default_factory=list)

    @property
    def requested(self) -> int:
        return len(self.found) + len(self.missing)

    @property
    def complete(self) -> bool:
        return not self.missing


class RemoteStoreClient:
    """
    HTTP client for the remote KV store.

    Auth: Bearer token from STORE_API_TOKEN env var or constructor arg.
    """

    DEFAULT_TIMEOUT = 30
    DEFAULT_WORKERS = 5

    def __init__(
        self,
        base_url: str = None,
        api_token: str = None,
        timeout: int = None,
        max_workers: int = None,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = (base_url or os.environ.get("STORE_BASE_URL", "")).rstrip("/")
        self.api_token = api_token or os.environ.get("STORE_API_TOKEN", "")
        self.timeout = timeout or self.DEFAULT_TIMEOUT
        self.max_workers = max_workers or self.DEFAULT_WORKERS
        self._session = session or requests.Session()
        self._stats_lock = threading.Lock()
        self._request_count = 0
        self._error_count = 0

        if not self.api_token:
            logger.warning("No store API token configured. Set STORE_API_TOKEN env var.")

        logger.info(
            f"RemoteStoreClient initialized (base_url={self.base_url}, "
            f"token={'configured' if self.api_token else 'missing'})"
        )

    @staticmethod
    def full_key(scope: str, key: str) -> str:
        return f"{scope}:{key}"

    def _headers(self) -> Dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        if self.api_token:
            headers["Authorization"] = f"Bearer {self.api_token}"
        return headers

    def _count(self, error: bool = False):
        with self._stats_lock:
            self._request_count += 1
            if error:
                self._error_count += 1

    def _request(self, method: str, path: str, **kwargs) -> requests.Response:
        """
        Authenticated request against the store.

        Raises ConnectivityError on transport failure or 5xx, NotFoundError
        on 404, StoreError on any other 4xx.
        """
        url = f"{self.base_url}{path}"
        try:
            resp = self._session.request(
                method, url, headers=self._headers(), timeout=self.timeout, **kwargs,
            )
        except requests.exceptions.Timeout as e:
            self._count(error=True)
            logger.error(f"[STORE] timeout: {method} {path}")
            raise ConnectivityError(f"store timeout: {method} {path}") from e
        except requests.exceptions.ConnectionError as e:
            self._count(error=True)
            logger.error(f"[STORE] connection error: {method} {path}: {e}")
            raise ConnectivityError(f"store unreachable: {e}") from e

        if resp.status_code == 404:
            self._count()
            raise NotFoundError(f"key not found: {path}", path=path)
        if resp.status_code >= 400:
            self._count(error=True)
            logger.warning(
                f"[STORE] error: {method} {path} -> {resp.status_code} {resp.text[:300]}"
            )
            if resp.status_code >= 500:
                raise ConnectivityError(f"store error {resp.status_code} on {method} {path}")
            raise StoreError(
                f"store rejected {method} {path}: {resp.status_code}",
                status_code=resp.status_code,
            )
        self._count()
        return resp

    # ── Single-key operations ────────────────────────────────────

    def get(self, scope: str, key: str) -> Any:
        full = self.full_key(scope, key)
        resp = self._request("GET", f"/values/{quote(full, safe=':')}")
        return resp.json()

    def put(self, scope: str, key: str, value: Any) -> None:
        full = self.full_key(scope, key)
        self._request("PUT", f"/values/{quote(full, safe=':')}", json=value)
        logger.debug(f"[STORE] put {full}")

    def delete(self, scope: str, key: str) -> None:
        full = self.full_key(scope, key)
        self._request("DELETE", f"/values/{quote(full, safe=':')}")
        logger.debug(f"[STORE] delete {full}")

    def exists(self, scope: str, key: str) -> bool:
        try:
            self.get(scope, key)
        except NotFoundError:
            return False
        return True

    def list_keys(self, scope: str, prefix: str = "") -> List[str]:
        """Keys under ``scope`` starting with ``prefix``, scope stripped."""
        scope_prefix = f"{scope}:"
        resp = self._request("GET", "/keys", params={"prefix": f"{scope_prefix}{prefix}"})
        payload = resp.json()
        names = payload.get("result", payload) if isinstance(payload, dict) else payload
        keys = []
        for entry in names or []:
            name = entry.get("name", "") if isinstance(entry, dict) else str(entry)
            if name.startswith(scope_prefix):
                keys.append(name[len(scope_prefix):])
        return keys

    # ── Batch operations ─────────────────────────────────────────

    def fetch_many(self, scope: str, keys: Iterable[str], max_workers: int = None) -> FetchResult:
        """
        Read many keys with at most ``max_workers`` requests in flight.

        Individual failures are logged and reported in ``missing``; the
        batch itself never raises.
        """
        keys = list(dict.fromkeys(keys))
        result = FetchResult()
        if not keys:
            return result

        lock = threading.Lock()

        def _fetch(key: str):
            try:
                value = self.get(scope, key)
            except (ConnectivityError, NotFoundError, StoreError,
                    requests.exceptions.RequestException, ValueError) as e:
                logger.warning(f"[STORE] fetch_many skipped {scope}:{key}: {e}")
                with lock:
                    result.missing.append(key)
                return
            with lock:
                result.found[key] = value

        workers = min(max_workers or self.max_workers, len(keys))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="store-fetch") as pool:
            list(pool.map(_fetch, keys))

        logger.info(f"[STORE] fetch_many {scope}: {len(result.found)}/{len(keys)} found")
        return result

    def list_records(self, scope: str, prefix: str = "") -> Dict[str, Any]:
        """All non-secret records under ``scope``/``prefix``, fetched in parallel."""
        keys = [k for k in self.list_keys(scope, prefix) if not k.endswith(SECRET_SUFFIX)]
        return self.fetch_many(scope, keys).found

    def get_stats(self) -> Dict[str, Any]:
        with self._stats_lock:
            return {
                "requests": self._request_count,
                "errors": self._error_count,
                "base_url": self.base_url,
            }
