#!/usr/bin/env python3
"""
Credential Vault — Encrypted Secrets with Live-Retrieval Fallback

Secrets are stored AES-256-GCM encrypted in the remote store under
``{scope}:{entity_id}:password``. Reads check, in order:

1. the in-memory cache (short TTL)
2. the remote store
3. an ordered chain of live probes against the deployed system

The first probe that yields a non-empty value wins; the value is then
written back to the store (best effort) and cached, so the next read
never touches the probes again.
"""

import logging
import secrets
import string
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from core.errors import (
    ConnectivityError, NotFoundError, StoreError, ValidationError,
)
from store.client import RemoteStoreClient, SECRET_SUFFIX
from . import crypto

logger = logging.getLogger(__name__)


@dataclass
class SecretProbe:
    """One candidate location for a live secret. ``fetch`` returns the
    secret or an empty string; raising counts as a miss."""
    name: str
    fetch: Callable[[], str] = field(repr=False)


@dataclass
class CachedSecret:
    scope: str
    key: str
    value: str = field(repr=False)
    expires_at: float = 0.0


class CredentialVault:
    """Encrypts, stores and recovers per-entity secrets."""

    DEFAULT_CACHE_TTL = 300

    def __init__(
        self,
        store: RemoteStoreClient,
        token: str,
        cache_ttl: float = None,
        clock: Callable[[], float] = time.time,
    ):
        if not token:
            raise ValidationError("CredentialVault needs an account token")
        self.store = store
        self._token = token
        self.cache_ttl = self.DEFAULT_CACHE_TTL if cache_ttl is None else cache_ttl
        self._clock = clock
        self._cache: Dict[Tuple[str, str], CachedSecret] = {}
        self._lock = threading.Lock()
        self.stats = {"cache_hits": 0, "store_hits": 0, "probe_hits": 0, "misses": 0}

    @staticmethod
    def secret_key(entity_id: str) -> str:
        return f"{entity_id}{SECRET_SUFFIX}"

    # ── Cache ────────────────────────────────────────────────────

    def _cache_get(self, scope: str, entity_id: str) -> Optional[str]:
        with self._lock:
            entry = self._cache.get((scope, entity_id))
            if entry is None:
                return None
            if entry.expires_at <= self._clock():
                del self._cache[(scope, entity_id)]
                return None
            self.stats["cache_hits"] += 1
            return entry.value

    def _cache_put(self, scope: str, entity_id: str, value: str):
        with self._lock:
            self._cache[(scope, entity_id)] = CachedSecret(
                scope=scope, key=entity_id, value=value,
                expires_at=self._clock() + self.cache_ttl,
            )

    def invalidate(self, scope: str, entity_id: str) -> None:
        with self._lock:
            self._cache.pop((scope, entity_id), None)

    # ── Store ────────────────────────────────────────────────────

    def store_encrypted_password(self, scope: str, entity_id: str, secret: str) -> None:
        """Encrypt ``secret`` and persist it for ``entity_id``."""
        if not secret:
            raise ValidationError("refusing to store an empty secret", entity_id=entity_id)
        self.store.put(scope, self.secret_key(entity_id), {
            "password": crypto.encrypt(secret, self._token),
            "updated_at": datetime.now(timezone.utc).isoformat(),
        })
        self._cache_put(scope, entity_id, secret)
        logger.info(f"[VAULT] stored secret for {scope}:{entity_id}")

    def _read_store(self, scope: str, entity_id: str) -> Optional[str]:
        try:
            record = self.store.get(scope, self.secret_key(entity_id))
        except NotFoundError:
            return None
        encoded = record.get("password") if isinstance(record, dict) else None
        if not encoded:
            return None
        try:
            return crypto.decrypt(encoded, self._token)
        except ValidationError as e:
            logger.warning(f"[VAULT] stored secret for {scope}:{entity_id} unreadable: {e}")
            return None

    # ── Retrieval ────────────────────────────────────────────────

    @staticmethod
    def run_chain(probes: Sequence[SecretProbe]) -> Tuple[str, str]:
        """
        Try each probe in order; return ``(probe_name, value)`` for the
        first non-empty result. Raises NotFoundError when all miss.
        """
        tried: List[str] = []
        for p in probes:
            tried.append(p.name)
            try:
                value = (p.fetch() or "").strip()
            except Exception as e:  # noqa: BLE001
                logger.info(f"[VAULT] probe {p.name} failed: {e}")
                continue
            if value:
                return p.name, value
            logger.info(f"[VAULT] probe {p.name} returned nothing")
        raise NotFoundError(f"secret not found (tried: {', '.join(tried) or 'none'})", tried=tried)

    def get_decrypted_password(
        self, scope: str, entity_id: str, probes: Sequence[SecretProbe] = None,
    ) -> str:
        """Return the plaintext secret for ``entity_id``; see module docstring for the order."""
        cached = self._cache_get(scope, entity_id)
        if cached is not None:
            return cached

        stored = self._read_store(scope, entity_id)
        if stored is not None:
            with self._lock:
                self.stats["store_hits"] += 1
            self._cache_put(scope, entity_id, stored)
            return stored

        try:
            winner, value = self.run_chain(probes or [])
        except NotFoundError:
            with self._lock:
                self.stats["misses"] += 1
            logger.warning(f"[VAULT] no secret for {scope}:{entity_id}")
            raise

        with self._lock:
            self.stats["probe_hits"] += 1
        logger.info(f"[VAULT] recovered secret for {scope}:{entity_id} via {winner}")
        try:
            self.store_encrypted_password(scope, entity_id, value)
        except (ConnectivityError, StoreError) as e:
            logger.warning(f"[VAULT] write-back for {scope}:{entity_id} failed: {e}")
            self._cache_put(scope, entity_id, value)
        return value

    def delete_password(self, scope: str, entity_id: str) -> None:
        self.invalidate(scope, entity_id)
        try:
            self.store.delete(scope, self.secret_key(entity_id))
        except NotFoundError:
            pass

    def get_stats(self) -> Dict[str, int]:
        with self._lock:
            return dict(self.stats, cached=len(self._cache))


PASSWORD_ALPHABET = string.ascii_letters + string.digits


def generate_password(length: int = 16) -> str:
    if length < 8:
        raise ValidationError("passwords must be at least 8 characters")
    return "".join(secrets.choice(PASSWORD_ALPHABET) for _ in range(length))
