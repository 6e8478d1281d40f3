"""Upstream version lookups, memoized through TTLMemoCache."""

from __future__ import annotations

import logging
import re
from typing import Dict, List, Optional, Tuple

import requests
import yaml

from core.errors import ConnectivityError, NotFoundError, ValidationError
from .memo import TTLMemoCache

logger = logging.getLogger(__name__)

GITHUB_API = "https://api.github.com"
VERSION_RE = re.compile(r"^v?(\d+)\.(\d+)\.(\d+)(?:[-+].*)?$")


def parse_version(raw: str) -> Optional[Tuple[int, int, int]]:
    match = VERSION_RE.match(raw.strip())
    if not match:
        return None
    return tuple(int(part) for part in match.groups())  # type: ignore[return-value]


def normalize_version(raw: str) -> str:
    return raw.strip().lstrip("v")


def newest(versions: List[str]) -> str:
    parsed = [(parse_version(v), normalize_version(v)) for v in versions]
    ranked = sorted((p, v) for p, v in parsed if p is not None)
    if not ranked:
        raise NotFoundError("no parseable versions")
    return ranked[-1][1]


def _get(url: str, timeout: int, **kwargs) -> requests.Response:
    try:
        resp = requests.get(url, timeout=timeout, **kwargs)
    except (requests.exceptions.Timeout, requests.exceptions.ConnectionError) as exc:
        raise ConnectivityError(f"version source unreachable: {url}: {exc}") from exc
    if resp.status_code == 404:
        raise NotFoundError(f"version source not found: {url}")
    if resp.status_code >= 400:
        raise ConnectivityError(f"version source error {resp.status_code}: {url}")
    return resp


class StaticVersionSource:
    def __init__(self, version: str) -> None:
        self.version = version

    def list_versions(self) -> List[str]:
        return [self.version]

    def latest(self) -> str:
        return self.version


class GitHubReleaseSource:
    """Published, non-prerelease GitHub releases of ``owner/repo``."""

    def __init__(self, repo: str, timeout: int = 15, token: str = "") -> None:
        self.repo = repo
        self.timeout = timeout
        self.token = token

    def list_versions(self) -> List[str]:
        headers = {"Accept": "application/vnd.github+json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        resp = _get(
            f"{GITHUB_API}/repos/{self.repo}/releases",
            self.timeout, headers=headers, params={"per_page": 30},
        )
        return [
            normalize_version(r.get("tag_name", ""))
            for r in resp.json()
            if not r.get("draft") and not r.get("prerelease") and r.get("tag_name")
        ]

    def latest(self) -> str:
        return newest(self.list_versions())


class HelmRepositorySource:
    """Chart versions published in a Helm repository's index.yaml."""

    def __init__(self, repo_url: str, chart: str, timeout: int = 15) -> None:
        self.repo_url = repo_url.rstrip("/")
        self.chart = chart
        self.timeout = timeout

    def list_versions(self) -> List[str]:
        resp = _get(f"{self.repo_url}/index.yaml", self.timeout)
        index = yaml.safe_load(resp.text) or {}
        entries = (index.get("entries") or {}).get(self.chart) or []
        return [str(e["version"]) for e in entries if e.get("version")]

    def latest(self) -> str:
        return newest(self.list_versions())


class VersionService:
    """Catalog-aware version lookups with a shared TTL memo-cache."""

    def __init__(self, sources: Dict[str, object], memo: TTLMemoCache) -> None:
        self._sources = sources
        self._memo = memo

    def _source(self, app_type: str):
        try:
            return self._sources[app_type]
        except KeyError:
            raise ValidationError(f"no version source for {app_type}", app_type=app_type) from None

    def latest(self, app_type: str) -> str:
        source = self._source(app_type)
        return self._memo.get(f"version:{app_type}", source.latest)

    def available(self, app_type: str) -> List[str]:
        source = self._source(app_type)
        return self._memo.get(f"versions:{app_type}", source.list_versions)

    def validate(self, app_type: str, version: str) -> str:
        """Return the normalized version or raise ValidationError."""
        if not version or (parse_version(version) is None and version not in ("latest", "stable")):
            raise ValidationError(f"invalid version: {version!r}", app_type=app_type)
        if version in ("latest", "stable"):
            return self.latest(app_type)
        normalized = normalize_version(version)
        try:
            known = self.available(app_type)
        except (ConnectivityError, NotFoundError) as exc:
            # upstream down and nothing cached: accept a well-formed version
            logger.warning(f"Cannot list versions for {app_type}, accepting {normalized}: {exc}")
            return normalized
        if normalized not in known:
            raise ValidationError(
                f"version {normalized} is not published for {app_type}", app_type=app_type,
            )
        return normalized

    def is_valid(self, app_type: str, version: str) -> bool:
        try:
            self.validate(app_type, version)
        except ValidationError:
            return False
        return True

    def invalidate(self, app_type: str) -> None:
        self._memo.invalidate(f"version:{app_type}")
        self._memo.invalidate(f"versions:{app_type}")
