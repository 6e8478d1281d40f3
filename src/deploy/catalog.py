"""Application catalog: one typed entry per deployable application type."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from jsonschema import Draft7Validator

from core.errors import NotFoundError, ValidationError
from store.versions import GitHubReleaseSource, HelmRepositorySource, StaticVersionSource

CATALOG_ENTRY_SCHEMA: Dict[str, Any] = {
    "$schema": "http://json-schema.org/draft-07/schema#",
    "type": "object",
    "required": ["id", "helm_chart"],
    "properties": {
        "id": {"type": "string", "pattern": "^[a-z0-9][a-z0-9-]*$"},
        "name": {"type": "string"},
        "version_source": {
            "type": "object",
            "properties": {
                "type": {"type": "string", "enum": ["github", "helm", "static"]},
                "source": {"type": "string"},
                "chart": {"type": "string"},
            },
        },
        "helm_chart": {
            "type": "object",
            "required": ["repository", "chart", "namespace"],
            "properties": {
                "repository": {"type": "string"},
                "chart": {"type": "string"},
                "version": {"type": "string"},
                "namespace": {"type": "string"},
                "values_template": {"type": "string"},
                "placeholders": {"type": "object", "additionalProperties": {"type": "string"}},
                "ref": {"type": "string"},
                "path": {"type": "string"},
            },
        },
        "default_port": {"type": "integer"},
        "credentials": {"type": "boolean"},
    },
}

_validator = Draft7Validator(CATALOG_ENTRY_SCHEMA)


def validate_entry(payload: Dict[str, Any]) -> None:
    errors = sorted(_validator.iter_errors(payload), key=lambda e: e.path)
    if errors:
        messages = ", ".join(error.message for error in errors)
        raise ValidationError(f"catalog entry validation failed: {messages}")


@dataclass(frozen=True)
class HelmChartSpec:
    repository: str
    chart: str
    namespace: str
    version: str = ""
    values_template: str = ""
    placeholders: Dict[str, str] = field(default_factory=dict)
    ref: str = ""
    path: str = ""

    @property
    def kind(self) -> str:
        if self.repository == "local":
            return "local"
        if self.repository.startswith("git+") or self.repository.endswith(".git"):
            return "git"
        return "helm"


@dataclass(frozen=True)
class AppDefinition:
    id: str
    name: str
    helm_chart: HelmChartSpec
    version_source: Dict[str, str] = field(default_factory=dict)
    default_port: int = 80
    credentials: bool = False

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AppDefinition":
        validate_entry(data)
        chart = data["helm_chart"]
        return cls(
            id=data["id"],
            name=data.get("name", data["id"]),
            helm_chart=HelmChartSpec(
                repository=chart["repository"],
                chart=chart["chart"],
                namespace=chart["namespace"],
                version=str(chart.get("version", "")),
                values_template=chart.get("values_template", ""),
                placeholders=dict(chart.get("placeholders") or {}),
                ref=chart.get("ref", ""),
                path=chart.get("path", ""),
            ),
            version_source=dict(data.get("version_source") or {}),
            default_port=int(data.get("default_port", 80)),
            credentials=bool(data.get("credentials", False)),
        )


class Catalog:
    def __init__(self, entries: List[AppDefinition]) -> None:
        self._entries = {e.id: e for e in entries}

    def get(self, app_type: str) -> AppDefinition:
        try:
            return self._entries[app_type]
        except KeyError:
            raise NotFoundError(f"unknown application type: {app_type}", app_type=app_type) from None

    def __contains__(self, app_type: str) -> bool:
        return app_type in self._entries

    def ids(self) -> List[str]:
        return sorted(self._entries)

    def entries(self) -> List[AppDefinition]:
        return [self._entries[k] for k in self.ids()]


def load_catalog(path: str | Path) -> Catalog:
    """Load ``applications:`` from one YAML file, or every *.yml/*.yaml in a directory."""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Catalog not found: {path}")

    files = sorted(path.glob("*.y*ml")) if path.is_dir() else [path]
    entries: List[AppDefinition] = []
    for file in files:
        with file.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
        raw: Optional[List[Dict[str, Any]]] = data.get("applications") if "applications" in data else [data]
        entries.extend(AppDefinition.from_dict(item) for item in raw or [])
    return Catalog(entries)


def version_sources(catalog: Catalog) -> Dict[str, Any]:
    """Build one version source per catalog entry for VersionService."""
    sources: Dict[str, Any] = {}
    for entry in catalog.entries():
        vs = entry.version_source
        kind = vs.get("type", "static")
        if kind == "github":
            sources[entry.id] = GitHubReleaseSource(vs["source"])
        elif kind == "helm":
            sources[entry.id] = HelmRepositorySource(vs["source"], vs.get("chart", entry.helm_chart.chart))
        else:
            sources[entry.id] = StaticVersionSource(vs.get("source") or entry.helm_chart.version)
    return sources
