"""Values rendering: placeholder substitution into per-type templates."""

from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Mapping

import yaml

from core.errors import ValidationError

PLACEHOLDER_RE = re.compile(r"\{\{([A-Z][A-Z0-9_]*)\}\}")


@dataclass(frozen=True)
class ValuesContext:
    version: str
    subdomain: str
    domain: str
    release_name: str
    timezone: str = "UTC"

    def placeholders(self) -> Dict[str, str]:
        return {
            "VERSION": self.version,
            "SUBDOMAIN": self.subdomain,
            "DOMAIN": self.domain,
            "RELEASE_NAME": self.release_name,
            "TIMEZONE": self.timezone or "UTC",
        }

    def template_data(self) -> Dict[str, str]:
        return {"Version": self.version, "Subdomain": self.subdomain, "Domain": self.domain}


def resolve_extra(extra: Mapping[str, str], ctx: ValuesContext) -> Dict[str, str]:
    """Catalog placeholders may reference ``{{.Version}}`` style fields."""
    resolved = {}
    for key, value in extra.items():
        for field_name, actual in ctx.template_data().items():
            value = value.replace(f"{{{{.{field_name}}}}}", actual)
        resolved[key] = value
    return resolved


def render_values(template: str, ctx: ValuesContext, extra: Mapping[str, str] = None) -> str:
    """
    Substitute ``{{NAME}}`` placeholders. Unknown placeholders left in the
    output raise ValidationError; the result must parse as YAML.
    """
    values = ctx.placeholders()
    values.update(resolve_extra(extra or {}, ctx))

    def _sub(match: "re.Match[str]") -> str:
        name = match.group(1)
        if name not in values:
            raise ValidationError(f"unresolved placeholder {{{{{name}}}}} in values template")
        return values[name]

    rendered = PLACEHOLDER_RE.sub(_sub, template)
    try:
        yaml.safe_load(rendered)
    except yaml.YAMLError as exc:
        raise ValidationError(f"rendered values are not valid YAML: {exc}") from exc
    return rendered


def minimal_values(ctx: ValuesContext) -> str:
    """Fallback when an application type ships no template."""
    host = f"{ctx.subdomain}.{ctx.domain}"
    doc = {
        "ingress": {
            "enabled": True,
            "hosts": [{"host": host, "paths": ["/"]}],
            "tls": [{"secretName": f"{ctx.domain}-tls", "hosts": [host]}],
        },
        "env": {"TZ": ctx.timezone or "UTC"},
    }
    return yaml.safe_dump(doc, sort_keys=False)


def load_template(templates_dir: Path, name: str) -> str:
    if not name:
        return ""
    path = Path(templates_dir) / name
    if not path.exists():
        raise ValidationError(f"values template not found: {path}")
    return path.read_text(encoding="utf-8")
