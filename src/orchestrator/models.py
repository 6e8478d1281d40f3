"""Application records, their lifecycle states and the delete report."""

from __future__ import annotations

import time
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from jsonschema import Draft7Validator

from core.errors import BestEffortCleanupFailure, ValidationError
from deploy.pipeline import release_name_for

APP_SCOPE = "app"


class AppStatus(str, Enum):
    PENDING = "pending"
    DEPLOYING = "deploying"
    DEPLOYED = "deployed"
    UPDATING = "updating"
    FAILED = "failed"
    DELETING = "deleting"
    REMOVED = "removed"


ALLOWED_TRANSITIONS: Dict[AppStatus, set] = {
    AppStatus.PENDING: {AppStatus.DEPLOYING, AppStatus.DELETING},
    AppStatus.DEPLOYING: {AppStatus.DEPLOYED, AppStatus.FAILED, AppStatus.DELETING},
    AppStatus.DEPLOYED: {AppStatus.UPDATING, AppStatus.DELETING},
    AppStatus.UPDATING: {AppStatus.DEPLOYED, AppStatus.FAILED, AppStatus.DELETING},
    AppStatus.FAILED: {AppStatus.DEPLOYING, AppStatus.DELETING},
    AppStatus.DELETING: {AppStatus.REMOVED},
    AppStatus.REMOVED: set(),
}


def check_transition(current: AppStatus, target: AppStatus) -> None:
    if target not in ALLOWED_TRANSITIONS[current]:
        raise ValidationError(
            f"illegal status transition {current.value} -> {target.value}",
            current=current.value, target=target.value,
        )


APPLICATION_SCHEMA: Dict[str, Any] = {
    "$schema": "http://json-schema.org/draft-07/schema#",
    "type": "object",
    "required": ["id", "app_type", "status", "subdomain", "domain", "vps_id"],
    "properties": {
        "id": {"type": "string", "minLength": 1, "pattern": "^[^:]+$"},
        "app_type": {"type": "string", "minLength": 1},
        "status": {"type": "string", "enum": [s.value for s in AppStatus]},
        "subdomain": {"type": "string", "pattern": "^[a-z0-9]([a-z0-9-]*[a-z0-9])?$"},
        "domain": {"type": "string", "minLength": 3},
        "url": {"type": "string"},
        "vps_id": {"type": "string", "minLength": 1},
        "namespace": {"type": "string"},
        "app_version": {"type": "string"},
        "last_step": {"type": "string"},
        "created_at": {"type": "number"},
        "updated_at": {"type": "number"},
        "error_msg": {"type": ["string", "null"]},
    },
}

_validator = Draft7Validator(APPLICATION_SCHEMA)


def validate_record(payload: Dict[str, Any]) -> None:
    errors = sorted(_validator.iter_errors(payload), key=lambda e: e.path)
    if errors:
        messages = ", ".join(error.message for error in errors)
        raise ValidationError(f"application record validation failed: {messages}")


@dataclass
class Application:
    id: str
    app_type: str
    subdomain: str
    domain: str
    vps_id: str
    status: AppStatus = AppStatus.PENDING
    url: str = ""
    namespace: str = ""
    app_version: str = ""
    last_step: str = ""
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)
    error_msg: Optional[str] = None

    @property
    def release_name(self) -> str:
        return release_name_for(self.app_type, self.id)

    def derived_url(self) -> str:
        return f"https://{self.subdomain}.{self.domain}"

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Application":
        validate_record(data)
        known = {f for f in cls.__dataclass_fields__}
        values = {k: v for k, v in data.items() if k in known}
        values["status"] = AppStatus(values["status"])
        return cls(**values)


@dataclass
class DeleteReport:
    """What a delete actually removed, and what it left behind."""
    app_id: str
    removed: bool = False
    steps: List[str] = field(default_factory=list)
    orphans: List[BestEffortCleanupFailure] = field(default_factory=list)

    @property
    def clean(self) -> bool:
        return not self.orphans

    def to_dict(self) -> Dict[str, Any]:
        return {
            "app_id": self.app_id,
            "removed": self.removed,
            "steps": list(self.steps),
            "orphans": [o.to_dict() for o in self.orphans],
            "clean": self.clean,
        }
