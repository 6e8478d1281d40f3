"""VPS records as persisted in the remote store."""

from __future__ import annotations

import math
import time
from dataclasses import dataclass, field, asdict
from typing import Any, Dict

VPS_SCOPE = "vps"


def config_key(vps_id: str) -> str:
    return f"{vps_id}:config"


@dataclass
class VPSConfig:
    vps_id: str
    provider: str
    public_ip: str
    ssh_user: str
    ssh_key_ref: str
    instance_id: str = ""
    name: str = ""
    location: str = ""
    timezone: str = "UTC"
    hourly_rate: float = 0.0
    monthly_rate: float = 0.0
    created_at: float = field(default_factory=time.time)

    def accumulated_cost(self, now: float = None) -> float:
        """Hours since creation, rounded up, times the hourly rate."""
        now = time.time() if now is None else now
        hours = max(0, math.ceil((now - self.created_at) / 3600))
        return round(hours * self.hourly_rate, 4)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "VPSConfig":
        known = {f for f in cls.__dataclass_fields__}
        return cls(**{k: v for k, v in data.items() if k in known})
