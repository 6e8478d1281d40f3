#!/usr/bin/env python3
"""
Compute Providers — Instance Lifecycle Behind One Interface

Every provider exposes the same three capabilities:
- create_instance(request) -> Instance
- delete_instance(instance_id) -> None
- power_op(instance_id, op) -> None      op in {poweron, poweroff, reboot}

Variants:
- HetznerProvider            Hetzner Cloud REST API (api.hetzner.cloud)
- OCIProvider                Oracle Cloud, through an injected compute client
- ManuallyRegisteredProvider hosts the user already owns; no lifecycle

Selection is a static tag -> class map (PROVIDERS); there is no discovery.
"""

import base64
import logging
import os
from dataclasses import dataclass, field, asdict
from typing import Optional, Dict, Any, List, Tuple

import requests

from core.errors import ConnectivityError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)

HETZNER_BASE_URL = "https://api.hetzner.cloud/v1"

POWER_OPS = ("poweron", "poweroff", "reboot")


@dataclass
class InstanceRequest:
    """Everything a provider needs to allocate one instance."""
    name: str
    server_type: str = ""
    location: str = ""
    image: str = "ubuntu-24.04"
    public_key: str = ""
    user_data: str = ""
    public_ip: str = ""
    ssh_user: str = ""


@dataclass
class Instance:
    """A provider-native instance, normalized."""
    instance_id: str
    name: str
    public_ip: str
    status: str = "unknown"
    hourly_rate: float = 0.0
    monthly_rate: float = 0.0
    location: str = ""
    raw: Optional[Dict[str, Any]] = field(default=None, repr=False)

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d.pop("raw", None)
        return d


@dataclass(frozen=True)
class ProviderDefaults:
    ssh_user: str
    timezones: Dict[str, str]

    def timezone_for(self, location: str) -> str:
        return self.timezones.get(location, self.timezones.get("default", "UTC"))


class ComputeProvider:
    """Interface every provider variant implements."""

    tag = ""
    defaults = ProviderDefaults(ssh_user="root", timezones={"default": "UTC"})
    supports_lifecycle = True

    def create_instance(self, request: InstanceRequest) -> Instance:
        raise NotImplementedError

    def delete_instance(self, instance_id: str) -> None:
        raise NotImplementedError

    def power_op(self, instance_id: str, op: str) -> None:
        raise NotImplementedError

    def install_key(self, instance: Instance, request: InstanceRequest) -> None:
        """
        Make the generated access key usable on ``instance``.

        Cloud variants inject the key at creation (account key or launch
        metadata), so the default only checks one was supplied.
        """
        if not request.public_key:
            raise ValidationError("no access key supplied", name=request.name)

    @staticmethod
    def _check_op(op: str):
        if op not in POWER_OPS:
            raise ValidationError(f"unknown power operation: {op}", op=op)


# ── Hetzner ──────────────────────────────────────────────────────

class HetznerProvider(ComputeProvider):
    """
    Hetzner Cloud provider.

    Auth: Bearer token from HETZNER_API_TOKEN env var or constructor arg.
    The access key is registered with the account (POST /ssh_keys) as part
    of create_instance and removed again by delete_instance.
    """

    tag = "hetzner"
    defaults = ProviderDefaults(
        ssh_user="root",
        timezones={
            "nbg1": "Europe/Berlin",
            "fsn1": "Europe/Berlin",
            "hel1": "Europe/Helsinki",
            "ash": "America/New_York",
            "hil": "America/Los_Angeles",
            "default": "UTC",
        },
    )
    DEFAULT_TIMEOUT = 30

    def __init__(self, api_token: str = None, timeout: int = None):
        self.api_token = api_token or os.environ.get("HETZNER_API_TOKEN", "")
        self.timeout = timeout or self.DEFAULT_TIMEOUT
        self._request_count = 0
        self._error_count = 0
        self._ssh_key_ids: Dict[str, int] = {}

        if not self.api_token:
            logger.warning("No Hetzner API token configured. Set HETZNER_API_TOKEN env var.")

    def _headers(self) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "Accept": "application/json",
            "Authorization": f"Bearer {self.api_token}",
        }

    def _request(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        """Authenticated request. Raises on transport failure or error status."""
        url = f"{HETZNER_BASE_URL}{path}"
        self._request_count += 1
        try:
            resp = requests.request(
                method, url, headers=self._headers(), timeout=self.timeout, **kwargs,
            )
        except (requests.exceptions.Timeout, requests.exceptions.ConnectionError) as e:
            self._error_count += 1
            logger.error(f"Hetzner API unreachable: {method} {path}: {e}")
            raise ConnectivityError(f"Hetzner API unreachable: {e}", path=path) from e

        if resp.status_code == 404:
            self._error_count += 1
            raise NotFoundError(f"Hetzner resource not found: {path}", path=path)
        if resp.status_code >= 400:
            self._error_count += 1
            logger.warning(
                f"Hetzner API error: {method} {path} -> "
                f"{resp.status_code} {resp.text[:300]}"
            )
            if resp.status_code >= 500:
                raise ConnectivityError(
                    f"Hetzner API error {resp.status_code}", path=path,
                )
            raise ValidationError(
                f"Hetzner rejected {method} {path}: {resp.status_code} {resp.text[:200]}",
                path=path,
            )
        if resp.status_code == 204 or not resp.content:
            return {}
        return resp.json()

    def _register_key(self, request: InstanceRequest) -> Tuple[Optional[int], bool]:
        """
        Register the public key with the account, reusing an existing match.
        Returns the key id and whether this call created it.
        """
        existing = self._request("GET", "/ssh_keys").get("ssh_keys", [])
        wanted = request.public_key.strip()
        for key in existing:
            if key.get("public_key", "").strip() == wanted:
                return key.get("id"), False
        data = self._request("POST", "/ssh_keys", json={
            "name": f"{request.name}-key",
            "public_key": wanted,
        })
        return data.get("ssh_key", {}).get("id"), True

    def _remove_key(self, key_id: int) -> None:
        try:
            self._request("DELETE", f"/ssh_keys/{key_id}")
        except (NotFoundError, ValidationError, ConnectivityError) as e:
            logger.warning(f"Could not remove Hetzner ssh key {key_id}: {e}")

    def create_instance(self, request: InstanceRequest) -> Instance:
        if not request.public_key:
            raise ValidationError("no public key for new server", name=request.name)
        key_id, key_created = self._register_key(request)

        body: Dict[str, Any] = {
            "name": request.name,
            "server_type": request.server_type,
            "location": request.location,
            "image": request.image,
            "start_after_create": True,
        }
        if key_id is not None:
            body["ssh_keys"] = [key_id]
        if request.user_data:
            body["user_data"] = request.user_data

        try:
            data = self._request("POST", "/servers", json=body)
        except (ConnectivityError, NotFoundError, ValidationError):
            if key_created and key_id is not None:
                self._remove_key(key_id)
            raise
        instance = self._parse_server(data.get("server", {}))
        if key_created and key_id is not None:
            self._ssh_key_ids[instance.instance_id] = key_id
        logger.info(f"Hetzner server created: {instance.name} (id={instance.instance_id})")
        return instance

    def delete_instance(self, instance_id: str) -> None:
        self._request("DELETE", f"/servers/{instance_id}")
        logger.info(f"Hetzner server deleted (id={instance_id})")
        key_id = self._ssh_key_ids.pop(instance_id, None)
        if key_id is not None:
            self._remove_key(key_id)

    def power_op(self, instance_id: str, op: str) -> None:
        self._check_op(op)
        self._request("POST", f"/servers/{instance_id}/actions/{op}")

    @staticmethod
    def _parse_server(s: Dict[str, Any]) -> Instance:
        ipv4 = (s.get("public_net") or {}).get("ipv4") or {}
        hourly, monthly = 0.0, 0.0
        prices = (s.get("server_type") or {}).get("prices") or []
        if prices:
            hourly = float(prices[0].get("price_hourly", {}).get("gross", 0) or 0)
            monthly = float(prices[0].get("price_monthly", {}).get("gross", 0) or 0)
        return Instance(
            instance_id=str(s.get("id", "")),
            name=s.get("name", ""),
            public_ip=ipv4.get("ip", ""),
            status=s.get("status", "unknown"),
            hourly_rate=hourly,
            monthly_rate=monthly,
            location=((s.get("datacenter") or {}).get("location") or {}).get("name", ""),
            raw=s,
        )

    def get_stats(self) -> Dict[str, Any]:
        return {
            "requests": self._request_count,
            "errors": self._error_count,
        }


# ── Oracle Cloud ─────────────────────────────────────────────────

class OCIProvider(ComputeProvider):
    """
    Oracle Cloud provider.

    Wraps a compute client exposing ``launch_instance(details)``,
    ``terminate_instance(instance_id)`` and ``instance_action(instance_id, action)``.
    The public key goes into instance metadata at launch.
    """

    tag = "oci"
    defaults = ProviderDefaults(
        ssh_user="ubuntu",
        timezones={
            "us-phoenix-1": "America/Phoenix",
            "us-ashburn-1": "America/New_York",
            "eu-frankfurt-1": "Europe/Berlin",
            "eu-zurich-1": "Europe/Zurich",
            "uk-london-1": "Europe/London",
            "ap-tokyo-1": "Asia/Tokyo",
            "default": "UTC",
        },
    )
    ACTIONS = {"poweron": "START", "poweroff": "STOP", "reboot": "SOFTRESET"}

    def __init__(self, compute_client, compartment_id: str = "", subnet_id: str = ""):
        self.compute = compute_client
        self.compartment_id = compartment_id
        self.subnet_id = subnet_id

    def create_instance(self, request: InstanceRequest) -> Instance:
        if not request.public_key:
            raise ValidationError("OCI instances need a public key at launch", name=request.name)
        metadata = {"ssh_authorized_keys": request.public_key}
        if request.user_data:
            # OCI takes cloud-init user data base64-encoded
            metadata["user_data"] = base64.b64encode(request.user_data.encode()).decode()
        details = {
            "display_name": request.name,
            "shape": request.server_type,
            "availability_domain": request.location,
            "compartment_id": self.compartment_id,
            "subnet_id": self.subnet_id,
            "image_id": request.image,
            "metadata": metadata,
        }
        try:
            launched = self.compute.launch_instance(details)
        except (ConnectionError, TimeoutError) as e:
            raise ConnectivityError(f"OCI API unreachable: {e}") from e
        return Instance(
            instance_id=str(launched.get("id", "")),
            name=request.name,
            public_ip=launched.get("public_ip", ""),
            status=launched.get("lifecycle_state", "PROVISIONING"),
            location=request.location,
            raw=launched,
        )

    def delete_instance(self, instance_id: str) -> None:
        self.compute.terminate_instance(instance_id)

    def power_op(self, instance_id: str, op: str) -> None:
        self._check_op(op)
        self.compute.instance_action(instance_id, self.ACTIONS[op])


# ── Manually registered hosts ────────────────────────────────────

class ManuallyRegisteredProvider(ComputeProvider):
    """
    A host the user registered by address. Nothing is allocated or
    deleted; the existing key is validated instead of installed.
    """

    tag = "manual"
    supports_lifecycle = False

    def create_instance(self, request: InstanceRequest) -> Instance:
        if not request.public_ip:
            raise ValidationError("manual registration needs a public IP", name=request.name)
        return Instance(
            instance_id=f"manual-{request.public_ip}",
            name=request.name,
            public_ip=request.public_ip,
            status="running",
        )

    def install_key(self, instance: Instance, request: InstanceRequest) -> None:
        """Nothing is installed; the key the user registered must already work."""
        if not request.ssh_user:
            raise ValidationError("manual registration needs an SSH user", name=request.name)

    def delete_instance(self, instance_id: str) -> None:
        logger.info(f"Manual host {instance_id} left running (not owned by us)")

    def power_op(self, instance_id: str, op: str) -> None:
        self._check_op(op)
        raise ValidationError(f"power operations are not supported on manual hosts ({op})")


PROVIDERS = {
    "hetzner": HetznerProvider,
    "oci": OCIProvider,
    "manual": ManuallyRegisteredProvider,
}

PROVIDER_ALIASES = {
    "hetzner": "hetzner",
    "oci": "oci",
    "oracle cloud infrastructure (oci)": "oci",
    "manual": "manual",
}


def normalize_tag(tag: str) -> str:
    normalized = PROVIDER_ALIASES.get((tag or "").strip().lower())
    if normalized is None:
        raise ValidationError(f"unknown provider: {tag}", provider=tag)
    return normalized


def resolve_provider(tag: str, **kwargs) -> ComputeProvider:
    """Instantiate the provider registered for ``tag``."""
    return PROVIDERS[normalize_tag(tag)](**kwargs)


def list_provider_tags() -> List[str]:
    return sorted(PROVIDERS)
