#!/usr/bin/env python3
"""
Provisioning Pipeline — Instance, Access Key, Reachability, Runtime

Steps (each pushes its compensation before the next one starts):
1. allocate   provider.create_instance          undo: delete_instance
2. access     provider.install_key              (nothing to undo)
3. reachable  poll SSH until it answers          undo: evict pooled session
4. runtime    poll until the k3s node is Ready   (cloud instances only)
              and helm answers
5. persist    write VPSConfig to the store       undo: delete the record

Cloud instances boot from the cloud-init template (k3s plus helm) unless
the request carries its own user data. Manually registered hosts are
expected to have both already.

A failure at step k unwinds the compensations of steps 1..k-1 newest
first and raises PartialFailure; a failure at step 1 re-raises as-is.
"""

import io
import logging
import time
from dataclasses import dataclass, field
from typing import Optional, Dict, Any, List, Callable

import paramiko
import yaml

from core.errors import (
    ConnectivityError, NotFoundError, OrchestrationError, StoreError, ValidationError,
    BestEffortCleanupFailure,
)
from store.client import RemoteStoreClient
from . import commands
from .models import VPSConfig, VPS_SCOPE, config_key
from .providers import ComputeProvider, InstanceRequest, Instance, normalize_tag
from .rollback import RollbackStack
from .ssh_pool import ConnectionManager, PooledConnection

logger = logging.getLogger(__name__)

DEFAULT_KEY_REF = "config:ssl:csr"
CLOUD_CONFIG_HEADER = "#cloud-config"


def render_cloud_init(template: str, timezone: str) -> str:
    """Fill ``{{TIMEZONE}}`` into a cloud-config document and check it parses."""
    rendered = template.replace("{{TIMEZONE}}", timezone or "UTC")
    if not rendered.lstrip().startswith(CLOUD_CONFIG_HEADER):
        raise ValidationError(f"cloud-init template must start with {CLOUD_CONFIG_HEADER}")
    try:
        yaml.safe_load(rendered)
    except yaml.YAMLError as e:
        raise ValidationError(f"cloud-init template is not valid YAML: {e}") from e
    return rendered


def node_ready(output: str) -> bool:
    """True when any row of ``kubectl get nodes --no-headers`` is Ready."""
    for line in output.splitlines():
        cols = line.split()
        if len(cols) > 1 and cols[1] == "Ready":
            return True
    return False


@dataclass
class AccessKey:
    """An SSH key pair the engine uses to reach its hosts."""
    private_key: str = field(repr=False)
    public_key: str
    ref: str = DEFAULT_KEY_REF

    @classmethod
    def generate(cls, ref: str = DEFAULT_KEY_REF, bits: int = 3072) -> "AccessKey":
        key = paramiko.RSAKey.generate(bits)
        buf = io.StringIO()
        key.write_private_key(buf)
        return cls(
            private_key=buf.getvalue(),
            public_key=f"{key.get_name()} {key.get_base64()}",
            ref=ref,
        )


@dataclass
class ProvisionRequest:
    vps_id: str
    provider: str
    key: AccessKey
    name: str = ""
    server_type: str = ""
    location: str = ""
    image: str = "ubuntu-24.04"
    public_ip: str = ""
    ssh_user: str = ""
    user_data: str = ""

    def instance_request(self) -> InstanceRequest:
        return InstanceRequest(
            name=self.name or self.vps_id,
            server_type=self.server_type,
            location=self.location,
            image=self.image,
            public_key=self.key.public_key,
            user_data=self.user_data,
            public_ip=self.public_ip,
            ssh_user=self.ssh_user,
        )


class ProvisioningPipeline:
    """Brings a VPS from nothing to a reachable, recorded host."""

    DEFAULT_REACHABILITY_TIMEOUT = 300
    DEFAULT_RUNTIME_TIMEOUT = 600
    DEFAULT_POLL_INTERVAL = 10

    def __init__(
        self,
        pool: ConnectionManager,
        store: RemoteStoreClient,
        providers: Dict[str, ComputeProvider],
        reachability_timeout: float = None,
        poll_interval: float = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
        cloud_init: Optional[str] = None,
        runtime_timeout: float = None,
    ):
        self.pool = pool
        self.store = store
        self.providers = providers
        self.reachability_timeout = reachability_timeout or self.DEFAULT_REACHABILITY_TIMEOUT
        self.runtime_timeout = runtime_timeout or self.DEFAULT_RUNTIME_TIMEOUT
        self.poll_interval = poll_interval or self.DEFAULT_POLL_INTERVAL
        self.cloud_init = cloud_init
        self._sleep = sleep
        self._clock = clock

    def provider_for(self, tag: str) -> ComputeProvider:
        normalized = normalize_tag(tag)
        try:
            return self.providers[normalized]
        except KeyError:
            raise NotFoundError(f"provider {normalized} is not configured", provider=normalized) from None

    # ── Steps ────────────────────────────────────────────────────

    def wait_reachable(self, host: str, user: str, key: AccessKey, vps_id: str):
        """Poll SSH until a session opens or the reachability timeout passes."""
        deadline = self._clock() + self.reachability_timeout
        attempt = 0
        while True:
            attempt += 1
            try:
                return self.pool.get_or_create_connection(host, user, key.private_key, vps_id)
            except ConnectivityError as e:
                if self._clock() >= deadline:
                    raise ConnectivityError(
                        f"{host} not reachable over SSH after {attempt} attempts: {e}",
                        vps_id=vps_id, host=host,
                    ) from e
                logger.info(f"Waiting for SSH on {host} (attempt {attempt}): {e}")
                self._sleep(self.poll_interval)

    def wait_runtime(self, conn: PooledConnection, vps_id: str):
        """Poll until the k3s node reports Ready and helm is installed."""
        deadline = self._clock() + self.runtime_timeout
        attempt = 0
        while True:
            attempt += 1
            waiting_on = "k3s node"
            try:
                nodes = self.pool.execute_command(conn, commands.kubectl_get_nodes())
                if nodes.success and node_ready(nodes.output):
                    waiting_on = "helm"
                    if self.pool.execute_command(conn, commands.helm_version()).success:
                        logger.info(f"[PROVISION] {vps_id} runtime ready after {attempt} attempts")
                        return
            except ConnectivityError as e:
                logger.info(f"Runtime check on {vps_id} lost its session: {e}")
            if self._clock() >= deadline:
                raise OrchestrationError(
                    f"{vps_id} runtime not ready after {attempt} attempts (waiting on {waiting_on})",
                    vps_id=vps_id, waiting_on=waiting_on,
                )
            logger.info(f"Waiting for {waiting_on} on {vps_id} (attempt {attempt})")
            self._sleep(self.poll_interval)

    def provision(self, request: ProvisionRequest, deadline: Optional[float] = None) -> VPSConfig:
        """Run all steps; returns the persisted VPSConfig."""
        provider = self.provider_for(request.provider)
        stack = RollbackStack(label=f"vps={request.vps_id}")
        inst_req = request.instance_request()
        if provider.supports_lifecycle and self.cloud_init and not inst_req.user_data:
            inst_req.user_data = render_cloud_init(
                self.cloud_init, provider.defaults.timezone_for(request.location),
            )
        step = "allocate"

        try:
            instance: Instance = provider.create_instance(inst_req)
            if provider.supports_lifecycle:
                stack.push("delete_instance", lambda: provider.delete_instance(instance.instance_id))
            logger.info(f"[PROVISION] {request.vps_id} allocated {instance.instance_id} ({instance.public_ip})")

            step = "access"
            stack.check_deadline(deadline, step)
            provider.install_key(instance, inst_req)

            step = "reachable"
            stack.check_deadline(deadline, step)
            ssh_user = request.ssh_user or provider.defaults.ssh_user
            conn = self.wait_reachable(instance.public_ip, ssh_user, request.key, request.vps_id)
            stack.push("evict_connection", lambda: self.pool.evict_connection(request.vps_id))

            if provider.supports_lifecycle:
                step = "runtime"
                stack.check_deadline(deadline, step)
                self.wait_runtime(conn, request.vps_id)

            step = "persist"
            stack.check_deadline(deadline, step)
            vps = VPSConfig(
                vps_id=request.vps_id,
                provider=provider.tag,
                public_ip=instance.public_ip,
                ssh_user=ssh_user,
                ssh_key_ref=request.key.ref,
                instance_id=instance.instance_id,
                name=instance.name,
                location=instance.location or request.location,
                timezone=provider.defaults.timezone_for(instance.location or request.location),
                hourly_rate=instance.hourly_rate,
                monthly_rate=instance.monthly_rate,
            )
            self.store.put(VPS_SCOPE, config_key(vps.vps_id), vps.to_dict())
        except Exception as e:  # noqa: BLE001
            logger.warning(f"[PROVISION] {request.vps_id} failed at {step}: {e}")
            err = stack.abort(step, e)
            if err is e:
                raise
            raise err from e

        stack.discard()
        logger.info(f"[PROVISION] {request.vps_id} ready ({vps.public_ip})")
        return vps

    # ── Teardown ─────────────────────────────────────────────────

    def teardown(self, vps: VPSConfig) -> List[BestEffortCleanupFailure]:
        """
        Delete the instance, drop its pooled session and its record.

        The record is only deleted once the instance is gone so a failed
        delete can be retried later.
        """
        failures: List[BestEffortCleanupFailure] = []
        provider = self.provider_for(vps.provider)
        instance_gone = True
        if provider.supports_lifecycle and vps.instance_id:
            try:
                provider.delete_instance(vps.instance_id)
            except NotFoundError:
                pass
            except OrchestrationError as e:
                instance_gone = False
                failures.append(BestEffortCleanupFailure(
                    str(e), step="delete_instance", resource=vps.instance_id,
                ))

        self.pool.evict_connection(vps.vps_id)

        if instance_gone:
            try:
                self.store.delete(VPS_SCOPE, config_key(vps.vps_id))
            except NotFoundError:
                pass
            except (ConnectivityError, StoreError) as e:
                failures.append(BestEffortCleanupFailure(
                    str(e), step="delete_record", resource=vps.vps_id,
                ))

        for f in failures:
            logger.warning(f"[PROVISION] teardown {vps.vps_id}: {f.step} FAIL {f.message}")
        return failures

    def load(self, vps_id: str) -> VPSConfig:
        return VPSConfig.from_dict(self.store.get(VPS_SCOPE, config_key(vps_id)))

    def power(self, vps: VPSConfig, op: str) -> Dict[str, Any]:
        provider = self.provider_for(vps.provider)
        provider.power_op(vps.instance_id, op)
        if op in ("poweroff", "reboot"):
            self.pool.evict_connection(vps.vps_id)
        return {"vps_id": vps.vps_id, "op": op, "success": True}
