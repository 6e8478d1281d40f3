#!/usr/bin/env python3
"""
Deployment Pipeline — Chart, Values, Release, Post-Steps

Forward steps for one application release (install or upgrade):
1. connect       pooled SSH session; install refuses a release that already exists
2. namespace     idempotent namespace apply       undo (install): delete release objects, never PVCs
3. chart         resolve chart source on the host undo: remove uploaded/cloned files
4. values        render + upload values.yaml      undo: remove app workdir
5. release       helm install | helm upgrade      undo (install): helm uninstall
6. certificate   {domain}-tls in the namespace    (idempotent, keyed by fingerprint)
7. dns           A record upsert                  undo: delete the record if we created it
8. credentials   harvest via the vault            (failures logged, never fatal)

A failed step unwinds everything pushed before it, newest first. Only a
release this run created is ever uninstalled or label-deleted.
``remove`` is the best-effort reverse used when an application is deleted.
"""

import hashlib
import json
import logging
import posixpath
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Optional, Dict, Any, List, Callable

from core.errors import (
    BestEffortCleanupFailure, ConnectivityError, NotFoundError,
    OrchestrationError, StoreError, ValidationError,
)
from store.client import RemoteStoreClient
from vault.probes import probes_for
from vault.vault import CredentialVault
from vps import commands
from vps.commands import Command
from vps.models import VPSConfig
from vps.rollback import RollbackStack
from vps.ssh_pool import ConnectionManager, PooledConnection
from .catalog import Catalog
from .certs import CertificateManager
from .charts import ChartSourceFactory
from .dns import CloudflareDNS, DNSChange
from .values import ValuesContext, load_template, minimal_values, render_values

logger = logging.getLogger(__name__)

APP_SCOPE = "app"

RESOURCE_EXHAUSTION_PATTERNS = [
    "insufficient cpu",
    "insufficient memory",
    "insufficient ephemeral-storage",
    "nodes are available",
    "no preemption victims found",
    "pod didn't trigger scale-up",
    "too many pods",
]

RELEASE_CONFLICT_PATTERNS = [
    "cannot re-use a name that is still in use",
    "already exists",
]

RELEASE_OBJECT_KINDS = "deployment,statefulset,daemonset,service,ingress,configmap,secret,pod,job"

MAX_RELEASE_NAME = 53

HELM_STATUS_MAP = {
    "deployed": "running",
    "failed": "failed",
    "pending-install": "deploying",
    "pending-upgrade": "deploying",
    "pending-rollback": "deploying",
    "uninstalling": "deleting",
    "not-found": "not-deployed",
}


class DeployMode(Enum):
    INSTALL = "install"
    UPGRADE = "upgrade"


def release_name_for(app_type: str, app_id: str) -> str:
    """
    Helm release name for one application: ``{app_type}-{app_id}``.

    Ids that are not already a valid DNS label, or that would push the
    name past Helm's 53 characters, get a short hash of the raw id so
    two applications never share a release.
    """
    slug = re.sub(r"[^a-z0-9-]+", "-", app_id.lower()).strip("-")
    name = f"{app_type}-{slug}"
    if slug != app_id or len(name) > MAX_RELEASE_NAME:
        digest = hashlib.sha1(app_id.encode("utf-8")).hexdigest()[:8]
        name = f"{name[:MAX_RELEASE_NAME - 9].rstrip('-')}-{digest}"
    return name


@dataclass
class DeploymentRequest:
    """Everything one pipeline run needs, fixed at the call site."""
    app_id: str
    app_type: str
    subdomain: str
    domain: str
    version: str
    vps: VPSConfig
    key_material: str = field(repr=False)
    namespace: str = ""
    release_name: str = ""

    @property
    def release(self) -> str:
        return self.release_name or release_name_for(self.app_type, self.app_id)

    @property
    def url(self) -> str:
        return f"https://{self.subdomain}.{self.domain}"


@dataclass
class DeployOutcome:
    app_id: str
    mode: str
    release_name: str
    namespace: str
    url: str
    chart_ref: str
    steps: List[str] = field(default_factory=list)
    dns: Optional[DNSChange] = None
    credentials_harvested: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "app_id": self.app_id,
            "mode": self.mode,
            "release_name": self.release_name,
            "namespace": self.namespace,
            "url": self.url,
            "chart_ref": self.chart_ref,
            "steps": list(self.steps),
            "dns": self.dns.to_dict() if self.dns else None,
            "credentials_harvested": self.credentials_harvested,
        }


def is_resource_exhaustion(output: str) -> bool:
    lowered = output.lower()
    return any(p in lowered for p in RESOURCE_EXHAUSTION_PATTERNS)


def is_release_conflict(output: str) -> bool:
    lowered = output.lower()
    return any(p in lowered for p in RELEASE_CONFLICT_PATTERNS)


class DeploymentPipeline:
    """Drives one release of one application onto a VPS."""

    DEFAULT_HELM_TIMEOUT = "10m"
    DEFAULT_COMMAND_TIMEOUT = 660

    def __init__(
        self,
        pool: ConnectionManager,
        store: RemoteStoreClient,
        vault: CredentialVault,
        dns: CloudflareDNS,
        certs: CertificateManager,
        catalog: Catalog,
        strategies: Dict[str, ChartSourceFactory],
        templates_dir: Path = Path("config/templates"),
        remote_workdir: str = "/opt/xanthus",
        helm_timeout: str = None,
        command_timeout: int = None,
    ):
        self.pool = pool
        self.store = store
        self.vault = vault
        self.dns = dns
        self.certs = certs
        self.catalog = catalog
        self.strategies = strategies
        self.templates_dir = Path(templates_dir)
        self.remote_workdir = remote_workdir
        self.helm_timeout = helm_timeout or self.DEFAULT_HELM_TIMEOUT
        self.command_timeout = command_timeout or self.DEFAULT_COMMAND_TIMEOUT

    # ── Helpers ──────────────────────────────────────────────────

    def _run(self, conn: PooledConnection, command: Command, what: str, timeout: int = None):
        result = self.pool.execute_command(conn, command, timeout=timeout)
        if not result.success:
            raise OrchestrationError(
                f"{what} failed (exit={result.exit_code}): {(result.stderr or result.output)[:500]}",
                output=result.output, stderr=result.stderr,
            )
        return result

    def _connect(self, req: DeploymentRequest) -> PooledConnection:
        vps = req.vps
        return self.pool.get_or_create_connection(vps.public_ip, vps.ssh_user, req.key_material, vps.vps_id)

    def app_dir(self, app_id: str) -> str:
        return posixpath.join(self.remote_workdir, "apps", app_id)

    def namespace_for(self, req: DeploymentRequest) -> str:
        return req.namespace or self.catalog.get(req.app_type).helm_chart.namespace

    def render(self, req: DeploymentRequest) -> str:
        defn = self.catalog.get(req.app_type)
        ctx = ValuesContext(
            version=req.version,
            subdomain=req.subdomain,
            domain=req.domain,
            release_name=req.release,
            timezone=req.vps.timezone,
        )
        template = load_template(self.templates_dir, defn.helm_chart.values_template)
        if not template:
            return minimal_values(ctx)
        return render_values(template, ctx, defn.helm_chart.placeholders)

    def _cleanup_release_objects(self, conn: PooledConnection, release: str, namespace: str):
        selector = f"app.kubernetes.io/instance={release}"
        self._run(conn, commands.kubectl_delete_by_label(RELEASE_OBJECT_KINDS, selector, namespace),
                  "delete release objects")

    def _helm(self, conn, req, mode, chart_ref, namespace, values_path):
        builder = commands.helm_install if mode is DeployMode.INSTALL else commands.helm_upgrade
        command = builder(
            req.release, chart_ref.ref, namespace,
            values_path=values_path, timeout=self.helm_timeout, version=chart_ref.version,
        )
        result = self.pool.execute_command(conn, command, timeout=self.command_timeout)
        if result.success:
            return

        output = f"{result.output}\n{result.stderr}"
        if mode is DeployMode.INSTALL and is_release_conflict(output):
            # someone else's release; nothing of ours to clear
            raise OrchestrationError(
                f"helm release {req.release} already exists in {namespace}",
                output=output, release=req.release, release_conflict=True,
            )
        # the failed release itself is this step's artifact; clear it before unwinding
        if mode is DeployMode.INSTALL:
            self.pool.execute_command(conn, commands.helm_uninstall(req.release, namespace))
        else:
            self.pool.execute_command(conn, commands.helm_rollback(req.release, namespace))

        if is_resource_exhaustion(output):
            raise OrchestrationError(
                "deployment failed due to insufficient resources on the VPS; "
                "upgrade the VPS or remove unused applications",
                output=output,
            )
        raise OrchestrationError(
            f"helm {mode.value} failed (exit={result.exit_code}): {output.strip()[:500]}",
            output=output,
        )

    def _ensure_release_absent(self, conn, req, namespace):
        """An install must never adopt, and so never unwind, a release it did not create."""
        result = self.pool.execute_command(conn, commands.helm_status(req.release, namespace))
        if result.success:
            raise ValidationError(
                f"helm release {req.release} already exists in {namespace}; "
                "delete the application before creating it again",
                release=req.release, namespace=namespace,
            )
        if "not found" not in f"{result.output}\n{result.stderr}".lower():
            raise OrchestrationError(
                f"could not check helm release {req.release}: {(result.stderr or result.output)[:300]}",
                release=req.release,
            )

    def _harvest(self, conn, req, namespace) -> bool:
        defn = self.catalog.get(req.app_type)
        if not defn.credentials:
            return False
        try:
            self.vault.get_decrypted_password(
                APP_SCOPE, req.app_id,
                probes_for(req.app_type, self.pool, conn, req.release, namespace),
            )
        except (NotFoundError, ConnectivityError, StoreError) as e:
            logger.warning(f"[DEPLOY] {req.app_id} credential harvest failed: {e}")
            return False
        return True

    # ── Deploy ───────────────────────────────────────────────────

    def deploy(
        self,
        req: DeploymentRequest,
        mode: DeployMode = DeployMode.INSTALL,
        on_step: Callable[[str], None] = None,
        deadline: Optional[float] = None,
    ) -> DeployOutcome:
        """
        Run every forward step in order. ``on_step`` is called after each
        step completes so the caller can persist progress.
        """
        defn = self.catalog.get(req.app_type)
        try:
            source_factory = self.strategies[req.app_type]
        except KeyError:
            raise NotFoundError(f"no deploy strategy for {req.app_type}", app_type=req.app_type) from None

        namespace = self.namespace_for(req)
        outcome = DeployOutcome(
            app_id=req.app_id, mode=mode.value, release_name=req.release,
            namespace=namespace, url=req.url, chart_ref="",
        )
        stack = RollbackStack(label=f"app={req.app_id}")
        installing = mode is DeployMode.INSTALL
        owns_release = installing

        def done(name: str):
            outcome.steps.append(name)
            logger.info(f"[DEPLOY] {req.app_id} {mode.value}: {name} ok")
            if on_step:
                on_step(name)

        def delete_release_objects():
            if not owns_release:
                logger.info(f"[DEPLOY] {req.app_id}: {req.release} not ours, leaving its objects")
                return
            self._cleanup_release_objects(conn, req.release, namespace)

        step = "connect"
        try:
            conn = self._connect(req)
            if installing:
                self._ensure_release_absent(conn, req, namespace)
            done(step)

            step = "namespace"
            stack.check_deadline(deadline, step)
            self._run(conn, commands.kubectl_apply_namespace(namespace), "namespace apply")
            if installing:
                stack.push("delete_release_objects", delete_release_objects)
            done(step)

            step = "chart"
            stack.check_deadline(deadline, step)
            chart_ref = source_factory(defn).prepare(self.pool, conn, self.remote_workdir)
            if chart_ref.cleanup_path and installing:
                path = chart_ref.cleanup_path
                stack.push("remove_chart_files", lambda: self._run(conn, commands.rm_rf(path), "remove chart"))
            outcome.chart_ref = chart_ref.ref
            done(step)

            step = "values"
            stack.check_deadline(deadline, step)
            rendered = self.render(req)
            app_dir = self.app_dir(req.app_id)
            values_path = posixpath.join(app_dir, "values.yaml")
            self._run(conn, commands.mkdir_p(app_dir), "mkdir app dir")
            if installing:
                stack.push("remove_app_dir", lambda: self._run(conn, commands.rm_rf(app_dir), "remove app dir"))
            self._run(conn, commands.write_file(values_path, rendered), "upload values")
            done(step)

            step = "release"
            stack.check_deadline(deadline, step)
            try:
                self._helm(conn, req, mode, chart_ref, namespace, values_path)
            except OrchestrationError as e:
                if e.context.get("release_conflict"):
                    owns_release = False
                raise
            if installing:
                stack.push("helm_uninstall",
                           lambda: self._run(conn, commands.helm_uninstall(req.release, namespace), "helm uninstall"))
            done(step)

            step = "certificate"
            self.certs.ensure(conn, req.vps.public_ip, req.domain, namespace)
            done(step)

            step = "dns"
            outcome.dns = self.dns.upsert_a_record(req.subdomain, req.domain, req.vps.public_ip)
            if outcome.dns.created:
                stack.push("delete_dns", lambda: self.dns.delete_a_record(req.subdomain, req.domain))
            done(step)
        except Exception as e:  # noqa: BLE001
            logger.warning(f"[DEPLOY] {req.app_id} {mode.value} failed at {step}: {e}")
            err = stack.abort(step, e)
            if err is e:
                raise
            raise err from e

        stack.discard()
        outcome.credentials_harvested = self._harvest(conn, req, namespace)
        done("credentials")
        return outcome

    # ── Remove ───────────────────────────────────────────────────

    def remove(self, req: DeploymentRequest, remove_namespace: bool = False) -> List[BestEffortCleanupFailure]:
        """
        Tear an application down in reverse order: DNS, ingress/service,
        release, namespace (optional), workdir. Every step is attempted;
        failures are returned, not raised.
        """
        namespace = self.namespace_for(req)
        failures: List[BestEffortCleanupFailure] = []

        def attempt(step: str, resource: str, fn: Callable[[], Any]):
            try:
                fn()
                logger.info(f"[DEPLOY] {req.app_id} remove: {step} ok")
            except Exception as e:  # noqa: BLE001
                logger.warning(f"[DEPLOY] {req.app_id} remove: {step} FAIL {e}")
                failures.append(BestEffortCleanupFailure(str(e), step=step, resource=resource))

        attempt("dns", f"{req.subdomain}.{req.domain}",
                lambda: self.dns.delete_a_record(req.subdomain, req.domain))

        try:
            conn = self._connect(req)
        except OrchestrationError as e:
            logger.warning(f"[DEPLOY] {req.app_id} remove: cannot reach VPS: {e}")
            failures.append(BestEffortCleanupFailure(str(e), step="connect", resource=req.vps.vps_id))
            return failures

        selector = f"app.kubernetes.io/instance={req.release}"
        attempt("ingress_service", f"{namespace}/{req.release}", lambda: self._run(
            conn, commands.kubectl_delete_by_label("ingress,service", selector, namespace),
            "delete ingress/service"))

        def uninstall():
            result = self.pool.execute_command(conn, commands.helm_uninstall(req.release, namespace))
            if not result.success and "not found" not in (result.stderr + result.output).lower():
                raise OrchestrationError(f"helm uninstall failed: {result.stderr or result.output}")

        attempt("helm_uninstall", f"{namespace}/{req.release}", uninstall)

        if remove_namespace:
            def drop_namespace():
                self._run(conn, commands.kubectl_delete_namespace(namespace), "delete namespace")
                # the namespace took its {domain}-tls secrets with it
                self.certs.forget_namespace(req.vps.public_ip, namespace)

            attempt("namespace", namespace, drop_namespace)

        attempt("workdir", self.app_dir(req.app_id), lambda: self._run(
            conn, commands.rm_rf(self.app_dir(req.app_id)), "remove app dir"))
        return failures

    def live_status(self, req: DeploymentRequest) -> str:
        """Helm's view of the release, mapped onto application wording."""
        conn = self._connect(req)
        result = self.pool.execute_command(conn, commands.helm_status(req.release, self.namespace_for(req)))
        if not result.success:
            return "not-deployed"
        try:
            status = json.loads(result.output).get("info", {}).get("status", "")
        except ValueError:
            return "unknown"
        return HELM_STATUS_MAP.get(status.lower(), status.lower() or "unknown")
