#!/usr/bin/env python3
"""
Orchestrator — Application Lifecycle Across VPS, Release and DNS

Drives one application record through its states:

    pending -> deploying -> deployed | failed
    deployed -> updating -> deployed | failed
    failed -> deploying                      (retry create)
    any non-removed -> deleting -> removed

Every transition is validated against ALLOWED_TRANSITIONS and persisted
before the next step starts. Operations on one application id are
single-flight: a second caller waits (default) or gets BusyError.

Usage:
    orch = Orchestrator(store, pool, provisioning, deployment, vault, versions, catalog)
    app = orch.create("app-1001", "code-server", "dev1", "example.com", vps_id="vps-1")
    orch.upgrade("app-1001", "4.20.0")
    report = orch.delete("app-1001")
"""

import logging
import threading
import time
from collections import deque
from contextlib import contextmanager
from dataclasses import dataclass, field, asdict
from typing import Optional, Deque, Dict, Any, List, Callable, Iterator

from core.errors import (
    BestEffortCleanupFailure, BusyError, ConnectivityError, NotFoundError,
    OrchestrationError, StoreError, ValidationError,
)
from deploy.catalog import Catalog
from deploy.pipeline import DeploymentPipeline, DeploymentRequest, DeployMode
from store.client import RemoteStoreClient
from store.versions import VersionService
from vault.probes import probes_for
from vault.vault import CredentialVault, SecretProbe
from vps.models import VPSConfig
from vps.provisioning import AccessKey, ProvisioningPipeline, ProvisionRequest
from vps.ssh_pool import ConnectionManager
from .models import (
    APP_SCOPE, AppStatus, Application, DeleteReport, check_transition, validate_record,
)

logger = logging.getLogger(__name__)

CONFIG_SCOPE = "config"
ACCESS_KEY_ID = "ssl:csr"


@dataclass
class AuditEntry:
    """Record of an action taken by the orchestrator."""
    timestamp: float = field(default_factory=time.time)
    action: str = ""
    target: str = ""
    success: bool = True
    detail: str = ""
    triggered_by: str = "api"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class Orchestrator:
    """
    Owns every status change of every application record.

    Provisioning and deployment are delegated to their pipelines; this
    class decides the order, persists progress and records failures.
    """

    AUDIT_LOG_SIZE = 1000

    def __init__(
        self,
        store: RemoteStoreClient,
        pool: ConnectionManager,
        provisioning: ProvisioningPipeline,
        deployment: DeploymentPipeline,
        vault: CredentialVault,
        versions: VersionService,
        catalog: Catalog,
        blocking: bool = True,
        clock: Callable[[], float] = time.time,
        audit_log_size: int = None,
    ):
        self.store = store
        self.pool = pool
        self.provisioning = provisioning
        self.deployment = deployment
        self.vault = vault
        self.versions = versions
        self.catalog = catalog
        self.blocking = blocking
        self._clock = clock
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()
        self._audit_log: Deque[AuditEntry] = deque(maxlen=audit_log_size or self.AUDIT_LOG_SIZE)
        self._audit_lock = threading.Lock()

    # ── Single-flight ────────────────────────────────────────────

    def _lock_for(self, app_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(app_id)
            if lock is None:
                lock = self._locks[app_id] = threading.Lock()
            return lock

    @contextmanager
    def _single_flight(self, app_id: str, blocking: Optional[bool] = None) -> Iterator[None]:
        blocking = self.blocking if blocking is None else blocking
        lock = self._lock_for(app_id)
        if not lock.acquire(blocking=blocking):
            raise BusyError(f"operation already in progress for {app_id}", app_id=app_id)
        try:
            yield
        finally:
            lock.release()

    # ── Audit ────────────────────────────────────────────────────

    def _audit(self, action: str, target: str, success: bool, detail: str = ""):
        entry = AuditEntry(action=action, target=target, success=success, detail=detail)
        with self._audit_lock:
            self._audit_log.append(entry)
        level = logging.INFO if success else logging.WARNING
        logger.log(level, f"[AUDIT] {action} {target}: {'ok' if success else 'FAIL'} {detail}")

    def get_audit_log(self, limit: int = 50) -> List[Dict[str, Any]]:
        with self._audit_lock:
            entries = list(self._audit_log)[-limit:]
        return [e.to_dict() for e in entries]

    # ── Persistence ──────────────────────────────────────────────

    def _persist(self, app: Application):
        payload = app.to_dict()
        validate_record(payload)
        self.store.put(APP_SCOPE, app.id, payload)

    def _transition(self, app: Application, target: AppStatus, **changes: Any):
        check_transition(app.status, target)
        previous = app.status
        for name, value in changes.items():
            setattr(app, name, value)
        app.status = target
        app.updated_at = self._clock()
        self._persist(app)
        logger.info(f"[ORCH] {app.id}: {previous.value} -> {target.value}")

    def _record_step(self, app: Application, step: str):
        app.last_step = step
        app.updated_at = self._clock()
        self._persist(app)

    def _fail(self, app: Application, error: Exception):
        step = getattr(error, "step", "") or app.last_step
        try:
            self._transition(app, AppStatus.FAILED, error_msg=str(error), last_step=step)
        except OrchestrationError as e:
            # the original error is what the caller needs; don't mask it
            logger.error(f"[ORCH] {app.id}: could not record failure: {e}")

    def _find(self, app_id: str) -> Optional[Application]:
        try:
            return self.get(app_id)
        except NotFoundError:
            return None

    # ── Dependencies ─────────────────────────────────────────────

    def access_key(self) -> AccessKey:
        """The engine's SSH key pair; generated and stored on first use."""
        try:
            data = self.store.get(CONFIG_SCOPE, ACCESS_KEY_ID)
        except NotFoundError:
            key = AccessKey.generate(ref=f"{CONFIG_SCOPE}:{ACCESS_KEY_ID}")
            self.store.put(CONFIG_SCOPE, ACCESS_KEY_ID, {
                "private_key": key.private_key,
                "public_key": key.public_key,
            })
            logger.info("[ORCH] generated engine access key")
            return key
        if not data.get("private_key"):
            raise ValidationError("stored access key has no private_key")
        return AccessKey(
            private_key=data["private_key"],
            public_key=data.get("public_key", ""),
            ref=f"{CONFIG_SCOPE}:{ACCESS_KEY_ID}",
        )

    def _request(self, app: Application, vps: VPSConfig, key: AccessKey, version: str) -> DeploymentRequest:
        return DeploymentRequest(
            app_id=app.id,
            app_type=app.app_type,
            subdomain=app.subdomain,
            domain=app.domain,
            version=version,
            vps=vps,
            key_material=key.private_key,
            namespace=app.namespace,
        )

    def _vps_for_create(self, vps_id: str, provision: Optional[ProvisionRequest], deadline) -> VPSConfig:
        try:
            return self.provisioning.load(vps_id)
        except NotFoundError:
            if provision is None:
                raise NotFoundError(
                    f"VPS {vps_id} is not registered and no provisioning request was given",
                    vps_id=vps_id,
                ) from None
        if provision.vps_id != vps_id:
            raise ValidationError(f"provisioning request is for {provision.vps_id}, not {vps_id}")
        return self.provisioning.provision(provision, deadline=deadline)

    # ── Create ───────────────────────────────────────────────────

    def create(
        self,
        app_id: str,
        app_type: str,
        subdomain: str,
        domain: str,
        vps_id: str,
        version: str = "latest",
        provision: Optional[ProvisionRequest] = None,
        blocking: Optional[bool] = None,
        deadline: Optional[float] = None,
    ) -> Application:
        """
        Create (or retry a failed create of) an application.

        The VPS is loaded from the store, or provisioned from ``provision``
        when it is not registered yet. Any failure leaves the record in
        ``failed`` with ``error_msg`` set and re-raises.
        """
        defn = self.catalog.get(app_type)
        with self._single_flight(app_id, blocking):
            app = self._find(app_id)
            if app is not None and app.status is not AppStatus.FAILED:
                raise ValidationError(
                    f"application {app_id} already exists ({app.status.value})", app_id=app_id,
                )
            if app is not None and app.app_type != app_type:
                raise ValidationError(f"application {app_id} is a {app.app_type}, not {app_type}")

            normalized = self.versions.validate(app_type, version)
            now = self._clock()
            if app is None:
                app = Application(
                    id=app_id, app_type=app_type, subdomain=subdomain, domain=domain,
                    vps_id=vps_id, namespace=defn.helm_chart.namespace,
                    created_at=now, updated_at=now,
                )
                self._persist(app)
            else:
                logger.info(f"[ORCH] {app_id}: retrying failed create")
                app.subdomain, app.domain, app.vps_id = subdomain, domain, vps_id

            try:
                self._transition(app, AppStatus.DEPLOYING, error_msg=None, last_step="")
                vps = self._vps_for_create(vps_id, provision, deadline)
                self._record_step(app, "vps")
                key = self.access_key()
                outcome = self.deployment.deploy(
                    self._request(app, vps, key, normalized),
                    DeployMode.INSTALL,
                    on_step=lambda step: self._record_step(app, step),
                    deadline=deadline,
                )
                self._transition(
                    app, AppStatus.DEPLOYED,
                    url=outcome.url, app_version=normalized, error_msg=None,
                )
            except Exception as e:  # noqa: BLE001
                self._fail(app, e)
                self._audit("create", app_id, False, str(e))
                raise

            self._audit("create", app_id, True, f"{app_type} {normalized} at {app.url}")
            return app

    # ── Upgrade ──────────────────────────────────────────────────

    def upgrade(
        self,
        app_id: str,
        version: str,
        blocking: Optional[bool] = None,
        deadline: Optional[float] = None,
    ) -> Application:
        """Move a deployed application to ``version`` via helm upgrade."""
        with self._single_flight(app_id, blocking):
            app = self.get(app_id)
            check_transition(app.status, AppStatus.UPDATING)
            normalized = self.versions.validate(app.app_type, version)

            try:
                self._transition(app, AppStatus.UPDATING, error_msg=None, last_step="")
                vps = self.provisioning.load(app.vps_id)
                key = self.access_key()
                outcome = self.deployment.deploy(
                    self._request(app, vps, key, normalized),
                    DeployMode.UPGRADE,
                    on_step=lambda step: self._record_step(app, step),
                    deadline=deadline,
                )
                self._transition(
                    app, AppStatus.DEPLOYED,
                    url=outcome.url, app_version=normalized, error_msg=None,
                )
            except Exception as e:  # noqa: BLE001
                self._fail(app, e)
                self._audit("upgrade", app_id, False, str(e))
                raise

            self._audit("upgrade", app_id, True, normalized)
            return app

    # ── Delete ───────────────────────────────────────────────────

    def delete(
        self,
        app_id: str,
        remove_namespace: bool = False,
        blocking: Optional[bool] = None,
    ) -> DeleteReport:
        """
        Remove DNS, release objects, the release, optionally the namespace,
        then the stored secret and record. Every step is attempted; what
        could not be removed is listed in ``DeleteReport.orphans``.
        """
        with self._single_flight(app_id, blocking):
            app = self.get(app_id)
            if app.status is not AppStatus.DELETING:
                self._transition(app, AppStatus.DELETING)
            report = DeleteReport(app_id=app_id)

            try:
                vps = self.provisioning.load(app.vps_id)
                key = self.access_key()
            except OrchestrationError as e:
                logger.warning(f"[ORCH] {app_id}: VPS {app.vps_id} unavailable for delete: {e}")
                report.orphans.append(BestEffortCleanupFailure(str(e), step="load_vps", resource=app.vps_id))
                self._remove_dns_only(app, report)
            else:
                failures = self.deployment.remove(
                    self._request(app, vps, key, app.app_version), remove_namespace=remove_namespace,
                )
                report.steps.append("release")
                report.orphans.extend(failures)

            try:
                self.vault.delete_password(APP_SCOPE, app_id)
                report.steps.append("secret")
            except (ConnectivityError, StoreError) as e:
                report.orphans.append(BestEffortCleanupFailure(
                    str(e), step="delete_secret", resource=self.vault.secret_key(app_id)))

            check_transition(app.status, AppStatus.REMOVED)
            try:
                self.store.delete(APP_SCOPE, app_id)
                app.status = AppStatus.REMOVED
                report.removed = True
                report.steps.append("record")
            except NotFoundError:
                app.status = AppStatus.REMOVED
                report.removed = True
            except (ConnectivityError, StoreError) as e:
                report.orphans.append(BestEffortCleanupFailure(str(e), step="delete_record", resource=app_id))

            detail = "clean" if report.clean else f"{len(report.orphans)} orphan(s)"
            self._audit("delete", app_id, report.clean, detail)
            return report

    def _remove_dns_only(self, app: Application, report: DeleteReport):
        try:
            self.deployment.dns.delete_a_record(app.subdomain, app.domain)
            report.steps.append("dns")
        except OrchestrationError as e:
            report.orphans.append(BestEffortCleanupFailure(
                str(e), step="dns", resource=f"{app.subdomain}.{app.domain}"))

    # ── Queries ──────────────────────────────────────────────────

    def get(self, app_id: str) -> Application:
        return Application.from_dict(self.store.get(APP_SCOPE, app_id))

    def list_applications(self) -> List[Application]:
        """Every application record; secrets and malformed records are skipped."""
        keys = [k for k in self.store.list_keys(APP_SCOPE) if ":" not in k]
        result = self.store.fetch_many(APP_SCOPE, keys)
        apps: List[Application] = []
        for key, data in result.found.items():
            try:
                apps.append(Application.from_dict(data))
            except (ValidationError, TypeError, ValueError) as e:
                logger.warning(f"[ORCH] skipping malformed record {key}: {e}")
        return sorted(apps, key=lambda a: a.created_at)

    def _live_probes(self, app: Application) -> Iterator[SecretProbe]:
        # generator: the SSH session is only opened if cache and store both miss
        vps = self.provisioning.load(app.vps_id)
        conn = self.pool.get_or_create_connection(
            vps.public_ip, vps.ssh_user, self.access_key().private_key, vps.vps_id,
        )
        yield from probes_for(app.app_type, self.pool, conn, app.release_name, app.namespace)

    def get_password(self, app_id: str) -> str:
        app = self.get(app_id)
        return self.vault.get_decrypted_password(APP_SCOPE, app_id, self._live_probes(app))

    def live_status(self, app_id: str) -> str:
        app = self.get(app_id)
        vps = self.provisioning.load(app.vps_id)
        return self.deployment.live_status(
            self._request(app, vps, self.access_key(), app.app_version))

    def get_stats(self) -> Dict[str, Any]:
        with self._locks_guard:
            busy = sum(1 for lock in self._locks.values() if lock.locked())
        return {
            "tracked_apps": len(self._locks),
            "busy_apps": busy,
            "audit_entries": len(self._audit_log),
            "pool": self.pool.get_stats(),
            "store": self.store.get_stats(),
            "vault": self.vault.get_stats(),
        }
