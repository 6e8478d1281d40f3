"""Builds the service graph from an EngineConfig; each collaborator is constructed once."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional

from core.config import EngineConfig
from core.errors import ValidationError
from deploy.catalog import Catalog, load_catalog, version_sources
from deploy.certs import CertificateManager
from deploy.charts import build_strategies
from deploy.dns import CloudflareDNS
from deploy.pipeline import DeploymentPipeline
from store.client import RemoteStoreClient
from store.memo import TTLMemoCache
from store.versions import VersionService
from vault.vault import CredentialVault
from vps.providers import ComputeProvider, HetznerProvider, ManuallyRegisteredProvider
from vps.provisioning import ProvisioningPipeline
from vps.ssh_pool import ConnectionManager
from vps.terminal import TerminalSessionFactory
from .orchestrator import Orchestrator

logger = logging.getLogger(__name__)

CLOUD_INIT_TEMPLATE = "cloud-init.yaml"


@dataclass
class Engine:
    config: EngineConfig
    store: RemoteStoreClient
    pool: ConnectionManager
    catalog: Catalog
    vault: CredentialVault
    versions: VersionService
    provisioning: ProvisioningPipeline
    deployment: DeploymentPipeline
    terminals: TerminalSessionFactory
    orchestrator: Orchestrator

    def close(self) -> None:
        self.pool.close_all()


def load_cloud_init(templates_dir: Path) -> Optional[str]:
    path = templates_dir / CLOUD_INIT_TEMPLATE
    if not path.exists():
        logger.warning(f"No cloud-init template at {path}; cloud instances boot without k3s")
        return None
    return path.read_text(encoding="utf-8")


def default_providers() -> Dict[str, ComputeProvider]:
    providers: Dict[str, ComputeProvider] = {"manual": ManuallyRegisteredProvider()}
    if os.environ.get("HETZNER_API_TOKEN"):
        providers["hetzner"] = HetznerProvider()
    return providers


def build_engine(
    config: EngineConfig,
    providers: Optional[Dict[str, ComputeProvider]] = None,
    catalog: Optional[Catalog] = None,
) -> Engine:
    if not config.store.api_token:
        raise ValidationError("store.api_token is required (STORE_API_TOKEN)")

    store = RemoteStoreClient(
        base_url=config.store.base_url,
        api_token=config.store.api_token,
        timeout=config.store.timeout_sec,
        max_workers=config.store.fetch_many_workers,
    )
    pool = ConnectionManager(
        port=config.ssh.port,
        connect_timeout=config.ssh.connect_timeout_sec,
        command_timeout=config.ssh.command_timeout_sec,
    )
    catalog = catalog or load_catalog(config.deploy.catalog_path)
    memo = TTLMemoCache(ttl_seconds=config.store.version_cache_ttl_sec)
    versions = VersionService(version_sources(catalog), memo)
    vault = CredentialVault(store, config.store.api_token, cache_ttl=config.secret_cache_ttl_sec)

    provisioning = ProvisioningPipeline(
        pool, store, providers if providers is not None else default_providers(),
        reachability_timeout=config.ssh.reachability_timeout_sec,
        poll_interval=config.ssh.poll_interval_sec,
        cloud_init=load_cloud_init(config.deploy.templates_dir),
    )
    deployment = DeploymentPipeline(
        pool, store, vault,
        dns=CloudflareDNS(api_token=config.deploy.cloudflare_api_token or None),
        certs=CertificateManager(store, pool, ssl_dir=f"{config.deploy.remote_workdir}/ssl"),
        catalog=catalog,
        strategies=build_strategies(catalog, config.deploy.charts_dir),
        templates_dir=config.deploy.templates_dir,
        remote_workdir=config.deploy.remote_workdir,
        helm_timeout=config.deploy.helm_timeout,
        command_timeout=config.deploy.helm_command_timeout_sec,
    )
    orchestrator = Orchestrator(
        store, pool, provisioning, deployment, vault, versions, catalog,
        blocking=config.lock_blocking,
    )
    logger.info(
        f"Engine ready (store={config.store.base_url}, apps={','.join(catalog.ids())}, "
        f"providers={','.join(sorted(provisioning.providers))})"
    )
    return Engine(
        config=config, store=store, pool=pool, catalog=catalog, vault=vault,
        versions=versions, provisioning=provisioning, deployment=deployment,
        terminals=TerminalSessionFactory(pool, config.terminal.port_range),
        orchestrator=orchestrator,
    )
