"""Live-retrieval probe chains, one canonical order per application type."""

from __future__ import annotations

import logging
from typing import Callable, Dict, List

from vps import commands
from vps.commands import Command
from vps.ssh_pool import ConnectionManager, PooledConnection
from .vault import SecretProbe

logger = logging.getLogger(__name__)

CODE_SERVER_CONFIG = "/home/coder/.config/code-server/config.yaml"
CODE_SERVER_SELECTOR = "app.kubernetes.io/name=xanthus-code-server"
ARGOCD_ADMIN_SECRET = "argocd-initial-admin-secret"


def _remote(pool: ConnectionManager, conn: PooledConnection, command: Command) -> Callable[[], str]:
    def _fetch() -> str:
        result = pool.execute_command(conn, command)
        if not result.success:
            return ""
        out = result.output.strip()
        # kubectl sometimes prints its error on stdout through the pipe
        if out.lower().startswith("error"):
            return ""
        return out
    return _fetch


def _code_server_config(pool: ConnectionManager, conn: PooledConnection, namespace: str) -> Callable[[], str]:
    def _fetch() -> str:
        pod = pool.execute_command(conn, commands.kubectl_get_pod_name(namespace, CODE_SERVER_SELECTOR))
        if not pod.success or not pod.output:
            return ""
        config = pool.execute_command(conn, commands.kubectl_exec_cat(namespace, pod.output, CODE_SERVER_CONFIG))
        for line in config.output.splitlines():
            if line.startswith("password:"):
                return line.split(":", 1)[1].strip()
        return ""
    return _fetch


def code_server_probes(pool, conn, release: str, namespace: str) -> List[SecretProbe]:
    return [
        SecretProbe(
            name=f"secret/{release}-xanthus-code-server",
            fetch=_remote(pool, conn, commands.kubectl_get_secret_field(f"{release}-xanthus-code-server", namespace)),
        ),
        SecretProbe(
            name=f"secret/{release}",
            fetch=_remote(pool, conn, commands.kubectl_get_secret_field(release, namespace)),
        ),
        SecretProbe(name="pod/config.yaml", fetch=_code_server_config(pool, conn, namespace)),
    ]


def argocd_probes(pool, conn, release: str, namespace: str) -> List[SecretProbe]:
    # charts installed under a release prefix name the admin secret after it
    return [
        SecretProbe(
            name=f"secret/{secret}",
            fetch=_remote(pool, conn, commands.kubectl_get_secret_field(secret, namespace)),
        )
        for secret in (ARGOCD_ADMIN_SECRET, f"{release}-{ARGOCD_ADMIN_SECRET}")
    ]


PROBE_CHAINS: Dict[str, Callable[..., List[SecretProbe]]] = {
    "code-server": code_server_probes,
    "argocd": argocd_probes,
}


def probes_for(app_type: str, pool: ConnectionManager, conn: PooledConnection,
               release: str, namespace: str) -> List[SecretProbe]:
    """The probe chain for ``app_type``; types without credentials get none."""
    builder = PROBE_CHAINS.get(app_type)
    if builder is None:
        return []
    return builder(pool, conn, release, namespace)
