"""Domain certificate application, idempotent per VPS, domain and namespace."""

from __future__ import annotations

import hashlib
import logging
import posixpath
import time
from dataclasses import dataclass
from typing import Any, Dict, List

from core.errors import NotFoundError, OrchestrationError, ValidationError
from store.client import RemoteStoreClient
from vps import commands
from vps.models import VPS_SCOPE
from vps.ssh_pool import ConnectionManager, PooledConnection

logger = logging.getLogger(__name__)

DOMAIN_SCOPE = "domain"


def marker_key(vps_ip: str, domain: str, namespace: str) -> str:
    return f"{vps_ip}:ssl:{domain}:{namespace}"


def fingerprint(certificate: str) -> str:
    return hashlib.sha256(certificate.encode("utf-8")).hexdigest()


@dataclass
class DomainCertificate:
    domain: str
    certificate: str
    private_key: str

    @classmethod
    def from_dict(cls, domain: str, data: Dict[str, Any]) -> "DomainCertificate":
        cert = data.get("certificate", "")
        key = data.get("private_key", "")
        if not cert or not key:
            raise ValidationError(f"incomplete SSL config for {domain}", domain=domain)
        return cls(domain=domain, certificate=cert, private_key=key)


class CertificateManager:
    def __init__(self, store: RemoteStoreClient, pool: ConnectionManager, ssl_dir: str = "/opt/xanthus/ssl") -> None:
        self.store = store
        self.pool = pool
        self.ssl_dir = ssl_dir

    def load(self, domain: str) -> DomainCertificate:
        try:
            data = self.store.get(DOMAIN_SCOPE, f"{domain}:ssl_config")
        except NotFoundError:
            raise NotFoundError(f"no certificate configured for {domain}", domain=domain) from None
        return DomainCertificate.from_dict(domain, data)

    def secret_present(self, conn: PooledConnection, domain: str, namespace: str) -> bool:
        result = self.pool.execute_command(conn, commands.kubectl_get("secret", f"{domain}-tls", namespace))
        return result.success

    def ensure(self, conn: PooledConnection, vps_ip: str, domain: str, namespace: str) -> bool:
        """
        Install ``{domain}-tls`` into ``namespace``. Returns False when the
        same certificate was already applied there and the secret still exists.
        """
        cert = self.load(domain)
        key = marker_key(vps_ip, domain, namespace)
        current = fingerprint(cert.certificate)
        try:
            marker = self.store.get(VPS_SCOPE, key)
        except NotFoundError:
            marker = None
        if marker and marker.get("fingerprint") == current:
            if self.secret_present(conn, domain, namespace):
                logger.info(f"[CERT] {domain} already current in {namespace} on {vps_ip}")
                return False
            logger.warning(f"[CERT] {domain}-tls missing from {namespace} on {vps_ip}, reapplying")

        cert_path = posixpath.join(self.ssl_dir, f"{domain}.crt")
        key_path = posixpath.join(self.ssl_dir, f"{domain}.key")
        for command, what in (
            (commands.mkdir_p(self.ssl_dir), "mkdir ssl dir"),
            (commands.write_file(cert_path, cert.certificate), "write certificate"),
            (commands.write_file(key_path, cert.private_key), "write private key"),
            (commands.kubectl_create_tls_secret(f"{domain}-tls", namespace, cert_path, key_path), "apply tls secret"),
        ):
            result = self.pool.execute_command(conn, command)
            if not result.success:
                raise OrchestrationError(f"{what} failed: {result.stderr or result.output}", domain=domain)

        self.store.put(VPS_SCOPE, key, {
            "domain": domain,
            "namespace": namespace,
            "vps_ip": vps_ip,
            "fingerprint": current,
            "configured_at": int(time.time()),
        })
        logger.info(f"[CERT] {domain} applied to {namespace} on {vps_ip}")
        return True

    def forget_namespace(self, vps_ip: str, namespace: str) -> List[str]:
        """Drop every marker for ``namespace`` on ``vps_ip``; its secrets went with it."""
        suffix = f":{namespace}"
        dropped = []
        for key in self.store.list_keys(VPS_SCOPE, prefix=f"{vps_ip}:ssl:"):
            if not key.endswith(suffix):
                continue
            try:
                self.store.delete(VPS_SCOPE, key)
            except NotFoundError:
                pass
            dropped.append(key)
        if dropped:
            logger.info(f"[CERT] cleared {len(dropped)} marker(s) for {namespace} on {vps_ip}")
        return dropped
