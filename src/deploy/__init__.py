"""Deployment: catalog, chart sources, values, DNS, certificates and the release pipeline."""

from .catalog import AppDefinition, Catalog, HelmChartSpec, load_catalog, version_sources
from .certs import CertificateManager, DomainCertificate
from .charts import (
    ChartRef, GitRepositoryChart, HelmRepositoryChart, LocalBundledChart, build_strategies,
)
from .dns import CloudflareDNS, DNSChange
from .pipeline import (
    DeploymentPipeline, DeploymentRequest, DeployMode, DeployOutcome, is_resource_exhaustion,
)
from .values import ValuesContext, render_values

__all__ = [
    "AppDefinition", "Catalog", "HelmChartSpec", "load_catalog", "version_sources",
    "CertificateManager", "DomainCertificate",
    "ChartRef", "GitRepositoryChart", "HelmRepositoryChart", "LocalBundledChart", "build_strategies",
    "CloudflareDNS", "DNSChange",
    "DeploymentPipeline", "DeploymentRequest", "DeployMode", "DeployOutcome", "is_resource_exhaustion",
    "ValuesContext", "render_values",
]
