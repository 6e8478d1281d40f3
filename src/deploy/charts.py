#!/usr/bin/env python3
"""
Chart Sources — Where a Release's Chart Comes From

Three variants, each normalized by ``prepare`` to a reference that
``helm install``/``helm upgrade`` accepts:

- LocalBundledChart    chart files shipped with the engine, uploaded to the host
- GitRepositoryChart   chart cloned on the host from a git repository
- HelmRepositoryChart  chart pulled from a Helm repository (repo add + update)

``prepare`` returns the chart ref plus any cleanup the caller should
register as a compensation.
"""

import logging
import posixpath
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, List, Optional

from core.errors import OrchestrationError, ValidationError
from vps import commands
from vps.ssh_pool import ConnectionManager, PooledConnection
from .catalog import AppDefinition, Catalog

logger = logging.getLogger(__name__)

FLOATING_CHART_VERSIONS = {"", "latest", "stable"}


@dataclass
class ChartRef:
    ref: str
    version: Optional[str] = None
    cleanup_path: Optional[str] = None


def _check(result, what: str):
    if not result.success:
        raise OrchestrationError(f"{what} failed (exit={result.exit_code}): {result.stderr or result.output}")


class ChartSource:
    kind = ""

    def prepare(self, pool: ConnectionManager, conn: PooledConnection, workdir: str) -> ChartRef:
        raise NotImplementedError


class LocalBundledChart(ChartSource):
    """A chart directory on the engine's filesystem, copied file by file."""

    kind = "local"

    def __init__(self, local_path: Path, name: str = ""):
        self.local_path = Path(local_path)
        self.name = name or self.local_path.name

    def files(self) -> List[Path]:
        if not self.local_path.is_dir():
            raise ValidationError(f"bundled chart not found: {self.local_path}")
        return sorted(p for p in self.local_path.rglob("*") if p.is_file())

    def prepare(self, pool, conn, workdir):
        remote_root = posixpath.join(workdir, "charts", self.name)
        _check(pool.execute_command(conn, commands.rm_rf(remote_root)), "clear chart dir")
        made = set()
        for path in self.files():
            rel = path.relative_to(self.local_path).as_posix()
            remote = posixpath.join(remote_root, rel)
            parent = posixpath.dirname(remote)
            if parent not in made:
                _check(pool.execute_command(conn, commands.mkdir_p(parent)), f"mkdir {parent}")
                made.add(parent)
            _check(pool.upload_file(conn, path.read_text(encoding="utf-8"), remote), f"upload {rel}")
        logger.info(f"[DEPLOY] uploaded bundled chart {self.name} to {remote_root}")
        return ChartRef(ref=remote_root, cleanup_path=remote_root)


class GitRepositoryChart(ChartSource):
    kind = "git"

    def __init__(self, url: str, ref: str = "", subpath: str = ""):
        self.url = url[len("git+"):] if url.startswith("git+") else url
        self.ref = ref
        self.subpath = subpath

    def prepare(self, pool, conn, workdir):
        name = re.sub(r"\.git$", "", self.url.rstrip("/").rsplit("/", 1)[-1]) or "chart"
        dest = posixpath.join(workdir, "src", name)
        _check(pool.execute_command(conn, commands.rm_rf(dest)), "clear clone dir")
        _check(pool.execute_command(conn, commands.git_clone(self.url, dest, self.ref or None)), "git clone")
        chart_dir = posixpath.join(dest, self.subpath) if self.subpath else dest
        return ChartRef(ref=chart_dir, cleanup_path=dest)


class HelmRepositoryChart(ChartSource):
    kind = "helm"

    def __init__(self, repo_url: str, chart: str, version: str = "", repo_name: str = ""):
        self.repo_url = repo_url
        self.chart = chart
        self.version = version
        self.repo_name = repo_name or chart

    def prepare(self, pool, conn, workdir):
        _check(pool.execute_command(conn, commands.helm_repo_add(self.repo_name, self.repo_url)), "helm repo add")
        _check(pool.execute_command(conn, commands.helm_repo_update()), "helm repo update")
        version = None if self.version in FLOATING_CHART_VERSIONS else self.version
        return ChartRef(ref=f"{self.repo_name}/{self.chart}", version=version)


ChartSourceFactory = Callable[[AppDefinition], ChartSource]


def build_strategies(catalog: Catalog, charts_dir: Path) -> Dict[str, ChartSourceFactory]:
    """Map each application type to the factory for its chart source."""
    def local(defn: AppDefinition) -> ChartSource:
        return LocalBundledChart(Path(charts_dir) / defn.helm_chart.chart, defn.helm_chart.chart)

    def git(defn: AppDefinition) -> ChartSource:
        spec = defn.helm_chart
        return GitRepositoryChart(spec.repository, spec.ref, spec.path)

    def helm(defn: AppDefinition) -> ChartSource:
        spec = defn.helm_chart
        return HelmRepositoryChart(spec.repository, spec.chart, spec.version, repo_name=defn.id)

    by_kind = {"local": local, "git": git, "helm": helm}
    return {entry.id: by_kind[entry.helm_chart.kind] for entry in catalog.entries()}
