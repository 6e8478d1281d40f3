#!/usr/bin/env python3
"""
Unit tests for values rendering, the application catalog and chart sources
"""

import sys
import pytest
import yaml
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent.parent / "src"))

from core.errors import NotFoundError, OrchestrationError, ValidationError
from deploy.catalog import AppDefinition, load_catalog, version_sources
from deploy.charts import GitRepositoryChart, HelmRepositoryChart, LocalBundledChart, build_strategies
from deploy.values import ValuesContext, load_template, minimal_values, render_values
from store.versions import GitHubReleaseSource, HelmRepositorySource, StaticVersionSource
from fakes import FakePool

REPO_ROOT = Path(__file__).parent.parent.parent
CTX = ValuesContext(version="4.20.0", subdomain="dev1", domain="example.com",
                    release_name="code-server-app-1001", timezone="Europe/Berlin")


# ── Values ───────────────────────────────────────────────────────

class TestRenderValues:

    def test_all_standard_placeholders(self):
        template = (
            "image: {tag: '{{VERSION}}'}\n"
            "host: '{{SUBDOMAIN}}.{{DOMAIN}}'\n"
            "name: '{{RELEASE_NAME}}'\n"
            "tz: '{{TIMEZONE}}'\n"
        )
        doc = yaml.safe_load(render_values(template, CTX))
        assert doc == {
            "image": {"tag": "4.20.0"},
            "host": "dev1.example.com",
            "name": "code-server-app-1001",
            "tz": "Europe/Berlin",
        }

    def test_timezone_defaults_to_utc(self):
        ctx = ValuesContext(version="1", subdomain="a", domain="b.c", release_name="r", timezone="")
        assert render_values("tz: '{{TIMEZONE}}'", ctx) == "tz: 'UTC'"

    def test_catalog_placeholders_resolve_template_fields(self):
        rendered = render_values("tag: '{{IMAGE_TAG}}'", CTX, {"IMAGE_TAG": "v{{.Version}}"})
        assert rendered == "tag: 'v4.20.0'"

    def test_unresolved_placeholder_rejected(self):
        with pytest.raises(ValidationError) as exc:
            render_values("x: '{{NOPE}}'", CTX)
        assert "NOPE" in str(exc.value)

    def test_invalid_yaml_rejected(self):
        with pytest.raises(ValidationError):
            render_values("a: [unclosed", CTX)

    def test_minimal_values(self):
        doc = yaml.safe_load(minimal_values(CTX))
        assert doc["ingress"]["hosts"][0]["host"] == "dev1.example.com"
        assert doc["ingress"]["tls"][0]["secretName"] == "example.com-tls"

    def test_shipped_templates_render(self):
        catalog = load_catalog(REPO_ROOT / "config" / "applications.yml")
        for entry in catalog.entries():
            template = load_template(REPO_ROOT / "config" / "templates", entry.helm_chart.values_template)
            yaml.safe_load(render_values(template, CTX, entry.helm_chart.placeholders))

    def test_missing_template_file(self, tmp_path):
        with pytest.raises(ValidationError):
            load_template(tmp_path, "absent.yaml")
        assert load_template(tmp_path, "") == ""


# ── Catalog ──────────────────────────────────────────────────────

class TestCatalog:

    def test_shipped_catalog(self):
        catalog = load_catalog(REPO_ROOT / "config" / "applications.yml")
        assert catalog.ids() == ["argocd", "code-server"]
        code_server = catalog.get("code-server")
        assert code_server.helm_chart.kind == "local"
        assert code_server.helm_chart.namespace == "code-server"
        assert code_server.credentials is True
        assert catalog.get("argocd").helm_chart.kind == "helm"

    def test_unknown_type(self):
        catalog = load_catalog(REPO_ROOT / "config" / "applications.yml")
        with pytest.raises(NotFoundError):
            catalog.get("wordpress")
        assert "wordpress" not in catalog

    def test_schema_rejects_bad_entry(self):
        with pytest.raises(ValidationError):
            AppDefinition.from_dict({"id": "Bad Id", "helm_chart": {"repository": "x", "chart": "y", "namespace": "z"}})
        with pytest.raises(ValidationError):
            AppDefinition.from_dict({"id": "ok", "helm_chart": {"repository": "x"}})

    def test_directory_of_entries(self, tmp_path):
        (tmp_path / "a.yml").write_text(
            "id: app-a\nhelm_chart: {repository: 'https://github.com/o/charts.git', chart: a, namespace: a}\n",
            encoding="utf-8",
        )
        (tmp_path / "b.yaml").write_text(
            "applications:\n  - id: app-b\n    helm_chart: {repository: local, chart: b, namespace: b}\n",
            encoding="utf-8",
        )
        catalog = load_catalog(tmp_path)
        assert catalog.ids() == ["app-a", "app-b"]
        assert catalog.get("app-a").helm_chart.kind == "git"

    def test_missing_catalog(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_catalog(tmp_path / "nope.yml")

    def test_version_sources(self):
        catalog = load_catalog(REPO_ROOT / "config" / "applications.yml")
        sources = version_sources(catalog)
        assert isinstance(sources["code-server"], GitHubReleaseSource)
        assert sources["code-server"].repo == "coder/code-server"
        assert isinstance(sources["argocd"], HelmRepositorySource)
        assert sources["argocd"].chart == "argo-cd"

    def test_static_source_falls_back_to_chart_version(self):
        entry = AppDefinition.from_dict({
            "id": "pinned",
            "helm_chart": {"repository": "https://charts.example.com", "chart": "p", "namespace": "p", "version": "2.0.0"},
        })
        from deploy.catalog import Catalog
        sources = version_sources(Catalog([entry]))
        assert isinstance(sources["pinned"], StaticVersionSource)
        assert sources["pinned"].latest() == "2.0.0"


# ── Chart sources ────────────────────────────────────────────────

def _conn(pool):
    return pool.get_or_create_connection("1.2.3.4", "root", "KEY", "vps-1")


class TestChartSources:

    def test_local_chart_uploads_every_file(self, tmp_path):
        chart = tmp_path / "mychart"
        (chart / "templates").mkdir(parents=True)
        (chart / "Chart.yaml").write_text("name: mychart\n", encoding="utf-8")
        (chart / "templates" / "svc.yaml").write_text("kind: Service\n", encoding="utf-8")
        pool = FakePool()

        ref = LocalBundledChart(chart).prepare(pool, _conn(pool), "/opt/xanthus")

        assert ref.ref == "/opt/xanthus/charts/mychart"
        assert ref.cleanup_path == "/opt/xanthus/charts/mychart"
        assert pool.ran("tee /opt/xanthus/charts/mychart/Chart.yaml")
        assert pool.ran("tee /opt/xanthus/charts/mychart/templates/svc.yaml")
        assert "kind: Service\n" in pool.stdin

    def test_local_chart_missing(self, tmp_path):
        pool = FakePool()
        with pytest.raises(ValidationError):
            LocalBundledChart(tmp_path / "absent").prepare(pool, _conn(pool), "/opt/xanthus")

    def test_git_chart_clones(self):
        pool = FakePool()
        ref = GitRepositoryChart("git+https://github.com/o/charts.git", ref="v1", subpath="charts/app").prepare(
            pool, _conn(pool), "/opt/xanthus")

        assert ref.ref == "/opt/xanthus/src/charts/charts/app"
        assert ref.cleanup_path == "/opt/xanthus/src/charts"
        assert pool.ran("git clone --depth 1 --branch v1 https://github.com/o/charts.git /opt/xanthus/src/charts")

    def test_helm_repo_chart(self):
        pool = FakePool()
        ref = HelmRepositoryChart("https://argoproj.github.io/argo-helm", "argo-cd", "stable",
                                  repo_name="argocd").prepare(pool, _conn(pool), "/opt/xanthus")

        assert ref.ref == "argocd/argo-cd"
        assert ref.version is None
        assert ref.cleanup_path is None
        assert pool.ran("helm repo add argocd https://argoproj.github.io/argo-helm --force-update")
        assert pool.ran("helm repo update")

    def test_failed_command_raises(self):
        pool = FakePool().on("helm repo add", exit_code=1, stderr="no such host")
        with pytest.raises(OrchestrationError):
            HelmRepositoryChart("https://bad", "x").prepare(pool, _conn(pool), "/opt/xanthus")

    def test_strategy_registry_dispatches_by_kind(self):
        catalog = load_catalog(REPO_ROOT / "config" / "applications.yml")
        strategies = build_strategies(catalog, REPO_ROOT / "charts")

        assert isinstance(strategies["code-server"](catalog.get("code-server")), LocalBundledChart)
        assert isinstance(strategies["argocd"](catalog.get("argocd")), HelmRepositoryChart)

    def test_bundled_chart_is_shipped(self):
        catalog = load_catalog(REPO_ROOT / "config" / "applications.yml")
        source = build_strategies(catalog, REPO_ROOT / "charts")["code-server"](catalog.get("code-server"))
        names = [p.name for p in source.files()]
        assert "Chart.yaml" in names
