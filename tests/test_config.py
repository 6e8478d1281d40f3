import logging
from pathlib import Path

import pytest

from core.config import EngineConfig, load_config
from core.logging_setup import configure_logging

REPO_ROOT = Path(__file__).parent.parent


def test_defaults_from_empty_document():
    cfg = EngineConfig.from_dict({})

    assert cfg.store.fetch_many_workers == 5
    assert cfg.ssh.port == 22
    assert cfg.deploy.helm_timeout == "10m"
    assert cfg.deploy.helm_command_timeout_sec == 660
    assert cfg.terminal.port_range == (7681, 7780)
    assert cfg.lock_blocking is True


def test_shipped_defaults_load():
    cfg = load_config(REPO_ROOT / "config" / "engine.defaults.yml")

    assert cfg.deploy.remote_workdir == "/opt/xanthus"
    assert cfg.deploy.catalog_path == Path("config/applications.yml")
    assert cfg.secret_cache_ttl_sec == 300


def test_env_overrides(monkeypatch, tmp_path):
    source = tmp_path / "engine.yml"
    source.write_text("store:\n  base_url: http://kv.internal\n  fetch_many_workers: 3\n", encoding="utf-8")

    monkeypatch.setenv("STORE_API_TOKEN", "tok")
    monkeypatch.setenv("FETCH_MANY_WORKERS", "8")
    monkeypatch.setenv("HELM_TIMEOUT", "15m")

    cfg = load_config(source)

    assert cfg.store.base_url == "http://kv.internal"
    assert cfg.store.api_token == "tok"
    assert cfg.store.fetch_many_workers == 8
    assert cfg.deploy.helm_timeout == "15m"


def test_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_config(tmp_path / "absent.yml")


def test_configure_logging_quiets_paramiko(monkeypatch):
    monkeypatch.setenv("LOG_LEVEL", "debug")
    configure_logging()

    assert logging.getLogger("paramiko").level == logging.WARNING
