"""Configuration loader for the deployment engine."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Tuple

import yaml


@dataclass(frozen=True)
class StoreConfig:
    base_url: str
    api_token: str
    timeout_sec: int
    fetch_many_workers: int
    version_cache_ttl_sec: int


@dataclass(frozen=True)
class SSHConfig:
    port: int
    connect_timeout_sec: int
    command_timeout_sec: int
    reachability_timeout_sec: int
    poll_interval_sec: int


@dataclass(frozen=True)
class DeployConfig:
    helm_timeout: str
    helm_command_timeout_sec: int
    charts_dir: Path
    templates_dir: Path
    catalog_path: Path
    remote_workdir: str
    cloudflare_api_token: str


@dataclass(frozen=True)
class TerminalConfig:
    port_range: Tuple[int, int]


@dataclass(frozen=True)
class EngineConfig:
    store: StoreConfig
    ssh: SSHConfig
    deploy: DeployConfig
    terminal: TerminalConfig
    secret_cache_ttl_sec: int
    lock_blocking: bool

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EngineConfig":
        store = data.get("store", {})
        ssh = data.get("ssh", {})
        deploy = data.get("deploy", {})
        terminal = data.get("terminal", {})
        port_range = terminal.get("port_range", [7681, 7780])
        return cls(
            store=StoreConfig(
                base_url=store.get("base_url", "http://localhost:8787/kv"),
                api_token=store.get("api_token", ""),
                timeout_sec=int(store.get("timeout_sec", 30)),
                fetch_many_workers=int(store.get("fetch_many_workers", 5)),
                version_cache_ttl_sec=int(store.get("version_cache_ttl_sec", 3600)),
            ),
            ssh=SSHConfig(
                port=int(ssh.get("port", 22)),
                connect_timeout_sec=int(ssh.get("connect_timeout_sec", 30)),
                command_timeout_sec=int(ssh.get("command_timeout_sec", 120)),
                reachability_timeout_sec=int(ssh.get("reachability_timeout_sec", 300)),
                poll_interval_sec=int(ssh.get("poll_interval_sec", 10)),
            ),
            deploy=DeployConfig(
                helm_timeout=str(deploy.get("helm_timeout", "10m")),
                helm_command_timeout_sec=int(deploy.get("helm_command_timeout_sec", 660)),
                charts_dir=Path(deploy.get("charts_dir", "charts")),
                templates_dir=Path(deploy.get("templates_dir", "config/templates")),
                catalog_path=Path(deploy.get("catalog_path", "config/applications.yml")),
                remote_workdir=deploy.get("remote_workdir", "/opt/xanthus"),
                cloudflare_api_token=deploy.get("cloudflare_api_token", ""),
            ),
            terminal=TerminalConfig(
                port_range=(int(port_range[0]), int(port_range[1])),
            ),
            secret_cache_ttl_sec=int(data.get("secret_cache_ttl_sec", 300)),
            lock_blocking=bool(data.get("lock_blocking", True)),
        )


ENV_MAP = {
    "store.base_url": "STORE_BASE_URL",
    "store.api_token": "STORE_API_TOKEN",
    "store.timeout_sec": "STORE_TIMEOUT_SEC",
    "store.fetch_many_workers": "FETCH_MANY_WORKERS",
    "store.version_cache_ttl_sec": "VERSION_CACHE_TTL_SEC",
    "ssh.command_timeout_sec": "SSH_COMMAND_TIMEOUT",
    "ssh.reachability_timeout_sec": "SSH_REACHABILITY_TIMEOUT",
    "deploy.helm_timeout": "HELM_TIMEOUT",
    "deploy.cloudflare_api_token": "CLOUDFLARE_API_TOKEN",
    "secret_cache_ttl_sec": "SECRET_CACHE_TTL_SEC",
}

INT_KEYS = {
    "timeout_sec",
    "fetch_many_workers",
    "version_cache_ttl_sec",
    "command_timeout_sec",
    "reachability_timeout_sec",
    "secret_cache_ttl_sec",
}


def load_yaml(path: Path) -> Dict[str, Any]:
    with path.open("r", encoding="utf-8") as handle:
        return yaml.safe_load(handle) or {}


def merge_env_overrides(config_data: Dict[str, Any]) -> Dict[str, Any]:
    merged = json.loads(json.dumps(config_data))  # deep copy via json

    for dotted_key, env_name in ENV_MAP.items():
        if env_name not in os.environ:
            continue
        value: Any = os.environ[env_name]
        target = merged
        parts = dotted_key.split(".")
        for part in parts[:-1]:
            target = target.setdefault(part, {})
        last = parts[-1]
        if last in INT_KEYS:
            value = int(value)
        target[last] = value

    return merged


def load_config(config_path: str | Path = "config/engine.defaults.yml") -> EngineConfig:
    path = Path(config_path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    data = load_yaml(path)
    data = merge_env_overrides(data)
    return EngineConfig.from_dict(data)
