#!/usr/bin/env python3
"""
Remote Command Builder — Safe POSIX One-Liners for the SSH Pool

Every shell string the engine sends to a host is produced here. Builders
return an immutable ``Command``; arguments are quoted with ``shlex.quote``
when rendered so callers never interpolate user values into shell text.

Usage:
    cmd = helm_install("app-1001", "xanthus/code-server", "code-server",
                       values_path="/opt/xanthus/app-1001/values.yaml")
    pool.execute_command(conn, cmd)
"""

import shlex
from dataclasses import dataclass, field
from typing import Optional, Tuple, List


@dataclass(frozen=True)
class Command:
    """
    An opaque shell command.

    ``argv`` is quoted word-by-word. ``pipe_to`` chains further commands
    with ``|``; ``suffix`` is appended verbatim and must only ever hold
    builder-owned constant text (redirects such as ``2>/dev/null``).
    """
    argv: Tuple[str, ...]
    pipe_to: Tuple["Command", ...] = field(default_factory=tuple)
    suffix: str = ""
    stdin: Optional[str] = field(default=None, repr=False, compare=False)

    def render(self) -> str:
        text = " ".join(shlex.quote(str(a)) for a in self.argv)
        if self.suffix:
            text = f"{text} {self.suffix}"
        for nxt in self.pipe_to:
            text = f"{text} | {nxt.render()}"
        return text

    def pipe(self, other: "Command") -> "Command":
        return Command(
            argv=self.argv, pipe_to=self.pipe_to + (other,),
            suffix=self.suffix, stdin=self.stdin,
        )

    def __str__(self) -> str:
        return self.render()


def cmd(*argv: str, suffix: str = "") -> Command:
    return Command(argv=tuple(str(a) for a in argv), suffix=suffix)


# ── Generic ──────────────────────────────────────────────────────

def probe() -> Command:
    """Cheap liveness check used before reusing a pooled connection."""
    return cmd("echo", "ok")


def mkdir_p(path: str) -> Command:
    return cmd("mkdir", "-p", path)


def rm_rf(path: str) -> Command:
    return cmd("rm", "-rf", path)


def write_file(path: str, content: str) -> Command:
    """Write ``content`` to ``path``; the content travels over stdin."""
    return Command(argv=("tee", path), suffix=">/dev/null", stdin=content)


def detect_timezone() -> Command:
    return cmd("timedatectl", "show", "--property=Timezone", "--value")


def git_clone(url: str, dest: str, ref: Optional[str] = None) -> Command:
    argv: List[str] = ["git", "clone", "--depth", "1"]
    if ref:
        argv += ["--branch", ref]
    argv += [url, dest]
    return cmd(*argv)


# ── Helm ─────────────────────────────────────────────────────────

def helm_repo_add(name: str, url: str) -> Command:
    return cmd("helm", "repo", "add", name, url, "--force-update")


def helm_repo_update() -> Command:
    return cmd("helm", "repo", "update")


def _helm_release(
    verb: str, release: str, chart: str, namespace: str,
    values_path: Optional[str], timeout: str, version: Optional[str],
) -> Command:
    argv: List[str] = ["helm", verb, release, chart, "--namespace", namespace]
    if values_path:
        argv += ["--values", values_path]
    if version:
        argv += ["--version", version]
    argv += ["--wait", "--timeout", timeout]
    return cmd(*argv)


def helm_install(
    release: str, chart: str, namespace: str,
    values_path: Optional[str] = None, timeout: str = "10m",
    version: Optional[str] = None,
) -> Command:
    return _helm_release("install", release, chart, namespace, values_path, timeout, version)


def helm_upgrade(
    release: str, chart: str, namespace: str,
    values_path: Optional[str] = None, timeout: str = "10m",
    version: Optional[str] = None,
) -> Command:
    return _helm_release("upgrade", release, chart, namespace, values_path, timeout, version)


def helm_uninstall(release: str, namespace: str) -> Command:
    return cmd("helm", "uninstall", release, "--namespace", namespace)


def helm_rollback(release: str, namespace: str, revision: Optional[int] = None) -> Command:
    """Roll back to ``revision``, or to the previous one when omitted."""
    argv: List[str] = ["helm", "rollback", release]
    if revision is not None:
        argv.append(str(revision))
    argv += ["--namespace", namespace, "--wait"]
    return cmd(*argv)


def helm_status(release: str, namespace: str) -> Command:
    return cmd("helm", "status", release, "--namespace", namespace, "--output", "json")


def helm_version() -> Command:
    return cmd("helm", "version", "--short")


# ── kubectl ──────────────────────────────────────────────────────

def kubectl_apply_namespace(namespace: str) -> Command:
    """Idempotent namespace creation (dry-run rendered, then applied)."""
    create = cmd("kubectl", "create", "namespace", namespace,
                 "--dry-run=client", "-o", "yaml")
    return create.pipe(cmd("kubectl", "apply", "-f", "-"))


def kubectl_get(kind: str, name: str, namespace: str) -> Command:
    """Exit status alone answers "does it exist"."""
    return cmd("kubectl", "get", kind, name, "-n", namespace, "-o", "name")


def kubectl_get_nodes() -> Command:
    return cmd("kubectl", "get", "nodes", "--no-headers")


def kubectl_delete(kind: str, name: str, namespace: str) -> Command:
    return cmd("kubectl", "delete", kind, name, "-n", namespace, "--ignore-not-found=true")


def kubectl_delete_by_label(kind: str, selector: str, namespace: str) -> Command:
    return cmd("kubectl", "delete", kind, "-l", selector, "-n", namespace,
               "--ignore-not-found=true")


def kubectl_delete_namespace(namespace: str) -> Command:
    return cmd("kubectl", "delete", "namespace", namespace, "--ignore-not-found=true")


def kubectl_get_secret_field(secret: str, namespace: str, key: str = "password") -> Command:
    """Read one field of a secret, base64-decoded."""
    get = cmd("kubectl", "get", "secret", secret, "--namespace", namespace,
              "-o", f"jsonpath={{.data.{key}}}", suffix="2>/dev/null")
    return get.pipe(cmd("base64", "--decode"))


def kubectl_get_pod_name(namespace: str, selector: str) -> Command:
    return cmd("kubectl", "get", "pods", "-n", namespace, "-l", selector,
               "-o", "jsonpath={.items[0].metadata.name}")


def kubectl_exec_cat(namespace: str, pod: str, path: str) -> Command:
    return cmd("kubectl", "exec", "-n", namespace, pod, "--", "cat", path,
               suffix="2>/dev/null")


def kubectl_create_tls_secret(name: str, namespace: str, cert_path: str, key_path: str) -> Command:
    create = cmd("kubectl", "create", "secret", "tls", name, "-n", namespace,
                 "--cert", cert_path, "--key", key_path,
                 "--dry-run=client", "-o", "yaml")
    return create.pipe(cmd("kubectl", "apply", "-f", "-"))
