"""Kubernetes cluster interaction via kubectl subprocess calls.

All calls go through ``kubectl`` so the engine uses whatever kubeconfig /
context the operator has active, with no in-process Kubernetes client
library.  Pods are only ever read; the only objects written are the
``ImageCertificationInfo`` inventory records.
"""

from __future__ import annotations

import json
import logging
import shlex
import subprocess
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

from imagecertinfo.errors import WorkloadReadError

logger = logging.getLogger(__name__)

# Maximum output we'll capture from kubectl to avoid memory blowup.
_MAX_OUTPUT_BYTES = 8 * 1024 * 1024  # 8 MB, pod lists on large clusters are big

_NOT_FOUND_MARKERS = ("NotFound", "not found")


@dataclass
class CommandResult:
    """Result of a kubectl command execution."""

    command: str
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def not_found(self) -> bool:
        return not self.ok and any(m in self.stderr for m in _NOT_FOUND_MARKERS)

    @property
    def summary(self) -> str:
        if self.ok:
            return self.stdout[:2000] if len(self.stdout) > 2000 else self.stdout
        return f"ERROR (rc={self.returncode}): {self.stderr[:1000]}"

    def json(self) -> Any:
        return json.loads(self.stdout)


@runtime_checkable
class WorkloadReader(Protocol):
    """Read-only access to pods."""

    def get_pod(self, namespace: str, name: str) -> dict[str, Any] | None: ...

    def list_pods(self) -> list[dict[str, Any]]: ...


@dataclass
class ClusterClient:
    """Interface to a Kubernetes cluster via kubectl.

    Parameters
    ----------
    kubeconfig : str
        Path to kubeconfig file.  Empty string means use the default.
    context : str
        Kubernetes context to use.  Empty string means use the current context.
    timeout : int
        Seconds before a kubectl invocation is abandoned.
    """

    kubeconfig: str = ""
    context: str = ""
    timeout: int = 30
    _base_cmd: list[str] = field(init=False, default_factory=list)

    def __post_init__(self) -> None:
        self._base_cmd = ["kubectl"]
        if self.kubeconfig:
            self._base_cmd += ["--kubeconfig", self.kubeconfig]
        if self.context:
            self._base_cmd += ["--context", self.context]

    # ── Low-level executor ────────────────────────────────────────────────

    def _run(self, args: list[str], stdin: str | None = None) -> CommandResult:
        """Run a kubectl command and return the result."""
        cmd = self._base_cmd + args
        cmd_str = shlex.join(cmd)
        logger.debug("kubectl: %s", cmd_str)

        try:
            proc = subprocess.run(
                cmd,
                input=stdin,
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
            return CommandResult(
                command=cmd_str,
                returncode=proc.returncode,
                stdout=proc.stdout[:_MAX_OUTPUT_BYTES],
                stderr=proc.stderr[:_MAX_OUTPUT_BYTES],
            )
        except subprocess.TimeoutExpired:
            return CommandResult(
                command=cmd_str,
                returncode=-1,
                stdout="",
                stderr=f"Command timed out after {self.timeout}s",
            )
        except FileNotFoundError:
            return CommandResult(
                command=cmd_str,
                returncode=-1,
                stdout="",
                stderr="kubectl not found. Is it installed and on the PATH?",
            )

    # ── Workload reads ────────────────────────────────────────────────────

    def get_pod(self, namespace: str, name: str) -> dict[str, Any] | None:
        """Return the pod object, or *None* when it no longer exists."""
        result = self._run(["get", "pod", name, "-n", namespace, "-o", "json"])
        if result.not_found:
            return None
        if not result.ok:
            raise WorkloadReadError(f"reading pod {namespace}/{name}: {result.summary}")
        try:
            return result.json()
        except json.JSONDecodeError as exc:
            raise WorkloadReadError(f"decoding pod {namespace}/{name}: {exc}") from exc

    def list_pods(self, namespace: str = "") -> list[dict[str, Any]]:
        """List pods in *namespace*, or across all namespaces."""
        args = ["get", "pods", "-o", "json"]
        args += ["-n", namespace] if namespace else ["--all-namespaces"]
        result = self._run(args)
        if not result.ok:
            raise WorkloadReadError(f"listing pods: {result.summary}")
        try:
            return result.json().get("items", [])
        except json.JSONDecodeError as exc:
            raise WorkloadReadError(f"decoding pod list: {exc}") from exc

    # ── Generic object access ─────────────────────────────────────────────

    def get_object(self, resource: str, name: str) -> CommandResult:
        return self._run(["get", resource, name, "-o", "json"])

    def list_objects(self, resource: str) -> CommandResult:
        return self._run(["get", resource, "-o", "json"])

    def create_manifest(self, manifest: dict[str, Any]) -> CommandResult:
        """Create an object from a manifest passed on stdin."""
        logger.debug("kubectl create (stdin): %s", manifest.get("metadata", {}).get("name", ""))
        return self._run(["create", "-f", "-", "-o", "json"], stdin=json.dumps(manifest))

    def replace_manifest(self, manifest: dict[str, Any], subresource: str = "") -> CommandResult:
        """Replace an object (or one of its subresources) from a manifest on stdin.

        The manifest's ``metadata.resourceVersion`` makes the write conditional.
        """
        args = ["replace", "-f", "-", "-o", "json"]
        if subresource:
            args.append(f"--subresource={subresource}")
        return self._run(args, stdin=json.dumps(manifest))
