"""Typed wrappers over the kubectl and helm command-line tools.

The clients only build argument vectors and interpret output; execution,
timeouts and dry-run handling live in CommandRunner.
"""

from __future__ import annotations

import json
import logging
import subprocess
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from .commands import CommandError, CommandResult, CommandRunner, ErrorCategory

logger = logging.getLogger(__name__)

HELM_STATUS_DEPLOYED = "deployed"
KUBECTL_NOT_FOUND_REASON = "Error from server (NotFound)"


def object_absent(result: CommandResult) -> bool:
    """Whether a failed `kubectl get` reports the object itself as missing.

    Client-side failures such as an unknown context also mention "not found"
    but carry no server NotFound reason.
    """
    return not result.ok and KUBECTL_NOT_FOUND_REASON in result.stderr


class KubectlClient:
    """kubectl operations used by the prober, executor and exposure selector."""

    def __init__(
        self,
        runner: CommandRunner,
        binary: str = "kubectl",
        kubeconfig: str | None = None,
        context: str | None = None,
    ) -> None:
        self._runner = runner
        self._base_cmd = [binary]
        if kubeconfig:
            self._base_cmd.extend(["--kubeconfig", kubeconfig])
        if context:
            self._base_cmd.extend(["--context", context])

    def _run(self, *args: str, mutating: bool = False) -> CommandResult:
        return self._runner.run([*self._base_cmd, *args], mutating=mutating)

    # Reads

    def get_namespace(self, name: str) -> CommandResult:
        return self._run("get", "namespace", name, "-o", "name")

    def get_secret(self, name: str, namespace: str) -> CommandResult:
        return self._run("get", "secret", name, "-n", namespace, "-o", "name")

    def get_service(self, name: str, namespace: str) -> CommandResult:
        return self._run("get", f"svc/{name}", "-n", namespace, "-o", "name")

    def get_crd(self, name: str) -> CommandResult:
        return self._run("get", "crd", name, "-o", "name")

    def get_secret_field(self, name: str, namespace: str, field_name: str) -> CommandResult:
        """Read one base64-encoded data field of a secret."""
        return self._run(
            "get",
            "secret",
            name,
            "-n",
            namespace,
            "-o",
            f"jsonpath={{.data.{field_name}}}",
        )

    def current_context(self) -> str | None:
        """Get the current kubectl context, None if it cannot be determined."""
        result = self._run("config", "current-context")
        if not result.ok:
            return None
        return result.stdout.strip() or None

    # Writes

    def create_namespace(self, name: str) -> CommandResult:
        return self._run("create", "namespace", name, mutating=True)

    def create_secret_from_file(
        self, name: str, namespace: str, key: str, source_path: Path
    ) -> CommandResult:
        return self._run(
            "create",
            "secret",
            "generic",
            name,
            f"--from-file={key}={source_path}",
            "-n",
            namespace,
            mutating=True,
        )

    def set_context_namespace(self, namespace: str) -> CommandResult:
        """Point the current context at a namespace."""
        return self._run(
            "config", "set-context", "--current", f"--namespace={namespace}", mutating=True
        )

    def rollout_status(self, target: str, namespace: str, timeout_seconds: int) -> CommandResult:
        """Block until a rollout completes or the timeout elapses."""
        return self._run(
            "rollout", "status", target, "-n", namespace, f"--timeout={timeout_seconds}s"
        )

    def port_forward(
        self, service: str, namespace: str, local_port: int, remote_port: int
    ) -> subprocess.Popen[bytes] | None:
        """Start a background tunnel to a service. Never waited on."""
        return self._runner.start_background(
            [
                *self._base_cmd,
                "port-forward",
                f"svc/{service}",
                "-n",
                namespace,
                f"{local_port}:{remote_port}",
            ]
        )


@dataclass(frozen=True)
class HelmRelease:
    """One entry of `helm list` output."""

    name: str
    namespace: str
    status: str
    chart: str = ""
    revision: str = ""

    @property
    def deployed(self) -> bool:
        return self.status == HELM_STATUS_DEPLOYED


class HelmClient:
    """helm operations: release listing, repositories and install-or-upgrade."""

    def __init__(
        self,
        runner: CommandRunner,
        binary: str = "helm",
        kubeconfig: str | None = None,
        context: str | None = None,
    ) -> None:
        self._runner = runner
        self._base_cmd = [binary]
        if kubeconfig:
            self._base_cmd.extend(["--kubeconfig", kubeconfig])
        if context:
            self._base_cmd.extend(["--kube-context", context])

    def _run(self, *args: str, mutating: bool = False) -> CommandResult:
        return self._runner.run([*self._base_cmd, *args], mutating=mutating)

    def find_release(self, name: str, namespace: str) -> HelmRelease | None:
        """Look up a release by exact name in a namespace.

        Returns:
            The release, or None if no release with that name is listed.

        Raises:
            CommandError: If the query fails or its output cannot be parsed.
        """
        result = self._run(
            "list",
            "-n",
            namespace,
            "--all",
            "--filter",
            f"^{name}$",
            "--output",
            "json",
        ).raise_for_status()

        try:
            data: Any = json.loads(result.stdout or "[]")
        except json.JSONDecodeError as e:
            raise CommandError(
                f"Failed to parse helm list output as JSON: {e}",
                ErrorCategory.UNKNOWN,
                result.argv,
            ) from e

        if not isinstance(data, list):
            raise CommandError(
                f"Expected JSON list from helm list, got {type(data).__name__}",
                ErrorCategory.UNKNOWN,
                result.argv,
            )

        for item in data:
            if isinstance(item, dict) and item.get("name") == name:
                return HelmRelease(
                    name=name,
                    namespace=str(item.get("namespace", namespace)),
                    status=str(item.get("status", "")),
                    chart=str(item.get("chart", "")),
                    revision=str(item.get("revision", "")),
                )
        return None

    # Repository commands change local Helm configuration and count as writes

    def repo_add(self, name: str, url: str) -> CommandResult:
        # --force-update makes re-adding an existing repository a no-op.
        return self._run("repo", "add", name, url, "--force-update", mutating=True)

    def repo_update(self, name: str) -> CommandResult:
        return self._run("repo", "update", name, mutating=True)

    def upgrade_install(
        self,
        release: str,
        chart: str,
        namespace: str,
        values_files: Sequence[str | Path] = (),
        version: str | None = None,
    ) -> CommandResult:
        """Install the release if absent, upgrade it if present."""
        args = ["upgrade", "--install", release, chart, "--namespace", namespace]
        for values_file in values_files:
            args.extend(["-f", str(values_file)])
        if version:
            args.extend(["--version", version])
        return self._run(*args, mutating=True)
