"""Convergent actions for managed resources.

The executor issues the minimal external command that moves a resource
to its desired state:

- PRESENT and no upgrade requested: nothing (zero mutating calls)
- ABSENT namespace / secret: `kubectl create`
- HelmRelease (absent, or present with upgrade requested):
  one `helm upgrade --install`, which succeeds whether or not the
  release exists
- Absent HelmRelease whose guard CRD already exists: nothing, the chart is
  installed by another release
- UNKNOWN: nothing; the driver decides what an unknown state blocks

Creation races (Conflict) are resolved by re-probing: if the resource
now exists another actor created it and the result counts as converged.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from enum import Enum

from .commands import CommandError, CommandResult, ErrorCategory
from .kube import HelmClient, KubectlClient
from .models import ManagedResource, ResourceKind, ResourceState
from .prober import StateProber

logger = logging.getLogger(__name__)


class ActionType(str, Enum):
    """Action chosen for a resource."""

    SKIP = "skip"
    CREATE = "create"
    INSTALL_OR_UPGRADE = "install-or-upgrade"
    NONE = "none"  # No action possible (unknown state)


@dataclass
class ActionResult:
    """Result of converging one resource."""

    resource: str
    action: ActionType
    applied: bool = False
    error: ErrorCategory | None = None
    message: str = ""
    warnings: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.error is None

    @property
    def fatal(self) -> bool:
        return self.error is not None and self.error.is_fatal


class ActionExecutor:
    """Applies create / install-or-upgrade actions through kubectl and helm."""

    def __init__(
        self,
        kubectl: KubectlClient,
        helm: HelmClient,
        prober: StateProber,
        namespace: str,
        rollout_timeout_seconds: int = 120,
    ) -> None:
        self._kubectl = kubectl
        self._helm = helm
        self._prober = prober
        self._namespace = namespace
        self._rollout_timeout = rollout_timeout_seconds

    @staticmethod
    def plan_action(
        resource: ManagedResource, state: ResourceState, *, force_upgrade: bool = False
    ) -> ActionType:
        """Action converge() would take for a probed state. Issues no command."""
        if state == ResourceState.UNKNOWN:
            return ActionType.NONE
        if resource.kind == ResourceKind.HELM_RELEASE:
            if state == ResourceState.ABSENT or force_upgrade or resource.upgrade:
                return ActionType.INSTALL_OR_UPGRADE
            return ActionType.SKIP
        if state == ResourceState.PRESENT:
            return ActionType.SKIP
        return ActionType.CREATE

    def converge(
        self,
        resource: ManagedResource,
        state: ResourceState,
        *,
        force_upgrade: bool = False,
        extra_values: Sequence[str] = (),
    ) -> ActionResult:
        """Bring a resource to its desired state.

        Args:
            resource: Resource descriptor.
            state: Result of the preceding probe.
            force_upgrade: Request install-or-upgrade even when present.
            extra_values: Additional values files layered over the declared ones.

        Returns:
            ActionResult describing what was done.
        """
        action = self.plan_action(resource, state, force_upgrade=force_upgrade)

        if action == ActionType.NONE:
            return ActionResult(
                resource=resource.name,
                action=action,
                error=ErrorCategory.UNKNOWN,
                message="state unknown, no action taken",
            )

        if action == ActionType.SKIP:
            logger.info(
                "Already present, skipping",
                extra={"resource": resource.name, "kind": resource.kind.value},
            )
            return ActionResult(resource=resource.name, action=action)

        if resource.kind == ResourceKind.NAMESPACE:
            return self._create_namespace(resource)
        if resource.kind == ResourceKind.SECRET:
            return self._create_secret(resource)
        if state == ResourceState.ABSENT and self._crd_exists(resource):
            return ActionResult(
                resource=resource.name,
                action=ActionType.SKIP,
                message=f"custom resource definition {resource.helm.skip_if_crd} already exists",
            )
        return self._install_or_upgrade(resource, state, extra_values)

    # -------------------------------------------------------------------------
    # Namespace / Secret
    # -------------------------------------------------------------------------

    def _create_namespace(self, resource: ManagedResource) -> ActionResult:
        logger.info("Creating namespace", extra={"namespace": resource.target_name})
        result = self._kubectl.create_namespace(resource.target_name)
        return self._finish(resource, ActionType.CREATE, result)

    def _create_secret(self, resource: ManagedResource) -> ActionResult:
        spec = resource.secret
        if not spec.source_path.is_file():
            message = f"Secret source file not found: {spec.source_path}"
            logger.warning(
                "Secret source file not found",
                extra={"resource": resource.name, "source_path": str(spec.source_path)},
            )
            return ActionResult(
                resource=resource.name,
                action=ActionType.CREATE,
                error=ErrorCategory.NOT_FOUND,
                message=message,
            )

        logger.info(
            "Creating secret",
            extra={"resource": resource.name, "secret": resource.target_name},
        )
        result = self._kubectl.create_secret_from_file(
            resource.target_name, self._namespace, spec.data_key, spec.source_path
        )
        return self._finish(resource, ActionType.CREATE, result)

    # -------------------------------------------------------------------------
    # Helm releases
    # -------------------------------------------------------------------------

    def _crd_exists(self, resource: ManagedResource) -> bool:
        crd = resource.helm.skip_if_crd
        if crd is None:
            return False
        # Absent or unreadable CRDs fall through to a regular install
        if not self._kubectl.get_crd(crd).ok:
            return False
        logger.info(
            "Custom resource definition already exists, skipping install",
            extra={"resource": resource.name, "crd": crd},
        )
        return True

    def _install_or_upgrade(
        self,
        resource: ManagedResource,
        state: ResourceState,
        extra_values: Sequence[str],
    ) -> ActionResult:
        spec = resource.helm

        if spec.repository is not None:
            repo_error = self._ensure_repository(resource)
            if repo_error is not None:
                return repo_error

        values_files = [*spec.values_files, *extra_values]
        logger.info(
            "Installing release" if state == ResourceState.ABSENT else "Upgrading release",
            extra={
                "resource": resource.name,
                "release": resource.target_name,
                "chart": spec.chart,
                "values_files": values_files,
            },
        )
        result = self._helm.upgrade_install(
            resource.target_name,
            spec.chart,
            self._namespace,
            values_files=values_files,
            version=spec.version,
        )
        action_result = self._finish(resource, ActionType.INSTALL_OR_UPGRADE, result)

        if action_result.applied and spec.wait_for and not result.dry_run:
            warning = self._wait_for_rollout(resource, spec.wait_for)
            if warning:
                action_result.warnings.append(warning)

        return action_result

    def _ensure_repository(self, resource: ManagedResource) -> ActionResult | None:
        repository = resource.helm.repository
        assert repository is not None

        for step in (
            lambda: self._helm.repo_add(repository.name, repository.url),
            lambda: self._helm.repo_update(repository.name),
        ):
            try:
                step().raise_for_status()
            except CommandError as e:
                logger.error(
                    "Helm repository setup failed",
                    extra={
                        "resource": resource.name,
                        "repository": repository.name,
                        "category": e.category.value,
                        "error": str(e),
                    },
                )
                return ActionResult(
                    resource=resource.name,
                    action=ActionType.INSTALL_OR_UPGRADE,
                    error=e.category,
                    message=str(e),
                )
        return None

    def _wait_for_rollout(self, resource: ManagedResource, target: str) -> str | None:
        """Wait for a rollout. Failures are warnings, never errors."""
        logger.info(
            "Waiting for rollout",
            extra={
                "resource": resource.name,
                "target": target,
                "timeout_seconds": self._rollout_timeout,
            },
        )
        result = self._kubectl.rollout_status(target, self._namespace, self._rollout_timeout)
        if result.ok:
            return None

        category = result.category or ErrorCategory.UNKNOWN
        warning = f"Rollout of {target} not confirmed ({category.value}): {result.stderr.strip()}"
        logger.warning(
            "Rollout not confirmed, continuing",
            extra={"resource": resource.name, "target": target, "category": category.value},
        )
        return warning

    # -------------------------------------------------------------------------
    # Result handling
    # -------------------------------------------------------------------------

    def _finish(
        self, resource: ManagedResource, action: ActionType, result: CommandResult
    ) -> ActionResult:
        if result.ok:
            return ActionResult(resource=resource.name, action=action, applied=True)

        category = result.category or ErrorCategory.UNKNOWN
        message = result.stderr.strip() or f"exit code {result.returncode}"

        if category == ErrorCategory.CONFLICT:
            # Another actor raced us; converged if the resource now exists
            if self._prober.probe(resource) == ResourceState.PRESENT:
                logger.info(
                    "Conflict resolved by re-probe, resource exists",
                    extra={"resource": resource.name, "error": message},
                )
                return ActionResult(resource=resource.name, action=action, message=message)

        log = logger.error if category.is_fatal else logger.warning
        log(
            "Action failed",
            extra={
                "resource": resource.name,
                "action": action.value,
                "category": category.value,
                "error": message,
            },
        )
        return ActionResult(resource=resource.name, action=action, error=category, message=message)
