"""Read-only state probes for managed resources.

A probe never raises and never mutates the cluster. Anything that
prevents a confident answer (auth, network, unparseable output) is
reported as UNKNOWN so the driver can block dependents instead of
racing a second install.
"""

from __future__ import annotations

import logging

from .commands import CommandError, CommandResult, ErrorCategory
from .kube import HelmClient, KubectlClient, object_absent
from .models import ManagedResource, ResourceKind, ResourceState

logger = logging.getLogger(__name__)


class StateProber:
    """Queries cluster and Helm state for one resource at a time."""

    def __init__(self, kubectl: KubectlClient, helm: HelmClient, namespace: str) -> None:
        self._kubectl = kubectl
        self._helm = helm
        self._namespace = namespace

    def probe(self, resource: ManagedResource) -> ResourceState:
        """Determine whether a resource currently exists.

        Args:
            resource: Resource descriptor.

        Returns:
            PRESENT, ABSENT, or UNKNOWN when the query itself failed.
        """
        if resource.kind == ResourceKind.NAMESPACE:
            state = self._from_get(resource, self._kubectl.get_namespace(resource.target_name))
        elif resource.kind == ResourceKind.SECRET:
            state = self._from_get(
                resource, self._kubectl.get_secret(resource.target_name, self._namespace)
            )
        else:
            state = self._probe_release(resource)

        logger.debug(
            "Probed resource",
            extra={"resource": resource.name, "kind": resource.kind.value, "state": state.value},
        )
        return state

    def _from_get(self, resource: ManagedResource, result: CommandResult) -> ResourceState:
        if result.ok:
            return ResourceState.PRESENT
        if object_absent(result):
            return ResourceState.ABSENT
        self._warn_unknown(resource, result.category, result.stderr.strip())
        return ResourceState.UNKNOWN

    def _probe_release(self, resource: ManagedResource) -> ResourceState:
        try:
            release = self._helm.find_release(resource.target_name, self._namespace)
        except CommandError as e:
            self._warn_unknown(resource, e.category, str(e))
            return ResourceState.UNKNOWN

        if release is None:
            return ResourceState.ABSENT
        if not release.deployed:
            # A failed or pending release is converged by install-or-upgrade
            logger.info(
                "Release listed but not deployed",
                extra={"resource": resource.name, "status": release.status},
            )
            return ResourceState.ABSENT
        return ResourceState.PRESENT

    def _warn_unknown(
        self, resource: ManagedResource, category: ErrorCategory | None, message: str
    ) -> None:
        logger.warning(
            "Probe failed, state unknown",
            extra={
                "resource": resource.name,
                "kind": resource.kind.value,
                "category": (category or ErrorCategory.UNKNOWN).value,
                "error": message,
            },
        )
