"""Driver loop: probe, converge, expose, then the optional application pass.

The driver:
1. Validates the whole registry dependency graph before any action
2. Runs the infrastructure pass in stable dependency order
3. Exposes Argo CD exactly once, when every infrastructure resource is satisfied
4. Asks once whether to run the application pass, then runs it

Within a pass each resource is either blocked by an unsatisfied
dependency (no probe, no action) or probed and converged. A fatal error
aborts everything still queued.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from datetime import UTC, datetime

import click

from .commands import ErrorCategory
from .config import ARGOCD_RELEASE_NAME, ApplicationsMode, Config
from .dependency import DependencyGraph, order_resources
from .executor import ActionExecutor, ActionResult
from .exposure import ExposureResult, ExposureSelector
from .kube import KubectlClient
from .models import ManagedResource, ResourceKind, ResourceState, ResourceTier
from .prober import StateProber
from .prompts import ChoiceProvider, is_affirmative
from .registry import ResourceRegistry
from .report import OutcomeStatus, ResourceOutcome, RunReport, log_run_report

logger = logging.getLogger(__name__)


class PassResult:
    """Outcomes of one tier pass."""

    def __init__(self, tier: ResourceTier) -> None:
        self.tier = tier
        self.outcomes: list[ResourceOutcome] = []
        self.aborted = False

    @property
    def complete(self) -> bool:
        """Every resource in the pass reached Satisfied."""
        return not self.aborted and all(outcome.satisfied for outcome in self.outcomes)


class Driver:
    """Sequential reconciliation driver for a resource registry."""

    def __init__(
        self,
        config: Config,
        registry: ResourceRegistry,
        prober: StateProber,
        executor: ActionExecutor,
        kubectl: KubectlClient,
        provider: ChoiceProvider,
        emit: Callable[[str], None] = click.echo,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        """Initialize the driver.

        Raises:
            DependencyError: If the registry graph is invalid.
        """
        self._config = config
        self._registry = registry
        self._prober = prober
        self._executor = executor
        self._kubectl = kubectl
        self._provider = provider
        self._emit = emit
        self._sleep = sleep

        self._graph = DependencyGraph.from_resources(registry.list())
        self._graph.validate(known=())

    def run(self) -> RunReport:
        """Run the full reconciliation.

        Returns:
            RunReport with every outcome and the exit code.
        """
        report = RunReport(dry_run=self._config.dry_run)
        satisfied: set[str] = set()

        logger.info(
            "Starting reconciliation",
            extra={
                "namespace": self._config.namespace,
                "resources": len(self._registry),
                "dry_run": self._config.dry_run,
            },
        )

        infrastructure = self.run_pass(ResourceTier.INFRASTRUCTURE, satisfied)
        report.outcomes.extend(infrastructure.outcomes)
        report.aborted = infrastructure.aborted

        if not infrastructure.complete:
            logger.error(
                "Infrastructure pass incomplete, skipping exposure and applications",
                extra={
                    "unsatisfied": [
                        outcome.resource
                        for outcome in infrastructure.outcomes
                        if not outcome.satisfied
                    ],
                },
            )
            return self._finish(report)
        report.infrastructure_complete = True

        report.exposure = self._expose()
        if report.exposure is not None and not report.exposure.success:
            return self._finish(report)

        report.applications_confirmed = self._confirm_applications()
        if report.applications_confirmed:
            applications = self.run_pass(ResourceTier.APPLICATION, satisfied)
            report.outcomes.extend(applications.outcomes)
            report.aborted = applications.aborted
            if not report.aborted:
                self._emit("Applications deployment initiated.")
                self._emit(f"Monitor with: kubectl get pods -n {self._config.namespace}")
        else:
            logger.info("Skipping application deployment")
            self._emit("Skipping application deployment.")

        return self._finish(report)

    def run_pass(self, tier: ResourceTier, satisfied: set[str]) -> PassResult:
        """Probe and converge every resource of one tier.

        Args:
            tier: Tier to run.
            satisfied: Names satisfied so far; updated in place.

        Returns:
            PassResult with one outcome per resource of the tier.
        """
        result = PassResult(tier)
        queue = order_resources(self._registry.by_tier(tier))
        logger.info(
            "Starting %s pass",
            tier.value,
            extra={"tier": tier.value, "order": [resource.name for resource in queue]},
        )

        for index, resource in enumerate(queue):
            outcome = self._reconcile(resource, satisfied)
            result.outcomes.append(outcome)

            if outcome.satisfied:
                satisfied.add(resource.name)
                if resource.kind == ResourceKind.NAMESPACE:
                    self._after_namespace(resource, outcome)

            if outcome.status == OutcomeStatus.FATAL:
                result.aborted = True
                remaining = queue[index + 1 :]
                logger.error(
                    "Fatal error, aborting remaining resources",
                    extra={
                        "resource": resource.name,
                        "error": outcome.message,
                        "aborted": [r.name for r in remaining],
                    },
                )
                result.outcomes.extend(
                    ResourceOutcome(
                        resource=r.name,
                        tier=r.tier,
                        status=OutcomeStatus.BLOCKED,
                        message="aborted after fatal error",
                        blocked_by=[resource.name],
                    )
                    for r in remaining
                )
                break

        return result

    # -------------------------------------------------------------------------
    # Per-resource reconciliation
    # -------------------------------------------------------------------------

    def _reconcile(self, resource: ManagedResource, satisfied: set[str]) -> ResourceOutcome:
        blocked_by = self._graph.unsatisfied_dependencies(resource.name, satisfied)
        if blocked_by:
            logger.warning(
                "Blocked by unsatisfied dependencies",
                extra={"resource": resource.name, "blocked_by": blocked_by},
            )
            return ResourceOutcome(
                resource=resource.name,
                tier=resource.tier,
                status=OutcomeStatus.BLOCKED,
                blocked_by=blocked_by,
            )

        state = self._prober.probe(resource)
        if state == ResourceState.UNKNOWN:
            return ResourceOutcome(
                resource=resource.name,
                tier=resource.tier,
                status=OutcomeStatus.UNKNOWN,
                state=state,
                error=ErrorCategory.UNKNOWN,
                message="probe failed, state unknown",
            )

        action = self._executor.converge(resource, state)
        outcome = ResourceOutcome(
            resource=resource.name,
            tier=resource.tier,
            status=self._status_for(action),
            state=state,
            action=action.action,
            error=action.error,
            message=action.message,
            warnings=list(action.warnings),
        )
        self._log_outcome(outcome)
        return outcome

    @staticmethod
    def _status_for(action: ActionResult) -> OutcomeStatus:
        if action.success:
            return OutcomeStatus.SATISFIED
        if action.fatal:
            return OutcomeStatus.FATAL
        return OutcomeStatus.FAILED

    def _after_namespace(self, resource: ManagedResource, outcome: ResourceOutcome) -> None:
        """Point the current kube context at the target namespace."""
        if not self._config.set_default_namespace:
            return
        if resource.target_name != self._config.namespace:
            return

        context = self._kubectl.current_context()
        result = self._kubectl.set_context_namespace(self._config.namespace)
        if result.ok:
            logger.info(
                "Default namespace set",
                extra={"context": context, "namespace": self._config.namespace},
            )
            return

        warning = f"Could not set default namespace: {result.stderr.strip()}"
        logger.warning(
            "Could not set default namespace",
            extra={"context": context, "error": result.stderr.strip()},
        )
        outcome.warnings.append(warning)

    def _log_outcome(self, outcome: ResourceOutcome) -> None:
        extra = {
            "resource": outcome.resource,
            "tier": outcome.tier.value,
            "status": outcome.status.value,
            "state": outcome.state.value if outcome.state else None,
            "action": outcome.action.value if outcome.action else None,
        }
        if outcome.error is not None:
            extra["error"] = outcome.error.value
            extra["message"] = outcome.message
            logger.warning("Resource not converged", extra=extra)
        elif outcome.warnings:
            extra["warnings"] = outcome.warnings
            logger.warning("Resource converged with warnings", extra=extra)
        else:
            logger.info("Resource converged", extra=extra)

    # -------------------------------------------------------------------------
    # Exposure and confirmation
    # -------------------------------------------------------------------------

    def _expose(self) -> ExposureResult | None:
        if ARGOCD_RELEASE_NAME not in self._registry:
            logger.warning(
                "Registry has no Argo CD release, skipping exposure",
                extra={"release": ARGOCD_RELEASE_NAME},
            )
            return None

        selector = ExposureSelector(
            self._config,
            self._executor,
            self._kubectl,
            self._registry.get(ARGOCD_RELEASE_NAME),
            self._provider,
            emit=self._emit,
            sleep=self._sleep,
        )
        return selector.select()

    def _confirm_applications(self) -> bool:
        mode = self._config.deploy_applications
        if mode == ApplicationsMode.YES:
            return True
        if mode == ApplicationsMode.NO:
            return False
        return is_affirmative(self._provider.confirm_applications())

    def _finish(self, report: RunReport) -> RunReport:
        report.end_time = datetime.now(UTC)
        log_run_report(report)
        return report
