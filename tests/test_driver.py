"""Driver tests against a fake cluster.

Each test runs the production prober, executor, exposure selector and
driver; only the helm/kubectl subprocess layer is replaced.
"""

from __future__ import annotations

import dataclasses

from bootstrapper.commands import ErrorCategory
from bootstrapper.config import ApplicationsMode, Config
from bootstrapper.executor import ActionType
from bootstrapper.exposure import ExposurePhase
from bootstrapper.models import ManagedResource, ResourceKind
from bootstrapper.registry import ResourceRegistry
from bootstrapper.report import OutcomeStatus
from cluster_mock import FakeCluster, FakeClusterContext, ScriptedChoiceProvider

NAMESPACE = "automation-assessment"

INFRASTRUCTURE = ["namespace", "nginx-ingress", "argocd"]
APPLICATIONS = [
    "automation-assessment-cert",
    "mysql",
    "automation-assessment",
    "user-management-mysql",
    "user-management",
    "root-app",
]


def release_filter(name: str) -> tuple[str, ...]:
    """Argument prefix of the `helm list` probe for one release."""
    return ("list", "-n", NAMESPACE, "--all", "--filter", f"^{name}$")


def installed_releases(ctx: FakeClusterContext) -> list[str]:
    return [call[2] for call in ctx.runner.upgrade_installs]


class TestFullRun:
    """Tests for a run against an empty cluster."""

    def test_converges_everything(self, config: Config) -> None:
        """Test every resource is satisfied in dependency order."""
        ctx = FakeClusterContext(config)

        report = ctx.driver().run()

        assert report.exit_code == 0
        assert [o.resource for o in report.outcomes] == INFRASTRUCTURE + APPLICATIONS
        assert all(o.status == OutcomeStatus.SATISFIED for o in report.outcomes)
        assert report.infrastructure_complete
        assert report.applications_confirmed is True

        assert NAMESPACE in ctx.cluster.namespaces
        assert ctx.cluster.current_namespace == NAMESPACE
        assert (NAMESPACE, "automation-assessment-cert") in ctx.cluster.secrets
        assert installed_releases(ctx) == [
            "nginx-ingress",
            "argocd",
            "mysql",
            "automation-assessment",
            "user-management-mysql",
            "user-management",
            "root-app",
        ]

    def test_exposure_before_applications(self, config: Config) -> None:
        """Test Argo CD is exposed once, between the two passes."""
        ctx = FakeClusterContext(config)

        report = ctx.driver().run()

        assert report.exposure is not None
        assert report.exposure.phase == ExposurePhase.EXPOSED
        assert report.exposure.credential_emitted
        assert len(ctx.runner.background) == 1
        assert ctx.output.count("s3cr3t-admin") == 1

        calls = ctx.runner.calls
        tunnel_index = calls.index(tuple(ctx.runner.background[0].args))
        installs = [i for i, call in enumerate(calls) if call[1:3] == ("upgrade", "--install")]
        argocd_index = next(i for i in installs if calls[i][3] == "argocd")
        mysql_index = next(i for i in installs if calls[i][3] == "mysql")
        assert argocd_index < tunnel_index < mysql_index
        assert "Applications deployment initiated." in ctx.output
        assert f"Monitor with: kubectl get pods -n {NAMESPACE}" in ctx.output

    def test_second_run_is_idempotent(self, config: Config) -> None:
        """Test a rerun creates nothing and only upgrades upgrade-enabled releases."""
        ctx = FakeClusterContext(config)
        ctx.driver().run()
        ctx.reset_calls()

        report = ctx.driver().run()

        assert report.exit_code == 0
        actions = {o.action for o in report.outcomes}
        assert actions <= {ActionType.SKIP, ActionType.INSTALL_OR_UPGRADE}
        assert ctx.runner.commands("kubectl", "create") == []
        assert ctx.runner.commands("helm", "repo") == []
        assert "nginx-ingress" not in installed_releases(ctx)
        assert report.outcome("namespace").action == ActionType.SKIP
        assert report.outcome("automation-assessment-cert").action == ActionType.SKIP

    def test_existing_releases_are_kept(self, config: Config) -> None:
        """Test a pre-installed ingress controller is left alone."""
        cluster = FakeCluster()
        cluster.add_namespace(NAMESPACE)
        cluster.add_release(NAMESPACE, "nginx-ingress", chart="ingress-nginx-4.10.0")
        ctx = FakeClusterContext(config, cluster=cluster)

        report = ctx.driver().run()

        assert report.outcome("nginx-ingress").action == ActionType.SKIP
        assert cluster.release(NAMESPACE, "nginx-ingress").revision == 1
        assert ctx.runner.commands("helm", "repo") == []

    def test_argocd_installed_by_another_release(self, config: Config) -> None:
        """Test an existing Argo CD CRD skips the install and still exposes the server."""
        cluster = FakeCluster()
        cluster.add_namespace(NAMESPACE)
        cluster.add_crd("applications.argoproj.io")
        cluster.add_service(NAMESPACE, "argocd-server")
        cluster.add_secret(NAMESPACE, "argocd-initial-admin-secret", {"password": "existing"})
        ctx = FakeClusterContext(config, cluster=cluster)

        report = ctx.driver().run()

        assert report.exit_code == 0
        argocd = report.outcome("argocd")
        assert argocd.status == OutcomeStatus.SATISFIED
        assert argocd.action == ActionType.SKIP
        assert "argocd" not in installed_releases(ctx)
        assert cluster.release(NAMESPACE, "argocd") is None
        assert report.exposure is not None
        assert report.exposure.phase == ExposurePhase.EXPOSED
        assert "existing" in ctx.output
        assert report.outcome("root-app").status == OutcomeStatus.SATISFIED


class TestFailurePropagation:
    """Tests for blocked, unknown and fatal outcomes."""

    def test_failed_dependency_blocks_dependents(self, config: Config) -> None:
        """Test dependents of a failed release are blocked without probing."""
        ctx = FakeClusterContext(config)
        ctx.runner.fail(
            "helm",
            "upgrade",
            "--install",
            "mysql",
            stderr="Error: INSTALL FAILED: chart requires kubeVersion: >=1.29.0",
        )

        report = ctx.driver().run()

        mysql = report.outcome("mysql")
        assert mysql.status == OutcomeStatus.FAILED
        assert mysql.error == ErrorCategory.UNKNOWN

        app = report.outcome("automation-assessment")
        assert app.status == OutcomeStatus.BLOCKED
        assert app.blocked_by == ["mysql"]
        assert ctx.runner.commands("helm", *release_filter("automation-assessment")) == []

        root = report.outcome("root-app")
        assert root.status == OutcomeStatus.BLOCKED
        assert root.blocked_by == ["automation-assessment"]

        assert report.outcome("user-management").status == OutcomeStatus.SATISFIED
        # Application failures do not fail the run
        assert report.exit_code == 0

    def test_unknown_probe_blocks_infrastructure(self, config: Config) -> None:
        """Test an unknown state stops the run before exposure."""
        ctx = FakeClusterContext(config, provider=ScriptedChoiceProvider())
        ctx.runner.fail(
            "helm",
            *release_filter("nginx-ingress"),
            stderr="Error: Kubernetes cluster unreachable: dial tcp 10.0.0.1:443: i/o refused",
        )

        report = ctx.driver().run()

        ingress = report.outcome("nginx-ingress")
        assert ingress.status == OutcomeStatus.UNKNOWN
        assert ingress.error == ErrorCategory.UNKNOWN
        assert "nginx-ingress" not in installed_releases(ctx)
        assert report.outcome("argocd").status == OutcomeStatus.SATISFIED

        assert not report.infrastructure_complete
        assert report.exposure is None
        assert report.applications_confirmed is None
        assert ctx.runner.background == []
        assert report.exit_code == 1

    def test_permission_denied_aborts(self, config: Config) -> None:
        """Test a fatal error aborts everything still queued."""
        ctx = FakeClusterContext(config)
        ctx.runner.fail(
            "kubectl",
            "create",
            "namespace",
            stderr='Error from server (Forbidden): namespaces is forbidden: User "dev" cannot '
            'create resource "namespaces"',
        )

        report = ctx.driver().run()

        assert report.aborted
        assert report.exit_code == 1
        assert report.outcome("namespace").status == OutcomeStatus.FATAL
        for name in ("nginx-ingress", "argocd"):
            outcome = report.outcome(name)
            assert outcome.status == OutcomeStatus.BLOCKED
            assert outcome.message == "aborted after fatal error"
            assert outcome.blocked_by == ["namespace"]
        assert ctx.runner.commands("helm") == []

    def test_exposure_failure_skips_applications(self, config: Config) -> None:
        """Test a failed exposure ends the run before the confirmation."""
        config = dataclasses.replace(config, deploy_applications=ApplicationsMode.ASK)
        ctx = FakeClusterContext(
            config,
            cluster=FakeCluster(argocd_service=None),
            provider=ScriptedChoiceProvider(),
        )

        report = ctx.driver().run()

        assert report.infrastructure_complete
        assert report.exposure is not None
        assert report.exposure.error == ErrorCategory.SERVICE_NOT_FOUND
        assert ctx.provider.prompts == []
        assert installed_releases(ctx) == ["nginx-ingress", "argocd"]
        assert report.exit_code == 1

    def test_rollout_timeout_does_not_block(self, config: Config) -> None:
        """Test a rollout that is not confirmed still satisfies dependents."""
        ctx = FakeClusterContext(config)
        ctx.runner.fail(
            "kubectl",
            "rollout",
            "status",
            stderr="error: timed out waiting for the condition",
        )

        report = ctx.driver().run()

        mysql = report.outcome("mysql")
        assert mysql.status == OutcomeStatus.SATISFIED
        assert len(mysql.warnings) == 1
        assert report.outcome("automation-assessment").status == OutcomeStatus.SATISFIED
        assert report.exit_code == 0


class TestApplicationConfirmation:
    """Tests for the application-pass confirmation."""

    def _ask_config(self, config: Config) -> Config:
        return dataclasses.replace(config, deploy_applications=ApplicationsMode.ASK)

    def test_declined(self, config: Config) -> None:
        """Test a non-affirmative answer runs nothing from the application tier."""
        ctx = FakeClusterContext(
            self._ask_config(config), provider=ScriptedChoiceProvider(confirm="nope")
        )

        report = ctx.driver().run()

        assert report.exit_code == 0
        assert report.applications_confirmed is False
        assert [o.resource for o in report.outcomes] == INFRASTRUCTURE
        assert installed_releases(ctx) == ["nginx-ingress", "argocd"]
        assert ctx.runner.commands("kubectl", "get", "secret", "automation-assessment-cert") == []
        assert "Skipping application deployment." in ctx.output

    def test_accepted(self, config: Config) -> None:
        """Test yes in any case runs the application tier."""
        ctx = FakeClusterContext(
            self._ask_config(config), provider=ScriptedChoiceProvider(confirm="Y")
        )

        report = ctx.driver().run()

        assert report.applications_confirmed is True
        assert ctx.provider.prompts == ["confirm"]
        assert "root-app" in installed_releases(ctx)

    def test_configured_no(self, config: Config) -> None:
        """Test DEPLOY_APPLICATIONS=no skips without asking."""
        config = dataclasses.replace(config, deploy_applications=ApplicationsMode.NO)
        ctx = FakeClusterContext(config)

        report = ctx.driver().run()

        assert report.applications_confirmed is False
        assert ctx.provider.prompts == []


class TestDefaultNamespace:
    """Tests for pointing the kube context at the namespace."""

    def test_disabled(self, config: Config) -> None:
        """Test the context is left alone when disabled."""
        config = dataclasses.replace(config, set_default_namespace=False)
        ctx = FakeClusterContext(config)

        ctx.driver().run()

        assert ctx.cluster.current_namespace is None
        assert ctx.runner.commands("kubectl", "config", "set-context") == []

    def test_failure_is_warning(self, config: Config) -> None:
        """Test a context update failure leaves the namespace satisfied."""
        ctx = FakeClusterContext(config)
        ctx.runner.fail(
            "kubectl", "config", "set-context", stderr="error: current-context is not set"
        )

        report = ctx.driver().run()

        namespace = report.outcome("namespace")
        assert namespace.status == OutcomeStatus.SATISFIED
        assert namespace.warnings == [
            "Could not set default namespace: error: current-context is not set"
        ]
        assert report.exit_code == 0


class TestDryRun:
    """Tests for dry-run mode."""

    def test_cluster_untouched(self, config: Config) -> None:
        """Test a dry run walks every phase without changing the cluster."""
        config = dataclasses.replace(config, dry_run=True)
        ctx = FakeClusterContext(config)

        report = ctx.driver().run()

        assert report.exit_code == 0
        assert report.dry_run
        assert NAMESPACE not in ctx.cluster.namespaces
        assert ctx.cluster.releases == {}
        assert ctx.cluster.secrets == {}
        assert ctx.runner.background == []
        assert len(ctx.runner.upgrade_installs) == 7
        assert report.exposure is not None
        assert report.exposure.warnings == ["Credential poll skipped in dry-run mode"]


class TestCustomRegistry:
    """Tests for registries other than the built-in one."""

    def test_without_argocd(self, config: Config) -> None:
        """Test exposure is skipped when the registry has no Argo CD release."""
        registry = ResourceRegistry(
            [
                ManagedResource(
                    name="namespace", kind=ResourceKind.NAMESPACE, object_name=NAMESPACE
                )
            ]
        )
        ctx = FakeClusterContext(config)

        report = ctx.driver(registry).run()

        assert report.exit_code == 0
        assert report.exposure is None
        assert ctx.runner.background == []
        assert [o.resource for o in report.outcomes] == ["namespace"]
