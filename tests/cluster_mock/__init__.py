"""Fake helm/kubectl cluster for integration testing.

This package interprets the driver's helm and kubectl command lines
against in-memory state, so the reconciliation logic can be tested
without binaries or a cluster.

Key Features:
- In-memory namespaces, secrets, services, repositories and releases
- Argo CD install side effects (server service, delayed admin secret)
- Error injection by command prefix, with realistic tool messages
- Call recording, including which calls were mutating
- Background processes that record whether anything waited on them

Usage:
    from cluster_mock import FakeClusterContext, ScriptedChoiceProvider

    ctx = FakeClusterContext(config, provider=ScriptedChoiceProvider(exposure="2", port=""))
    report = ctx.driver().run()

    assert report.exit_code == 0
    assert ctx.runner.background[0].wait_calls == 0
"""

from .cluster import FakeCluster, FakeRelease
from .context import FakeClusterContext, RecordingSleep, ScriptedChoiceProvider
from .runner import FakeCommandRunner, FakeProcess

__all__ = [
    "FakeCluster",
    "FakeClusterContext",
    "FakeCommandRunner",
    "FakeProcess",
    "FakeRelease",
    "RecordingSleep",
    "ScriptedChoiceProvider",
]
