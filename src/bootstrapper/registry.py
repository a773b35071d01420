"""Resource registry: the static, ordered list of managed resources.

The registry is either the built-in environment layout (namespace,
ingress controller, Argo CD, SSL secret and the application releases) or
a YAML file supplied through REGISTRY_FILE. In both cases it is fixed
once constructed and validated before any action runs.

SECURITY: Registry files are size-limited and parsed with safe_load.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from pathlib import Path

import yaml
from pydantic import ValidationError

from .config import (
    ARGOCD_CRD_NAME,
    ARGOCD_RELEASE_NAME,
    MAX_REGISTRY_FILE_SIZE_BYTES,
    Config,
)
from .dependency import DependencyError, DependencyGraph
from .models import (
    HelmReleaseSpec,
    HelmRepository,
    ManagedResource,
    RegistrySpec,
    ResourceKind,
    ResourceTier,
    SecretSpec,
)

logger = logging.getLogger(__name__)

INGRESS_NGINX_REPO_NAME = "ingress-nginx"
INGRESS_NGINX_REPO_URL = "https://kubernetes.github.io/ingress-nginx"
NAMESPACE_RESOURCE_NAME = "namespace"
SSL_SECRET_NAME = "automation-assessment-cert"
SSL_SECRET_KEY = "server-cert.crt"


class RegistryError(Exception):
    """Raised when a registry cannot be loaded or fails validation."""

    pass


class ResourceRegistry:
    """Immutable, validated sequence of managed resources."""

    def __init__(self, resources: Iterable[ManagedResource]) -> None:
        """Build and validate a registry.

        Raises:
            RegistryError: On duplicate names, unknown dependencies, cycles, or
                infrastructure resources depending on application resources.
        """
        self._resources = tuple(resources)

        names = [resource.name for resource in self._resources]
        duplicates = sorted({name for name in names if names.count(name) > 1})
        if duplicates:
            raise RegistryError(f"Resource names must be unique, duplicated: {duplicates}")

        graph = DependencyGraph.from_resources(self._resources)
        try:
            graph.validate(known=())
        except DependencyError as e:
            raise RegistryError(f"Invalid dependency graph: {e}") from e

        self._by_name = {resource.name: resource for resource in self._resources}

        # The infrastructure pass completes before any application resource runs
        backwards = [
            f"{resource.name} -> {dependency}"
            for resource in self._resources
            if resource.tier == ResourceTier.INFRASTRUCTURE
            for dependency in resource.depends_on
            if self._by_name[dependency].tier == ResourceTier.APPLICATION
        ]
        if backwards:
            raise RegistryError(
                f"Infrastructure resources cannot depend on application resources: {backwards}"
            )

    def list(self) -> tuple[ManagedResource, ...]:
        return self._resources

    def get(self, name: str) -> ManagedResource:
        try:
            return self._by_name[name]
        except KeyError:
            raise KeyError(f"Unknown resource '{name}'") from None

    def __contains__(self, name: object) -> bool:
        return name in self._by_name

    def __len__(self) -> int:
        return len(self._resources)

    def by_tier(self, tier: ResourceTier) -> tuple[ManagedResource, ...]:
        return tuple(resource for resource in self._resources if resource.tier == tier)

    def infrastructure(self) -> tuple[ManagedResource, ...]:
        return self.by_tier(ResourceTier.INFRASTRUCTURE)

    def applications(self) -> tuple[ManagedResource, ...]:
        return self.by_tier(ResourceTier.APPLICATION)


def _local_release(
    name: str,
    charts_dir: Path,
    chart: str,
    depends_on: list[str],
    *,
    wait_for: str | None = None,
) -> ManagedResource:
    return ManagedResource(
        name=name,
        kind=ResourceKind.HELM_RELEASE,
        tier=ResourceTier.APPLICATION,
        depends_on=depends_on,
        upgrade=True,
        desired_spec=HelmReleaseSpec(
            chart=str(charts_dir / chart),
            wait_for=wait_for,
        ),
    )


def default_registry(config: Config) -> ResourceRegistry:
    """Build the standard automation-assessment environment layout."""
    charts = config.charts_dir

    resources = [
        ManagedResource(
            name=NAMESPACE_RESOURCE_NAME,
            kind=ResourceKind.NAMESPACE,
            object_name=config.namespace,
        ),
        ManagedResource(
            name="nginx-ingress",
            kind=ResourceKind.HELM_RELEASE,
            depends_on=[NAMESPACE_RESOURCE_NAME],
            desired_spec=HelmReleaseSpec(
                chart=f"{INGRESS_NGINX_REPO_NAME}/ingress-nginx",
                repository=HelmRepository(
                    name=INGRESS_NGINX_REPO_NAME, url=INGRESS_NGINX_REPO_URL
                ),
            ),
        ),
        ManagedResource(
            name=ARGOCD_RELEASE_NAME,
            kind=ResourceKind.HELM_RELEASE,
            depends_on=[NAMESPACE_RESOURCE_NAME],
            upgrade=True,
            desired_spec=HelmReleaseSpec(
                chart=str(charts / "argo-cd"),
                values_files=[str(charts / "argo-cd" / "values.yaml")],
                skip_if_crd=ARGOCD_CRD_NAME,
            ),
        ),
        ManagedResource(
            name=SSL_SECRET_NAME,
            kind=ResourceKind.SECRET,
            tier=ResourceTier.APPLICATION,
            depends_on=[NAMESPACE_RESOURCE_NAME],
            desired_spec=SecretSpec(source_path=config.ssl_cert_path, key=SSL_SECRET_KEY),
        ),
        _local_release(
            "mysql", charts, "mysql", [NAMESPACE_RESOURCE_NAME], wait_for="deployment/mysql"
        ),
        _local_release("automation-assessment", charts, "automation-assessment", ["mysql"]),
        _local_release(
            "user-management-mysql", charts, "user-management-mysql", [NAMESPACE_RESOURCE_NAME]
        ),
        _local_release(
            "user-management", charts, "user-management", ["user-management-mysql"]
        ),
        _local_release(
            "root-app",
            charts,
            "root-app",
            [ARGOCD_RELEASE_NAME, "automation-assessment", "user-management"],
        ),
    ]
    return ResourceRegistry(resources)


def load_registry(path: Path) -> ResourceRegistry:
    """Load and validate a registry from YAML.

    Accepts a flat document with a top-level `resources` list, or a
    Kubernetes-style wrapper with apiVersion/kind/spec.resources.

    Args:
        path: Registry file.

    Returns:
        Validated registry.

    Raises:
        RegistryError: If the file cannot be loaded or fails validation.
    """
    if not path.exists():
        raise RegistryError(f"Registry file not found: {path}")

    # SECURITY: Check file size before reading to prevent DoS
    try:
        file_size = path.stat().st_size
    except OSError as e:
        raise RegistryError(f"Failed to stat registry file {path}: {e}") from e

    if file_size > MAX_REGISTRY_FILE_SIZE_BYTES:
        raise RegistryError(
            f"Registry file exceeds maximum size of {MAX_REGISTRY_FILE_SIZE_BYTES} bytes: {path}"
        )

    try:
        content = path.read_text(encoding="utf-8")
    except OSError as e:
        raise RegistryError(f"Failed to read registry file {path}: {e}") from e

    try:
        raw_data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise RegistryError(f"Invalid YAML in {path}: {e}") from e

    if not isinstance(raw_data, dict):
        raise RegistryError(f"Registry file must contain a YAML mapping: {path}")

    if "apiVersion" in raw_data and "spec" in raw_data:
        spec_data = raw_data.get("spec", {})
        if not isinstance(spec_data, dict):
            raise RegistryError(f"Spec section must be a mapping: {path}")
    else:
        spec_data = raw_data

    try:
        spec = RegistrySpec.model_validate(spec_data)
    except ValidationError as e:
        errors = []
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"])
            errors.append(f"  - {loc}: {error['msg']}")
        error_list = "\n".join(errors)
        raise RegistryError(f"Validation failed for {path}:\n{error_list}") from e

    if not spec.resources:
        raise RegistryError(f"Registry file declares no resources: {path}")

    registry = ResourceRegistry(spec.resources)
    logger.info("Loaded registry with %d resources from %s", len(registry), path)
    return registry


def build_registry(config: Config) -> ResourceRegistry:
    """Registry for a run: the configured file, else the built-in layout."""
    if config.registry_file is not None:
        return load_registry(config.registry_file)
    return default_registry(config)
