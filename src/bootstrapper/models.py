"""Pydantic models for managed resource descriptors.

These models provide:
1. Type-safe YAML parsing of registry files
2. Validation at the boundary (fail fast, fail loudly)
3. Kind-specific payload access for the prober and executor
"""

from __future__ import annotations

from enum import Enum
from pathlib import Path
from typing import Annotated

from pydantic import BaseModel, Field, field_validator, model_validator

# Helm release names are capped at 53 characters; Kubernetes object names
# follow DNS-1123 label rules.
MAX_RESOURCE_NAME_LENGTH = 53
MAX_OBJECT_NAME_LENGTH = 63
VALID_RESOURCE_NAME_PATTERN = r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?$"
VALID_ROLLOUT_TARGET_PATTERN = (
    r"^(deployment|statefulset|daemonset)/[a-z0-9]([-a-z0-9.]*[a-z0-9])?$"
)


class ResourceKind(str, Enum):
    """Kinds of desired state the driver knows how to converge."""

    NAMESPACE = "Namespace"
    HELM_RELEASE = "HelmRelease"
    SECRET = "Secret"


class ResourceTier(str, Enum):
    """Reconciliation pass a resource belongs to."""

    INFRASTRUCTURE = "infrastructure"
    APPLICATION = "application"


class ResourceState(str, Enum):
    """Result of probing one resource. Recomputed on every pass."""

    ABSENT = "absent"
    PRESENT = "present"
    UNKNOWN = "unknown"  # Probe failed


# =============================================================================
# Kind-specific payloads
# =============================================================================


class HelmRepository(BaseModel):
    """Chart repository added before installing a `repo/chart` reference."""

    model_config = {"extra": "ignore", "frozen": True}

    name: Annotated[str, Field(min_length=1)]
    url: Annotated[str, Field(min_length=1)]

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        if not v.startswith(("https://", "http://", "oci://")):
            raise ValueError("url must start with https://, http:// or oci://")
        return v


class HelmReleaseSpec(BaseModel):
    """Desired chart and values for a Helm release."""

    model_config = {"extra": "ignore", "frozen": True, "populate_by_name": True}

    chart: Annotated[str, Field(min_length=1)]
    repository: HelmRepository | None = None
    values_files: list[str] = Field(default_factory=list, alias="valuesFiles")
    version: str | None = None

    # Rollout to wait on after converging, e.g. "deployment/mysql"
    wait_for: str | None = Field(None, alias="waitFor", pattern=VALID_ROLLOUT_TARGET_PATTERN)

    # Install is skipped while this CRD exists but the release is absent, e.g.
    # when another release already owns the chart's CRDs
    skip_if_crd: str | None = Field(None, alias="skipIfCrd", min_length=1)


class SecretSpec(BaseModel):
    """Generic secret created from a local file."""

    model_config = {"extra": "ignore", "frozen": True, "populate_by_name": True}

    source_path: Path = Field(alias="sourcePath")

    # Data key inside the secret; defaults to the file name
    key: str | None = None

    @property
    def data_key(self) -> str:
        return self.key or self.source_path.name


# =============================================================================
# Managed resource
# =============================================================================


class ManagedResource(BaseModel):
    """One unit of desired state in the registry."""

    model_config = {"extra": "ignore", "frozen": True, "populate_by_name": True}

    name: Annotated[
        str,
        Field(
            min_length=1,
            max_length=MAX_RESOURCE_NAME_LENGTH,
            pattern=VALID_RESOURCE_NAME_PATTERN,
        ),
    ]
    kind: ResourceKind
    tier: ResourceTier = ResourceTier.INFRASTRUCTURE

    # Name of the object in the cluster when it differs from the registry name
    object_name: str | None = Field(
        None,
        alias="objectName",
        max_length=MAX_OBJECT_NAME_LENGTH,
        pattern=VALID_RESOURCE_NAME_PATTERN,
    )

    # Names of resources that must be satisfied before this one is attempted
    depends_on: list[str] = Field(default_factory=list, alias="dependsOn")

    # Use install-or-upgrade even when the resource is already present
    upgrade: bool = False

    desired_spec: HelmReleaseSpec | SecretSpec | None = Field(None, alias="desiredSpec")

    @field_validator("depends_on")
    @classmethod
    def validate_depends_on(cls, v: list[str]) -> list[str]:
        if len(set(v)) != len(v):
            raise ValueError("dependsOn must not contain duplicates")
        return v

    @model_validator(mode="after")
    def validate_kind_payload(self) -> ManagedResource:
        if self.name in self.depends_on:
            raise ValueError(f"resource '{self.name}' cannot depend on itself")

        if self.kind == ResourceKind.HELM_RELEASE:
            if not isinstance(self.desired_spec, HelmReleaseSpec):
                raise ValueError("HelmRelease resources require a desiredSpec with a chart")
        elif self.kind == ResourceKind.SECRET:
            if not isinstance(self.desired_spec, SecretSpec):
                raise ValueError("Secret resources require a desiredSpec with a sourcePath")
        elif self.desired_spec is not None:
            raise ValueError("Namespace resources take no desiredSpec")
        return self

    @property
    def target_name(self) -> str:
        """Name the prober and executor use against the cluster."""
        return self.object_name or self.name

    @property
    def helm(self) -> HelmReleaseSpec:
        """Helm payload. Only valid for HelmRelease resources."""
        if not isinstance(self.desired_spec, HelmReleaseSpec):
            raise TypeError(f"resource '{self.name}' is not a HelmRelease")
        return self.desired_spec

    @property
    def secret(self) -> SecretSpec:
        """Secret payload. Only valid for Secret resources."""
        if not isinstance(self.desired_spec, SecretSpec):
            raise TypeError(f"resource '{self.name}' is not a Secret")
        return self.desired_spec


class RegistrySpec(BaseModel):
    """Root of a registry YAML file."""

    model_config = {"extra": "ignore"}

    resources: list[ManagedResource] = Field(default_factory=list)

    @field_validator("resources")
    @classmethod
    def validate_unique_names(cls, v: list[ManagedResource]) -> list[ManagedResource]:
        seen: set[str] = set()
        duplicates: set[str] = set()
        for resource in v:
            if resource.name in seen:
                duplicates.add(resource.name)
            seen.add(resource.name)
        if duplicates:
            raise ValueError(f"resource names must be unique, duplicated: {sorted(duplicates)}")
        return v
