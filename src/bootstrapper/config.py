"""Configuration management with validation.

All settings come from environment variables and are validated at load
time, so a bad value fails the run before any cluster call is made.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path


class ExposureMethod(str, Enum):
    """How Argo CD is made reachable after installation."""

    INTERACTIVE = "interactive"
    INGRESS = "ingress"
    PORT_FORWARD = "port-forward"


class ApplicationsMode(str, Enum):
    """Whether the application-tier pass runs."""

    ASK = "ask"
    YES = "yes"
    NO = "no"


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Configuration constants with documented bounds
DEFAULT_NAMESPACE = "automation-assessment"
DEFAULT_PORT_FORWARD_PORT = 8080
DEFAULT_SSL_CERT_PATH = "./certs/server-cert.crt"

DEFAULT_CREDENTIAL_POLL_ATTEMPTS = 30
MAX_CREDENTIAL_POLL_ATTEMPTS = 300
DEFAULT_CREDENTIAL_POLL_INTERVAL_SECONDS = 1.0

DEFAULT_ROLLOUT_TIMEOUT_SECONDS = 120
DEFAULT_COMMAND_TIMEOUT_SECONDS = 600
MAX_COMMAND_TIMEOUT_SECONDS = 3600

MAX_REGISTRY_FILE_SIZE_BYTES = 1024 * 1024  # 1MB max registry file

# Argo CD constants
ARGOCD_RELEASE_NAME = "argocd"
ARGOCD_CRD_NAME = "applications.argoproj.io"
ARGOCD_SERVICE_CANDIDATES: tuple[str, ...] = ("argocd-server", "argo-cd-argocd-server")
ARGOCD_ADMIN_SECRET_NAME = "argocd-initial-admin-secret"
ARGOCD_ADMIN_SECRET_FIELD = "password"
ARGOCD_SERVICE_PORT = 443

# Input validation patterns
VALID_NAMESPACE_PATTERN = r"^[a-z0-9]([-a-z0-9]{0,61}[a-z0-9])?$"


@dataclass(frozen=True)
class Config:
    """Driver configuration loaded from environment variables.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing mid-run.
    """

    namespace: str = DEFAULT_NAMESPACE

    # Behavior
    exposure_method: ExposureMethod = ExposureMethod.INTERACTIVE
    deploy_applications: ApplicationsMode = ApplicationsMode.ASK
    set_default_namespace: bool = True
    dry_run: bool = False

    # Paths
    charts_dir: Path = field(default_factory=lambda: Path("."))
    registry_file: Path | None = None
    ssl_cert_path: Path = field(default_factory=lambda: Path(DEFAULT_SSL_CERT_PATH))

    # Exposure
    port_forward_port: int | None = None
    credential_poll_attempts: int = DEFAULT_CREDENTIAL_POLL_ATTEMPTS
    credential_poll_interval_seconds: float = DEFAULT_CREDENTIAL_POLL_INTERVAL_SECONDS

    # Timing
    rollout_timeout_seconds: int = DEFAULT_ROLLOUT_TIMEOUT_SECONDS
    command_timeout_seconds: int = DEFAULT_COMMAND_TIMEOUT_SECONDS

    # Tooling
    kubeconfig: str | None = None
    kube_context: str | None = None
    helm_bin: str = "helm"
    kubectl_bin: str = "kubectl"

    # Logging
    log_json: bool = False
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        errors: list[str] = []

        if not self.namespace:
            errors.append("NAMESPACE is required")
        elif not re.match(VALID_NAMESPACE_PATTERN, self.namespace):
            errors.append(f"NAMESPACE must be a valid DNS-1123 label: {self.namespace}")

        if self.port_forward_port is not None and not (1 <= self.port_forward_port <= 65535):
            errors.append(
                f"PORT_FORWARD_PORT must be between 1 and 65535: {self.port_forward_port}"
            )

        if not (1 <= self.credential_poll_attempts <= MAX_CREDENTIAL_POLL_ATTEMPTS):
            errors.append(
                f"CREDENTIAL_POLL_ATTEMPTS must be between 1 and {MAX_CREDENTIAL_POLL_ATTEMPTS}"
            )

        if self.credential_poll_interval_seconds < 0:
            errors.append("CREDENTIAL_POLL_INTERVAL cannot be negative")

        if self.rollout_timeout_seconds < 1:
            errors.append("ROLLOUT_TIMEOUT must be at least 1 second")

        if not (1 <= self.command_timeout_seconds <= MAX_COMMAND_TIMEOUT_SECONDS):
            errors.append(
                f"COMMAND_TIMEOUT must be between 1 and {MAX_COMMAND_TIMEOUT_SECONDS} seconds"
            )

        if self.registry_file is not None and not self.registry_file.is_file():
            errors.append(f"Registry file does not exist: {self.registry_file}")

        if self.log_level.upper() not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            errors.append(f"LOG_LEVEL is not a valid level: {self.log_level}")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @classmethod
    def from_env(cls) -> Config:
        """Load configuration from environment variables.

        Environment Variables:
            NAMESPACE: Target namespace (default: automation-assessment)
            EXPOSURE_METHOD: interactive, ingress or port-forward (default: interactive)
            DEPLOY_APPLICATIONS: ask, yes or no (default: ask)
            CHARTS_DIR: Directory containing the local charts (default: .)
            REGISTRY_FILE: Optional YAML registry replacing the built-in one
            SSL_CERT_PATH: Certificate file for the SSL secret
            PORT_FORWARD_PORT: Local tunnel port; prompts when unset
            CREDENTIAL_POLL_ATTEMPTS: Admin secret poll attempts (default: 30)
            CREDENTIAL_POLL_INTERVAL: Seconds between poll attempts (default: 1)
            ROLLOUT_TIMEOUT: Rollout status wait in seconds (default: 120)
            COMMAND_TIMEOUT: Per-command timeout in seconds (default: 600)
            KUBECONFIG: kubeconfig passed to helm and kubectl
            KUBE_CONTEXT: kube context passed to helm and kubectl
            HELM_BIN / KUBECTL_BIN: Binaries to invoke
            SET_DEFAULT_NAMESPACE: Point the current context at NAMESPACE (default: true)
            DRY_RUN: If "true", log mutating commands without running them
            LOG_JSON: If "true", emit JSON structured logs
            LOG_LEVEL: Root log level (default: INFO)
        """

        def get_optional_int(key: str) -> int | None:
            value = os.environ.get(key)
            if not value:
                return None
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        def get_int(key: str, default: int) -> int:
            value = os.environ.get(key)
            if not value:
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        def get_float(key: str, default: float) -> float:
            value = os.environ.get(key)
            if value is None or value == "":
                return default
            try:
                return float(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be a number: {value}") from e

        def get_bool(key: str, default: bool) -> bool:
            value = os.environ.get(key, "").lower()
            if not value:
                return default
            return value in ("true", "1", "yes")

        def get_exposure(value: str | None) -> ExposureMethod:
            if not value:
                return ExposureMethod.INTERACTIVE
            try:
                return ExposureMethod(value.lower())
            except ValueError as e:
                valid = [m.value for m in ExposureMethod]
                raise ConfigurationError(f"EXPOSURE_METHOD must be one of {valid}: {value}") from e

        def get_applications(value: str | None) -> ApplicationsMode:
            if not value:
                return ApplicationsMode.ASK
            try:
                return ApplicationsMode(value.lower())
            except ValueError as e:
                valid = [m.value for m in ApplicationsMode]
                raise ConfigurationError(
                    f"DEPLOY_APPLICATIONS must be one of {valid}: {value}"
                ) from e

        registry_file = os.environ.get("REGISTRY_FILE")

        return cls(
            namespace=os.environ.get("NAMESPACE", DEFAULT_NAMESPACE),
            exposure_method=get_exposure(os.environ.get("EXPOSURE_METHOD")),
            deploy_applications=get_applications(os.environ.get("DEPLOY_APPLICATIONS")),
            set_default_namespace=get_bool("SET_DEFAULT_NAMESPACE", True),
            dry_run=get_bool("DRY_RUN", False),
            charts_dir=Path(os.environ.get("CHARTS_DIR", ".")),
            registry_file=Path(registry_file) if registry_file else None,
            ssl_cert_path=Path(os.environ.get("SSL_CERT_PATH", DEFAULT_SSL_CERT_PATH)),
            port_forward_port=get_optional_int("PORT_FORWARD_PORT"),
            credential_poll_attempts=get_int(
                "CREDENTIAL_POLL_ATTEMPTS", DEFAULT_CREDENTIAL_POLL_ATTEMPTS
            ),
            credential_poll_interval_seconds=get_float(
                "CREDENTIAL_POLL_INTERVAL", DEFAULT_CREDENTIAL_POLL_INTERVAL_SECONDS
            ),
            rollout_timeout_seconds=get_int("ROLLOUT_TIMEOUT", DEFAULT_ROLLOUT_TIMEOUT_SECONDS),
            command_timeout_seconds=get_int("COMMAND_TIMEOUT", DEFAULT_COMMAND_TIMEOUT_SECONDS),
            kubeconfig=os.environ.get("KUBECONFIG") or None,
            kube_context=os.environ.get("KUBE_CONTEXT") or None,
            helm_bin=os.environ.get("HELM_BIN", "helm"),
            kubectl_bin=os.environ.get("KUBECTL_BIN", "kubectl"),
            log_json=get_bool("LOG_JSON", False),
            log_level=os.environ.get("LOG_LEVEL", "INFO"),
        )
