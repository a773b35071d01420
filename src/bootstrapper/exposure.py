"""Argo CD exposure selection.

Runs once per run, after the infrastructure pass:

    AwaitingChoice -> Configuring -> Exposed | Failed

Ingress re-applies the Argo CD release with the ingress values overlay.
Port forwarding starts a background `kubectl port-forward` tunnel that
outlives the run, then polls a bounded number of times for the initial
admin credential and prints it once.
"""

from __future__ import annotations

import base64
import binascii
import logging
import subprocess
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

import click

from .commands import CommandError, ErrorCategory
from .config import (
    ARGOCD_ADMIN_SECRET_FIELD,
    ARGOCD_ADMIN_SECRET_NAME,
    ARGOCD_SERVICE_CANDIDATES,
    ARGOCD_SERVICE_PORT,
    DEFAULT_PORT_FORWARD_PORT,
    Config,
    ExposureMethod,
)
from .executor import ActionExecutor
from .kube import KubectlClient, object_absent
from .models import ManagedResource, ResourceState
from .prompts import ChoiceProvider, InvalidInputError, parse_exposure_choice, parse_port

logger = logging.getLogger(__name__)

INGRESS_VALUES_FILENAME = "values-ingress.yaml"
BANNER_SEPARATOR = "=" * 54


class ExposureError(Exception):
    """Raised when Argo CD cannot be exposed."""

    category = ErrorCategory.UNKNOWN

    def __init__(self, message: str, category: ErrorCategory | None = None) -> None:
        super().__init__(message)
        if category is not None:
            self.category = category


class ServiceNotFoundError(ExposureError):
    """Raised when none of the Argo CD service candidates exists."""

    category = ErrorCategory.SERVICE_NOT_FOUND


class ExposurePhase(str, Enum):
    """Lifecycle of the exposure selector."""

    AWAITING_CHOICE = "AwaitingChoice"
    CONFIGURING = "Configuring"
    EXPOSED = "Exposed"
    FAILED = "Failed"


@dataclass(frozen=True)
class ExposureChoice:
    """Selected exposure method and its parameters."""

    method: ExposureMethod
    port: int | None = None
    values_overlay: Path | None = None


@dataclass
class ExposureResult:
    """Terminal state of an exposure selection."""

    phase: ExposurePhase
    choice: ExposureChoice | None = None
    service_name: str | None = None
    credential_emitted: bool = False
    tunnel_pid: int | None = None
    error: ErrorCategory | None = None
    message: str = ""
    warnings: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.phase == ExposurePhase.EXPOSED


class CredentialPoller:
    """Bounded poll for the Argo CD initial admin password.

    The secret is created asynchronously by Argo CD after its first
    install. Each attempt is one read; the loop sleeps only between
    attempts and stops at the first successful decode.
    """

    def __init__(
        self,
        kubectl: KubectlClient,
        namespace: str,
        attempts: int,
        interval_seconds: float,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._kubectl = kubectl
        self._namespace = namespace
        self._attempts = attempts
        self._interval = interval_seconds
        self._sleep = sleep
        self.attempts_made = 0

    def poll(self) -> str | None:
        """Read the credential, retrying until found or attempts run out.

        Returns:
            The decoded password, or None if it never appeared.
        """
        for attempt in range(1, self._attempts + 1):
            self.attempts_made = attempt
            credential = self._read_once(attempt)
            if credential is not None:
                return credential
            if attempt < self._attempts:
                self._sleep(self._interval)
        return None

    def _read_once(self, attempt: int) -> str | None:
        result = self._kubectl.get_secret_field(
            ARGOCD_ADMIN_SECRET_NAME, self._namespace, ARGOCD_ADMIN_SECRET_FIELD
        )
        encoded = result.stdout.strip()
        if not result.ok or not encoded:
            logger.debug(
                "Admin credential not available yet",
                extra={"attempt": attempt, "max_attempts": self._attempts},
            )
            return None

        try:
            return base64.b64decode(encoded, validate=True).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError) as e:
            logger.warning(
                "Admin credential could not be decoded",
                extra={"attempt": attempt, "error": str(e)},
            )
            return None


class ExposureSelector:
    """One-shot selector making Argo CD reachable."""

    def __init__(
        self,
        config: Config,
        executor: ActionExecutor,
        kubectl: KubectlClient,
        argocd: ManagedResource,
        provider: ChoiceProvider,
        emit: Callable[[str], None] = click.echo,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._config = config
        self._executor = executor
        self._kubectl = kubectl
        self._argocd = argocd
        self._provider = provider
        self._emit = emit
        self._sleep = sleep
        self._phase = ExposurePhase.AWAITING_CHOICE
        self.tunnel: subprocess.Popen[bytes] | None = None

    @property
    def phase(self) -> ExposurePhase:
        return self._phase

    def select(self) -> ExposureResult:
        """Choose and configure the exposure method.

        Returns:
            ExposureResult in phase EXPOSED or FAILED.

        Raises:
            RuntimeError: If the selector already ran.
        """
        if self._phase != ExposurePhase.AWAITING_CHOICE:
            raise RuntimeError(f"Exposure selection already finished ({self._phase.value})")

        choice: ExposureChoice | None = None
        try:
            method = self._resolve_method()
            self._phase = ExposurePhase.CONFIGURING
            if method == ExposureMethod.INGRESS:
                choice = ExposureChoice(method=method, values_overlay=self._ingress_overlay())
                result = self._configure_ingress(choice)
            else:
                choice = ExposureChoice(method=method, port=self._resolve_port())
                result = self._configure_port_forward(choice)
        except InvalidInputError as e:
            return self._fail(choice, ErrorCategory.INVALID_INPUT, str(e))
        except ExposureError as e:
            return self._fail(choice, e.category, str(e))

        self._phase = ExposurePhase.EXPOSED
        logger.info(
            "Argo CD exposed",
            extra={
                "method": result.choice.method.value if result.choice else None,
                "service": result.service_name,
                "credential_emitted": result.credential_emitted,
                "warnings": result.warnings,
            },
        )
        return result

    # -------------------------------------------------------------------------
    # Choice
    # -------------------------------------------------------------------------

    def _resolve_method(self) -> ExposureMethod:
        if self._config.exposure_method != ExposureMethod.INTERACTIVE:
            return self._config.exposure_method
        return parse_exposure_choice(self._provider.choose_exposure_method())

    def _resolve_port(self) -> int:
        if self._config.port_forward_port is not None:
            return self._config.port_forward_port
        return parse_port(
            self._provider.choose_local_port(DEFAULT_PORT_FORWARD_PORT),
            DEFAULT_PORT_FORWARD_PORT,
        )

    def _ingress_overlay(self) -> Path:
        return self._config.charts_dir / "argo-cd" / INGRESS_VALUES_FILENAME

    # -------------------------------------------------------------------------
    # Ingress
    # -------------------------------------------------------------------------

    def _configure_ingress(self, choice: ExposureChoice) -> ExposureResult:
        assert choice.values_overlay is not None
        self._emit("Setting up ingress for Argo CD...")

        action = self._executor.converge(
            self._argocd,
            ResourceState.PRESENT,
            force_upgrade=True,
            extra_values=[str(choice.values_overlay)],
        )
        if not action.success:
            raise ExposureError(
                f"Failed to apply ingress overlay: {action.message}",
                action.error,
            )

        namespace = self._config.namespace
        self._emit("Ingress for Argo CD has been set up. Check your ingress resource with:")
        self._emit(f"kubectl get ingress -n {namespace}")
        return ExposureResult(
            phase=ExposurePhase.EXPOSED,
            choice=choice,
            warnings=list(action.warnings),
        )

    # -------------------------------------------------------------------------
    # Port forwarding
    # -------------------------------------------------------------------------

    def _find_service(self) -> str:
        namespace = self._config.namespace
        for candidate in ARGOCD_SERVICE_CANDIDATES:
            result = self._kubectl.get_service(candidate, namespace)
            if result.ok:
                return candidate
            if not object_absent(result):
                logger.warning(
                    "Service lookup failed",
                    extra={
                        "service": candidate,
                        "category": (result.category or ErrorCategory.UNKNOWN).value,
                        "error": result.stderr.strip(),
                    },
                )

        if self._config.dry_run:
            # Argo CD was not really installed; assume the chart's default service
            logger.info(
                "[DRY-RUN] Argo CD service not found, assuming %s",
                ARGOCD_SERVICE_CANDIDATES[0],
                extra={"dry_run": True},
            )
            return ARGOCD_SERVICE_CANDIDATES[0]

        raise ServiceNotFoundError(
            f"Argo CD service not found in namespace {namespace}, "
            f"tried: {', '.join(ARGOCD_SERVICE_CANDIDATES)}"
        )

    def _configure_port_forward(self, choice: ExposureChoice) -> ExposureResult:
        assert choice.port is not None
        namespace = self._config.namespace
        service = self._find_service()

        self._emit(f"Port-forwarding to Argo CD server on port {choice.port}...")
        try:
            self.tunnel = self._kubectl.port_forward(
                service, namespace, choice.port, ARGOCD_SERVICE_PORT
            )
        except CommandError as e:
            raise ExposureError(f"Failed to start port-forward: {e}", e.category) from e

        result = ExposureResult(
            phase=ExposurePhase.EXPOSED,
            choice=choice,
            service_name=service,
            tunnel_pid=self.tunnel.pid if self.tunnel is not None else None,
        )
        logger.info(
            "Port-forward started",
            extra={"service": service, "local_port": choice.port, "pid": result.tunnel_pid},
        )

        self._emit(f"Argo CD is now accessible at http://localhost:{choice.port}")
        self._emit("Authenticate with username:admin and password below")
        self._emit(BANNER_SEPARATOR)

        if self._config.dry_run:
            result.warnings.append("Credential poll skipped in dry-run mode")
        else:
            poller = CredentialPoller(
                self._kubectl,
                namespace,
                attempts=self._config.credential_poll_attempts,
                interval_seconds=self._config.credential_poll_interval_seconds,
                sleep=self._sleep,
            )
            credential = poller.poll()
            if credential is not None:
                self._emit(credential)
                result.credential_emitted = True
            else:
                warning = (
                    f"Argo CD secret not found after {poller.attempts_made} attempts. "
                    f"Check with: kubectl get secrets -n {namespace}"
                )
                logger.warning(
                    "Admin credential not found",
                    extra={"attempts": poller.attempts_made, "secret": ARGOCD_ADMIN_SECRET_NAME},
                )
                self._emit(f"Warning: {warning}")
                result.warnings.append(warning)

        self._emit(BANNER_SEPARATOR)
        return result

    # -------------------------------------------------------------------------
    # Failure
    # -------------------------------------------------------------------------

    def _fail(
        self, choice: ExposureChoice | None, category: ErrorCategory, message: str
    ) -> ExposureResult:
        self._phase = ExposurePhase.FAILED
        logger.error(
            "Argo CD exposure failed",
            extra={"category": category.value, "error": message},
        )
        self._emit(f"Error: {message}")
        return ExposureResult(
            phase=ExposurePhase.FAILED,
            choice=choice,
            error=category,
            message=message,
        )
