"""Main entry point for the automation-assessment environment bootstrapper.

Loads configuration from the environment, checks that helm and kubectl
are available, builds the resource registry and runs the driver once.
"""

from __future__ import annotations

import json
import logging
import shutil
import sys
from datetime import UTC, datetime

import click

from .commands import CommandRunner
from .config import Config, ConfigurationError
from .dependency import DependencyError
from .driver import Driver
from .executor import ActionExecutor
from .kube import HelmClient, KubectlClient
from .prober import StateProber
from .prompts import ChoiceProvider, TerminalChoiceProvider
from .registry import RegistryError, ResourceRegistry, build_registry
from .report import format_report

logger = logging.getLogger(__name__)

# LogRecord attributes that are not user-supplied extras
RESERVED_LOG_ATTRS = frozenset(
    {
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "taskName",
        "message",
    }
)


class PrerequisiteError(Exception):
    """Raised when a required command-line tool is missing."""

    pass


class JsonFormatter(logging.Formatter):
    """Format logs as JSON for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }

        # Add extra fields from the record
        for key, value in record.__dict__.items():
            if key not in RESERVED_LOG_ATTRS:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(json_output: bool = False, level: str = "INFO") -> None:
    """Configure logging on stderr.

    Prompts and the credential banner go to stdout, so logs never
    interleave with what the operator has to read or copy.

    Args:
        json_output: Emit one JSON document per record instead of text.
        level: Root log level name.
    """
    handler = logging.StreamHandler(sys.stderr)
    if json_output:
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)-8s %(message)s"))

    root_logger = logging.getLogger()
    for existing in list(root_logger.handlers):
        root_logger.removeHandler(existing)
    root_logger.addHandler(handler)
    root_logger.setLevel(level.upper())


def check_prerequisites(config: Config) -> None:
    """Check that helm and kubectl resolve on PATH.

    Raises:
        PrerequisiteError: If either binary is missing.
    """
    missing = [
        binary for binary in (config.helm_bin, config.kubectl_bin) if not shutil.which(binary)
    ]
    if missing:
        raise PrerequisiteError(
            f"Required tools not found on PATH: {', '.join(missing)}. "
            "Install helm (https://helm.sh/docs/intro/install/) and kubectl before running."
        )


def build_clients(
    config: Config, runner: CommandRunner | None = None
) -> tuple[KubectlClient, HelmClient]:
    """kubectl and helm clients sharing one command runner."""
    runner = runner or CommandRunner(
        timeout_seconds=config.command_timeout_seconds, dry_run=config.dry_run
    )
    kubectl = KubectlClient(
        runner,
        binary=config.kubectl_bin,
        kubeconfig=config.kubeconfig,
        context=config.kube_context,
    )
    helm = HelmClient(
        runner,
        binary=config.helm_bin,
        kubeconfig=config.kubeconfig,
        context=config.kube_context,
    )
    return kubectl, helm


def build_driver(
    config: Config,
    provider: ChoiceProvider | None = None,
    runner: CommandRunner | None = None,
    registry: ResourceRegistry | None = None,
) -> Driver:
    """Wire the driver and its collaborators from configuration.

    Raises:
        RegistryError: If the registry cannot be built.
        DependencyError: If the registry graph is invalid.
    """
    kubectl, helm = build_clients(config, runner)
    prober = StateProber(kubectl, helm, config.namespace)
    executor = ActionExecutor(
        kubectl,
        helm,
        prober,
        config.namespace,
        rollout_timeout_seconds=config.rollout_timeout_seconds,
    )
    return Driver(
        config,
        registry if registry is not None else build_registry(config),
        prober,
        executor,
        kubectl,
        provider or TerminalChoiceProvider(),
    )


def main(
    config: Config | None = None,
    provider: ChoiceProvider | None = None,
    runner: CommandRunner | None = None,
) -> int:
    """Run the bootstrapper once.

    Args:
        config: Configuration; loaded from the environment when omitted.
        provider: Source of operator decisions; the terminal when omitted.
        runner: Command runner; a subprocess runner when omitted.

    Returns:
        Exit code (0 for success, 1 for failure).
    """
    if config is None:
        try:
            config = Config.from_env()
        except ConfigurationError as e:
            setup_logging()
            logger.error("Configuration error", extra={"error": str(e)})
            return 1

    setup_logging(json_output=config.log_json, level=config.log_level)

    logger.info(
        "Starting bootstrapper",
        extra={
            "namespace": config.namespace,
            "exposure_method": config.exposure_method.value,
            "deploy_applications": config.deploy_applications.value,
            "dry_run": config.dry_run,
        },
    )

    try:
        check_prerequisites(config)
    except PrerequisiteError as e:
        logger.error("Missing prerequisites", extra={"error": str(e)})
        return 1

    try:
        driver = build_driver(config, provider, runner)
    except (RegistryError, DependencyError) as e:
        # Registry validation failed - user configuration error
        logger.error("Invalid resource registry", extra={"error": str(e)})
        return 1

    try:
        report = driver.run()
    except click.Abort:
        # Prompt closed (Ctrl+C / EOF)
        logger.error("Aborted by operator")
        return 1

    click.echo("")
    for line in format_report(report):
        click.echo(line)
    return report.exit_code


def run() -> None:
    """Entry point for the bootstrapper without CLI options."""
    sys.exit(main())


if __name__ == "__main__":
    run()
