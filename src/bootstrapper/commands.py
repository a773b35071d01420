"""Subprocess execution for the helm and kubectl command-line tools.

Every external effect of the driver goes through CommandRunner. Failures
are classified into an ErrorCategory from the tool's stderr so callers
can apply the propagation policy (fatal, re-probe, warn) without parsing
messages themselves.
"""

from __future__ import annotations

import logging
import shlex
import subprocess
from collections.abc import Sequence
from dataclasses import dataclass
from enum import Enum

logger = logging.getLogger(__name__)


class ErrorCategory(str, Enum):
    """Failure taxonomy shared by probes, actions and exposure."""

    NOT_FOUND = "NotFound"
    PERMISSION_DENIED = "PermissionDenied"
    TIMEOUT = "Timeout"
    CONFLICT = "Conflict"
    SERVICE_NOT_FOUND = "ServiceNotFound"
    INVALID_INPUT = "InvalidInput"
    UNKNOWN = "Unknown"

    @property
    def is_fatal(self) -> bool:
        """Fatal categories abort the remaining reconciliation queue."""
        return self is ErrorCategory.PERMISSION_DENIED


# Ordered: the first matching category wins. PermissionDenied is checked
# first because RBAC errors often also mention the missing resource.
ERROR_PATTERNS: tuple[tuple[ErrorCategory, tuple[str, ...]], ...] = (
    (
        ErrorCategory.PERMISSION_DENIED,
        ("forbidden", "unauthorized", "permission denied", "access denied"),
    ),
    (
        ErrorCategory.CONFLICT,
        ("already exists", "conflict", "another operation", "cannot re-use a name"),
    ),
    (
        ErrorCategory.TIMEOUT,
        ("timed out", "timeout", "deadline exceeded"),
    ),
    (
        ErrorCategory.NOT_FOUND,
        ("not found", "notfound", "no such file"),
    ),
)


def classify_error(message: str) -> ErrorCategory:
    """Map a tool error message onto the failure taxonomy.

    Args:
        message: stderr (or stdout) of the failed command.

    Returns:
        The matching category, UNKNOWN when nothing matches.
    """
    lowered = message.lower()
    for category, patterns in ERROR_PATTERNS:
        if any(pattern in lowered for pattern in patterns):
            return category
    return ErrorCategory.UNKNOWN


class CommandError(Exception):
    """Raised when an external command fails."""

    def __init__(self, message: str, category: ErrorCategory, argv: Sequence[str] = ()) -> None:
        super().__init__(message)
        self.category = category
        self.argv = list(argv)


@dataclass(frozen=True)
class CommandResult:
    """Outcome of a single command invocation."""

    argv: tuple[str, ...]
    returncode: int
    stdout: str = ""
    stderr: str = ""
    dry_run: bool = False

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def category(self) -> ErrorCategory | None:
        """Error category of a failed command, None on success."""
        if self.ok:
            return None
        return classify_error(self.stderr or self.stdout)

    def raise_for_status(self) -> CommandResult:
        """Raise CommandError if the command failed."""
        if not self.ok:
            category = self.category or ErrorCategory.UNKNOWN
            message = (self.stderr or self.stdout).strip() or f"exit code {self.returncode}"
            raise CommandError(f"{self.argv[0]} failed: {message}", category, self.argv)
        return self


class CommandRunner:
    """Runs helm/kubectl commands with timeouts and dry-run support.

    Read-only commands always execute. Mutating commands are only logged
    in dry-run mode and report success, so a dry run walks the same
    decision path as a real one.
    """

    def __init__(self, timeout_seconds: int = 600, dry_run: bool = False) -> None:
        self._timeout = timeout_seconds
        self._dry_run = dry_run

    @property
    def dry_run(self) -> bool:
        return self._dry_run

    def run(self, argv: Sequence[str], *, mutating: bool = False) -> CommandResult:
        """Run a command to completion.

        Never raises for a non-zero exit; callers inspect the result or
        call raise_for_status(). A missing binary and a timeout are
        reported as failed results with a classifiable stderr.

        Args:
            argv: Command and arguments.
            mutating: Whether the command changes cluster state.

        Returns:
            CommandResult with captured output.
        """
        command = tuple(argv)
        if mutating and self._dry_run:
            logger.info("[DRY-RUN] %s", shlex.join(command), extra={"dry_run": True})
            return CommandResult(argv=command, returncode=0, dry_run=True)

        logger.debug("Running command: %s", shlex.join(command))
        try:
            completed = subprocess.run(
                command,
                capture_output=True,
                text=True,
                timeout=self._timeout,
                check=False,
            )
        except subprocess.TimeoutExpired:
            logger.warning(
                "Command timed out",
                extra={"command": shlex.join(command), "timeout_seconds": self._timeout},
            )
            return CommandResult(
                argv=command,
                returncode=124,
                stderr=f"command timed out after {self._timeout}s",
            )
        except FileNotFoundError:
            return CommandResult(
                argv=command,
                returncode=127,
                stderr=f"{command[0]}: command not found",
            )

        result = CommandResult(
            argv=command,
            returncode=completed.returncode,
            stdout=completed.stdout or "",
            stderr=completed.stderr or "",
        )
        if not result.ok:
            logger.debug(
                "Command failed",
                extra={
                    "command": shlex.join(command),
                    "returncode": result.returncode,
                    "stderr": result.stderr.strip(),
                },
            )
        return result

    def start_background(self, argv: Sequence[str]) -> subprocess.Popen[bytes] | None:
        """Start a long-lived process without waiting for it.

        The process runs in its own session so it outlives the driver;
        terminating it is the operator's responsibility.

        Returns:
            The started process, or None in dry-run mode.

        Raises:
            CommandError: If the binary cannot be started.
        """
        command = tuple(argv)
        if self._dry_run:
            logger.info("[DRY-RUN] %s &", shlex.join(command), extra={"dry_run": True})
            return None

        logger.debug("Starting background command: %s", shlex.join(command))
        try:
            return subprocess.Popen(
                command,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                start_new_session=True,
            )
        except OSError as e:
            raise CommandError(
                f"Failed to start {command[0]}: {e}", ErrorCategory.NOT_FOUND, command
            ) from e
