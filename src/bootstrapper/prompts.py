"""Operator prompts and input parsing.

The driver never reads stdin directly. Everything it asks the operator
goes through a ChoiceProvider, which returns the raw answer; parsing and
validation of answers live here so every provider behaves the same.
"""

from __future__ import annotations

from typing import Protocol

import click

from .config import DEFAULT_PORT_FORWARD_PORT, ExposureMethod

EXPOSURE_MENU = (
    "How would you like to expose Argo CD?",
    "1) Ingress",
    "2) Port Forwarding",
)
EXPOSURE_CHOICES = {
    "1": ExposureMethod.INGRESS,
    "2": ExposureMethod.PORT_FORWARD,
}
AFFIRMATIVE_TOKENS = frozenset({"yes", "y"})


class InvalidInputError(ValueError):
    """Raised when an operator answer cannot be accepted."""

    pass


class ChoiceProvider(Protocol):
    """Source of operator decisions."""

    def choose_exposure_method(self) -> str:
        """Return the raw menu answer ("1" or "2")."""
        ...

    def choose_local_port(self, default: int) -> str:
        """Return the raw port answer; blank selects the default."""
        ...

    def confirm_applications(self) -> str:
        """Return the raw yes/no answer gating the application pass."""
        ...


class TerminalChoiceProvider:
    """Prompts on the controlling terminal."""

    def choose_exposure_method(self) -> str:
        for line in EXPOSURE_MENU:
            click.echo(line)
        return click.prompt(
            "Please enter your choice (1 or 2)", default="", show_default=False
        )

    def choose_local_port(self, default: int) -> str:
        return click.prompt(
            f"Enter the local port you want to use for port-forwarding (default is {default})",
            default="",
            show_default=False,
        )

    def confirm_applications(self) -> str:
        click.echo("")
        click.echo("Would you like to deploy the applications (MySQL and automation-assessment)?")
        return click.prompt("Enter yes/no", default="", show_default=False)


def parse_exposure_choice(answer: str) -> ExposureMethod:
    """Map a menu answer onto an exposure method.

    Raises:
        InvalidInputError: For anything other than "1" or "2".
    """
    method = EXPOSURE_CHOICES.get(answer.strip())
    if method is None:
        raise InvalidInputError(f"Invalid choice: {answer!r}")
    return method


def parse_port(answer: str, default: int = DEFAULT_PORT_FORWARD_PORT) -> int:
    """Parse a local port answer. Blank selects the default.

    Raises:
        InvalidInputError: If the answer is not an integer in 1-65535.
    """
    value = answer.strip()
    if not value:
        return default
    try:
        port = int(value)
    except ValueError as e:
        raise InvalidInputError(f"Port must be an integer: {answer!r}") from e
    if not (1 <= port <= 65535):
        raise InvalidInputError(f"Port must be between 1 and 65535: {port}")
    return port


def is_affirmative(answer: str | None) -> bool:
    """True only for yes/y, case-insensitive."""
    if answer is None:
        return False
    return answer.strip().lower() in AFFIRMATIVE_TOKENS
