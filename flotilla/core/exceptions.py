"""Custom exception hierarchy for Flotilla.

All flotilla-specific exceptions inherit from FlotillaError, enabling
callers (and the CLI) to catch every reconciliation failure with a
single except clause.
"""

from __future__ import annotations

from collections.abc import Mapping


class FlotillaError(Exception):
    """Base exception for all Flotilla errors."""


class ConfigurationError(FlotillaError):
    """Raised for invalid configuration or missing required settings."""


class CommandError(FlotillaError):
    """Raised when a provider binary or a remote command exits non-zero."""

    def __init__(self, command: str, code: int | None, stderr: str = "") -> None:
        self.command = command
        self.code = code
        self.stderr = stderr
        super().__init__(f"{command} failed (exit {code}): {stderr.strip()}")


class ProvisioningError(FlotillaError):
    """Raised when an instance cannot be created, started or destroyed."""


class ControlPlaneError(FlotillaError):
    """Raised when the swarm control plane returns something unusable."""


class ReadinessTimeoutError(FlotillaError):
    """Raised when a readiness condition never held within its attempts."""

    def __init__(self, what: str, attempts: int) -> None:
        self.what = what
        self.attempts = attempts
        super().__init__(f"Timed out waiting for {what} after {attempts} attempts")


class PreconditionError(FlotillaError):
    """Raised when a command needs an active cluster and there is none."""


class InvalidTransitionError(FlotillaError):
    """Raised when a membership transition is not allowed from the current state."""

    def __init__(self, name: str, current: str, target: str) -> None:
        self.name = name
        self.current = current
        self.target = target
        super().__init__(f"{name}: cannot go from {current} to {target}")


class PhaseError(FlotillaError):
    """Raised after a fan-out barrier when one or more siblings failed.

    Every sibling has already run to completion; ``failures`` maps the
    instance name to the exception it raised.
    """

    def __init__(self, phase: str, failures: Mapping[str, BaseException]) -> None:
        self.phase = phase
        self.failures = dict(failures)
        detail = "; ".join(f"{name}: {err}" for name, err in sorted(self.failures.items()))
        super().__init__(f"{phase} failed for {len(self.failures)} instance(s): {detail}")
