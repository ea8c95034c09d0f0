"""Failure taxonomy for provisioning, reconciliation and backup operations.

Every error carries the exit code the CLI should use and, where a single
command can retry just the failed piece, a ``remediation`` hint.
"""
from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence

from .exit_codes import ExitCode


class VeriscopeError(RuntimeError):
    """Base class for operational failures surfaced to the operator."""

    exit_code: ExitCode = ExitCode.PROVIDER

    def __init__(self, message: str, *, remediation: str | None = None) -> None:
        super().__init__(message)
        self.remediation = remediation


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


class ValidationError(VeriscopeError):
    """Raised when a precondition is not met; the operation was not attempted."""

    exit_code = ExitCode.VALIDATION

    def __init__(
        self,
        message: str,
        *,
        reasons: Iterable[str] = (),
        remediation: str | None = None,
    ) -> None:
        super().__init__(message, remediation=remediation)
        self.reasons: tuple[str, ...] = tuple(reasons)


class InvalidNetworkTargetError(ValidationError):
    """Raised when a network target name is not one of the known networks."""


class PreflightError(VeriscopeError):
    """Raised when hard pre-flight checks failed and no override was given."""

    exit_code = ExitCode.ENVIRONMENT

    def __init__(
        self,
        message: str,
        *,
        failures: Sequence[str] = (),
        remediation: str | None = None,
    ) -> None:
        super().__init__(message, remediation=remediation)
        self.failures: tuple[str, ...] = tuple(failures)


# ---------------------------------------------------------------------------
# External collaborators
# ---------------------------------------------------------------------------


class ExternalServiceError(VeriscopeError):
    """Raised when a dependency could not be reached or failed to respond."""

    exit_code = ExitCode.PROVIDER


class ServiceTimeoutError(ExternalServiceError):
    """The dependency did not answer within the allowed time."""


class ServiceRefusedError(ExternalServiceError):
    """The dependency actively refused the connection."""


class ServiceUnreachableError(ExternalServiceError):
    """The dependency's address could not be reached (DNS, routing, TLS)."""


class ServiceNotRunningError(ExternalServiceError):
    """The managed service is not running."""


class CommandError(ExternalServiceError):
    """Raised when a collaborator command exits non-zero or is missing."""

    def __init__(
        self,
        message: str,
        *,
        returncode: int | None = None,
        output: str = "",
        remediation: str | None = None,
    ) -> None:
        super().__init__(message, remediation=remediation)
        self.returncode = returncode
        self.output = output


class MalformedResponseError(VeriscopeError):
    """Raised when a dependency answered but the payload could not be used."""

    exit_code = ExitCode.PROVIDER


# ---------------------------------------------------------------------------
# Persisted state
# ---------------------------------------------------------------------------


class ReconciliationError(VeriscopeError):
    """Raised when a write was only partially applied or failed verification."""

    exit_code = ExitCode.RECONCILIATION

    def __init__(
        self,
        message: str,
        *,
        succeeded: Sequence[str] = (),
        failed: Mapping[str, str] | None = None,
        remediation: str | None = None,
    ) -> None:
        super().__init__(message, remediation=remediation)
        self.succeeded: tuple[str, ...] = tuple(succeeded)
        self.failed: dict[str, str] = dict(failed or {})


class IntegrityError(VeriscopeError):
    """Raised when an artifact or stored value failed verification."""

    exit_code = ExitCode.INTEGRITY


class SecretGenerationError(VeriscopeError):
    """Raised when no entropy source could produce a secret."""

    exit_code = ExitCode.ENVIRONMENT


class OperatorAbort(VeriscopeError):
    """Raised when the operator declines a confirmation gate.

    Nothing has been mutated when this is raised; callers report it as a
    no-op rather than a failure.
    """

    exit_code = ExitCode.OK


__all__ = [
    "CommandError",
    "ExternalServiceError",
    "IntegrityError",
    "InvalidNetworkTargetError",
    "MalformedResponseError",
    "OperatorAbort",
    "PreflightError",
    "ReconciliationError",
    "SecretGenerationError",
    "ServiceNotRunningError",
    "ServiceRefusedError",
    "ServiceTimeoutError",
    "ServiceUnreachableError",
    "ValidationError",
    "VeriscopeError",
]
