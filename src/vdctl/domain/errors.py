"""Error taxonomy for provisioning and session operations.

Every error carries a stable ``code`` so the service layer can turn it into
a :class:`~vdctl.services.result.ServiceError` and the CLI can map it to a
distinct exit code without string matching.

- Preconditions are user-fixable and never trigger rollback.
- Step errors (service, driver, config, persistence) abort forward progress
  and trigger rollback.
- ``RollbackPartialFailure`` aggregates compensation failures.
- ``NoAchievableModeError`` and ``FetchError`` are session-time conditions the
  caller may choose to degrade on.
"""

from __future__ import annotations

from typing import Any


class VdctlError(Exception):
    """Base class for all vdctl errors."""

    code = "ERROR"

    def __init__(self, message: str, **detail: Any) -> None:
        super().__init__(message)
        self.message = message
        self.detail: dict[str, Any] = detail


class PreconditionError(VdctlError):
    """A preflight condition is unmet (privilege, connectivity, dependency)."""

    code = "PRECONDITION_FAILED"

    def __init__(self, condition: str, message: str, **detail: Any) -> None:
        super().__init__(message, condition=condition, **detail)
        self.condition = condition


class AlreadyProvisionedError(PreconditionError):
    code = "ALREADY_PROVISIONED"

    def __init__(self, message: str = "Host is already provisioned", **detail: Any) -> None:
        super().__init__("not_provisioned", message, **detail)


class NotProvisionedError(PreconditionError):
    code = "NOT_PROVISIONED"

    def __init__(self, message: str = "Host is not provisioned", **detail: Any) -> None:
        super().__init__("provisioned", message, **detail)


class ServiceControlError(VdctlError):
    code = "SERVICE_CONTROL_FAILED"


class DriverError(VdctlError):
    """Driver registration tool failed; ``exit_code`` is the tool's exit status."""

    code = "DRIVER_FAILED"

    def __init__(self, message: str, *, exit_code: int | None = None, **detail: Any) -> None:
        super().__init__(message, exit_code=exit_code, **detail)
        self.exit_code = exit_code


class ConfigError(VdctlError):
    """Config file could not be read, backed up, mutated, or restored."""

    code = "CONFIG_FAILED"


class ConfigInvalidError(VdctlError):
    """Configuration (overrides, settings record) is malformed."""

    code = "CONFIG_INVALID"


class PersistenceError(VdctlError):
    code = "PERSISTENCE_FAILED"


class ConcurrentTransactionError(VdctlError):
    code = "CONCURRENT_TRANSACTION"


class NoAchievableModeError(VdctlError):
    code = "NO_ACHIEVABLE_MODE"


class FetchError(VdctlError):
    code = "FETCH_FAILED"


class DisplayUnavailableError(VdctlError):
    """The display collaborator could not answer (tool missing or rejected)."""

    code = "DISPLAY_UNAVAILABLE"


class RollbackPartialFailure(VdctlError):
    """Rollback ran every compensation but some of them failed.

    Requires manual recovery. ``failures`` lists ``(step_kind, message)``
    pairs; ``cause`` is the step error that triggered the rollback.
    """

    code = "ROLLBACK_PARTIAL_FAILURE"

    def __init__(
        self,
        failures: list[tuple[str, str]],
        *,
        cause: VdctlError | None = None,
    ) -> None:
        kinds = ", ".join(kind for kind, _ in failures)
        message = f"Rollback incomplete; failed compensations: {kinds}"
        super().__init__(
            message,
            failed_compensations=[{"step": k, "error": m} for k, m in failures],
            cause=cause.code if cause is not None else None,
            cause_message=cause.message if cause is not None else None,
        )
        self.failures = failures
        self.cause = cause


# Exit code per error code; anything unlisted exits 1.
EXIT_CODES: dict[str, int] = {
    PreconditionError.code: 2,
    AlreadyProvisionedError.code: 2,
    NotProvisionedError.code: 2,
    ServiceControlError.code: 3,
    DriverError.code: 4,
    ConfigError.code: 5,
    ConfigInvalidError.code: 5,
    PersistenceError.code: 6,
    RollbackPartialFailure.code: 7,
    NoAchievableModeError.code: 8,
    ConcurrentTransactionError.code: 9,
    FetchError.code: 10,
}


def exit_code_for(code: str | None) -> int:
    """Return the process exit code for an error *code*."""
    if code is None:
        return 1
    return EXIT_CODES.get(code, 1)
