"""ProvisioningTransaction — install/uninstall as a rollback-capable state machine.

Pipeline: PREFLIGHT → STOP SERVICE → DRIVER → CONFIG → SETTINGS → RESTART → COMMIT

Every externally visible side effect is journaled as a :class:`StepRecord`
before control moves on. On failure the recorded steps are compensated in
reverse order. Compensations are derived from the step kind and its data
alone, so the same replay runs in-process after a failure and from disk
after a crash (:func:`recover`).

INVARIANT: Preflight has no side effects; its failures need no rollback.
INVARIANT: Every compensation is attempted even if an earlier one failed.
INVARIANT: A config backup taken during a failed transaction is restored
bit-for-bit before control returns to the caller.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, NoReturn

from vdctl.domain.config_file import ConfigDocument, Directive
from vdctl.domain.errors import (
    AlreadyProvisionedError,
    ConfigError,
    DriverError,
    NotProvisionedError,
    PersistenceError,
    PreconditionError,
    RollbackPartialFailure,
    ServiceControlError,
    VdctlError,
)
from vdctl.domain.lifecycle import (
    InstallState,
    Operation,
    StepKind,
    is_terminal,
    is_valid_transition,
)
from vdctl.domain.records import BackupRecord, Settings, StepRecord, TransactionJournal
from vdctl.infrastructure.backup import backup_path_for
from vdctl.infrastructure.filesystem import atomic_write_bytes
from vdctl.services._helpers import now_iso
from vdctl.services.telemetry import trace_span

if TYPE_CHECKING:
    from collections.abc import Callable

    from vdctl.infrastructure.host import HostContext

logger = logging.getLogger(__name__)

_ROLLBACK_STATES = frozenset(
    {InstallState.ROLLING_BACK, InstallState.ROLLED_BACK, InstallState.FAILED}
)


@dataclass
class TransactionOutcome:
    """What a committed transaction did."""

    operation: Operation
    state: InstallState
    history: list[InstallState]
    steps: list[StepRecord]
    settings: Settings | None = None
    config_changed: bool = False
    backup: BackupRecord | None = None
    service_restarted: bool = False
    warnings: list[str] = field(default_factory=list)

    def to_data(self) -> dict[str, Any]:
        return {
            "operation": str(self.operation),
            "state": str(self.state),
            "virtual_display_id": self.settings.virtual_display_id if self.settings else None,
            "config_changed": self.config_changed,
            "backup_path": self.backup.backup_path if self.backup else None,
            "service_restarted": self.service_restarted,
            "steps": [str(step.kind) for step in self.steps],
        }


# ---------------------------------------------------------------------------
# Compensations (shared by in-process rollback and crash recovery)
# ---------------------------------------------------------------------------


def _undo_service_stopped(host: HostContext, step: StepRecord, warnings: list[str]) -> None:
    if not step.data.get("was_running"):
        return
    service = host.service
    service.start()
    cfg = host.settings.provision
    policy = host.wait_policy(timeout=cfg.service_timeout, interval=cfg.poll_interval)
    if not policy.poll(service.is_running):
        msg = f"Service {service.name} did not return to running state"
        raise ServiceControlError(msg, service=service.name)


def _undo_driver_registered(host: HostContext, step: StepRecord, warnings: list[str]) -> None:
    host.driver.deregister(str(step.data["driver_id"]))


def _undo_driver_deregistered(host: HostContext, step: StepRecord, warnings: list[str]) -> None:
    package = step.data.get("package")
    if not package:
        msg = (
            f"Driver {step.data.get('driver_id')} was removed and no package path is "
            "known; reinstall it manually"
        )
        logger.warning(msg)
        warnings.append(msg)
        return
    # Reinstall is best-effort: a failure is reported but does not fail rollback.
    try:
        driver_id = host.driver.register(Path(package))
    except DriverError as exc:
        msg = f"Could not reinstall driver from {package}: {exc.message}"
        logger.error(msg, extra={"kind": exc.code, "step": str(step.kind)})
        warnings.append(msg)
        return

    # Settings were put back first (reverse order) and still name the removed id.
    old_id = step.data.get("driver_id")
    settings = host.store.load()
    if settings is None or driver_id == old_id:
        return
    host.store.save(settings.model_copy(update={"virtual_display_id": driver_id}))
    msg = f"Driver reinstalled as {driver_id} (was {old_id}); Settings updated"
    logger.warning(msg)
    warnings.append(msg)


def _undo_config_backup(host: HostContext, step: StepRecord, warnings: list[str]) -> None:
    record = BackupRecord.model_validate(step.data["record"])
    host.backups.restore(record)
    host.backups.discard(record)


def _undo_settings_written(host: HostContext, step: StepRecord, warnings: list[str]) -> None:
    previous = step.data.get("previous")
    if previous is None:
        host.store.delete()
    else:
        host.store.save(Settings.model_validate(previous))


def _undo_settings_deleted(host: HostContext, step: StepRecord, warnings: list[str]) -> None:
    host.store.save(Settings.model_validate(step.data["previous"]))


_COMPENSATIONS: dict[StepKind, Callable[[HostContext, StepRecord, list[str]], None]] = {
    StepKind.SERVICE_STOPPED: _undo_service_stopped,
    StepKind.DRIVER_REGISTERED: _undo_driver_registered,
    StepKind.DRIVER_DEREGISTERED: _undo_driver_deregistered,
    StepKind.CONFIG_BACKUP: _undo_config_backup,
    StepKind.SETTINGS_WRITTEN: _undo_settings_written,
    StepKind.SETTINGS_DELETED: _undo_settings_deleted,
}


def replay_compensations(
    host: HostContext,
    steps: list[StepRecord],
    warnings: list[str],
) -> list[tuple[StepRecord, str]]:
    """Compensate *steps* newest-first; return the ones that failed.

    Never raises for a compensation failure; each failure is logged and
    collected so the remaining compensations still run.
    """
    failures: list[tuple[StepRecord, str]] = []
    for step in reversed(steps):
        with trace_span(f"compensate:{step.kind}") as span:
            try:
                _COMPENSATIONS[step.kind](host, step, warnings)
            except Exception as exc:
                message = exc.message if isinstance(exc, VdctlError) else str(exc)
                logger.error(
                    "Compensation for %s failed: %s",
                    step.kind,
                    message,
                    extra={"kind": "COMPENSATION_FAILED", "step": str(step.kind)},
                )
                failures.append((step, message))
                if span:
                    span.annotate("error", message)
            else:
                logger.info("Compensated %s", step.kind)
    return failures


# ---------------------------------------------------------------------------
# Transaction
# ---------------------------------------------------------------------------


class ProvisioningTransaction:
    """One install or uninstall attempt. Not reusable; call :meth:`run` once.

    The caller holds the host lock for the duration of :meth:`run`.
    """

    def __init__(
        self,
        host: HostContext,
        operation: Operation,
        *,
        driver_package: Path | None = None,
    ) -> None:
        self._host = host
        self._op = operation
        self._package = driver_package
        self._state = InstallState.IDLE
        self._history: list[InstallState] = [InstallState.IDLE]
        self._journal: TransactionJournal | None = None
        self._warnings: list[str] = []

        # Resolved during preflight
        self._current: Settings | None = None
        self._config_path: Path | None = None
        self._directive: Directive | None = None

        # Produced by steps
        self._driver_id: str | None = None
        self._backup: BackupRecord | None = None
        self._settings: Settings | None = None
        self._config_changed = False
        self._restarted = False

    @property
    def state(self) -> InstallState:
        return self._state

    @property
    def history(self) -> list[InstallState]:
        return list(self._history)

    @property
    def warnings(self) -> list[str]:
        return list(self._warnings)

    # ------------------------------------------------------------------
    # State and journal bookkeeping
    # ------------------------------------------------------------------

    def _advance(self, target: InstallState) -> None:
        if not is_valid_transition(self._state, target):
            msg = f"Invalid transaction transition {self._state} -> {target}"
            raise ValueError(msg)
        logger.debug("Transaction %s: %s -> %s", self._op, self._state, target)
        self._state = target
        self._history.append(target)
        if self._journal is None:
            return
        self._journal.state = target
        if target not in _ROLLBACK_STATES:
            self._host.journal.save(self._journal)
            return
        # Rollback proceeds even if the journal can no longer be written.
        try:
            self._host.journal.save(self._journal)
        except PersistenceError as exc:
            logger.warning("Journal not updated during rollback: %s", exc.message)

    def _record(self, kind: StepKind, **data: Any) -> None:
        assert self._journal is not None
        self._journal.steps.append(StepRecord(kind=kind, data=data))
        self._host.journal.save(self._journal)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def run(self) -> TransactionOutcome:
        """Execute the pipeline, rolling back on any step failure.

        Raises:
            PreconditionError: Preflight failed (nothing was changed).
            ServiceControlError, DriverError, ConfigError, PersistenceError:
                A step failed and rollback completed cleanly.
            RollbackPartialFailure: A step failed and some compensations
                failed too; manual recovery is required.
        """
        with trace_span("preflight"):
            self._preflight()
        self._advance(InstallState.PREFLIGHT_CHECKED)

        self._journal = TransactionJournal(
            operation=self._op,
            state=self._state,
            started_at=now_iso(),
        )
        self._host.journal.save(self._journal)

        try:
            with trace_span("stop_service"):
                self._stop_service()
            self._advance(InstallState.SERVICE_STOPPED)

            with trace_span("driver"):
                if self._op is Operation.INSTALL:
                    self._register_driver()
                else:
                    self._deregister_driver()
            self._advance(InstallState.DRIVER_INSTALLED)

            with trace_span("config"):
                self._update_config()
            self._advance(InstallState.CONFIG_UPDATED)

            with trace_span("settings"):
                self._persist_settings()
            self._advance(InstallState.SETTINGS_PERSISTED)

            with trace_span("restart_service"):
                self._restart_service()
            self._advance(InstallState.SERVICE_RESTARTED)

            self._commit()
        except Exception as exc:
            self._rollback(exc)

        return TransactionOutcome(
            operation=self._op,
            state=self._state,
            history=self.history,
            steps=list(self._journal.steps),
            settings=self._settings,
            config_changed=self._config_changed,
            backup=self._backup,
            service_restarted=self._restarted,
            warnings=self.warnings,
        )

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def _preflight(self) -> None:
        host = self._host
        cfg = host.settings.provision

        if host.journal.exists():
            raise PreconditionError(
                "no_interrupted_transaction",
                "An interrupted transaction was found; run 'vdctl provision recover' first",
                journal=str(host.journal.path),
            )

        self._current = host.store.load()
        if self._op is Operation.INSTALL and self._current is not None:
            raise AlreadyProvisionedError(virtual_display_id=self._current.virtual_display_id)
        if self._op is Operation.UNINSTALL and self._current is None:
            raise NotProvisionedError()

        if cfg.require_elevation and not host.host.is_elevated():
            raise PreconditionError("elevated", "Administrator/root privileges are required")

        if self._op is Operation.INSTALL and cfg.check_network:
            url = host.settings.tool.url
            if not host.host.can_reach(url):
                raise PreconditionError("network", f"Cannot reach {url}", url=url)

        try:
            service_present = host.service.exists()
        except ServiceControlError as exc:
            raise PreconditionError("service_installed", exc.message) from exc
        if not service_present:
            raise PreconditionError(
                "service_installed",
                f"Streaming server service {host.service.name!r} is not installed",
            )

        if self._current is not None:
            self._config_path = Path(self._current.config_path)
            directive_text = self._current.directive or cfg.directive
        else:
            self._config_path = cfg.config_path
            directive_text = cfg.directive
        if not self._config_path.is_file():
            raise PreconditionError(
                "config_present",
                f"Streaming server config not found: {self._config_path}",
                path=str(self._config_path),
            )
        self._directive = Directive.parse(directive_text)

        if self._op is Operation.INSTALL:
            package = self._package or cfg.driver_package
            if package is None:
                raise PreconditionError(
                    "driver_package", "No driver package given (--driver-package)"
                )
            if not package.exists():
                raise PreconditionError(
                    "driver_package",
                    f"Driver package not found: {package}",
                    path=str(package),
                )
            self._package = package

    def _stop_service(self) -> None:
        service = self._host.service
        was_running = service.is_running()
        assert self._journal is not None
        self._journal.service_was_running = was_running
        self._record(StepKind.SERVICE_STOPPED, was_running=was_running)
        if not was_running:
            logger.info("Service %s already stopped", service.name)
            return

        service.stop()
        cfg = self._host.settings.provision
        policy = self._host.wait_policy(timeout=cfg.service_timeout, interval=cfg.poll_interval)
        if not policy.poll(lambda: not service.is_running()):
            msg = f"Service {service.name} did not stop within {cfg.service_timeout:g}s"
            raise ServiceControlError(msg, service=service.name, timeout=cfg.service_timeout)
        logger.info("Service %s stopped", service.name)

    def _register_driver(self) -> None:
        assert self._package is not None
        self._driver_id = self._host.driver.register(self._package)
        self._record(StepKind.DRIVER_REGISTERED, driver_id=self._driver_id)
        logger.info("Driver registered: %s", self._driver_id)

    def _deregister_driver(self) -> None:
        assert self._current is not None
        driver_id = self._current.virtual_display_id
        self._host.driver.deregister(driver_id)
        self._driver_id = driver_id
        self._record(
            StepKind.DRIVER_DEREGISTERED,
            driver_id=driver_id,
            package=self._current.driver_package,
        )
        logger.info("Driver deregistered: %s", driver_id)

    def _update_config(self) -> None:
        assert self._config_path is not None and self._directive is not None
        path = self._config_path
        directive = self._directive

        self._backup = self._host.backups.snapshot(path)
        self._record(StepKind.CONFIG_BACKUP, record=self._backup.model_dump())

        try:
            text = path.read_bytes().decode("utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            msg = f"Cannot read config {path}: {exc}"
            raise ConfigError(msg, path=str(path)) from exc

        doc = ConfigDocument.parse(text)
        if self._op is Operation.INSTALL:
            for line in doc.conflicting(directive):
                msg = (
                    f"Config already sets {directive.key} to a different value: "
                    f"{line.raw.strip()}"
                )
                logger.warning(msg)
                self._warnings.append(msg)
            self._config_changed = doc.enable(directive)
        else:
            self._config_changed = doc.disable(directive) > 0

        if not self._config_changed:
            logger.info("Config already in desired state: %s", path)
            return
        try:
            atomic_write_bytes(path, doc.render().encode("utf-8"))
        except OSError as exc:
            msg = f"Cannot write config {path}: {exc}"
            raise ConfigError(msg, path=str(path)) from exc
        logger.info("Config updated: %s", path)

    def _persist_settings(self) -> None:
        store = self._host.store
        previous = self._current.model_dump(by_alias=True) if self._current else None
        if self._op is Operation.INSTALL:
            assert self._driver_id is not None and self._config_path is not None
            cfg = self._host.settings.provision
            self._settings = Settings(
                virtual_display_id=self._driver_id,
                config_path=str(self._config_path),
                config_backup_path=(
                    str(backup_path_for(self._config_path)) if self._backup else None
                ),
                service_name=cfg.service_name,
                install_state=InstallState.SETTINGS_PERSISTED,
                install_timestamp=now_iso(),
                driver_package=str(self._package) if self._package else None,
                directive=self._directive.text if self._directive else None,
            )
            self._record(StepKind.SETTINGS_WRITTEN, previous=previous)
            store.save(self._settings)
        else:
            self._record(StepKind.SETTINGS_DELETED, previous=previous)
            store.delete()

    def _restart_service(self) -> None:
        assert self._journal is not None
        if not self._journal.service_was_running:
            return
        service = self._host.service
        service.start()
        cfg = self._host.settings.provision
        policy = self._host.wait_policy(timeout=cfg.service_timeout, interval=cfg.poll_interval)
        if not policy.poll(service.is_running):
            msg = f"Service {service.name} did not start within {cfg.service_timeout:g}s"
            raise ServiceControlError(msg, service=service.name, timeout=cfg.service_timeout)
        self._restarted = True
        logger.info("Service %s restarted", service.name)

    def _commit(self) -> None:
        if self._settings is not None:
            self._settings = self._settings.model_copy(
                update={"install_state": InstallState.COMMITTED}
            )
            self._host.store.save(self._settings)
        # Promote only after the record is saved; rollback restores from the staged copy.
        if self._backup is not None:
            self._backup = self._host.backups.commit(self._backup)
        self._advance(InstallState.COMMITTED)
        self._host.journal.clear()
        logger.info("Transaction %s committed", self._op)

    # ------------------------------------------------------------------
    # Rollback
    # ------------------------------------------------------------------

    def _rollback(self, cause: Exception) -> NoReturn:
        assert self._journal is not None
        failed_in = self._state
        if isinstance(cause, VdctlError):
            logger.error(
                "Transaction %s failed after %s: %s",
                self._op,
                failed_in,
                cause.message,
                extra={"kind": cause.code, "state": str(failed_in)},
            )
        else:
            logger.exception("Transaction %s failed after %s", self._op, failed_in)

        self._advance(InstallState.ROLLING_BACK)
        with trace_span("rollback") as span:
            failures = replay_compensations(self._host, self._journal.steps, self._warnings)
            if span:
                span.annotate("compensations", len(self._journal.steps))
                span.annotate("failed", len(failures))

        if failures:
            # Keep only what still needs undoing so recover() retries just that.
            self._journal.steps = [step for step, _ in failures]
            self._advance(InstallState.FAILED)
            vd_cause = cause if isinstance(cause, VdctlError) else None
            raise RollbackPartialFailure(
                [(str(step.kind), message) for step, message in failures],
                cause=vd_cause,
            ) from cause

        self._advance(InstallState.ROLLED_BACK)
        self._host.journal.clear()
        logger.info("Transaction %s rolled back cleanly", self._op)
        raise cause


@dataclass
class RecoveryOutcome:
    operation: Operation
    interrupted_state: InstallState
    compensated: list[str]
    warnings: list[str]


def recover(host: HostContext) -> RecoveryOutcome | None:
    """Roll back an interrupted transaction from its on-disk journal.

    Returns None if there is nothing to recover. A journal that already
    reached ``committed`` or ``rolled_back`` is discarded without replaying
    it. The caller holds the lock.

    Raises:
        RollbackPartialFailure: Some compensations still fail; the journal
            is rewritten to hold only those steps.
    """
    journal = host.journal.load()
    if journal is None:
        return None

    interrupted = journal.state
    if is_terminal(interrupted) and interrupted != InstallState.FAILED:
        # Stopped between settling the host and clearing the journal.
        logger.warning(
            "Discarding journal of a %s transaction that already reached %s",
            journal.operation,
            interrupted,
        )
        host.journal.clear()
        return RecoveryOutcome(
            operation=journal.operation,
            interrupted_state=interrupted,
            compensated=[],
            warnings=[f"Transaction had already reached {interrupted}; journal discarded"],
        )

    logger.warning(
        "Recovering interrupted %s transaction (state %s, %d steps)",
        journal.operation,
        interrupted,
        len(journal.steps),
    )
    warnings: list[str] = []
    failures = replay_compensations(host, journal.steps, warnings)
    if failures:
        journal.steps = [step for step, _ in failures]
        journal.state = InstallState.FAILED
        host.journal.save(journal)
        raise RollbackPartialFailure([(str(step.kind), message) for step, message in failures])

    host.journal.clear()
    return RecoveryOutcome(
        operation=journal.operation,
        interrupted_state=interrupted,
        compensated=[str(step.kind) for step in reversed(journal.steps)],
        warnings=warnings,
    )
