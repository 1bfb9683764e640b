"""Tests for ProvisioningTransaction: forward path, rollback, and recovery."""

from __future__ import annotations

from pathlib import Path

import pytest

from tests.conftest import ORIGINAL_CONFIG, FakeDriver, FakeHost, FakeService
from vdctl.config.models import DEFAULT_DIRECTIVE
from vdctl.domain.errors import (
    AlreadyProvisionedError,
    ConfigError,
    DriverError,
    NotProvisionedError,
    PersistenceError,
    PreconditionError,
    RollbackPartialFailure,
    ServiceControlError,
)
from vdctl.domain.lifecycle import InstallState, Operation, StepKind
from vdctl.domain.records import StepRecord, TransactionJournal
from vdctl.infrastructure.host import HostContext
from vdctl.services.transaction import ProvisioningTransaction, recover

INSTALLED_CONFIG = ORIGINAL_CONFIG + DEFAULT_DIRECTIVE.encode() + b"\r\n"


def _install(host: HostContext) -> ProvisioningTransaction:
    return ProvisioningTransaction(host, Operation.INSTALL)


def _fail_settings_save(host: HostContext, monkeypatch: pytest.MonkeyPatch) -> None:
    def broken_save(_settings: object) -> None:
        raise PersistenceError("disk full")

    monkeypatch.setattr(host.store, "save", broken_save)


# ---------------------------------------------------------------------------
# Forward path
# ---------------------------------------------------------------------------


class TestInstall:
    def test_commits(
        self,
        host: HostContext,
        streaming_config: Path,
        fake_service: FakeService,
        fake_driver: FakeDriver,
    ) -> None:
        txn = _install(host)
        outcome = txn.run()

        assert outcome.state is InstallState.COMMITTED
        assert txn.history == [
            InstallState.IDLE,
            InstallState.PREFLIGHT_CHECKED,
            InstallState.SERVICE_STOPPED,
            InstallState.DRIVER_INSTALLED,
            InstallState.CONFIG_UPDATED,
            InstallState.SETTINGS_PERSISTED,
            InstallState.SERVICE_RESTARTED,
            InstallState.COMMITTED,
        ]
        assert streaming_config.read_bytes() == INSTALLED_CONFIG
        assert fake_service.calls == ["stop", "start"]
        assert fake_service.running
        assert list(fake_driver.registered) == ["oem1.inf"]

        settings = host.store.load()
        assert settings is not None
        assert settings.virtual_display_id == "oem1.inf"
        assert settings.install_state is InstallState.COMMITTED
        assert settings.config_backup_path == str(streaming_config) + ".bak"
        assert not host.journal.exists()

    def test_backup_holds_original_bytes(self, host: HostContext, streaming_config: Path) -> None:
        outcome = _install(host).run()
        assert outcome.backup is not None
        assert outcome.backup.committed
        assert Path(outcome.backup.backup_path).read_bytes() == ORIGINAL_CONFIG

    def test_stopped_service_stays_stopped(
        self, host: HostContext, fake_service: FakeService
    ) -> None:
        fake_service.running = False
        outcome = _install(host).run()
        assert outcome.state is InstallState.COMMITTED
        assert fake_service.calls == []
        assert outcome.service_restarted is False

    def test_directive_already_present(self, host: HostContext, streaming_config: Path) -> None:
        streaming_config.write_bytes(INSTALLED_CONFIG)
        outcome = _install(host).run()
        assert outcome.config_changed is False
        assert streaming_config.read_bytes() == INSTALLED_CONFIG

    def test_conflicting_value_warns(self, host: HostContext, streaming_config: Path) -> None:
        streaming_config.write_bytes(ORIGINAL_CONFIG + b"global_prep_cmd = []\r\n")
        txn = _install(host)
        outcome = txn.run()
        assert outcome.config_changed is True
        assert any("global_prep_cmd" in w for w in outcome.warnings)

    def test_second_install_is_rejected_without_side_effects(
        self, host: HostContext, streaming_config: Path, fake_driver: FakeDriver
    ) -> None:
        _install(host).run()
        calls_before = list(fake_driver.calls)
        with pytest.raises(AlreadyProvisionedError):
            _install(host).run()
        assert fake_driver.calls == calls_before
        assert streaming_config.read_bytes() == INSTALLED_CONFIG


class TestUninstall:
    def test_reverses_install(
        self,
        provisioned: HostContext,
        streaming_config: Path,
        fake_driver: FakeDriver,
    ) -> None:
        outcome = ProvisioningTransaction(provisioned, Operation.UNINSTALL).run()
        assert outcome.state is InstallState.COMMITTED
        assert streaming_config.read_bytes() == ORIGINAL_CONFIG
        assert fake_driver.registered == {}
        assert provisioned.store.load() is None

    def test_requires_provisioned_host(self, host: HostContext) -> None:
        with pytest.raises(NotProvisionedError):
            ProvisioningTransaction(host, Operation.UNINSTALL).run()

    def test_driver_failure_restores_everything(
        self,
        provisioned: HostContext,
        streaming_config: Path,
        fake_driver: FakeDriver,
        fake_service: FakeService,
    ) -> None:
        fake_driver.fail_deregister = True
        with pytest.raises(DriverError):
            ProvisioningTransaction(provisioned, Operation.UNINSTALL).run()
        assert streaming_config.read_bytes() == INSTALLED_CONFIG
        assert provisioned.store.load() is not None
        assert fake_service.running

    def test_settings_restored_after_late_failure(
        self,
        provisioned: HostContext,
        streaming_config: Path,
        fake_driver: FakeDriver,
        fake_service: FakeService,
    ) -> None:
        fake_service.fail_start = True
        with pytest.raises(RollbackPartialFailure):
            ProvisioningTransaction(provisioned, Operation.UNINSTALL).run()
        # Driver reinstalled from the recorded package, config and record back.
        assert len(fake_driver.registered) == 1
        assert streaming_config.read_bytes() == INSTALLED_CONFIG
        assert provisioned.store.load() is not None

    def test_failed_uninstall_keeps_install_backup(
        self,
        provisioned: HostContext,
        streaming_config: Path,
        fake_service: FakeService,
    ) -> None:
        fake_service.fail_start = True
        with pytest.raises(RollbackPartialFailure):
            ProvisioningTransaction(provisioned, Operation.UNINSTALL).run()

        settings = provisioned.store.load()
        assert settings is not None
        assert settings.config_backup_path is not None
        backup = Path(settings.config_backup_path)
        assert backup.is_file()
        assert backup.read_bytes() == ORIGINAL_CONFIG
        assert not Path(str(streaming_config) + ".bak.pending").exists()

    def test_reinstalled_driver_id_is_recorded(
        self,
        provisioned: HostContext,
        fake_driver: FakeDriver,
        fake_service: FakeService,
    ) -> None:
        fake_service.fail_start = True
        txn = ProvisioningTransaction(provisioned, Operation.UNINSTALL)
        with pytest.raises(RollbackPartialFailure):
            txn.run()

        settings = provisioned.store.load()
        assert settings is not None
        assert list(fake_driver.registered) == ["oem2.inf"]
        assert settings.virtual_display_id in fake_driver.registered
        assert any("reinstalled as oem2.inf" in w for w in txn.warnings)

    def test_reinstall_after_clean_rollback_updates_settings(
        self,
        provisioned: HostContext,
        fake_driver: FakeDriver,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        def broken_delete() -> None:
            raise PersistenceError("settings locked")

        monkeypatch.setattr(provisioned.store, "delete", broken_delete)
        with pytest.raises(PersistenceError):
            ProvisioningTransaction(provisioned, Operation.UNINSTALL).run()

        settings = provisioned.store.load()
        assert settings is not None
        assert settings.virtual_display_id == "oem2.inf"
        assert settings.virtual_display_id in fake_driver.registered


# ---------------------------------------------------------------------------
# Preflight
# ---------------------------------------------------------------------------


class TestPreflight:
    def test_not_elevated(
        self, host: HostContext, fake_host: FakeHost, fake_service: FakeService
    ) -> None:
        fake_host.elevated = False
        with pytest.raises(PreconditionError) as exc_info:
            _install(host).run()
        assert exc_info.value.condition == "elevated"
        assert fake_service.calls == []
        assert not host.journal.exists()

    def test_network_unreachable(self, host: HostContext, fake_host: FakeHost) -> None:
        fake_host.reachable = False
        with pytest.raises(PreconditionError) as exc_info:
            _install(host).run()
        assert exc_info.value.condition == "network"

    def test_service_missing(self, host: HostContext, fake_service: FakeService) -> None:
        fake_service.installed = False
        with pytest.raises(PreconditionError) as exc_info:
            _install(host).run()
        assert exc_info.value.condition == "service_installed"

    def test_config_missing(self, host: HostContext, streaming_config: Path) -> None:
        streaming_config.unlink()
        with pytest.raises(PreconditionError) as exc_info:
            _install(host).run()
        assert exc_info.value.condition == "config_present"

    def test_driver_package_missing(self, host: HostContext, driver_package: Path) -> None:
        driver_package.unlink()
        with pytest.raises(PreconditionError) as exc_info:
            _install(host).run()
        assert exc_info.value.condition == "driver_package"

    def test_explicit_package_wins(self, host: HostContext, tmp_path: Path) -> None:
        other = tmp_path / "other.inf"
        other.write_text("x", encoding="utf-8")
        outcome = ProvisioningTransaction(host, Operation.INSTALL, driver_package=other).run()
        assert outcome.settings is not None
        assert outcome.settings.driver_package == str(other)

    def test_interrupted_journal_blocks(self, host: HostContext) -> None:
        host.journal.save(TransactionJournal(operation=Operation.INSTALL, started_at="x"))
        with pytest.raises(PreconditionError) as exc_info:
            _install(host).run()
        assert exc_info.value.condition == "no_interrupted_transaction"


# ---------------------------------------------------------------------------
# Rollback after each failure point
# ---------------------------------------------------------------------------


class TestRollback:
    def test_stop_failure(
        self, host: HostContext, streaming_config: Path, fake_service: FakeService
    ) -> None:
        fake_service.fail_stop = True
        txn = _install(host)
        with pytest.raises(ServiceControlError):
            txn.run()
        assert txn.state is InstallState.ROLLED_BACK
        assert streaming_config.read_bytes() == ORIGINAL_CONFIG
        assert host.store.load() is None
        assert not host.journal.exists()

    def test_stop_timeout(
        self, host: HostContext, streaming_config: Path, fake_service: FakeService
    ) -> None:
        fake_service.ignore_stop = True
        with pytest.raises(ServiceControlError, match="did not stop"):
            _install(host).run()
        assert streaming_config.read_bytes() == ORIGINAL_CONFIG
        assert fake_service.running

    def test_driver_failure(
        self,
        host: HostContext,
        streaming_config: Path,
        fake_service: FakeService,
        fake_driver: FakeDriver,
    ) -> None:
        fake_driver.fail_register = True
        txn = _install(host)
        with pytest.raises(DriverError) as exc_info:
            txn.run()
        assert exc_info.value.exit_code == 5
        assert streaming_config.read_bytes() == ORIGINAL_CONFIG
        assert fake_service.calls == ["stop", "start"]
        assert fake_service.running
        assert InstallState.ROLLING_BACK in txn.history

    def test_settings_failure_restores_config_bytes(
        self,
        host: HostContext,
        streaming_config: Path,
        fake_driver: FakeDriver,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        _fail_settings_save(host, monkeypatch)
        with pytest.raises(PersistenceError):
            _install(host).run()
        assert streaming_config.read_bytes() == ORIGINAL_CONFIG
        assert not Path(str(streaming_config) + ".bak").exists()
        assert fake_driver.registered == {}
        assert fake_driver.calls == ["register", "deregister"]

    def test_config_write_failure(
        self,
        host: HostContext,
        streaming_config: Path,
        fake_driver: FakeDriver,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        def read_only(path: Path, data: bytes) -> None:
            raise OSError("read-only file system")

        monkeypatch.setattr("vdctl.services.transaction.atomic_write_bytes", read_only)
        with pytest.raises(ConfigError):
            _install(host).run()
        assert streaming_config.read_bytes() == ORIGINAL_CONFIG
        assert fake_driver.registered == {}

    def test_restart_failure_is_partial(
        self,
        host: HostContext,
        streaming_config: Path,
        fake_service: FakeService,
        fake_driver: FakeDriver,
    ) -> None:
        fake_service.fail_start = True
        txn = _install(host)
        with pytest.raises(RollbackPartialFailure) as exc_info:
            txn.run()

        err = exc_info.value
        assert [kind for kind, _ in err.failures] == [str(StepKind.SERVICE_STOPPED)]
        assert err.cause is not None
        assert err.cause.code == "SERVICE_CONTROL_FAILED"
        assert txn.state is InstallState.FAILED
        # Every other compensation still ran.
        assert streaming_config.read_bytes() == ORIGINAL_CONFIG
        assert fake_driver.registered == {}
        assert host.store.load() is None

        journal = host.journal.load()
        assert journal is not None
        assert journal.state is InstallState.FAILED
        assert [s.kind for s in journal.steps] == [StepKind.SERVICE_STOPPED]

    def test_compensations_continue_past_failure(
        self,
        host: HostContext,
        streaming_config: Path,
        fake_driver: FakeDriver,
        fake_service: FakeService,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        _fail_settings_save(host, monkeypatch)
        fake_driver.fail_deregister = True
        with pytest.raises(RollbackPartialFailure) as exc_info:
            _install(host).run()
        assert [kind for kind, _ in exc_info.value.failures] == ["driver_registered"]
        assert exc_info.value.cause is not None
        assert exc_info.value.cause.code == "PERSISTENCE_FAILED"
        assert streaming_config.read_bytes() == ORIGINAL_CONFIG
        assert fake_service.running


# ---------------------------------------------------------------------------
# Crash recovery
# ---------------------------------------------------------------------------


class TestRecover:
    def test_nothing_to_recover(self, host: HostContext) -> None:
        assert recover(host) is None

    @pytest.mark.parametrize("state", [InstallState.COMMITTED, InstallState.ROLLED_BACK])
    def test_settled_journal_is_discarded(
        self,
        host: HostContext,
        streaming_config: Path,
        fake_driver: FakeDriver,
        state: InstallState,
    ) -> None:
        # Died after finishing but before the journal was cleared.
        streaming_config.write_bytes(INSTALLED_CONFIG)
        fake_driver.registered["oem9.inf"] = "vdd.inf"
        host.journal.save(
            TransactionJournal(
                operation=Operation.INSTALL,
                state=state,
                started_at="2026-03-01T12:00:00+00:00",
                service_was_running=True,
                steps=[
                    StepRecord(kind=StepKind.DRIVER_REGISTERED, data={"driver_id": "oem9.inf"}),
                ],
            )
        )

        outcome = recover(host)

        assert outcome is not None
        assert outcome.interrupted_state is state
        assert outcome.compensated == []
        assert streaming_config.read_bytes() == INSTALLED_CONFIG
        assert "oem9.inf" in fake_driver.registered
        assert not host.journal.exists()

    def test_replays_journal_from_disk(
        self,
        host: HostContext,
        streaming_config: Path,
        fake_service: FakeService,
        fake_driver: FakeDriver,
    ) -> None:
        # A process that died after mutating the config.
        record = host.backups.snapshot(streaming_config)
        streaming_config.write_bytes(INSTALLED_CONFIG)
        fake_driver.registered["oem9.inf"] = "vdd.inf"
        fake_service.running = False
        host.journal.save(
            TransactionJournal(
                operation=Operation.INSTALL,
                state=InstallState.CONFIG_UPDATED,
                started_at="2026-03-01T12:00:00+00:00",
                service_was_running=True,
                steps=[
                    StepRecord(kind=StepKind.SERVICE_STOPPED, data={"was_running": True}),
                    StepRecord(kind=StepKind.DRIVER_REGISTERED, data={"driver_id": "oem9.inf"}),
                    StepRecord(kind=StepKind.CONFIG_BACKUP, data={"record": record.model_dump()}),
                ],
            )
        )

        outcome = recover(host)

        assert outcome is not None
        assert outcome.interrupted_state is InstallState.CONFIG_UPDATED
        assert outcome.compensated == ["config_backup", "driver_registered", "service_stopped"]
        assert streaming_config.read_bytes() == ORIGINAL_CONFIG
        assert fake_driver.registered == {}
        assert fake_service.running
        assert not host.journal.exists()

    def test_partial_failure_then_retry(
        self,
        host: HostContext,
        streaming_config: Path,
        fake_service: FakeService,
    ) -> None:
        fake_service.fail_start = True
        with pytest.raises(RollbackPartialFailure):
            _install(host).run()

        with pytest.raises(RollbackPartialFailure):
            recover(host)
        assert host.journal.exists()

        fake_service.fail_start = False
        outcome = recover(host)
        assert outcome is not None
        assert outcome.interrupted_state is InstallState.FAILED
        assert outcome.compensated == ["service_stopped"]
        assert fake_service.running
        assert not host.journal.exists()
