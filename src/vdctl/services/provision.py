"""ProvisionService — install, uninstall, status, and recovery.

Install and uninstall each run one :class:`ProvisioningTransaction` under
the host lock. Recovery replays an interrupted transaction's journal under
the same lock.
"""

from __future__ import annotations

import logging
from pathlib import Path

from vdctl.domain.config_file import ConfigDocument, Directive
from vdctl.domain.errors import ConfigInvalidError, VdctlError
from vdctl.domain.lifecycle import Operation
from vdctl.services.base import BaseService
from vdctl.services.result import ServiceError, ServiceResult
from vdctl.services.telemetry import trace_span, traced
from vdctl.services.transaction import ProvisioningTransaction, recover

logger = logging.getLogger(__name__)

UNEXPECTED = "UNEXPECTED"


class ProvisionService(BaseService):
    """Host provisioning operations."""

    @traced
    def install(self, *, driver_package: Path | None = None) -> ServiceResult:
        """Install the virtual display driver and enable the session hook."""
        return self._run("provision_install", Operation.INSTALL, driver_package)

    @traced
    def uninstall(self) -> ServiceResult:
        """Remove the driver, the session hook, and the Settings record."""
        return self._run("provision_uninstall", Operation.UNINSTALL, None)

    def _run(self, op: str, operation: Operation, driver_package: Path | None) -> ServiceResult:
        txn: ProvisioningTransaction | None = None
        try:
            with self._host.lock.hold():
                txn = ProvisioningTransaction(self._host, operation, driver_package=driver_package)
                outcome = txn.run()
        except VdctlError as exc:
            self._log_failure(op, exc)
            data = {"state": str(txn.state)} if txn is not None else {}
            return ServiceResult.failure(
                op, exc, data=data, warnings=txn.warnings if txn is not None else []
            )
        except Exception as exc:
            # Rollback has already run; adapters may still leak OSError.
            return self._unexpected_failure(
                op,
                exc,
                data={"state": str(txn.state)} if txn is not None else {},
                warnings=txn.warnings if txn is not None else [],
            )

        return ServiceResult(ok=True, op=op, data=outcome.to_data(), warnings=outcome.warnings)

    @staticmethod
    def _unexpected_failure(
        op: str,
        exc: Exception,
        *,
        data: dict[str, object] | None = None,
        warnings: list[str] | None = None,
    ) -> ServiceResult:
        logger.exception("%s failed unexpectedly", op, extra={"kind": UNEXPECTED, "op": op})
        return ServiceResult(
            ok=False,
            op=op,
            data=data or {},
            warnings=warnings or [],
            error=ServiceError(
                code=UNEXPECTED,
                message=f"{op} failed: {exc}",
                detail={"type": type(exc).__name__},
            ),
        )

    @traced
    def status(self) -> ServiceResult:
        """Report the Settings record, hook presence, and any interrupted journal."""
        op = "provision_status"
        warnings: list[str] = []
        try:
            settings = self._host.store.load()
        except ConfigInvalidError as exc:
            self._log_failure(op, exc)
            return ServiceResult.failure(op, exc)

        data: dict[str, object] = {
            "provisioned": settings is not None,
            "state_dir": str(self._host.state_dir),
            "interrupted_transaction": self._host.journal.exists(),
        }
        if data["interrupted_transaction"]:
            warnings.append("An interrupted transaction was found; run 'vdctl provision recover'")
        if settings is None:
            return ServiceResult(ok=True, op=op, data=data, warnings=warnings)

        data.update(
            {
                "virtual_display_id": settings.virtual_display_id,
                "service_name": settings.service_name,
                "config_path": settings.config_path,
                "config_backup_path": settings.config_backup_path,
                "install_state": str(settings.install_state),
                "install_timestamp": settings.install_timestamp,
            }
        )
        with trace_span("directive_check"):
            data["directive_present"] = self._directive_present(
                Path(settings.config_path),
                settings.directive or self._host.settings.provision.directive,
                warnings,
            )
        return ServiceResult(ok=True, op=op, data=data, warnings=warnings)

    @staticmethod
    def _directive_present(path: Path, directive_text: str, warnings: list[str]) -> bool | None:
        try:
            text = path.read_bytes().decode("utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            warnings.append(f"Cannot read config {path}: {exc}")
            return None
        try:
            directive = Directive.parse(directive_text)
        except ConfigInvalidError as exc:
            warnings.append(exc.message)
            return None
        return ConfigDocument.parse(text).has(directive)

    @traced
    def recover(self) -> ServiceResult:
        """Roll back a transaction interrupted by process termination."""
        op = "provision_recover"
        try:
            with self._host.lock.hold():
                outcome = recover(self._host)
        except VdctlError as exc:
            self._log_failure(op, exc)
            return ServiceResult.failure(op, exc)
        except Exception as exc:
            return self._unexpected_failure(op, exc)

        if outcome is None:
            return ServiceResult(
                ok=True,
                op=op,
                data={"recovered": False, "compensated": []},
                warnings=["Nothing to recover"],
            )
        return ServiceResult(
            ok=True,
            op=op,
            data={
                "recovered": True,
                "operation": str(outcome.operation),
                "interrupted_state": str(outcome.interrupted_state),
                "compensated": outcome.compensated,
            },
            warnings=outcome.warnings,
        )
