"""SessionService — per-connection display mode negotiation and restore.

Connect and disconnect run as separate processes launched by the streaming
server's session hook. Connect leaves a ``session.json`` in the session
workspace and pushes its id onto ``<sessions>/active-session``, one id per
line with the newest last. Disconnect without an explicit id takes the
newest entry, so overlapping sessions unwind last-in first-out and an
older session stays addressable once a newer one has gone.

Connect pipeline:
  SETTINGS → WORKSPACE → FETCH TOOL → CLIENT REQUEST → CAPABILITIES
  → NEGOTIATE → APPLY → PERSIST

Only a missing or malformed Settings record (and, with ``session.strict``,
an unachievable mode) aborts a session. Every other problem is logged as an
error, which marks the workspace for retention, and the session continues.
"""

from __future__ import annotations

import logging
import os
import re
import shutil
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Any

from filelock import FileLock, Timeout
from pydantic import ValidationError
from structlog.contextvars import bound_contextvars

from vdctl.config.logging import session_log
from vdctl.domain.errors import (
    ConfigInvalidError,
    FetchError,
    NoAchievableModeError,
    NotProvisionedError,
    PersistenceError,
    PreconditionError,
    VdctlError,
)
from vdctl.domain.modes import ModeRequest, ModeSource
from vdctl.domain.negotiation import negotiate
from vdctl.domain.records import SessionRecord
from vdctl.infrastructure.filesystem import atomic_write_text
from vdctl.infrastructure.ports import NotAvailable
from vdctl.services._helpers import now_iso, session_id_from
from vdctl.services.base import BaseService
from vdctl.services.result import ServiceResult
from vdctl.services.telemetry import trace_span, traced

if TYPE_CHECKING:
    from collections.abc import Iterator, Mapping

    from vdctl.domain.modes import Mode, OverrideTable
    from vdctl.domain.records import Settings

logger = logging.getLogger(__name__)

ACTIVE_POINTER = "active-session"
SESSION_FILE = "session.json"
SESSION_LOG = "session.log"
POINTER_LOCK_TIMEOUT = 10.0

_SESSION_ID = re.compile(r"^S-\d{8}T\d{12}$")


class SessionService(BaseService):
    """Handles the connect/disconnect halves of a streaming session."""

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @property
    def _pointer_path(self) -> Path:
        return self._host.sessions_dir / ACTIVE_POINTER

    def _record_path(self, session_id: str) -> Path:
        return self._host.sessions_dir / session_id / SESSION_FILE

    def _save_record(self, record: SessionRecord) -> None:
        path = Path(record.workspace) / SESSION_FILE
        try:
            atomic_write_text(path, record.model_dump_json(indent=2) + "\n")
        except OSError as exc:
            msg = f"Cannot write session record {path}: {exc}"
            raise PersistenceError(msg, path=str(path)) from exc

    @contextmanager
    def _pointer_lock(self) -> Iterator[None]:
        lock_path = self._pointer_path.with_name(ACTIVE_POINTER + ".lock")
        try:
            with FileLock(str(lock_path), timeout=POINTER_LOCK_TIMEOUT):
                yield
        except Timeout as exc:
            msg = f"Timed out waiting for {lock_path}"
            raise PersistenceError(msg, path=str(lock_path)) from exc

    def _active_ids(self) -> list[str]:
        try:
            text = self._pointer_path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return []
        return [line for line in text.split() if _SESSION_ID.match(line)]

    def _write_pointer(self, ids: list[str]) -> None:
        if not ids:
            self._pointer_path.unlink(missing_ok=True)
            return
        atomic_write_text(self._pointer_path, "".join(f"{i}\n" for i in ids))

    def _point_at(self, session_id: str) -> None:
        try:
            with self._pointer_lock():
                self._write_pointer([*self._active_ids(), session_id])
        except OSError as exc:
            msg = f"Cannot write active session pointer: {exc}"
            raise PersistenceError(msg, path=str(self._pointer_path)) from exc

    def _active_id(self) -> str | None:
        ids = self._active_ids()
        return ids[-1] if ids else None

    def _clear_pointer(self, session_id: str) -> None:
        # Overlapping sessions stack up; drop only this one's entry.
        try:
            with self._pointer_lock():
                ids = self._active_ids()
                if session_id in ids:
                    self._write_pointer([i for i in ids if i != session_id])
        except (OSError, PersistenceError) as exc:
            logger.warning("Cannot update active session pointer: %s", exc)

    def _load_record(self, session_id: str) -> SessionRecord | None:
        path = self._record_path(session_id)
        try:
            return SessionRecord.model_validate_json(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except (OSError, ValidationError) as exc:
            msg = f"Session record is malformed: {path}"
            raise ConfigInvalidError(msg, path=str(path), error=str(exc)) from exc

    # ------------------------------------------------------------------
    # Connect
    # ------------------------------------------------------------------

    @traced
    def connect(self, environ: Mapping[str, str] | None = None) -> ServiceResult:
        """Negotiate and apply a display mode for a connecting client.

        *environ* defaults to the process environment, where the streaming
        server places ``CLIENT_WIDTH``, ``CLIENT_HEIGHT`` and
        ``CLIENT_REFRESH_HZ``.
        """
        op = "session_connect"
        environ = os.environ if environ is None else environ
        cfg = self._host.settings.session

        try:
            settings = self._host.store.load()
            if settings is None:
                raise NotProvisionedError("Host is not provisioned; run 'vdctl provision install'")
            overrides = cfg.override_table()
        except VdctlError as exc:
            self._log_failure(op, exc)
            return ServiceResult.failure(op, exc)

        session_id = session_id_from()
        workspace = self._host.sessions_dir / session_id
        try:
            workspace.mkdir(parents=True)
        except OSError as exc:
            err = PersistenceError(f"Cannot create session workspace: {exc}", path=str(workspace))
            self._log_failure(op, err)
            return ServiceResult.failure(op, err)

        record = SessionRecord(
            id=session_id,
            started_at=now_iso(),
            workspace=str(workspace),
            display_id=cfg.display or settings.virtual_display_id,
        )
        warnings: list[str] = []

        with (
            bound_contextvars(session_id=session_id),
            session_log(workspace / SESSION_LOG) as tracker,
        ):
            logger.info("Session %s connecting", session_id)
            try:
                self._negotiate_and_apply(record, settings, environ, overrides, warnings)
            except NoAchievableModeError as exc:
                # Strict mode: no mode was changed, so there is nothing to undo.
                self._log_failure(op, exc)
                return ServiceResult.failure(
                    op, exc, data={"id": session_id, "workspace": str(workspace)}
                )

            record.keep_artifacts = tracker.tripped
            try:
                with trace_span("persist"):
                    self._save_record(record)
                    self._point_at(session_id)
            except PersistenceError as exc:
                self._log_failure(op, exc)
                return ServiceResult.failure(op, exc, data={"id": session_id}, warnings=warnings)

        return ServiceResult(
            ok=True,
            op=op,
            data=self._session_data(record),
            warnings=warnings,
        )

    def _negotiate_and_apply(
        self,
        record: SessionRecord,
        settings: Settings,
        environ: Mapping[str, str],
        overrides: OverrideTable,
        warnings: list[str],
    ) -> None:
        cfg = self._host.settings.session
        display_id = record.display_id or settings.virtual_display_id

        with trace_span("fetch_tool"):
            try:
                tool = self._host.fetcher.ensure()
            except FetchError as exc:
                logger.error("%s; skipping negotiation", exc.message, extra={"kind": exc.code})
                warnings.append(exc.message)
                return
        record.tool_path = str(tool)
        display = self._host.display_for(tool)

        request = ModeRequest.from_environ(environ, cfg.default_mode)
        if request.source is ModeSource.DEFAULT:
            logger.info("Client mode not provided; using default %s", request.mode)
        else:
            logger.info("Client requested %s", request.mode)

        with trace_span("capabilities"):
            capabilities = display.list_modes(display_id)
            current = display.current_mode(display_id)
        for answer in (capabilities, current):
            if isinstance(answer, NotAvailable):
                msg = f"Display {display_id} unavailable: {answer.reason}"
                logger.error("%s; skipping negotiation", msg, extra={"kind": "DISPLAY_UNAVAILABLE"})
                warnings.append(msg)
                return
        record.prior_mode = current

        with trace_span("negotiate") as span:
            try:
                achieved = negotiate(request, capabilities, overrides)
            except NoAchievableModeError as exc:
                if cfg.strict:
                    raise
                logger.warning("%s; leaving display unchanged", exc.message)
                warnings.append(exc.message)
                return
            if span:
                span.annotate("reason", str(achieved.reason))

        with trace_span("apply"):
            applied = display.apply_mode(display_id, achieved.mode)
        if isinstance(applied, NotAvailable):
            msg = f"Failed to apply {achieved.mode}: {applied.reason}"
            logger.error(msg, extra={"kind": "DISPLAY_UNAVAILABLE"})
            warnings.append(msg)
            return

        record.applied = achieved
        logger.info(
            "Applied %s (requested %s, %s)",
            achieved.mode,
            achieved.requested,
            achieved.reason,
            extra={"degraded": achieved.degraded},
        )
        if achieved.degraded:
            warnings.append(
                f"Refresh degraded: requested {achieved.requested}, applied {achieved.mode}"
            )

    # ------------------------------------------------------------------
    # Disconnect
    # ------------------------------------------------------------------

    @traced
    def disconnect(self, *, session_id: str | None = None) -> ServiceResult:
        """Restore the pre-session mode and clean up the session workspace.

        Restoration is best-effort; the workspace is deleted only when no
        error was logged during connect or disconnect.
        """
        op = "session_disconnect"
        warnings: list[str] = []

        if session_id is not None and not _SESSION_ID.match(session_id):
            exc: VdctlError = PreconditionError(
                "session_id", f"Invalid session id {session_id!r}", session_id=session_id
            )
            self._log_failure(op, exc)
            return ServiceResult.failure(op, exc)

        target = session_id or self._active_id()
        if target is None:
            return ServiceResult(
                ok=True, op=op, data={"id": None}, warnings=["No active session"]
            )

        try:
            record = self._load_record(target)
        except ConfigInvalidError as exc:
            self._log_failure(op, exc)
            return ServiceResult.failure(op, exc, data={"id": target})
        if record is None:
            self._clear_pointer(target)
            return ServiceResult(
                ok=True, op=op, data={"id": target}, warnings=[f"Session {target} not found"]
            )

        workspace = Path(record.workspace)
        with (
            bound_contextvars(session_id=record.id),
            session_log(workspace / SESSION_LOG) as tracker,
        ):
            logger.info("Session %s disconnecting", record.id)
            restored = self._restore(record, warnings)
            self._clear_pointer(record.id)
            keep = record.keep_artifacts or tracker.tripped

        data: dict[str, Any] = {
            "id": record.id,
            "restored": str(restored) if restored else None,
            "workspace": str(workspace),
            "workspace_retained": keep,
        }
        if keep:
            record.keep_artifacts = True
            try:
                self._save_record(record)
            except PersistenceError as exc:
                warnings.append(exc.message)
            warnings.append(f"Session artifacts kept for diagnosis: {workspace}")
            return ServiceResult(ok=True, op=op, data=data, warnings=warnings)

        try:
            shutil.rmtree(workspace)
        except OSError as exc:
            logger.warning("Could not remove session workspace %s: %s", workspace, exc)
            warnings.append(f"Could not remove {workspace}: {exc}")
            data["workspace_retained"] = True
        return ServiceResult(ok=True, op=op, data=data, warnings=warnings)

    def _restore(self, record: SessionRecord, warnings: list[str]) -> Mode | None:
        if record.applied is None or record.prior_mode is None or record.display_id is None:
            logger.info("No mode was changed by this session; nothing to restore")
            return None
        display = self._host.display_for(Path(record.tool_path) if record.tool_path else None)
        with trace_span("restore"):
            result = display.apply_mode(record.display_id, record.prior_mode)
        if isinstance(result, NotAvailable):
            msg = f"Failed to restore {record.prior_mode}: {result.reason}"
            logger.error(msg, extra={"kind": "DISPLAY_UNAVAILABLE"})
            warnings.append(msg)
            return None
        logger.info("Restored %s", record.prior_mode)
        return result

    @staticmethod
    def _session_data(record: SessionRecord) -> dict[str, Any]:
        applied = record.applied
        return {
            "id": record.id,
            "workspace": record.workspace,
            "display_id": record.display_id,
            "prior_mode": str(record.prior_mode) if record.prior_mode else None,
            "requested": str(applied.requested) if applied else None,
            "applied": str(applied.mode) if applied else None,
            "reason": str(applied.reason) if applied else None,
            "degraded": applied.degraded if applied else False,
            "keep_artifacts": record.keep_artifacts,
        }
