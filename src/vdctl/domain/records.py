"""Durable records: Settings, BackupRecord, transaction journal, session state.

All records serialize to JSON. Settings uses camelCase keys on disk and
keeps unknown keys on rewrite so older binaries never drop fields written by
newer ones.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from vdctl.domain.lifecycle import InstallState, Operation, StepKind
from vdctl.domain.modes import AchievedMode, Mode

SETTINGS_SCHEMA_VERSION = 1


class Settings(BaseModel):
    """Provisioning state for this host. Exists iff the host is provisioned."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="allow",
    )

    virtual_display_id: str
    config_path: str
    config_backup_path: str | None = None
    service_name: str
    install_state: InstallState = InstallState.SETTINGS_PERSISTED
    install_timestamp: str
    schema_version: int = SETTINGS_SCHEMA_VERSION
    driver_package: str | None = None
    directive: str | None = None

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, indent=2)


class BackupRecord(BaseModel):
    """A snapshot of the collaborator's config taken before mutation."""

    model_config = {"frozen": True}

    original_path: str
    backup_path: str
    checksum: str | None = None
    created_at: str
    committed: bool = False


class StepRecord(BaseModel):
    """One completed, compensatable side effect."""

    model_config = {"frozen": True}

    kind: StepKind
    data: dict[str, Any] = Field(default_factory=dict)


class TransactionJournal(BaseModel):
    """Durable log of an in-flight transaction.

    Written after every step so an interrupted process can be rolled back
    later from disk alone.
    """

    operation: Operation
    state: InstallState = InstallState.IDLE
    started_at: str
    service_was_running: bool = False
    steps: list[StepRecord] = Field(default_factory=list)


class SessionRecord(BaseModel):
    """Persisted state of one streaming session (connect → disconnect)."""

    id: str
    started_at: str
    workspace: str
    keep_artifacts: bool = False
    display_id: str | None = None
    tool_path: str | None = None
    prior_mode: Mode | None = None
    applied: AchievedMode | None = None
