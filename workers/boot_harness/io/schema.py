"""
Schema — Pydantic models for the run receipt.

One receipt per harness run records the configuration, every state the
driver passed through, each stage's commands and outcome, the cleanup
result and the final exit status.

Runtime contract fields (present in every receipt):
  package_name, harness_version, schema_version.
"""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum, unique
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from boot_harness import HARNESS_VERSION, PACKAGE_NAME, SCHEMA_VERSION


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# ── Enums ────────────────────────────────────────────────────────────────────

@unique
class RunState(str, Enum):
    INIT = "INIT"
    COMPILING = "COMPILING"
    EMBEDDING = "EMBEDDING"
    LINKING_KERNEL = "LINKING_KERNEL"
    ASSEMBLING_IMAGE = "ASSEMBLING_IMAGE"
    BOOTING = "BOOTING"
    HALTED = "HALTED"
    CRASHED = "CRASHED"
    CLEANUP = "CLEANUP"
    DONE = "DONE"


@unique
class StageName(str, Enum):
    COMPILE_PROGRAM = "compile_program"
    EMBED = "embed"
    LINK_KERNEL = "link_kernel"
    ASSEMBLE_IMAGE = "assemble_image"
    BOOT = "boot"
    CLEANUP = "cleanup"


@unique
class StageStatus(str, Enum):
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"


# ── Stage records ────────────────────────────────────────────────────────────

class CommandRecord(BaseModel):
    """One external command run by a stage."""
    command: str
    exit_code: int
    duration_ms: int = 0
    timed_out: bool = False


class StageRecord(BaseModel):
    stage: StageName
    status: StageStatus
    duration_ms: int = 0
    commands: List[CommandRecord] = Field(default_factory=list)
    outputs: Dict[str, str] = Field(default_factory=dict)

    # Failure details (FAILED only); diagnostics are the collaborator's own words
    error_kind: Optional[str] = None
    error_message: Optional[str] = None
    diagnostics: Optional[str] = None


# ── Receipt ──────────────────────────────────────────────────────────────────

class RunReceipt(BaseModel):
    """Wrapper for run_receipt.json."""

    package_name: str = PACKAGE_NAME
    harness_version: str = HARNESS_VERSION
    schema_version: str = SCHEMA_VERSION

    run_id: str
    created_at: str = Field(default_factory=now_iso)
    finished_at: Optional[str] = None

    config: Dict[str, Any] = Field(default_factory=dict)
    scratch_root: Optional[str] = None

    states: List[RunState] = Field(default_factory=lambda: [RunState.INIT])
    stages: List[StageRecord] = Field(default_factory=list)
    cleanup: Optional[StageRecord] = None

    embedded_symbols: List[str] = Field(default_factory=list)
    exit_code: Optional[int] = None

    def stage(self, name: StageName) -> Optional[StageRecord]:
        for record in self.stages:
            if record.stage == name:
                return record
        return None

    @property
    def final_state(self) -> RunState:
        return self.states[-1]
