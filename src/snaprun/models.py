"""Shared data models for runs, steps, timelines and execution results."""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from .errors import InvalidTransitionError


def utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class CamelModel(BaseModel):
    """Serialises with camelCase keys and accepts either spelling on input."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_json_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class RunStatus(str, Enum):
    """Lifecycle states tracked for a run."""

    RUNNING = "running"
    FINISHED = "finished"
    FAILED = "failed"
    TIMEOUT = "timeout"
    ABORTED = "aborted"
    APPLIED = "applied"
    VERIFIED = "verified"
    CLINE_FAILED = "cline_failed"


ALLOWED_TRANSITIONS: Dict[RunStatus, frozenset] = {
    RunStatus.RUNNING: frozenset(
        {RunStatus.FINISHED, RunStatus.FAILED, RunStatus.TIMEOUT, RunStatus.ABORTED}
    ),
    RunStatus.FAILED: frozenset(
        {RunStatus.APPLIED, RunStatus.CLINE_FAILED, RunStatus.VERIFIED, RunStatus.FAILED}
    ),
    RunStatus.CLINE_FAILED: frozenset(
        {RunStatus.APPLIED, RunStatus.CLINE_FAILED, RunStatus.VERIFIED, RunStatus.FAILED}
    ),
    RunStatus.APPLIED: frozenset({RunStatus.VERIFIED, RunStatus.FAILED}),
    RunStatus.VERIFIED: frozenset({RunStatus.VERIFIED, RunStatus.FAILED}),
    RunStatus.FINISHED: frozenset(),
    RunStatus.TIMEOUT: frozenset(),
    RunStatus.ABORTED: frozenset(),
}

# States from which the fix pipeline may start.
FIXABLE_STATUSES = frozenset({RunStatus.FAILED, RunStatus.CLINE_FAILED})


class ExecutionMode(str, Enum):
    DIRECT = "direct"
    SANDBOX = "sandbox"


class RunStepEntry(CamelModel):
    """Append-only record of something that happened during a run."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    type: str
    message: str
    ts: int
    meta: Dict[str, Any] = Field(default_factory=dict)


class TimelineEvent(CamelModel):
    t: int
    step: str
    status: str
    message: Optional[str] = None
    meta: Optional[Dict[str, Any]] = None


class RunResult(CamelModel):
    """Outcome of one sandbox executor invocation."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    ok: bool
    code: Optional[int] = None
    stdout: str = ""
    stderr: str = ""
    error: Optional[str] = None
    command: Optional[str] = None
    mode: Optional[ExecutionMode] = None
    duration_ms: int = 0
    copy_ms: int = 0
    exec_ms: int = 0
    timed_out: bool = False
    cancelled: bool = False
    sandbox_dir: Optional[str] = None


class ErrorLocation(CamelModel):
    file: str
    line: Optional[int] = None
    column: Optional[int] = None
    raw: Optional[str] = None


class Analysis(CamelModel):
    error_detected: bool
    stack_detected: bool
    errors: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    stack: List[str] = Field(default_factory=list)
    summary: str = ""
    confidence: int = 50
    primary_error_line: Optional[str] = None
    primary_error_kind: Optional[str] = None
    primary_locations: Optional[List[ErrorLocation]] = None
    language_guess: Optional[str] = None


class AppliedRecord(CamelModel):
    applied_at: str
    files: List[str] = Field(default_factory=list)


class VerifyRecord(CamelModel):
    verified_at: str
    result: RunResult


class PolicyBlock(CamelModel):
    code: str
    reason: str
    files: List[str] = Field(default_factory=list)


class FixRecord(CamelModel):
    started_at: str
    finished_at: Optional[str] = None
    code: Optional[int] = None
    duration_ms: int = 0
    files_touched: List[str] = Field(default_factory=list)
    policy_blocked: Optional[PolicyBlock] = None


class PatchFile(CamelModel):
    path: str
    before: Optional[str] = None
    after: str


class PatchSuggestion(CamelModel):
    id: Optional[str] = None
    confidence: Optional[float] = None
    notes: Optional[str] = None
    files: List[PatchFile]


class SuggestionRecord(CamelModel):
    available: bool
    path: Optional[str] = None
    generated_at: str
    rejected: List[Dict[str, Any]] = Field(default_factory=list)


class RunRecord(CamelModel):
    """The durable per-run document owned by the run store."""

    run_id: str
    repo_path: str
    command: str
    mode: ExecutionMode = ExecutionMode.SANDBOX
    docker_image: Optional[str] = None
    timeout_ms: Optional[int] = None
    status: RunStatus = RunStatus.RUNNING
    created_at: str = Field(default_factory=utcnow_iso)
    finished_at: Optional[str] = None
    last_updated_at: str = Field(default_factory=utcnow_iso)
    steps: List[RunStepEntry] = Field(default_factory=list)
    log_paths: Dict[str, str] = Field(default_factory=dict)
    diff_path: Optional[str] = None
    patch_path: Optional[str] = None
    metrics_path: Optional[str] = None
    artifacts_dir: str = ""
    run_result: Optional[RunResult] = None
    analysis: Optional[Analysis] = None
    applied: Optional[AppliedRecord] = None
    verify: Optional[VerifyRecord] = None
    fix: Optional[FixRecord] = None
    suggestion: Optional[SuggestionRecord] = None
    error: Optional[str] = None

    def transition(self, target: RunStatus) -> None:
        """Move to *target*, refusing anything the state machine does not allow."""
        if target not in ALLOWED_TRANSITIONS[self.status]:
            raise InvalidTransitionError(self.status.value, target.value)
        self.status = target


class RunListItem(CamelModel):
    id: str
    file: str
    ts: int


class StartRunRequest(CamelModel):
    repo_path_on_host: Optional[str] = None
    command: Optional[str] = None
    timeout_ms: Optional[int] = Field(default=None, gt=0)
    docker_image: Optional[str] = None
    mode: Optional[ExecutionMode] = None
    keep_sandbox: Optional[bool] = None


class FixRequest(CamelModel):
    command: Optional[str] = None
    timeout_ms: Optional[int] = Field(default=None, gt=0)
    docker_image: Optional[str] = None


class AnalyzeRequest(CamelModel):
    logs: Optional[str] = None


class ApplyRequest(CamelModel):
    apply: bool = False
