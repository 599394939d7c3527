# model.py
from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Union

if TYPE_CHECKING:
    from .environment import Environment


# ---------------------------------------------------------------------
# Statuses
# ---------------------------------------------------------------------

class StepStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self not in (JobStatus.PENDING, JobStatus.RUNNING)


class RunStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


class EventKind(str, Enum):
    PUSH = "push"
    PULL_REQUEST = "pull_request"


# ---------------------------------------------------------------------
# Steps
# ---------------------------------------------------------------------

@dataclass
class StepResult:
    """What one step produced: status, exit code, captured output, timing."""
    name: str
    status: StepStatus
    exit_code: Optional[int] = None
    command: str = ""
    stdout: str = ""
    stderr: str = ""
    duration: float = 0.0
    timed_out: bool = False
    outputs: Dict[str, str] = field(default_factory=dict)
    continue_on_error: bool = False
    started_at: Optional[float] = None
    finished_at: Optional[float] = None

    @property
    def ok(self) -> bool:
        return self.status == StepStatus.SUCCEEDED


@dataclass(frozen=True)
class CommandStep:
    """A literal shell command run as a child process."""
    name: str
    run: str
    cwd: str | None = None
    env: Dict[str, str] = field(default_factory=dict)
    continue_on_error: bool = False
    timeout: Optional[float] = None
    id: Optional[str] = None

    kind = "command"

    def execute(self, env: "Environment", *, timeout: Optional[float] = None) -> StepResult:
        started = time.time()
        proc = env.run(self.run, cwd=self.cwd, extra_env=self.env, timeout=timeout)
        finished = time.time()

        if proc.cancelled:
            status = StepStatus.CANCELLED
        elif proc.exit_code == 0 and not proc.timed_out:
            status = StepStatus.SUCCEEDED
        else:
            status = StepStatus.FAILED

        return StepResult(
            name=self.name,
            status=status,
            exit_code=proc.exit_code,
            command=self.run,
            stdout=proc.stdout,
            stderr=proc.stderr,
            duration=finished - started,
            timed_out=proc.timed_out,
            continue_on_error=self.continue_on_error,
            started_at=started,
            finished_at=finished,
        )


@dataclass(frozen=True)
class ActionStep:
    """
    A reference to a reusable action (opaque id + parameters).

    The action itself is a black box looked up in the environment's
    action registry; it reports success/failure plus output variables.
    """
    name: str
    uses: str
    with_: Dict[str, Any] = field(default_factory=dict)
    env: Dict[str, str] = field(default_factory=dict)
    continue_on_error: bool = False
    timeout: Optional[float] = None
    id: Optional[str] = None

    kind = "action"

    def execute(self, env: "Environment", *, timeout: Optional[float] = None) -> StepResult:
        started = time.time()
        outcome = env.actions.invoke(self.uses, env, dict(self.with_), timeout=timeout, step_env=self.env)
        finished = time.time()

        if outcome.cancelled:
            status = StepStatus.CANCELLED
        elif outcome.success:
            status = StepStatus.SUCCEEDED
        else:
            status = StepStatus.FAILED

        return StepResult(
            name=self.name,
            status=status,
            exit_code=0 if outcome.success else 1,
            command=self.uses,
            stdout=outcome.message if outcome.success else "",
            stderr="" if outcome.success else outcome.message,
            duration=finished - started,
            timed_out=outcome.timed_out,
            outputs=dict(outcome.outputs),
            continue_on_error=self.continue_on_error,
            started_at=started,
            finished_at=finished,
        )


Step = Union[CommandStep, ActionStep]


# ---------------------------------------------------------------------
# Jobs / pipeline
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class CacheSpec:
    """
    Cache-key derivation inputs and the paths stored under that key.

    key = hash(toolchain versions, key-file contents, salt)
    """
    paths: List[str] = field(default_factory=list)
    key_files: List[str] = field(default_factory=list)
    toolchain: List[str] = field(default_factory=list)
    tool_versions: Dict[str, str] = field(default_factory=dict)  # pin instead of probing
    salt: str = ""
    keep: int = 3


@dataclass(frozen=True)
class Job:
    """A CI job: ordered steps + dependencies + environment and cache inputs."""
    name: str
    steps: List[Step]
    needs: List[str] = field(default_factory=list)
    runs_on: str = "local"
    display_name: Optional[str] = None
    env: Dict[str, str] = field(default_factory=dict)
    cache: Optional[CacheSpec] = None
    timeout: Optional[float] = None
    optional: bool = False

    @property
    def title(self) -> str:
        return self.display_name or self.name


@dataclass(frozen=True)
class PipelineDefinition:
    """Ordered jobs of one pipeline. Declaration order is the dispatch tie-break."""
    jobs: List[Job]
    name: str = "pipeline"

    def job_names(self) -> List[str]:
        return [j.name for j in self.jobs]


@dataclass(frozen=True)
class TriggerEvent:
    kind: str
    branch: str = ""
    action: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> TriggerEvent:
        return cls(kind=data["kind"], branch=data.get("branch", ""), action=data.get("action"))


# ---------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------

@dataclass
class JobResult:
    name: str
    status: JobStatus
    steps: List[StepResult] = field(default_factory=list)
    reason: str = ""
    cause: Optional[BaseException] = None  # ProvisioningError etc.
    optional: bool = False
    duration: float = 0.0
    cache_hit: bool = False
    finished_at: float = field(default_factory=time.time)

    @property
    def failed_steps(self) -> List[StepResult]:
        return [s for s in self.steps if s.status == StepStatus.FAILED]


@dataclass
class RunResult:
    run_id: str
    status: RunStatus
    jobs: Dict[str, JobResult]
    started_at: datetime
    finished_at: datetime

    @property
    def duration(self) -> float:
        return (self.finished_at - self.started_at).total_seconds()

    @property
    def exit_code(self) -> int:
        if self.status == RunStatus.SUCCEEDED:
            return 0
        if self.status == RunStatus.CANCELLED:
            return 130
        return 1

    def statuses(self) -> Dict[str, str]:
        return {name: r.status.value for name, r in self.jobs.items()}
