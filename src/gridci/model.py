# model.py
from __future__ import annotations

import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict, List, Mapping, Optional, Tuple

if TYPE_CHECKING:
    from .conditions import Condition


# ---------------------------------------------------------------------
# Trigger context
# ---------------------------------------------------------------------

class EventKind(str, Enum):
    PUSH = "push"
    PULL_REQUEST = "pull_request"
    PULL_REQUEST_TARGET = "pull_request_target"
    MANUAL = "manual"

    @classmethod
    def parse(cls, value: str) -> "EventKind":
        if value == "workflow_dispatch":
            return cls.MANUAL
        return cls(value)


@dataclass(frozen=True)
class EventContext:
    """Facts about the event that started a run. Shared read-only by all jobs."""
    kind: EventKind
    head_sha: str
    branch: str | None = None
    pr_number: int | None = None
    base_sha: str | None = None
    ref: str | None = None
    repository: str | None = None

    @property
    def is_pull_request(self) -> bool:
        return self.kind in (EventKind.PULL_REQUEST, EventKind.PULL_REQUEST_TARGET)

    @property
    def tag(self) -> str | None:
        if self.ref and self.ref.startswith("refs/tags/"):
            return self.ref[len("refs/tags/"):]
        return None


# ---------------------------------------------------------------------
# Steps and jobs
# ---------------------------------------------------------------------

STEP_RUN = "run"
STEP_UPLOAD_ARTIFACT = "upload-artifact"
STEP_DOCKER_BUILD = "docker-build"


@dataclass(frozen=True)
class Step:
    """A single step inside a CI job."""
    name: str
    run: str = ""
    cwd: str | None = None
    condition: Optional["Condition"] = None   # None -> always evaluated as true
    run_on_failure: bool = False              # runs even after an earlier failure
    continue_on_error: bool = False
    kind: str = STEP_RUN
    data: Dict[str, Any] | None = None


@dataclass
class Job:
    """
    A job template: a step list shared by every matrix combination.

    Axes are declared in order; the first axis varies slowest.
    """
    name: str
    steps: list[Step]
    matrix: list["MatrixAxis"] = field(default_factory=list)
    env: Dict[str, str] = field(default_factory=dict)
    fail_fast: bool = False
    continue_on_error: bool = False


@dataclass(frozen=True)
class MatrixAxis:
    name: str
    values: Tuple[Dict[str, Any], ...]

    def __len__(self) -> int:
        return len(self.values)


@dataclass(frozen=True)
class JobInstance:
    """One concrete matrix combination of a Job."""
    id: str
    job: str
    coordinate: Tuple[int, ...]
    bindings: Dict[str, str]
    steps: Tuple[Step, ...]
    env: Dict[str, str] = field(default_factory=dict)
    fail_fast: bool = False
    continue_on_error: bool = False
    display_name: str = ""

    @property
    def label(self) -> str:
        return self.display_name or self.id


@dataclass
class Workflow:
    name: str
    jobs: List[Job]
    env: Dict[str, str] = field(default_factory=dict)
    cancel_in_progress: bool = True


# ---------------------------------------------------------------------
# Run configuration
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class RunConfig:
    """
    Workflow-wide configuration handed to the step executor.

    `env` replaces ambient CI environment (e.g. compiler cache settings) so
    tests can inject it without touching os.environ.
    """
    env: Mapping[str, str] = field(default_factory=dict)
    inherit_environ: bool = True
    workspace: Path = Path(".")

    def base_env(self) -> Dict[str, str]:
        out: Dict[str, str] = dict(os.environ) if self.inherit_environ else {}
        out.update({k: str(v) for k, v in self.env.items()})
        return out


# ---------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------

class StepStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"


class JobStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class StepResult:
    name: str
    status: StepStatus
    exit_code: int | None = None
    duration: float = 0.0
    error: str | None = None


@dataclass
class JobResult:
    instance: JobInstance
    status: JobStatus
    steps: List[StepResult] = field(default_factory=list)
    error: str | None = None

    @property
    def required(self) -> bool:
        return not self.instance.continue_on_error

    @property
    def executed(self) -> List[StepResult]:
        return [s for s in self.steps if s.status not in (StepStatus.SKIPPED, StepStatus.CANCELLED)]


@dataclass
class RunResult:
    run_id: str
    workflow: str
    context: EventContext
    jobs: List[JobResult] = field(default_factory=list)
    cancelled: bool = False

    @property
    def failed(self) -> List[JobResult]:
        return [j for j in self.jobs if j.status is JobStatus.FAILED and j.required]

    @property
    def exit_code(self) -> int:
        return 1 if self.failed else 0

    def statuses(self) -> Dict[str, str]:
        return {j.instance.label: j.status.value for j in self.jobs}
