# errors.py
from __future__ import annotations

from dataclasses import dataclass, field


class GridCIError(Exception):
    """Base class for every error raised by gridci."""


# ----------------------------------------------------------------------
# Configuration errors: fatal, raised before any job starts
# ----------------------------------------------------------------------

class ConfigError(GridCIError):
    """Invalid workflow, event or matrix definition."""


class MalformedEvent(ConfigError):
    """The event descriptor is missing fields required for its kind."""

    def __init__(self, message: str, *, kind: str | None = None, missing: list[str] | None = None):
        super().__init__(message)
        self.kind = kind
        self.missing = list(missing or [])

    def __str__(self) -> str:
        msg = super().__str__()
        if self.missing:
            msg = f"{msg} (missing: {', '.join(self.missing)})"
        return msg


class EmptyAxis(ConfigError):
    """A matrix axis has no value-sets."""

    def __init__(self, job: str, axis: str):
        super().__init__(f"Job '{job}': matrix axis '{axis}' has no values")
        self.job = job
        self.axis = axis


class TemplateError(ConfigError):
    """A ${placeholder} could not be resolved."""


class WorkflowError(ConfigError):
    """The workflow file or its jobs are invalid."""


# ----------------------------------------------------------------------
# Execution errors: scoped to a single job instance
# ----------------------------------------------------------------------

@dataclass
class MissingArtifact(GridCIError):
    path: str
    reason: str = "does not exist"

    def __str__(self) -> str:
        return f"artifact source '{self.path}' {self.reason}"


@dataclass
class StepFailure(GridCIError):
    """
    Structured step failure with enough context for:
      - clean CLI output
      - per-instance result reporting
    """
    job: str
    step: str
    cmd: str
    exit_code: int
    details: dict = field(default_factory=dict)

    def __str__(self) -> str:
        return f"[{self.job}] step '{self.step}' failed (exit={self.exit_code}): {self.cmd}"
