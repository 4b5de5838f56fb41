# dsl.py
from __future__ import annotations

from typing import Any, Dict, Iterable, List, Mapping, Optional

from .conditions import Condition
from .matrix import axis
from .model import Job, MatrixAxis, Step, Workflow


# ---------------------------------------------------------------------
# Step helpers
# ---------------------------------------------------------------------

def sh(
    name: str,
    cmd: str,
    *,
    cwd: str | None = None,
    when: Condition | None = None,
    always: bool = False,
    continue_on_error: bool = False,
) -> Step:
    """
    Create a shell step.

    `when` gates the step on the trigger context; `always=True` runs it even
    after an earlier step failed (cleanup, stats).
    """
    return Step(
        name=name,
        run=cmd,
        cwd=cwd,
        condition=when,
        run_on_failure=always,
        continue_on_error=continue_on_error,
    )


def cleanup(name: str, cmd: str, *, cwd: str | None = None) -> Step:
    """Shorthand for a best-effort step that always runs and never fails the job."""
    return sh(name, cmd, cwd=cwd, always=True, continue_on_error=True)


# ---------------------------------------------------------------------
# Functional Job helper
# ---------------------------------------------------------------------

def _axes(matrix: Optional[Mapping[str, Iterable[Any]] | Iterable[MatrixAxis]]) -> List[MatrixAxis]:
    if matrix is None:
        return []
    if isinstance(matrix, Mapping):
        # dict order is declaration order
        return [axis(name, values) for name, values in matrix.items()]
    return list(matrix)


def job(
    name: str,
    *steps: Step,  # allow: job("x", sh(...), sh(...))
    steps_list: Optional[List[Step]] = None,
    matrix: Optional[Mapping[str, Iterable[Any]] | Iterable[MatrixAxis]] = None,
    env: Optional[Dict[str, str]] = None,
    fail_fast: bool = False,
    continue_on_error: bool = False,
) -> Job:
    """
    job("docs", sh(...), matrix={"os": ["ubuntu-latest"], "make": [{...}]})
    """
    steps_final: List[Step] = []
    if steps_list:
        steps_final.extend(steps_list)
    steps_final.extend(steps)

    if not steps_final:
        raise ValueError(f"job({name!r}) must have at least one step")

    return Job(
        name=name,
        steps=steps_final,
        matrix=_axes(matrix),
        env={k: str(v) for k, v in (env or {}).items()},
        fail_fast=fail_fast,
        continue_on_error=continue_on_error,
    )


# ---------------------------------------------------------------------
# Builder API
# ---------------------------------------------------------------------

class JobBuilder:
    def __init__(self, name: str):
        self.name = name
        self._steps: list[Step] = []
        self._matrix: list[MatrixAxis] = []
        self._env: dict[str, str] = {}
        self._fail_fast = False
        self._continue_on_error = False

    def define_step(
        self,
        name: str,
        run: str,
        cwd: str | None = None,
        *,
        when: Condition | None = None,
        always: bool = False,
    ):
        self._steps.append(sh(name, run, cwd=cwd, when=when, always=always))
        return self

    def add_step(self, step: Step):
        self._steps.append(step)
        return self

    def with_axis(self, name: str, values: Iterable[Any]):
        self._matrix.append(axis(name, values))
        return self

    def with_env(self, **env):
        # force values to str for env compatibility
        self._env.update({k: str(v) for k, v in env.items()})
        return self

    def fail_fast(self, enabled: bool = True):
        self._fail_fast = enabled
        return self

    def allow_failure(self, enabled: bool = True):
        self._continue_on_error = enabled
        return self

    def build(self) -> Job:
        if not self._steps:
            raise ValueError(f"Job '{self.name}' has no steps")
        return Job(
            name=self.name,
            steps=list(self._steps),
            matrix=list(self._matrix),
            env=dict(self._env),
            fail_fast=self._fail_fast,
            continue_on_error=self._continue_on_error,
        )


def build(name: str) -> JobBuilder:
    """Convenience: build('test').define_step(...).build()"""
    return JobBuilder(name)


# ---------------------------------------------------------------------
# Workflow helper
# ---------------------------------------------------------------------

def wf(
    name: str,
    *jobs: Job,
    env: Optional[Dict[str, str]] = None,
    cancel_in_progress: bool = True,
) -> Workflow:
    """
    Workflow definition helper.

        from gridci import wf, job, sh

        def workflow():
            return wf(
                "docs",
                job(...),
                job(...),
                env={"RUSTC_WRAPPER": "sccache"},
            )
    """
    return Workflow(
        name=name,
        jobs=list(jobs),
        env={k: str(v) for k, v in (env or {}).items()},
        cancel_in_progress=cancel_in_progress,
    )
