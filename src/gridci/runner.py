# runner.py
from __future__ import annotations

import logging
import os
import runpy
import time
import uuid
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional, Sequence

from .artifacts import ArtifactPublisher
from .concurrency import CancellationToken, ConcurrencyRegistry, get_registry
from .conditions import holds
from .errors import GridCIError, StepFailure, WorkflowError
from .events import checkout_ref, concurrency_key
from .executor import CheckoutProvider, LocalCheckout, ShellTaskExecutor, TaskExecutor
from .images import ImagePublisher
from .matrix import bind_late, expand_all, render_late
from .model import (
    STEP_DOCKER_BUILD,
    STEP_RUN,
    STEP_UPLOAD_ARTIFACT,
    EventContext,
    Job,
    JobInstance,
    JobResult,
    JobStatus,
    MatrixAxis,
    RunConfig,
    RunResult,
    Step,
    StepResult,
    StepStatus,
    Workflow,
)
from .step_workflows import artifact as artifact_steps
from .step_workflows import docker as docker_steps
from .ui.console import Console, get_console

logger = logging.getLogger(__name__)

STEP_KINDS = (STEP_RUN, STEP_UPLOAD_ARTIFACT, STEP_DOCKER_BUILD)


# ----------------------------------------------------------------------
# Workflow loading (local file/module)
# ----------------------------------------------------------------------

def _validate(workflow: Workflow) -> Workflow:
    if not workflow.jobs:
        raise WorkflowError(f"Workflow '{workflow.name}' has no jobs")
    for j in workflow.jobs:
        if not isinstance(j, Job):
            raise WorkflowError(f"Workflow '{workflow.name}' contains a non-Job entry: {j!r}")
        if not j.steps:
            raise WorkflowError(f"Job '{j.name}' has no steps")
        for s in j.steps:
            if s.kind not in STEP_KINDS:
                raise WorkflowError(f"Job '{j.name}' step '{s.name}' has unknown kind {s.kind!r}")
    return workflow


def load_workflow(path: str | Path) -> Workflow:
    """
    Load a workflow from a python file path.

    The file must define either:
      - workflow() -> Workflow | List[Job]
      - WORKFLOW = Workflow(...)
      - JOBS = [Job, ...]

    A bare job list is named after the file.
    """
    wf_path = Path(path).expanduser().resolve()
    if not wf_path.exists():
        raise WorkflowError(f"Workflow file not found: {wf_path}")
    if wf_path.suffix != ".py":
        raise WorkflowError(f"Workflow must be a .py file, got: {wf_path.name}")

    module_name = f"gridci_workflow_{wf_path.stem}"
    globals_dict = runpy.run_path(str(wf_path), run_name=module_name)

    if "workflow" in globals_dict and callable(globals_dict["workflow"]):
        defined = globals_dict["workflow"]()
    elif "WORKFLOW" in globals_dict:
        defined = globals_dict["WORKFLOW"]
    elif "JOBS" in globals_dict:
        defined = globals_dict["JOBS"]
    else:
        raise WorkflowError(
            "Workflow file must define workflow() -> Workflow | List[Job], WORKFLOW or JOBS."
        )

    if isinstance(defined, Workflow):
        return _validate(defined)
    if isinstance(defined, list) and all(isinstance(j, Job) for j in defined):
        return _validate(Workflow(name=wf_path.stem, jobs=defined))
    raise WorkflowError(
        "Workflow must return/define a Workflow or a List[Job]. "
        "Use `from gridci import wf, job, sh` and `def workflow(): return wf('name', job(...))`."
    )


def select_jobs(instances: Sequence[JobInstance], only: Optional[Iterable[str]]) -> List[JobInstance]:
    """Keep instances of the named jobs (all when `only` is empty)."""
    wanted = set(only or [])
    if not wanted:
        return list(instances)
    known = {i.job for i in instances}
    unknown = sorted(wanted - known)
    if unknown:
        raise WorkflowError(f"Unknown job(s): {unknown}. Known jobs: {sorted(known)}")
    return [i for i in instances if i.job in wanted]


# ----------------------------------------------------------------------
# Step executor
# ----------------------------------------------------------------------

class StepExecutor:
    """
    Runs the steps of one job instance, strictly in order.

    After a gating failure only run_on_failure steps still run. A cancelled
    token stops new steps from launching; a command already running is left
    to finish.
    """

    def __init__(
        self,
        ctx: EventContext,
        *,
        executor: TaskExecutor,
        checkout: CheckoutProvider,
        run_config: RunConfig | None = None,
        artifacts: ArtifactPublisher | None = None,
        images: ImagePublisher | None = None,
        console: Console | None = None,
    ):
        self.ctx = ctx
        self.executor = executor
        self.checkout = checkout
        self.run_config = run_config or RunConfig()
        self.artifacts = artifacts
        self.images = images
        self.console = console or get_console()

    def _env(self, instance: JobInstance, workspace: Path) -> Dict[str, str]:
        env = self.run_config.base_env()
        late = {"sha": self.ctx.head_sha}
        env.update({k: render_late(v, late) for k, v in instance.env.items()})
        env.update(
            {
                "GRIDCI": "true",
                "GRIDCI_EVENT_NAME": self.ctx.kind.value,
                "GRIDCI_SHA": self.ctx.head_sha,
                "GRIDCI_REF": self.ctx.ref or "",
                "GRIDCI_JOB": instance.job,
                "GRIDCI_WORKSPACE": str(workspace),
            }
        )
        if self.ctx.pr_number is not None:
            env["GRIDCI_PR_NUMBER"] = str(self.ctx.pr_number)
        return env

    def _execute(self, instance: JobInstance, step: Step, workspace: Path, env: Mapping[str, str]) -> StepResult:
        started = time.monotonic()
        try:
            if step.kind == STEP_UPLOAD_ARTIFACT:
                if self.artifacts is None:
                    raise WorkflowError("no artifact store configured")
                name = artifact_steps.run_step(step, self.ctx, workspace, self.artifacts)
                self.console.print_info(f"[{instance.id}] uploaded {name}")
            elif step.kind == STEP_DOCKER_BUILD:
                if self.images is None:
                    raise WorkflowError("no container registry configured")
                outcome = docker_steps.run_step(step, self.ctx, workspace, self.images)
                verb = "pushed" if outcome.pushed else "built (push skipped)"
                self.console.print_info(f"[{instance.id}] {verb}: {', '.join(outcome.references)}")
            else:
                cwd = (workspace / (step.cwd or ".")).resolve()
                code = self.executor.execute(step.run, env, cwd)
                if code != 0:
                    raise StepFailure(job=instance.id, step=step.name, cmd=step.run, exit_code=code)
        except StepFailure as e:
            return StepResult(step.name, StepStatus.FAILED, e.exit_code, time.monotonic() - started, str(e))
        except (GridCIError, OSError, RuntimeError) as e:
            logger.debug("step error", exc_info=True)
            return StepResult(step.name, StepStatus.FAILED, None, time.monotonic() - started, str(e))
        return StepResult(step.name, StepStatus.SUCCEEDED, 0, time.monotonic() - started)

    def run(self, instance: JobInstance, token: CancellationToken | None = None) -> JobResult:
        token = token or CancellationToken()
        results: List[StepResult] = []

        if token.cancelled:
            results = [StepResult(s.name, StepStatus.CANCELLED) for s in instance.steps]
            return JobResult(instance, JobStatus.CANCELLED, results, error=token.reason)

        self.console.print_job_start(instance)

        try:
            workspace = self.checkout.checkout(checkout_ref(self.ctx), instance.id)
        except (GridCIError, OSError, RuntimeError) as e:
            results = [StepResult(s.name, StepStatus.SKIPPED) for s in instance.steps]
            return JobResult(instance, JobStatus.FAILED, results, error=f"checkout failed: {e}")

        env = self._env(instance, workspace)
        failed = False
        cancelled = False

        for step in instance.steps:
            step = bind_late(step, {"sha": self.ctx.head_sha})

            if cancelled or token.cancelled:
                cancelled = True
                results.append(StepResult(step.name, StepStatus.CANCELLED))
                continue
            if failed and not step.run_on_failure:
                result = StepResult(step.name, StepStatus.SKIPPED)
            elif not holds(step.condition, self.ctx):
                result = StepResult(step.name, StepStatus.SKIPPED)
            else:
                self.console.print_step(instance, step.name)
                result = self._execute(instance, step, workspace, env)
                if result.status is StepStatus.FAILED and not step.continue_on_error:
                    failed = True
            self.console.print_step_result(instance, result)
            results.append(result)

        if failed:
            status = JobStatus.FAILED
        elif cancelled:
            status = JobStatus.CANCELLED
        else:
            status = JobStatus.SUCCEEDED

        first_error = next((r.error for r in results if r.status is StepStatus.FAILED and r.error), None)
        result = JobResult(instance, status, results, error=first_error or (token.reason if cancelled else None))
        self.console.print_job_result(result)
        return result


# ----------------------------------------------------------------------
# Orchestrator
# ----------------------------------------------------------------------

class Orchestrator:
    """
    Single-host runner for one workflow run:

      - expands every job's matrix (configuration errors raise before any job starts)
      - registers the run in its concurrency group, cancelling the previous run
      - fans instances out over a thread pool
      - applies fail-fast per job
    """

    def __init__(
        self,
        *,
        executor: TaskExecutor | None = None,
        checkout: CheckoutProvider | None = None,
        artifacts: ArtifactPublisher | None = None,
        images: ImagePublisher | None = None,
        registry: ConcurrencyRegistry | None = None,
        max_workers: int | None = None,
        console: Console | None = None,
    ):
        self.executor = executor or ShellTaskExecutor()
        self.checkout = checkout
        self.artifacts = artifacts
        self.images = images
        self.registry = registry or get_registry()
        if max_workers is None:
            c = os.cpu_count() or 2
            max_workers = max(1, c - 1)
        self.max_workers = max_workers
        self.console = console or get_console()

    def plan(
        self,
        workflow: Workflow,
        *,
        overrides: Mapping[str, MatrixAxis] | None = None,
        only: Iterable[str] | None = None,
    ) -> List[JobInstance]:
        return select_jobs(expand_all(workflow.jobs, overrides), only)

    def run(
        self,
        workflow: Workflow,
        ctx: EventContext,
        *,
        run_id: str | None = None,
        run_config: RunConfig | None = None,
        overrides: Mapping[str, MatrixAxis] | None = None,
        only: Iterable[str] | None = None,
    ) -> RunResult:
        instances = self.plan(workflow, overrides=overrides, only=only)

        run_id = run_id or uuid.uuid4().hex[:12]
        base = run_config or RunConfig()
        config = RunConfig(
            env={**workflow.env, **base.env},
            inherit_environ=base.inherit_environ,
            workspace=base.workspace,
        )

        run_token = CancellationToken()
        key = concurrency_key(workflow.name, ctx) if workflow.cancel_in_progress else None
        if key is not None:
            self.registry.acquire(key, run_id, run_token)

        self.console.print_run_started(workflow.name, run_id, ctx, len(instances))
        logger.info(
            "run started",
            extra={"workflow": workflow.name, "run_id": run_id, "group": key, "instances": len(instances)},
        )

        step_executor = StepExecutor(
            ctx,
            executor=self.executor,
            checkout=self.checkout or LocalCheckout(config.workspace),
            run_config=config,
            artifacts=self.artifacts,
            images=self.images,
            console=self.console,
        )

        job_tokens = {i.job: run_token.child() for i in instances}
        results: Dict[str, JobResult] = {}

        try:
            with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
                in_flight: Dict[Future, JobInstance] = {}
                for inst in instances:
                    token = job_tokens[inst.job].child()
                    in_flight[pool.submit(step_executor.run, inst, token)] = inst

                for fut in as_completed(in_flight):
                    inst = in_flight[fut]
                    try:
                        result = fut.result()
                    except Exception as e:
                        logger.exception("job instance crashed", extra={"instance": inst.id})
                        result = JobResult(inst, JobStatus.FAILED, error=str(e))
                    results[inst.id] = result

                    if result.status is JobStatus.FAILED and inst.fail_fast:
                        job_tokens[inst.job].cancel(reason=f"fail-fast: {inst.label} failed")
        finally:
            if key is not None:
                self.registry.release(key, run_id)

        run = RunResult(
            run_id=run_id,
            workflow=workflow.name,
            context=ctx,
            jobs=[results[i.id] for i in instances],
            cancelled=run_token.cancelled,
        )
        logger.info("run finished", extra={"run_id": run_id, "exit_code": run.exit_code})
        return run
