"""Console output formatting utilities for gridci."""

from __future__ import annotations

import sys
import threading
from typing import Iterable, Optional

from ..model import EventContext, JobInstance, JobResult, JobStatus, RunResult, StepResult, StepStatus


class Console:
    """Centralized console output formatting."""

    def __init__(self, debug: bool = False):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
                and the output of successful commands
        """
        self.debug = debug
        # job instances print from worker threads
        self._lock = threading.Lock()

    def _print(self, *lines: str, file=None) -> None:
        with self._lock:
            for line in lines:
                print(line, file=file or sys.stdout)

    def print_header(self, title: str) -> None:
        """Print a section header."""
        self._print(f"\n{title}", "-" * len(title))

    def print_run_started(self, workflow: str, run_id: str, ctx: EventContext, instance_count: int) -> None:
        """Print run start information."""
        lines = [
            "\nRUN STARTED",
            f"Workflow: {workflow}",
            f"Run ID: {run_id}",
            f"Event: {ctx.kind.value}",
            f"Commit: {ctx.head_sha}",
        ]
        if ctx.branch:
            lines.append(f"Branch: {ctx.branch}")
        if ctx.pr_number is not None:
            lines.append(f"Pull request: #{ctx.pr_number}")
        lines.append(f"Jobs: {instance_count}")
        self._print(*lines, "")

    def print_plan(self, instances: Iterable[JobInstance]) -> None:
        """Print the expanded matrix."""
        for inst in instances:
            self._print(f"  {inst.id}: {inst.label}")
            for step in inst.steps:
                marker = " (always)" if step.run_on_failure else ""
                self._print(f"      - {step.name}{marker}")

    def print_job_start(self, instance: JobInstance) -> None:
        self._print(f"[{instance.id}] JOB STARTED: {instance.label}")

    def print_step(self, instance: JobInstance, step_name: str) -> None:
        self._print(f"[{instance.id}] ▶ {step_name}")

    def print_step_result(self, instance: JobInstance, result: StepResult) -> None:
        if result.status is StepStatus.SUCCEEDED:
            return
        if result.status is StepStatus.FAILED:
            detail = f"exit={result.exit_code}" if result.exit_code is not None else (result.error or "error")
            self._print(f"[{instance.id}] ✗ {result.name} ({detail})")
            if result.error and self.debug:
                self._print(f"[{instance.id}]   {result.error}")
        else:
            self._print(f"[{instance.id}] ⏭ {result.name} ({result.status.value})")

    def print_job_result(self, result: JobResult) -> None:
        mark = {JobStatus.SUCCEEDED: "✓", JobStatus.FAILED: "✗", JobStatus.CANCELLED: "⊘"}[result.status]
        self._print(f"[{result.instance.id}] {mark} {result.instance.label}: {result.status.value}")

    def print_results(self, run: RunResult) -> None:
        """Print final results summary."""
        lines = ["\n" + "=" * 40, "RESULTS", "=" * 40]
        for job in run.jobs:
            status = job.status.value.upper()
            if job.status is JobStatus.FAILED and not job.required:
                status += " (allowed)"
            lines.append(f"  {job.instance.label}: {status}")
        if run.cancelled:
            lines.append("Run was cancelled by a newer run in the same concurrency group")
        self._print(*lines)

    def print_error(
        self,
        title: str,
        message: str,
        details: Optional[list[str]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        """
        Print structured error message.

        Args:
            title: Error title
            message: Main error message
            details: Optional list of detail lines
            suggestion: Optional suggestion for user
        """
        lines = [f"\nERROR: {title}", message]
        lines.extend(f"  {d}" for d in details or [])
        if suggestion:
            lines.append(f"\n{suggestion}")
        self._print(*lines, file=sys.stderr)

    def print_exception(self, exc: BaseException) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            traceback.print_exception(type(exc), exc, exc.__traceback__)
        else:
            self._print(f"Error: {exc}", file=sys.stderr)

    def print_output(self, text: str) -> None:
        """Echo captured command output."""
        self._print(text.rstrip("\n"))

    def print_info(self, message: str) -> None:
        self._print(message)

    def print_debug(self, message: str) -> None:
        """Print debug message (only if debug mode enabled)."""
        if self.debug:
            self._print(f"[DEBUG] {message}", file=sys.stderr)


# Global console instance (initialized by the CLI)
_console: Optional[Console] = None


def get_console() -> Console:
    """Get the global console instance."""
    global _console
    if _console is None:
        _console = Console()
    return _console


def set_console(console: Console) -> None:
    """Set the global console instance."""
    global _console
    _console = console
