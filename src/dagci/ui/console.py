"""Console output formatting utilities for dagci."""

from __future__ import annotations

import sys
import threading
from typing import Optional

from ..errors import StepFailure
from ..model import Job, JobResult, JobStatus, RunResult, Step, StepResult, StepStatus
from ..triggers import TriggerDecision


class Console:
    """Centralized console output formatting. Safe to call from job threads."""

    def __init__(self, debug: bool = False, stream=None):
        """
        Args:
            debug: If True, show captured step output and stack traces
            stream: Where to print (defaults to stdout)
        """
        self.debug = debug
        self.stream = stream
        self._lock = threading.Lock()

    def _print(self, *lines: str, err: bool = False) -> None:
        out = sys.stderr if err else (self.stream or sys.stdout)
        with self._lock:
            for line in lines:
                print(line, file=out)

    def print_run_started(self, pipeline: str, job_count: int, source: str, commit: Optional[str] = None) -> None:
        lines = ["", "RUN STARTED", f"Pipeline: {pipeline}", f"Source: {source}"]
        if commit:
            lines.append(f"Commit: {commit[:12]}")
        lines += [f"Jobs: {job_count}", ""]
        self._print(*lines)

    def print_trigger(self, decision: TriggerDecision) -> None:
        label = "ADMITTED" if decision.admitted else "REJECTED"
        self._print(f"TRIGGER {label}: {decision.reason}")

    def print_plan(self, levels: list[list[str]]) -> None:
        self._print("PLAN")
        for i, level in enumerate(levels, 1):
            self._print(f"  Stage {i}: {', '.join(level)}")

    def print_job_start(self, job: Job) -> None:
        self._print(f"JOB STARTED: {job.title}")

    def print_step(self, job: str, step: Step, result: Optional[StepResult]) -> None:
        if result is None:
            self._print(f"[{job}] ▶ {step.name}")
            return
        if result.status == StepStatus.SUCCEEDED:
            self._print(f"[{job}] ✓ {step.name} ({result.duration:.1f}s)")
            if self.debug and result.stdout:
                self._print(result.stdout.rstrip())
            return

        note = " (timed out)" if result.timed_out else ""
        if result.status == StepStatus.FAILED and result.continue_on_error:
            note += " (continue-on-error)"
        self._print(f"[{job}] ✗ {step.name}: {result.status.value}{note}")
        output = (result.stderr or result.stdout).rstrip()
        if output:
            if not self.debug:
                output = "\n".join(output.splitlines()[-20:])
            self._print(output)

    def print_job_result(self, result: JobResult) -> None:
        if result.status == JobStatus.SUCCEEDED:
            cache = " (cache hit)" if result.cache_hit else ""
            self._print(f"JOB SUCCEEDED: {result.name}{cache}")
            return
        self._print(f"JOB {result.status.value.upper()}: {result.name}")
        for step in result.failed_steps:
            if not step.continue_on_error:
                self._print(f"  {StepFailure(job=result.name, step=step.name, cmd=step.command, exit_code=step.exit_code)}")
        if result.reason:
            self._print(f"  Reason: {result.reason}")

    def print_results(self, result: RunResult) -> None:
        """Print final results summary."""
        self._print("", "=" * 40, "RESULTS", "=" * 40)
        for name, job in result.jobs.items():
            opt = " (optional)" if job.optional else ""
            self._print(f"  {name}: {job.status.value.upper()}{opt}")
        self._print("-" * 40, f"RUN {result.status.value.upper()} in {result.duration:.1f}s")

    def print_error(
        self,
        title: str,
        message: str,
        details: Optional[list[str]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        """Print structured error message."""
        lines = [f"\nERROR: {title}", message]
        lines += [f"  {d}" for d in details or []]
        if suggestion:
            lines.append(f"\n{suggestion}")
        self._print(*lines, err=True)

    def print_exception(self, exc: BaseException) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            self._print("".join(traceback.format_exception(exc)), err=True)
        else:
            self._print(f"Error: {exc}", err=True)

    def print_info(self, message: str) -> None:
        self._print(message)


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
