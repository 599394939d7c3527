# executor.py
from __future__ import annotations

import logging
import time
from typing import Callable, List, Optional, Sequence

from .environment import Environment
from .model import JobStatus, Step, StepResult, StepStatus

logger = logging.getLogger(__name__)

StepListener = Callable[[str, Step, Optional[StepResult]], None]


class StepExecutor:
    """
    Runs a job's steps strictly in order inside one environment.

    A failed step skips the rest of the job unless it is marked
    continue_on_error; the step itself is still recorded as failed.
    """

    def __init__(self, on_step: Optional[StepListener] = None):
        # on_step(job, step, None) before a step, (job, step, result) after
        self.on_step = on_step

    def run(
        self,
        env: Environment,
        steps: Sequence[Step],
        *,
        job_timeout: Optional[float] = None,
    ) -> List[StepResult]:
        results: List[StepResult] = []
        deadline = time.monotonic() + job_timeout if job_timeout is not None else None
        abort_reason: Optional[str] = None

        for step in steps:
            if abort_reason is None and env.cancel.cancelled:
                abort_reason = "run cancelled"
            if abort_reason is None and deadline is not None and time.monotonic() >= deadline:
                abort_reason = f"job timeout ({job_timeout}s) exceeded"

            if abort_reason is not None:
                results.append(StepResult(name=step.name, status=StepStatus.SKIPPED, stderr=abort_reason))
                continue

            timeout = self._effective_timeout(step.timeout, deadline)
            self._notify(env.job, step, None)
            result = step.execute(env, timeout=timeout)
            results.append(result)
            self._notify(env.job, step, result)

            if result.ok and step.id and result.outputs:
                env.export_outputs(step.id, result.outputs)

            if result.status == StepStatus.CANCELLED:
                abort_reason = "run cancelled"
            elif result.status == StepStatus.FAILED:
                job_deadline_hit = deadline is not None and time.monotonic() >= deadline
                if result.timed_out and job_deadline_hit:
                    # continue-on-error does not cover the job deadline
                    result.continue_on_error = False
                    abort_reason = f"job timeout ({job_timeout}s) exceeded"
                elif not step.continue_on_error:
                    abort_reason = f"step {step.name!r} failed"
                else:
                    logger.info("[%s] step %r failed, continuing (continue-on-error)", env.job, step.name)

        return results

    @staticmethod
    def _effective_timeout(step_timeout: Optional[float], deadline: Optional[float]) -> Optional[float]:
        remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
        if step_timeout is None:
            return remaining
        if remaining is None:
            return step_timeout
        return min(step_timeout, remaining)

    def _notify(self, job: str, step: Step, result: Optional[StepResult]) -> None:
        if self.on_step is None:
            return
        try:
            self.on_step(job, step, result)
        except Exception:
            logger.exception("step listener failed")


def job_status_from_steps(results: Sequence[StepResult], *, cancelled: bool = False) -> JobStatus:
    """
    cancelled step                          -> cancelled
    failed step without continue-on-error   -> failed
    skipped steps left over                 -> cancelled if the run was cancelled,
                                               else failed (job timeout)
    otherwise                               -> succeeded
    """
    if any(r.status == StepStatus.CANCELLED for r in results):
        return JobStatus.CANCELLED
    if any(r.status == StepStatus.FAILED and not r.continue_on_error for r in results):
        return JobStatus.FAILED
    if any(r.status == StepStatus.SKIPPED for r in results):
        return JobStatus.CANCELLED if cancelled else JobStatus.FAILED
    return JobStatus.SUCCEEDED
