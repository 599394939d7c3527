# scheduler.py
from __future__ import annotations

import heapq
import logging
import os
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from typing import Callable, Dict, List, Optional, Tuple

from .dag import JobGraph
from .environment import CancelToken
from .errors import ProvisioningError
from .executor import StepExecutor, job_status_from_steps
from .model import Job, JobResult, JobStatus, RunResult
from .reporter import RunReporter

logger = logging.getLogger(__name__)


def default_concurrency() -> int:
    c = os.cpu_count() or 2
    return max(1, c - 1)


class Scheduler:
    """
    Walks a JobGraph, running ready jobs in parallel up to a concurrency limit.

    - A job is dispatched only when every dependency succeeded.
    - A failed / skipped / cancelled dependency marks all pending
      downstream jobs skipped; they never run.
    - Among ready jobs, declaration order wins.
    - After cancel(), nothing new is dispatched and in-flight steps are
      terminated; undispatched jobs are recorded cancelled.
    """

    def __init__(
        self,
        provisioner,
        executor: Optional[StepExecutor] = None,
        *,
        cancel: Optional[CancelToken] = None,
        fail_fast: bool = False,
        on_job_start: Optional[Callable[[Job], None]] = None,
    ):
        self.provisioner = provisioner
        self.executor = executor or StepExecutor()
        self.cancel_token = cancel or CancelToken()
        self.fail_fast = fail_fast
        self.on_job_start = on_job_start

    def cancel(self) -> None:
        self.cancel_token.cancel()

    def run(
        self,
        graph: JobGraph,
        concurrency_limit: Optional[int] = None,
        *,
        reporter: Optional[RunReporter] = None,
    ) -> RunResult:
        limit = concurrency_limit or default_concurrency()
        if limit < 1:
            raise ValueError(f"concurrency_limit must be >= 1, got {limit}")

        reporter = reporter or RunReporter(graph.order)
        # cancellation is ordered against results at the moment it fires
        cancel_handle = self.cancel_token.on_cancel(reporter.observe_cancel)
        status: Dict[str, JobStatus] = {n: JobStatus.PENDING for n in graph.order}
        remaining = dict(graph.indegree)
        ready: List[Tuple[int, str]] = []
        for i, name in enumerate(graph.order):
            if remaining[name] == 0:
                heapq.heappush(ready, (i, name))

        in_flight: Dict[Future, str] = {}
        blocked = False  # fail-fast tripped

        def finish(result: JobResult) -> None:
            nonlocal blocked
            status[result.name] = result.status
            reporter.record(result)

            if result.status == JobStatus.SUCCEEDED:
                for child in sorted(graph.dependents[result.name], key=graph.index):
                    remaining[child] -= 1
                    if remaining[child] == 0 and status[child] == JobStatus.PENDING:
                        heapq.heappush(ready, (graph.index(child), child))
                return

            if result.status == JobStatus.FAILED and not result.optional and self.fail_fast:
                blocked = True
            self._skip_downstream(graph, result.name, status, reporter)

        with ThreadPoolExecutor(max_workers=limit, thread_name_prefix="dagci-job") as pool:
            while True:
                while ready and len(in_flight) < limit and not self.cancel_token.cancelled and not blocked:
                    _, name = heapq.heappop(ready)
                    if status[name] != JobStatus.PENDING:
                        continue
                    status[name] = JobStatus.RUNNING
                    fut = pool.submit(self._run_job, graph.jobs[name], reporter.run_id)
                    in_flight[fut] = name

                if not in_flight:
                    break

                # block until at least one job finishes, then loop to dispatch newly-ready jobs
                done, _ = wait(list(in_flight), return_when=FIRST_COMPLETED)
                for fut in sorted(done, key=lambda f: graph.index(in_flight[f])):
                    name = in_flight.pop(fut)
                    try:
                        result = fut.result()
                    except Exception as e:
                        logger.exception("[%s] job crashed", name)
                        job = graph.jobs[name]
                        result = JobResult(name, JobStatus.FAILED, reason=str(e), cause=e, optional=job.optional)
                    finish(result)

        self.cancel_token.remove(cancel_handle)

        for name in graph.order:
            if status[name] != JobStatus.PENDING:
                continue
            job = graph.jobs[name]
            if self.cancel_token.cancelled:
                result = JobResult(name, JobStatus.CANCELLED, reason="run cancelled before start", optional=job.optional)
            else:
                result = JobResult(name, JobStatus.SKIPPED, reason="fail-fast: an earlier job failed", optional=job.optional)
            status[name] = result.status
            reporter.record(result)

        return reporter.finalize()

    # ------------------------------------------------------------------

    def _skip_downstream(
        self,
        graph: JobGraph,
        root: str,
        status: Dict[str, JobStatus],
        reporter: RunReporter,
    ) -> None:
        stack = [root]
        while stack:
            parent = stack.pop()
            for child in sorted(graph.dependents[parent], key=graph.index):
                if status[child] != JobStatus.PENDING:
                    continue
                status[child] = JobStatus.SKIPPED
                reporter.record(
                    JobResult(
                        child,
                        JobStatus.SKIPPED,
                        reason=f"dependency {parent!r} {status[parent].value}",
                        optional=graph.jobs[child].optional,
                    )
                )
                stack.append(child)

    def _run_job(self, job: Job, run_id: str) -> JobResult:
        """Runs in a worker thread. Only unexpected bugs escape as exceptions."""
        if self.cancel_token.cancelled:
            return JobResult(job.name, JobStatus.CANCELLED, reason="run cancelled before start", optional=job.optional)

        if self.on_job_start is not None:
            self.on_job_start(job)

        started = time.monotonic()
        cache_hit = False
        try:
            with self.provisioner.provision(job, run_id=run_id, cancel=self.cancel_token) as env:
                hit = self.provisioner.restore_cache(env, job)
                cache_hit = bool(hit and hit.hit)

                steps = self.executor.run(env, job.steps, job_timeout=job.timeout)
                job_status = job_status_from_steps(steps, cancelled=self.cancel_token.cancelled)

                if job_status == JobStatus.SUCCEEDED:
                    self.provisioner.save_cache(env, job)
        except ProvisioningError as e:
            logger.error("%s", e)
            return JobResult(
                job.name,
                JobStatus.FAILED,
                reason=str(e),
                cause=e,
                optional=job.optional,
                duration=time.monotonic() - started,
            )

        reason = ""
        failed = [s for s in steps if s.status.value in ("failed", "cancelled") and not s.continue_on_error]
        if failed:
            reason = f"step {failed[0].name!r} {failed[0].status.value}"
        elif job_status != JobStatus.SUCCEEDED:
            reason = next((s.stderr for s in steps if s.stderr and s.status.value == "skipped"), "")

        return JobResult(
            job.name,
            job_status,
            steps=steps,
            reason=reason,
            optional=job.optional,
            duration=time.monotonic() - started,
            cache_hit=cache_hit,
        )
