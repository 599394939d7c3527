# reporter.py
from __future__ import annotations

import logging
import threading
import uuid
from datetime import datetime, timezone
from typing import Callable, Dict, Iterator, List, Optional, Sequence

from .model import JobResult, JobStatus, RunResult, RunStatus

logger = logging.getLogger(__name__)

Listener = Callable[[JobResult], None]


class RunReporter:
    """
    Append-only record of job outcomes for one run.

    results() hands out a fresh iterator over records in completion order;
    iterators see records appended after they were created.
    """

    def __init__(
        self,
        job_order: Sequence[str] = (),
        *,
        run_id: Optional[str] = None,
        listeners: Sequence[Listener] = (),
    ):
        self.run_id = run_id or uuid.uuid4().hex[:12]
        self.job_order = list(job_order)
        self.listeners: List[Listener] = list(listeners)
        self.started_at = datetime.now(timezone.utc)
        self._records: List[JobResult] = []
        self._by_name: Dict[str, JobResult] = {}
        self._lock = threading.Lock()
        self._cancel_at: Optional[int] = None  # record count when cancel was observed
        self._first_failure_at: Optional[int] = None

    def record(self, result: JobResult) -> None:
        if not result.status.terminal:
            raise ValueError(f"job {result.name!r} recorded with non-final status {result.status.value}")
        with self._lock:
            if result.name in self._by_name:
                raise ValueError(f"job {result.name!r} already recorded")
            self._records.append(result)
            self._by_name[result.name] = result
            if (
                result.status == JobStatus.FAILED
                and not result.optional
                and self._first_failure_at is None
            ):
                self._first_failure_at = len(self._records)

        logger.debug("recorded %s: %s", result.name, result.status.value)
        for listener in self.listeners:
            try:
                listener(result)
            except Exception:
                logger.exception("result listener failed")

    def observe_cancel(self) -> None:
        with self._lock:
            if self._cancel_at is None:
                self._cancel_at = len(self._records)

    @property
    def cancelled(self) -> bool:
        return self._cancel_at is not None

    def get(self, name: str) -> Optional[JobResult]:
        return self._by_name.get(name)

    def results(self) -> Iterator[JobResult]:
        i = 0
        while True:
            with self._lock:
                if i >= len(self._records):
                    return
                item = self._records[i]
            yield item
            i += 1

    def __iter__(self) -> Iterator[JobResult]:
        return self.results()

    def __len__(self) -> int:
        return len(self._records)

    def status(self) -> RunStatus:
        with self._lock:
            failure_at = self._first_failure_at
            cancel_at = self._cancel_at
        if failure_at is not None and (cancel_at is None or failure_at <= cancel_at):
            return RunStatus.FAILED
        if cancel_at is not None:
            return RunStatus.CANCELLED
        return RunStatus.SUCCEEDED

    def finalize(self) -> RunResult:
        with self._lock:
            by_name = dict(self._by_name)
        order = self.job_order + [n for n in by_name if n not in self.job_order]
        jobs = {n: by_name[n] for n in order if n in by_name}
        return RunResult(
            run_id=self.run_id,
            status=self.status(),
            jobs=jobs,
            started_at=self.started_at,
            finished_at=datetime.now(timezone.utc),
        )
