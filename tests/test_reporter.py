from __future__ import annotations

import pytest

from dagci.model import JobResult, JobStatus, RunStatus
from dagci.reporter import RunReporter


def r(name, status, optional=False):
    return JobResult(name, status, optional=optional)


def test_results_are_lazy_and_restartable():
    rep = RunReporter(["a", "b"])
    first = rep.results()
    rep.record(r("a", JobStatus.SUCCEEDED))

    assert [x.name for x in first] == ["a"]

    live = rep.results()
    assert next(live).name == "a"
    rep.record(r("b", JobStatus.SUCCEEDED))
    assert next(live).name == "b"

    assert [x.name for x in rep] == ["a", "b"]
    assert len(rep) == 2


def test_duplicate_or_unfinished_record_is_rejected():
    rep = RunReporter()
    rep.record(r("a", JobStatus.SUCCEEDED))
    with pytest.raises(ValueError):
        rep.record(r("a", JobStatus.FAILED))
    with pytest.raises(ValueError):
        rep.record(r("b", JobStatus.RUNNING))


def test_status_rules():
    ok = RunReporter()
    ok.record(r("a", JobStatus.SUCCEEDED))
    ok.record(r("b", JobStatus.SKIPPED))
    assert ok.status() == RunStatus.SUCCEEDED

    failed = RunReporter()
    failed.record(r("a", JobStatus.FAILED))
    assert failed.status() == RunStatus.FAILED

    optional = RunReporter()
    optional.record(r("a", JobStatus.FAILED, optional=True))
    assert optional.status() == RunStatus.SUCCEEDED


def test_cancel_versus_earlier_failure():
    failed_first = RunReporter()
    failed_first.record(r("a", JobStatus.FAILED))
    failed_first.observe_cancel()
    failed_first.record(r("b", JobStatus.CANCELLED))
    assert failed_first.status() == RunStatus.FAILED

    cancelled_first = RunReporter()
    cancelled_first.record(r("a", JobStatus.SUCCEEDED))
    cancelled_first.observe_cancel()
    cancelled_first.record(r("b", JobStatus.FAILED))
    assert cancelled_first.cancelled
    assert cancelled_first.status() == RunStatus.CANCELLED


def test_finalize_orders_by_declaration_and_notifies():
    seen = []
    rep = RunReporter(["a", "b"], run_id="r1", listeners=[lambda res: seen.append(res.name)])
    rep.record(r("b", JobStatus.SUCCEEDED))
    rep.record(r("a", JobStatus.SUCCEEDED))

    result = rep.finalize()
    assert result.run_id == "r1"
    assert list(result.jobs) == ["a", "b"]
    assert seen == ["b", "a"]
    assert rep.get("a").status == JobStatus.SUCCEEDED


def test_broken_listener_does_not_lose_the_record():
    def boom(_res):
        raise RuntimeError("listener bug")

    rep = RunReporter(listeners=[boom])
    rep.record(r("a", JobStatus.SUCCEEDED))
    assert rep.get("a") is not None
