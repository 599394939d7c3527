# runner.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterable, List, Optional, Sequence

from .actions import ActionRegistry
from .cache import CacheStore
from .config import Settings
from .dag import JobGraph, build_graph
from .environment import CancelToken, LocalProvisioner
from .executor import StepExecutor, StepListener
from .model import Job, JobResult, PipelineDefinition, RunResult, TriggerEvent
from .reporter import RunReporter
from .scheduler import Scheduler
from .triggers import TriggerConfig, TriggerDecision, TriggerEvaluator, Verdict

logger = logging.getLogger(__name__)


@dataclass
class RunOutcome:
    """What run_pipeline did: the trigger decision, and the run if one started."""
    decision: TriggerDecision
    result: Optional[RunResult] = None

    @property
    def exit_code(self) -> int:
        return 0 if self.result is None else self.result.exit_code


def select(definition: PipelineDefinition, only: Sequence[str]) -> PipelineDefinition:
    """Restrict a definition to `only` plus everything they transitively need."""
    if not only:
        return definition
    keep = set(build_graph(definition).ancestors(only))
    return PipelineDefinition(jobs=[j for j in definition.jobs if j.name in keep], name=definition.name)


def plan(definition: PipelineDefinition) -> List[List[str]]:
    """Validate the definition and return its topological stages."""
    return build_graph(definition).levels()


def run_pipeline(
    definition: PipelineDefinition,
    *,
    event: Optional[TriggerEvent] = None,
    triggers: Optional[TriggerConfig] = None,
    settings: Optional[Settings] = None,
    source: str | Path | None = ".",
    in_place: bool = False,
    fail_fast: bool = False,
    only: Sequence[str] = (),
    cancel: Optional[CancelToken] = None,
    actions: Optional[ActionRegistry] = None,
    on_run_start: Optional[Callable[[TriggerDecision, JobGraph], None]] = None,
    on_job_start: Optional[Callable[[Job], None]] = None,
    on_step: Optional[StepListener] = None,
    on_result: Iterable[Callable[[JobResult], None]] = (),
) -> RunOutcome:
    """
    Evaluate the trigger, validate the job graph, then run it.

    on_run_start is called once the event is admitted and the graph is
    valid, before any job is dispatched.

    Configuration errors raise before any job starts. A rejected trigger
    returns an outcome with no result.
    """
    settings = settings or Settings.from_env()

    evaluator = TriggerEvaluator(triggers or TriggerConfig())
    if event is not None:
        decision = evaluator.evaluate(event)
        if not decision.admitted:
            return RunOutcome(decision=decision)
    else:
        decision = TriggerDecision(Verdict.ADMIT, "no event given (manual run)")

    graph: JobGraph = build_graph(select(definition, only))

    cache = CacheStore(settings.cache_dir)  # scoped to this run
    provisioner = LocalProvisioner(
        settings.work_dir,
        source=source,
        in_place=in_place,
        labels=settings.runner_labels,
        cache=cache,
        actions=actions,
        retries=settings.provision_retries,
        grace_period=settings.grace_period,
    )
    scheduler = Scheduler(
        provisioner,
        StepExecutor(on_step=on_step),
        cancel=cancel,
        fail_fast=fail_fast,
        on_job_start=on_job_start,
    )
    reporter = RunReporter(graph.order, listeners=list(on_result))
    if on_run_start is not None:
        on_run_start(decision, graph)

    logger.info("run %s: %d job(s), concurrency %s", reporter.run_id, len(graph), settings.workers or "auto")
    result = scheduler.run(graph, settings.workers, reporter=reporter)
    logger.info("run %s finished: %s", result.run_id, result.status.value)
    return RunOutcome(decision=decision, result=result)
