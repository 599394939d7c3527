from .dsl import job, sh, uses, matrix, wf, pipeline, JobBuilder, build
from .dag import JobGraph, build_graph
from .environment import CancelToken, LocalProvisioner
from .model import ActionStep, CommandStep, Job, PipelineDefinition, RunStatus, JobStatus, TriggerEvent
from .runner import run_pipeline
from .scheduler import Scheduler

__all__ = [
    "job", "sh", "uses", "matrix", "wf", "pipeline", "JobBuilder", "build",
    "JobGraph", "build_graph",
    "CancelToken", "LocalProvisioner",
    "ActionStep", "CommandStep", "Job", "PipelineDefinition", "RunStatus", "JobStatus", "TriggerEvent",
    "run_pipeline", "Scheduler",
]
