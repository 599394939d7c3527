"""
Validation of the parsed pipeline document.

The engine never parses a concrete configuration syntax itself; it takes
the language-neutral structure (mappings, lists, scalars) a JSON or YAML
loader would produce, validates it with pydantic and converts it into a
PipelineDefinition plus a TriggerConfig.
"""

from __future__ import annotations

import json
import runpy
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)

from .errors import DefinitionError, DuplicateJobError
from .model import ActionStep, CacheSpec, CommandStep, Job, PipelineDefinition, Step
from .triggers import TriggerConfig, TriggerRule


def _stringify(values: Optional[Dict[str, Any]]) -> Dict[str, str]:
    return {str(k): str(v) for k, v in (values or {}).items()}


def _listify(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    return [str(v) for v in value]


class _Spec(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="forbid")


# -------------------- Steps --------------------

class StepSpec(_Spec):
    name: Optional[str] = None
    id: Optional[str] = None
    run: Optional[str] = None
    uses: Optional[str] = None
    with_: Dict[str, Any] = Field(default_factory=dict, alias="with")
    cwd: Optional[str] = Field(default=None, validation_alias=AliasChoices("cwd", "working-directory"))
    env: Dict[str, str] = Field(default_factory=dict)
    continue_on_error: bool = Field(default=False, alias="continue-on-error")
    timeout: Optional[float] = Field(default=None, gt=0)

    @field_validator("env", mode="before")
    @classmethod
    def env_as_strings(cls, v):
        return _stringify(v)

    @model_validator(mode="after")
    def check_one_kind(self) -> StepSpec:
        if (self.run is None) == (self.uses is None):
            raise ValueError("a step needs exactly one of 'run' or 'uses'")
        if self.uses is not None and self.cwd is not None:
            raise ValueError("'cwd' only applies to 'run' steps")
        return self

    def to_step(self) -> Step:
        if self.run is not None:
            first_line = self.run.strip().splitlines()[0] if self.run.strip() else "<empty>"
            return CommandStep(
                name=self.name or f"Run {first_line}",
                run=self.run,
                cwd=self.cwd,
                env=self.env,
                continue_on_error=self.continue_on_error,
                timeout=self.timeout,
                id=self.id,
            )
        return ActionStep(
            name=self.name or f"Run {self.uses}",
            uses=self.uses,
            with_=dict(self.with_),
            env=self.env,
            continue_on_error=self.continue_on_error,
            timeout=self.timeout,
            id=self.id,
        )


# -------------------- Jobs --------------------

class CacheModel(_Spec):
    paths: List[str] = Field(default_factory=list)
    key_files: List[str] = Field(default_factory=list, alias="key-files")
    toolchain: List[str] = Field(default_factory=list)
    tool_versions: Dict[str, str] = Field(default_factory=dict, alias="tool-versions")
    salt: str = ""
    keep: int = Field(default=3, ge=0)

    @field_validator("paths", "key_files", "toolchain", mode="before")
    @classmethod
    def as_list(cls, v):
        return _listify(v)

    @field_validator("tool_versions", mode="before")
    @classmethod
    def versions_as_strings(cls, v):
        return _stringify(v)

    def to_spec(self) -> CacheSpec:
        return CacheSpec(
            paths=list(self.paths),
            key_files=list(self.key_files),
            toolchain=list(self.toolchain),
            tool_versions=dict(self.tool_versions),
            salt=self.salt,
            keep=self.keep,
        )


class JobSpec(_Spec):
    id: Optional[str] = None  # required when jobs are given as a list
    name: Optional[str] = None
    runs_on: str = Field(default="local", alias="runs-on")
    needs: List[str] = Field(default_factory=list)
    optional: bool = False
    timeout: Optional[float] = Field(default=None, gt=0)
    env: Dict[str, str] = Field(default_factory=dict)
    cache: Optional[CacheModel] = None
    steps: List[StepSpec] = Field(min_length=1)

    @field_validator("needs", mode="before")
    @classmethod
    def needs_as_list(cls, v):
        return _listify(v)

    @field_validator("env", mode="before")
    @classmethod
    def env_as_strings(cls, v):
        return _stringify(v)

    def to_job(self, job_id: str) -> Job:
        return Job(
            name=job_id,
            display_name=self.name,
            steps=[s.to_step() for s in self.steps],
            needs=list(self.needs),
            runs_on=self.runs_on,
            env=dict(self.env),
            cache=self.cache.to_spec() if self.cache else None,
            timeout=self.timeout,
            optional=self.optional,
        )


# -------------------- Triggers --------------------

class TriggerFilter(_Spec):
    branches: Optional[List[str]] = None
    types: Optional[List[str]] = None

    @field_validator("branches", "types", mode="before")
    @classmethod
    def as_list(cls, v):
        return None if v is None else _listify(v)


class PipelineSpec(_Spec):
    name: str = "pipeline"
    on: Optional[Union[str, List[str], Dict[str, Optional[TriggerFilter]]]] = None
    jobs: Union[Dict[str, JobSpec], List[JobSpec]]

    def triggers(self) -> TriggerConfig:
        config = TriggerConfig()
        if self.on is None:
            return config
        if isinstance(self.on, (str, list)):
            for kind in _listify(self.on):
                config.add(TriggerRule(kind=kind))
            return config
        for kind, flt in self.on.items():
            flt = flt or TriggerFilter()
            config.add(TriggerRule(kind=kind, branches=flt.branches, actions=flt.types))
        return config

    def to_definition(self) -> PipelineDefinition:
        if isinstance(self.jobs, dict):
            jobs = [spec.to_job(job_id) for job_id, spec in self.jobs.items()]
        else:
            jobs = []
            for i, spec in enumerate(self.jobs):
                if not spec.id:
                    raise DefinitionError(f"jobs[{i}] needs an 'id' when jobs are given as a list")
                jobs.append(spec.to_job(spec.id))
        return PipelineDefinition(jobs=jobs, name=self.name)


# -------------------- Loading --------------------

@dataclass
class LoadedPipeline:
    definition: PipelineDefinition
    triggers: TriggerConfig = field(default_factory=TriggerConfig)
    source: Optional[Path] = None


def parse_pipeline(data: Dict[str, Any]) -> LoadedPipeline:
    """Validate a parsed document. Raises DefinitionError / DuplicateJobError."""
    jobs = data.get("jobs") if isinstance(data, dict) else None
    dupes = getattr(jobs, "duplicates", None)
    if dupes:
        raise DuplicateJobError(dupes)

    try:
        spec = PipelineSpec.model_validate(data)
    except ValidationError as e:
        raise DefinitionError(f"invalid pipeline definition:\n{e}") from e
    return LoadedPipeline(definition=spec.to_definition(), triggers=spec.triggers())


class _KeyTrackingDict(dict):
    """json object that remembers keys it saw more than once."""

    def __init__(self, pairs):
        super().__init__()
        self.duplicates: List[str] = []
        for k, v in pairs:
            if k in self:
                self.duplicates.append(k)
            self[k] = v


def load_definition_file(path: str | Path) -> LoadedPipeline:
    """
    Load a pipeline from:
      - a .json document (structure as accepted by parse_pipeline)
      - a .py workflow file defining one of:
          PIPELINE = PipelineDefinition(...)
          workflow() -> List[Job] | PipelineDefinition
          JOBS = [Job, ...]
        and optionally TRIGGERS = {...}  (same shape as the document's "on")
    """
    wf_path = Path(path).expanduser().resolve()
    if not wf_path.exists():
        raise FileNotFoundError(f"Workflow file not found: {wf_path}")

    if wf_path.suffix == ".json":
        try:
            data = json.loads(wf_path.read_text(encoding="utf-8"), object_pairs_hook=_KeyTrackingDict)
        except json.JSONDecodeError as e:
            raise DefinitionError(f"{wf_path.name}: invalid JSON: {e}") from e
        loaded = parse_pipeline(data)
        loaded.source = wf_path
        return loaded

    if wf_path.suffix != ".py":
        raise DefinitionError(f"Workflow must be a .json or .py file, got: {wf_path.name}")

    globals_dict = runpy.run_path(str(wf_path), run_name=f"dagci_workflow_{wf_path.stem}")

    found: Any = None
    if "PIPELINE" in globals_dict:
        found = globals_dict["PIPELINE"]
    elif callable(globals_dict.get("workflow")):
        found = globals_dict["workflow"]()
    elif "JOBS" in globals_dict:
        found = globals_dict["JOBS"]

    if isinstance(found, list) and all(isinstance(j, Job) for j in found):
        definition = PipelineDefinition(jobs=found, name=wf_path.stem)
    elif isinstance(found, PipelineDefinition):
        definition = found
    else:
        raise DefinitionError(
            "Workflow must define PIPELINE = PipelineDefinition(...), "
            "workflow() -> List[Job], or JOBS = [Job, ...]."
        )

    triggers = TriggerConfig()
    raw_triggers = globals_dict.get("TRIGGERS")
    if isinstance(raw_triggers, TriggerConfig):
        triggers = raw_triggers
    elif raw_triggers is not None:
        try:
            triggers = PipelineSpec.model_validate({"on": raw_triggers, "jobs": {}}).triggers()
        except ValidationError as e:
            raise DefinitionError(f"invalid TRIGGERS:\n{e}") from e

    return LoadedPipeline(definition=definition, triggers=triggers, source=wf_path)
