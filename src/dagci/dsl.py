# dsl.py
from __future__ import annotations

from dataclasses import replace
from typing import Any, Callable, Dict, Iterable, List, Optional

from .model import ActionStep, CacheSpec, CommandStep, Job, PipelineDefinition, Step


# ---------------------------------------------------------------------
# Step helpers
# ---------------------------------------------------------------------

def sh(
    name: str,
    cmd: str,
    *,
    cwd: str | None = None,
    env: Optional[Dict[str, str]] = None,
    continue_on_error: bool = False,
    timeout: Optional[float] = None,
    id: Optional[str] = None,
) -> CommandStep:
    """Create a shell step."""
    return CommandStep(
        name=name,
        run=cmd,
        cwd=cwd,
        env={k: str(v) for k, v in (env or {}).items()},
        continue_on_error=continue_on_error,
        timeout=timeout,
        id=id,
    )


def uses(
    action: str,
    name: Optional[str] = None,
    *,
    env: Optional[Dict[str, str]] = None,
    continue_on_error: bool = False,
    timeout: Optional[float] = None,
    id: Optional[str] = None,
    **params: Any,
) -> ActionStep:
    """Create a reusable-action step: uses("actions/checkout@main")."""
    return ActionStep(
        name=name or f"Run {action}",
        uses=action,
        with_=params,
        env={k: str(v) for k, v in (env or {}).items()},
        continue_on_error=continue_on_error,
        timeout=timeout,
        id=id,
    )


# ---------------------------------------------------------------------
# Functional Job helper
# ---------------------------------------------------------------------

def job(
    name: str,
    *steps: Step,  # allow: job("x", sh(...), sh(...))
    needs: Optional[List[str]] = None,
    runs_on: str = "local",
    display_name: Optional[str] = None,
    env: Optional[Dict[str, str]] = None,
    cwd: str | None = None,  # default cwd applied to command steps missing cwd
    timeout: Optional[float] = None,
    optional: bool = False,
    cache_paths: Optional[List[str]] = None,
    cache_key_files: Optional[List[str]] = None,
    cache_toolchain: Optional[List[str]] = None,
    cache_salt: str = "",
    cache_keep: int = 3,
) -> Job:
    steps_final: List[Step] = list(steps)
    if not steps_final:
        raise ValueError(f"job({name!r}) must have at least one step")

    if cwd is not None:
        steps_final = [
            replace(s, cwd=cwd) if isinstance(s, CommandStep) and s.cwd is None else s
            for s in steps_final
        ]

    cache = None
    if cache_paths:
        cache = CacheSpec(
            paths=list(cache_paths),
            key_files=list(cache_key_files or []),
            toolchain=list(cache_toolchain or []),
            salt=cache_salt,
            keep=cache_keep,
        )

    return Job(
        name=name,
        steps=steps_final,
        needs=list(needs or []),
        runs_on=runs_on,
        display_name=display_name,
        env={k: str(v) for k, v in (env or {}).items()},
        cache=cache,
        timeout=timeout,
        optional=optional,
    )


# ---------------------------------------------------------------------
# Builder API
# ---------------------------------------------------------------------

class JobBuilder:
    def __init__(self, name: str):
        self.name = name
        self._needs: list[str] = []
        self._steps: list[Step] = []
        self._env: dict[str, str] = {}
        self._runs_on = "local"
        self._timeout: Optional[float] = None
        self._optional = False
        self._cache: Optional[CacheSpec] = None

    def depends_on(self, *job_names: str):
        self._needs.extend(job_names)
        return self

    def runs_on(self, label: str):
        self._runs_on = label
        return self

    def define_step(self, name: str, run: str, cwd: str | None = None, *, continue_on_error: bool = False):
        self._steps.append(sh(name, run, cwd=cwd, continue_on_error=continue_on_error))
        return self

    def use_action(self, action: str, name: Optional[str] = None, **params: Any):
        self._steps.append(uses(action, name, **params))
        return self

    def with_env(self, **env):
        # force values to str for stable hashing + env compatibility
        self._env.update({k: str(v) for k, v in env.items()})
        return self

    def with_timeout(self, seconds: float):
        self._timeout = seconds
        return self

    def allow_failure(self, optional: bool = True):
        self._optional = optional
        return self

    def cache(self, *paths: str, key_files: Iterable[str] = (), toolchain: Iterable[str] = (), keep: int = 3):
        self._cache = CacheSpec(paths=list(paths), key_files=list(key_files), toolchain=list(toolchain), keep=keep)
        return self

    def build(self) -> Job:
        if not self._steps:
            raise ValueError(f"Job '{self.name}' has no steps")
        return Job(
            name=self.name,
            steps=list(self._steps),
            needs=list(self._needs),
            runs_on=self._runs_on,
            env=dict(self._env),
            cache=self._cache,
            timeout=self._timeout,
            optional=self._optional,
        )


def build(name: str) -> JobBuilder:
    """Convenience: build('test').define_step(...).build()"""
    return JobBuilder(name)


# ---------------------------------------------------------------------
# Matrix
# ---------------------------------------------------------------------

class Matrix:
    """
    Minimal matrix expander.

    Example:
        matrix("target", ["x86_64", "wasm32"]).jobs(
            lambda t: job(f"clippy-{t}", sh(...))
        )
    """
    def __init__(self, key: str, values: Iterable[Any]):
        self.key = key
        self.values = list(values)

    def jobs(self, builder: Callable[[Any], Job]) -> List[Job]:
        return [builder(v) for v in self.values]


def matrix(key: str, values: Iterable[Any]) -> Matrix:
    return Matrix(key, values)


# ---------------------------------------------------------------------
# Pipeline helper
# ---------------------------------------------------------------------

def wf(*jobs: Job | List[Job], name: str = "pipeline") -> PipelineDefinition:
    """
    Users can write:
        from dagci import wf, job, sh

        PIPELINE = wf(
            job(...),
            job(...),
        )

    Lists (e.g. from matrix(...).jobs(...)) are flattened in place.
    """
    flat: List[Job] = []
    for j in jobs:
        if isinstance(j, list):
            flat.extend(j)
        else:
            flat.append(j)
    return PipelineDefinition(jobs=flat, name=name)


pipeline = wf
