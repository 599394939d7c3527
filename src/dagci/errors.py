# errors.py
from __future__ import annotations

from dataclasses import dataclass
from typing import List, Sequence


# ----------------------------------------------------------------------
# Configuration errors (raised before any job starts)
# ----------------------------------------------------------------------

class ConfigurationError(ValueError):
    """Invalid pipeline definition. Nothing has been executed."""

    def __init__(self, message: str, jobs: Sequence[str] = ()):
        super().__init__(message)
        self.jobs: List[str] = list(jobs)


class DefinitionError(ConfigurationError):
    pass


class DuplicateJobError(ConfigurationError):
    def __init__(self, names: Sequence[str]):
        names = sorted(set(names))
        super().__init__(f"Duplicate job names found: {names}", names)


class UnknownDependencyError(ConfigurationError):
    def __init__(self, job: str, missing: str, known: Sequence[str]):
        super().__init__(
            f"Job '{job}' needs missing job '{missing}'. Known jobs: {sorted(known)}",
            [job, missing],
        )
        self.missing = missing


class CycleError(ConfigurationError):
    def __init__(self, stuck: Sequence[str]):
        stuck = sorted(stuck)
        super().__init__(f"Job dependencies contain a cycle. Stuck jobs: {stuck}", stuck)


# ----------------------------------------------------------------------
# Runtime errors
# ----------------------------------------------------------------------

class ProvisioningError(RuntimeError):
    """Environment acquisition failed (after retries, where retrying makes sense)."""

    def __init__(self, job: str, message: str, attempts: int = 1):
        super().__init__(f"[{job}] provisioning failed after {attempts} attempt(s): {message}")
        self.job = job
        self.attempts = attempts


class UnsupportedRunnerError(ProvisioningError):
    """The job asked for a runs-on label this provisioner cannot serve. Not retried."""


@dataclass
class StepFailure(Exception):
    job: str
    step: str
    cmd: str
    exit_code: int | None

    def __str__(self) -> str:
        return f"[{self.job}] step '{self.step}' failed (exit={self.exit_code}): {self.cmd}"
