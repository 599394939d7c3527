# environment.py
from __future__ import annotations

import logging
import os
import re
import shutil
import signal
import subprocess
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, Iterator, List, Optional, Sequence, Tuple

from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from .actions import ActionRegistry, default_registry
from .cache import CacheHit, CacheStore, compute_cache_key
from .errors import ProvisioningError, UnsupportedRunnerError
from .model import Job

logger = logging.getLogger(__name__)

DEFAULT_WORK_DIR = ".dagci/work"
DEFAULT_LABELS = ("local", "ubuntu-latest", "self-hosted")
OUTPUT_LIMIT = 64 * 1024


# ---------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------

class CancelToken:
    """
    Cooperative cancel signal shared by the scheduler and every environment.

    Callbacks registered with on_cancel() run once, on the cancelling thread
    (or immediately if the token is already cancelled).
    """

    def __init__(self):
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: Dict[int, Callable[[], None]] = {}
        self._next = 0

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        with self._lock:
            if self._event.is_set():
                return
            self._event.set()
            callbacks = list(self._callbacks.values())
            self._callbacks.clear()
        for cb in callbacks:
            try:
                cb()
            except Exception:
                logger.exception("cancel callback failed")

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self._event.wait(timeout)

    def on_cancel(self, cb: Callable[[], None]) -> Optional[int]:
        with self._lock:
            if not self._event.is_set():
                handle = self._next
                self._next += 1
                self._callbacks[handle] = cb
                return handle
        cb()
        return None

    def remove(self, handle: Optional[int]) -> None:
        if handle is None:
            return
        with self._lock:
            self._callbacks.pop(handle, None)


# ---------------------------------------------------------------------
# Environment
# ---------------------------------------------------------------------

@dataclass
class ProcessOutcome:
    exit_code: Optional[int]
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False
    cancelled: bool = False


def _tail(text: Optional[str]) -> str:
    text = text or ""
    return text[-OUTPUT_LIMIT:]


def _signal_group(proc: subprocess.Popen, sig: int) -> None:
    if proc.poll() is not None:
        return
    try:
        if hasattr(os, "killpg"):
            os.killpg(proc.pid, sig)
        elif sig == getattr(signal, "SIGKILL", None):
            proc.kill()
        else:
            proc.terminate()
    except (ProcessLookupError, PermissionError):
        pass


@dataclass
class Environment:
    """
    An isolated execution context bound to one job for its lifetime.

    Steps run as child processes inside `workspace`; variables exported by
    earlier steps are visible to later ones through `variables`.
    """
    job: str
    run_id: str
    workspace: Path
    cancel: CancelToken
    actions: ActionRegistry
    source: Optional[Path] = None
    in_place: bool = False
    runs_on: str = "local"
    env: Dict[str, str] = field(default_factory=dict)
    variables: Dict[str, str] = field(default_factory=dict)
    grace_period: float = 5.0
    excludes: Tuple[Path, ...] = ()  # never copied in by checkout

    def process_env(self, extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        env = os.environ.copy()
        env.update({
            "CI": "true",
            "DAGCI_RUN_ID": self.run_id,
            "DAGCI_JOB": self.job,
            "DAGCI_WORKSPACE": str(self.workspace),
        })
        env.update(self.env)
        env.update(self.variables)
        env.update(extra or {})
        return env

    def export_outputs(self, step_id: str, outputs: Dict[str, str]) -> None:
        for k, v in outputs.items():
            name = re.sub(r"[^A-Za-z0-9]", "_", f"DAGCI_STEP_{step_id}_{k}").upper()
            self.variables[name] = str(v)

    def run(
        self,
        cmd: str,
        *,
        cwd: Optional[str] = None,
        extra_env: Optional[Dict[str, str]] = None,
        timeout: Optional[float] = None,
    ) -> ProcessOutcome:
        """
        Run a shell command to completion, a timeout, or cancellation.

        Termination is SIGTERM to the process group, then SIGKILL after
        grace_period seconds.
        """
        workdir = (self.workspace / (cwd or ".")).resolve()
        if not workdir.is_dir():
            return ProcessOutcome(exit_code=None, stderr=f"[{self.job}] cwd not found: {workdir}")
        if self.cancel.cancelled:
            return ProcessOutcome(exit_code=None, cancelled=True)

        try:
            proc = subprocess.Popen(
                cmd,
                shell=True,
                cwd=str(workdir),
                env=self.process_env(extra_env),
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                errors="replace",
                start_new_session=hasattr(os, "killpg"),
            )
        except OSError as e:
            return ProcessOutcome(exit_code=None, stderr=f"could not start process: {e}")

        cancelled = threading.Event()

        def _on_cancel() -> None:
            cancelled.set()
            self._terminate(proc)

        handle = self.cancel.on_cancel(_on_cancel)
        timed_out = False
        try:
            try:
                out, err = proc.communicate(timeout=timeout)
            except subprocess.TimeoutExpired:
                timed_out = True
                logger.warning("[%s] command timed out after %ss: %s", self.job, timeout, cmd)
                self._terminate(proc)
                out, err = proc.communicate()
        finally:
            self.cancel.remove(handle)

        return ProcessOutcome(
            exit_code=proc.returncode,
            stdout=_tail(out),
            stderr=_tail(err),
            timed_out=timed_out,
            cancelled=cancelled.is_set() and not timed_out,
        )

    def _terminate(self, proc: subprocess.Popen) -> None:
        _signal_group(proc, signal.SIGTERM)
        kill_sig = getattr(signal, "SIGKILL", signal.SIGTERM)
        timer = threading.Timer(self.grace_period, _signal_group, args=(proc, kill_sig))
        timer.daemon = True
        timer.start()


# ---------------------------------------------------------------------
# Provisioner
# ---------------------------------------------------------------------

class LocalProvisioner:
    """
    Provisions one workspace directory per job on the local machine.

      work_dir/<run_id>/<job>/   fresh, empty; `checkout` syncs the source in
      in_place=True              run directly in the source tree, never deleted

    The cache handle is passed in and lives as long as the run.
    """

    def __init__(
        self,
        work_dir: str | Path = DEFAULT_WORK_DIR,
        *,
        source: str | Path | None = None,
        in_place: bool = False,
        labels: Sequence[str] = DEFAULT_LABELS,
        cache: Optional[CacheStore] = None,
        actions: Optional[ActionRegistry] = None,
        retries: int = 3,
        backoff: float = 0.5,
        grace_period: float = 5.0,
        keep_workspaces: bool = False,
    ):
        self.work_dir = Path(work_dir).resolve()
        self.source = Path(source).resolve() if source is not None else None
        self.in_place = in_place
        self.labels: List[str] = list(labels)
        self.cache = cache
        self.actions = actions or default_registry()
        self.retries = max(1, retries)
        self.backoff = backoff
        self.grace_period = grace_period
        self.keep_workspaces = keep_workspaces

        if in_place and self.source is None:
            raise ValueError("in_place provisioning needs a source tree")

    # ---- acquire / release ----

    def acquire(self, job: Job, *, run_id: str = "local", cancel: Optional[CancelToken] = None) -> Environment:
        if self.labels and job.runs_on not in self.labels:
            raise UnsupportedRunnerError(
                job.name, f"runs-on {job.runs_on!r} not supported (labels: {self.labels})"
            )

        retrying = Retrying(
            stop=stop_after_attempt(self.retries),
            wait=wait_exponential(multiplier=self.backoff, max=10),
            retry=retry_if_exception_type(OSError),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        try:
            workspace = retrying(self._create_workspace, job, run_id)
        except OSError as e:
            raise ProvisioningError(job.name, str(e), attempts=self.retries) from e

        logger.debug("[%s] environment ready at %s", job.name, workspace)
        return Environment(
            job=job.name,
            run_id=run_id,
            workspace=workspace,
            cancel=cancel or CancelToken(),
            actions=self.actions,
            source=self.source,
            in_place=self.in_place,
            runs_on=job.runs_on,
            env=dict(job.env),
            grace_period=self.grace_period,
            excludes=self._excludes(),
        )

    def _excludes(self) -> Tuple[Path, ...]:
        roots = [self.work_dir]
        if self.cache is not None:
            roots.append(self.cache.root)
        return tuple(roots)

    def release(self, env: Environment) -> None:
        if env.in_place or self.keep_workspaces:
            return
        try:
            shutil.rmtree(env.workspace)
            run_dir = env.workspace.parent
            if run_dir.exists() and not any(run_dir.iterdir()):
                run_dir.rmdir()
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning("[%s] could not remove workspace %s: %s", env.job, env.workspace, e)

    @contextmanager
    def provision(
        self, job: Job, *, run_id: str = "local", cancel: Optional[CancelToken] = None
    ) -> Iterator[Environment]:
        """acquire() + guaranteed release() on every exit path."""
        env = self.acquire(job, run_id=run_id, cancel=cancel)
        try:
            yield env
        finally:
            self.release(env)

    def _create_workspace(self, job: Job, run_id: str) -> Path:
        if self.in_place:
            if not self.source.is_dir():
                raise FileNotFoundError(f"source tree not found: {self.source}")
            return self.source

        ws = self.work_dir / run_id / job.name
        if ws.exists():
            shutil.rmtree(ws)
        ws.mkdir(parents=True)
        return ws

    # ---- cache (never fatal) ----

    def _cache_root(self, env: Environment) -> Path:
        return env.source if env.source is not None else env.workspace

    def restore_cache(self, env: Environment, job: Job) -> Optional[CacheHit]:
        if self.cache is None or job.cache is None or not job.cache.paths:
            return None
        try:
            key, _manifest = compute_cache_key(job.cache, root=self._cache_root(env))
            hit = self.cache.restore(key, env.workspace)
        except Exception as e:
            logger.warning("[%s] cache restore failed, running cold: %s", job.name, e)
            return None
        logger.info("[%s] cache: %s (%s)", job.name, hit.reason, hit.key[:12])
        return hit

    def save_cache(self, env: Environment, job: Job) -> Optional[str]:
        if self.cache is None or job.cache is None or not job.cache.paths:
            return None
        try:
            key, manifest = compute_cache_key(job.cache, root=self._cache_root(env))
            manifest["job"] = job.name
            self.cache.save(key, env.workspace, list(job.cache.paths), manifest)
            self.cache.prune(job.name, keep=job.cache.keep)
        except Exception as e:
            logger.warning("[%s] cache save failed: %s", job.name, e)
            return None
        logger.info("[%s] cache: saved (%s...)", job.name, key[:12])
        return key
