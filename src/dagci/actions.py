# actions.py
from __future__ import annotations

import logging
import shutil
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable, Dict, Iterable, List, Optional, Set

if TYPE_CHECKING:
    from .environment import Environment

logger = logging.getLogger(__name__)


@dataclass
class ActionOutcome:
    success: bool
    message: str = ""
    outputs: Dict[str, str] = field(default_factory=dict)
    timed_out: bool = False
    cancelled: bool = False


# fn(env, params) -> ActionOutcome
ActionFn = Callable[["Environment", Dict[str, Any]], ActionOutcome]


def normalize_action_ref(ref: str) -> str:
    """
    'actions/checkout@main' -> 'actions/checkout'
    """
    return ref.split("@", 1)[0].strip()


class ActionRegistry:
    """
    Reusable actions, looked up by reference.

    Resolution order for 'owner/name@ref':
      1. exact 'owner/name'
      2. bare 'name'
    """

    def __init__(self):
        self._actions: Dict[str, ActionFn] = {}

    def register(self, name: str, fn: Optional[ActionFn] = None):
        if fn is not None:
            self._actions[name] = fn
            return fn

        def deco(f: ActionFn) -> ActionFn:
            self._actions[name] = f
            return f

        return deco

    def resolve(self, ref: str) -> Optional[ActionFn]:
        base = normalize_action_ref(ref)
        if base in self._actions:
            return self._actions[base]
        short = base.rsplit("/", 1)[-1]
        return self._actions.get(short)

    def __contains__(self, ref: str) -> bool:
        return self.resolve(ref) is not None

    def invoke(
        self,
        ref: str,
        env: "Environment",
        params: Dict[str, Any],
        *,
        timeout: Optional[float] = None,
        step_env: Optional[Dict[str, str]] = None,
    ) -> ActionOutcome:
        """
        Call the action for `ref`.

        The step's own env reaches the action as params['_env'] and the
        step timeout as params['_timeout']. Actions that run no child
        process cannot be interrupted, so a timed step is abandoned once
        timeout + grace_period + 1s has passed and reported timed out.
        """
        fn = self.resolve(ref)
        if fn is None:
            return ActionOutcome(False, f"unknown action {ref!r}; registered: {sorted(self._actions)}")
        if env.cancel.cancelled:
            return ActionOutcome(False, "cancelled before start", cancelled=True)

        params = dict(params)
        if step_env:
            params["_env"] = dict(step_env)
        if timeout is None:
            return self._call(ref, fn, env, params)

        params["_timeout"] = timeout
        done = threading.Event()
        box: Dict[str, ActionOutcome] = {}

        def target() -> None:
            box["outcome"] = self._call(ref, fn, env, params)
            done.set()

        threading.Thread(target=target, name=f"dagci-action-{ref}", daemon=True).start()
        if not done.wait(timeout + env.grace_period + 1.0):
            logger.warning("[%s] action %s still running after %ss, abandoned", env.job, ref, timeout)
            return ActionOutcome(False, f"action {ref!r} timed out after {timeout}s", timed_out=True)
        return box["outcome"]

    @staticmethod
    def _call(ref: str, fn: ActionFn, env: "Environment", params: Dict[str, Any]) -> ActionOutcome:
        try:
            return fn(env, params)
        except Exception as e:
            # A crashing action is a step failure, not a run failure.
            logger.debug("action %s raised", ref, exc_info=True)
            return ActionOutcome(False, f"{type(e).__name__}: {e}")


# ---------------------------------------------------------------------
# Built-in actions
# ---------------------------------------------------------------------

def checkout(env: "Environment", params: Dict[str, Any]) -> ActionOutcome:
    """Sync the source tree into the workspace."""
    src = env.source
    if src is None:
        return ActionOutcome(False, "no source tree configured for this run")
    if env.in_place:
        return ActionOutcome(True, f"using source tree in place: {src}", {"path": str(env.workspace)})

    dest = env.workspace / str(params.get("path", "") or "")
    sync_tree(src, dest, exclude=(env.workspace, *env.excludes))
    return ActionOutcome(True, f"checked out {src} -> {dest}", {"path": str(dest)})


def set_env(env: "Environment", params: Dict[str, Any]) -> ActionOutcome:
    """Export every parameter as an environment variable for later steps."""
    exported = {str(k): str(v) for k, v in params.items() if not str(k).startswith("_")}
    env.variables.update(exported)
    return ActionOutcome(True, f"exported {sorted(exported)}", exported)


def run_script(env: "Environment", params: Dict[str, Any]) -> ActionOutcome:
    """Run `params['script']` like a command step."""
    script = params.get("script")
    if not script:
        return ActionOutcome(False, "missing 'script' parameter")
    proc = env.run(
        str(script),
        cwd=params.get("cwd"),
        extra_env=params.get("_env"),
        timeout=params.get("_timeout"),
    )
    return ActionOutcome(
        success=proc.exit_code == 0 and not proc.timed_out,
        message=proc.stdout if proc.exit_code == 0 else (proc.stderr or proc.stdout),
        outputs={"exit-code": str(proc.exit_code)},
        timed_out=proc.timed_out,
        cancelled=proc.cancelled,
    )


SOURCE_EXCLUDES = (".git", ".dagci", "__pycache__")


def sync_tree(src: Path, dest: Path, exclude: Iterable[Path] = ()) -> None:
    """
    Copy src into dest. Names in SOURCE_EXCLUDES are skipped, and so are
    dest itself and any `exclude` path, matched by resolved path.
    """
    dest = dest.resolve()
    skip = {dest, *(Path(p).resolve() for p in exclude)}

    def ignore(directory: str, names: List[str]) -> Set[str]:
        dropped = set(shutil.ignore_patterns(*SOURCE_EXCLUDES)(directory, names))
        base = Path(directory).resolve()
        dropped.update(n for n in names if (base / n).resolve() in skip)
        return dropped

    dest.mkdir(parents=True, exist_ok=True)
    shutil.copytree(src, dest, dirs_exist_ok=True, symlinks=True, ignore=ignore)


def default_registry() -> ActionRegistry:
    reg = ActionRegistry()
    reg.register("checkout", checkout)
    reg.register("set-env", set_env)
    reg.register("run-script", run_script)
    return reg
