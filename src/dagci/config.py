# config.py
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field, replace
from typing import List, Mapping, Optional

from .cache import DEFAULT_CACHE_DIR
from .environment import DEFAULT_LABELS, DEFAULT_WORK_DIR

ENV_PREFIX = "DAGCI_"


def _int(env: Mapping[str, str], name: str, default: Optional[int]) -> Optional[int]:
    raw = env.get(ENV_PREFIX + name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{ENV_PREFIX}{name} must be an integer, got {raw!r}") from None


def _float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(ENV_PREFIX + name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{ENV_PREFIX}{name} must be a number, got {raw!r}") from None


@dataclass(frozen=True)
class Settings:
    workers: Optional[int] = None
    cache_dir: str = DEFAULT_CACHE_DIR
    work_dir: str = DEFAULT_WORK_DIR
    grace_period: float = 5.0
    provision_retries: int = 3
    runner_labels: List[str] = field(default_factory=lambda: list(DEFAULT_LABELS))
    log_level: str = "WARNING"

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> Settings:
        env = os.environ if env is None else env
        labels_raw = env.get(ENV_PREFIX + "RUNNER_LABELS")
        labels = (
            [l.strip() for l in labels_raw.split(",") if l.strip()]
            if labels_raw is not None
            else list(DEFAULT_LABELS)
        )
        return cls(
            workers=_int(env, "WORKERS", None),
            cache_dir=env.get(ENV_PREFIX + "CACHE_DIR", DEFAULT_CACHE_DIR),
            work_dir=env.get(ENV_PREFIX + "WORK_DIR", DEFAULT_WORK_DIR),
            grace_period=_float(env, "GRACE_PERIOD", 5.0),
            provision_retries=_int(env, "PROVISION_RETRIES", 3),
            runner_labels=labels,
            log_level=env.get(ENV_PREFIX + "LOG_LEVEL", "WARNING").upper(),
        )

    def override(self, **overrides) -> Settings:
        """Apply CLI flags; None means 'not given'."""
        return replace(self, **{k: v for k, v in overrides.items() if v is not None})


def configure_logging(level: str = "WARNING", *, debug: bool = False) -> None:
    logging.basicConfig(
        level=logging.DEBUG if debug else getattr(logging, level.upper(), logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
