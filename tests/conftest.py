from __future__ import annotations

from pathlib import Path

import pytest

from dagci.actions import default_registry
from dagci.cache import CacheStore
from dagci.environment import CancelToken, Environment, LocalProvisioner


@pytest.fixture
def source_tree(tmp_path: Path) -> Path:
    src = tmp_path / "src"
    src.mkdir()
    (src / "Cargo.lock").write_text("lock-v1\n")
    (src / "README.md").write_text("hello\n")
    return src


@pytest.fixture
def provisioner(tmp_path: Path, source_tree: Path) -> LocalProvisioner:
    return LocalProvisioner(
        tmp_path / "work",
        source=source_tree,
        cache=CacheStore(tmp_path / "cache"),
        retries=2,
        backoff=0,
        grace_period=0.5,
    )


@pytest.fixture
def env(tmp_path: Path) -> Environment:
    ws = tmp_path / "ws"
    ws.mkdir()
    return Environment(
        job="job",
        run_id="run",
        workspace=ws,
        cancel=CancelToken(),
        actions=default_registry(),
        grace_period=0.5,
    )
