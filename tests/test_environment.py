from __future__ import annotations

import threading
import time

import pytest

from dagci.actions import sync_tree
from dagci.dsl import job, sh
from dagci.environment import CancelToken, LocalProvisioner
from dagci.errors import UnsupportedRunnerError


def test_cancel_token_runs_callbacks_once():
    token = CancelToken()
    calls = []
    token.on_cancel(lambda: calls.append("a"))
    removed = token.on_cancel(lambda: calls.append("removed"))
    token.remove(removed)

    token.cancel()
    token.cancel()
    assert calls == ["a"]
    assert token.cancelled
    assert token.wait(0)

    # registering after cancellation fires immediately
    token.on_cancel(lambda: calls.append("late"))
    assert calls == ["a", "late"]


def test_cancel_token_survives_failing_callback():
    token = CancelToken()
    calls = []

    def bad():
        raise RuntimeError("nope")

    token.on_cancel(bad)
    token.on_cancel(lambda: calls.append("ok"))
    token.cancel()
    assert calls == ["ok"]


def test_workspace_is_created_and_released(provisioner):
    with provisioner.provision(job("build", sh("x", "true")), run_id="r1") as env:
        assert env.workspace.is_dir()
        assert env.workspace.name == "build"
        assert env.workspace.parent.name == "r1"
        assert list(env.workspace.iterdir()) == []
        ws = env.workspace
    assert not ws.exists()
    assert not ws.parent.exists()


def test_workspace_released_when_body_raises(provisioner):
    with pytest.raises(RuntimeError):
        with provisioner.provision(job("build", sh("x", "true"))) as env:
            ws = env.workspace
            raise RuntimeError("boom")
    assert not ws.exists()


def test_in_place_uses_source_and_keeps_it(tmp_path, source_tree):
    prov = LocalProvisioner(tmp_path / "work", source=source_tree, in_place=True)
    with prov.provision(job("a", sh("x", "true"))) as env:
        assert env.workspace == source_tree.resolve()
        outcome = env.run("test -f Cargo.lock")
        assert outcome.exit_code == 0
    assert source_tree.exists()


def test_in_place_needs_a_source(tmp_path):
    with pytest.raises(ValueError):
        LocalProvisioner(tmp_path / "work", in_place=True)


def test_unknown_label_is_rejected(provisioner):
    with pytest.raises(UnsupportedRunnerError):
        provisioner.acquire(job("a", sh("x", "true"), runs_on="windows-2022"))


def test_exported_variables_are_upper_snake(env):
    env.export_outputs("build-info", {"artifact.path": "dist/x"})
    assert env.variables == {"DAGCI_STEP_BUILD_INFO_ARTIFACT_PATH": "dist/x"}
    assert env.process_env()["DAGCI_STEP_BUILD_INFO_ARTIFACT_PATH"] == "dist/x"


def test_cancel_terminates_the_process_group(env):
    threading.Timer(0.3, env.cancel.cancel).start()
    t0 = time.monotonic()
    outcome = env.run("sleep 30 & sleep 30; wait")
    assert outcome.cancelled
    assert time.monotonic() - t0 < 5


def test_stubborn_process_is_killed_after_grace(env):
    t0 = time.monotonic()
    outcome = env.run("trap '' TERM; sleep 30", timeout=0.2)
    assert outcome.timed_out
    assert not outcome.cancelled
    assert time.monotonic() - t0 < 5


def test_sync_tree_into_a_directory_inside_the_source(source_tree):
    (source_tree / ".git").mkdir()
    (source_tree / "build" / "cache").mkdir(parents=True)
    (source_tree / "build" / "keep.txt").write_text("k")
    dest = source_tree / "build" / "ws" / "run" / "job"

    sync_tree(source_tree, dest, exclude=[source_tree / "build" / "cache"])

    assert (dest / "Cargo.lock").read_text() == "lock-v1\n"
    assert (dest / "build" / "keep.txt").exists()
    assert not (dest / "build" / "cache").exists()
    assert not (dest / ".git").exists()
    assert not (dest / "build" / "ws" / "run" / "job").exists()
