from __future__ import annotations

import io
import json
import os
import tarfile
from dataclasses import replace

import pytest

from dagci.cache import CacheStore, compute_cache_key, hash_key_files
from dagci.model import CacheSpec


def test_key_is_stable_and_tracks_inputs(source_tree):
    spec = CacheSpec(paths=["target"], key_files=["Cargo.lock"], toolchain=["cargo"], tool_versions={"cargo": "1.80"})
    k1, manifest = compute_cache_key(spec, root=source_tree)
    k2, _ = compute_cache_key(spec, root=source_tree)
    assert k1 == k2
    assert manifest["payload"]["toolchain"] == {"cargo": "1.80"}
    assert manifest["files"][0][0] == "Cargo.lock"

    salted, _ = compute_cache_key(replace(spec, salt="x"), root=source_tree)
    assert salted != k1

    (source_tree / "Cargo.lock").write_text("changed\n")
    k3, _ = compute_cache_key(spec, root=source_tree)
    assert k3 != k1


def test_key_files_accept_dirs_and_globs(tmp_path):
    (tmp_path / "crates" / "a").mkdir(parents=True)
    (tmp_path / "crates" / "a" / "Cargo.toml").write_text("a")
    (tmp_path / "Cargo.toml").write_text("root")

    _, by_glob = hash_key_files(tmp_path, ["**/Cargo.toml"])
    assert [f for f, _ in by_glob["files"]] == ["Cargo.toml", "crates/a/Cargo.toml"]

    _, by_dir = hash_key_files(tmp_path, ["crates/"])
    assert [f for f, _ in by_dir["files"]] == ["crates/a/Cargo.toml"]


def test_save_then_restore(tmp_path):
    src = tmp_path / "ws"
    (src / "target" / "deep").mkdir(parents=True)
    (src / "target" / "deep" / "x.bin").write_bytes(b"\x00\x01")
    store = CacheStore(tmp_path / "cache")

    assert not store.restore("k", tmp_path / "out").hit

    store.save("k", src, ["target", "missing"], {"key": "k", "job": "build"})
    hit = store.restore("k", tmp_path / "out")

    assert hit.hit
    assert hit.manifest["job"] == "build"
    assert (tmp_path / "out" / "target" / "deep" / "x.bin").read_bytes() == b"\x00\x01"
    assert not (tmp_path / "out" / ".dagci_cache_manifest").exists()
    assert list(store.root.glob("*.tmp")) == []


def test_paths_outside_workspace_are_not_stored(tmp_path):
    ws = tmp_path / "ws"
    ws.mkdir()
    (tmp_path / "secret").write_text("x")
    store = CacheStore(tmp_path / "cache")
    store.save("k", ws, ["../secret"])

    with tarfile.open(store.artifact_path("k")) as tar:
        assert not any("secret" in m.name for m in tar.getmembers())


def test_prune_keeps_newest_per_job(tmp_path):
    ws = tmp_path / "ws"
    ws.mkdir()
    store = CacheStore(tmp_path / "cache")
    for i, key in enumerate(["k1", "k2", "k3"]):
        store.save(key, ws, [], {"key": key, "job": "build"})
        os.utime(store.artifact_path(key), (1000 + i, 1000 + i))
    store.save("other", ws, [], {"key": "other", "job": "lint"})

    removed = store.prune("build", keep=1)

    assert sorted(removed) == ["k1", "k2"]
    assert store.artifact_path("k3").exists()
    assert store.artifact_path("other").exists()
    assert not store.manifest_path("k1").exists()


def test_restore_refuses_path_traversal(tmp_path):
    store = CacheStore(tmp_path / "cache")
    with tarfile.open(store.artifact_path("evil"), "w:gz") as tar:
        data = b"pwned"
        info = tarfile.TarInfo("../escape.txt")
        info.size = len(data)
        tar.addfile(info, io.BytesIO(data))
    store.manifest_path("evil").write_text(json.dumps({"key": "evil"}))

    dest = tmp_path / "dest"
    dest.mkdir()
    with pytest.raises(tarfile.TarError):
        store.restore("evil", dest)
    assert not (tmp_path / "escape.txt").exists()
