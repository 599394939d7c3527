# cache.py
from __future__ import annotations

import hashlib
import io
import json
import logging
import os
import subprocess
import tarfile
import time
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

from .model import CacheSpec

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------
# Core idea
# ---------------------------------------------------------------------
# cache_key = hash(
#     toolchain versions (probed or pinned),
#     contents of declared key files (lockfiles / manifests, globs allowed),
#     salt
# )
#
# The key does not include the job name: any job computing the same
# fingerprint reads the same entry. The manifest records which job wrote it.
#
# Artifact layout:
#   root/
#     <key>.tar.gz
#     <key>.manifest.json
#
# Writes go to a unique temp file followed by an atomic replace, so
# concurrent writers of one key race safely (last write wins).
# ---------------------------------------------------------------------


DEFAULT_CACHE_DIR = ".dagci/cache"
KEY_VERSION = 1


@dataclass(frozen=True)
class CacheHit:
    hit: bool
    key: str
    reason: str  # human readable
    manifest: Dict


def _sha256_str(s: str) -> str:
    return hashlib.sha256(s.encode("utf-8")).hexdigest()


def _json_dumps_stable(obj) -> str:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def _relpath(p: Path, root: Path) -> str:
    return p.resolve().relative_to(root.resolve()).as_posix()


def _iter_files_under(root: Path) -> Iterable[Path]:
    # deterministic traversal
    for p in sorted(root.rglob("*")):
        if p.is_file():
            yield p


def _hash_file_contents(path: Path) -> str:
    h = hashlib.sha256()
    with path.open("rb") as f:
        for chunk in iter(lambda: f.read(1024 * 1024), b""):
            h.update(chunk)
    return h.hexdigest()


def _resolve_globs(root: Path, patterns: List[str]) -> List[Path]:
    """
    Expand patterns relative to root:
      - file path: "Cargo.lock"
      - dir path:  "crates/"
      - glob:      "**/Cargo.toml"
    """
    # keyed by resolved path; first match wins
    matched: Dict[Path, Path] = {}
    for pattern in filter(None, (p.strip() for p in patterns)):
        direct = root / pattern
        hits = [direct] if direct.exists() else [m for m in sorted(root.glob(pattern)) if m.exists()]
        for hit in hits:
            matched.setdefault(hit.resolve(), hit)
    return list(matched.values())


def tool_version(tool: str) -> Optional[str]:
    """Best-effort version discovery. Keep it simple and stable."""
    for cmd in ([tool, "--version"], [tool, "-V"], [tool, "version"]):
        try:
            completed = subprocess.run(cmd, text=True, capture_output=True, check=False, timeout=30)
        except (OSError, subprocess.SubprocessError):
            continue
        text = (completed.stdout or "").strip() or (completed.stderr or "").strip()
        if completed.returncode == 0 and text:
            # Normalize whitespace to make hashing stable
            return " ".join(text.split())
    return None


def hash_key_files(root: Path, patterns: List[str]) -> Tuple[str, Dict]:
    """Hash declared key files deterministically (relative path + content digest)."""
    files: List[Tuple[str, str]] = []
    for p in _resolve_globs(root, patterns):
        candidates = [p] if p.is_file() else list(_iter_files_under(p))
        for f in candidates:
            files.append((_relpath(f, root), _hash_file_contents(f)))

    files.sort()
    payload = {"files": files}
    return _sha256_str(_json_dumps_stable(payload)), payload


def compute_cache_key(spec: CacheSpec, *, root: str | Path = ".") -> Tuple[str, Dict]:
    """
    Returns (cache_key, manifest) where manifest can be stored for explainability.
    """
    root = Path(root).resolve()

    versions: Dict[str, Optional[str]] = {}
    for t in spec.toolchain:
        versions[t] = spec.tool_versions.get(t) if t in spec.tool_versions else tool_version(t)

    files_hash, files_manifest = hash_key_files(root, list(spec.key_files))

    payload = {
        "v": KEY_VERSION,  # bump this if you change hashing format
        "toolchain": versions,
        "key_files": files_hash,
        "salt": spec.salt,
    }
    key = _sha256_str(_json_dumps_stable(payload))
    manifest = {
        "key": key,
        "payload": payload,
        "files": files_manifest["files"],
        "paths": list(spec.paths),
        "generated_at_unix": int(time.time()),
    }
    return key, manifest


class CacheStore:
    """File-based cache store shared by all jobs of a run (and across runs)."""

    def __init__(self, root: str | Path = DEFAULT_CACHE_DIR):
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)

    def artifact_path(self, key: str) -> Path:
        return self.root / f"{key}.tar.gz"

    def manifest_path(self, key: str) -> Path:
        return self.root / f"{key}.manifest.json"

    def restore(self, key: str, dest: str | Path) -> CacheHit:
        """
        Extract the artifact for `key` into dest ("overwrite by extraction").
        Raises on I/O or archive errors; the caller decides how fatal that is.
        """
        art = self.artifact_path(key)
        man = self.manifest_path(key)
        if not art.exists() or not man.exists():
            return CacheHit(hit=False, key=key, reason="cache miss", manifest={})

        dest = Path(dest).resolve()
        with tarfile.open(str(art), mode="r:gz") as tar:
            _safe_extract(tar, dest)

        stored = json.loads(man.read_text(encoding="utf-8"))
        return CacheHit(hit=True, key=key, reason="cache hit: restored artifact", manifest=stored)

    def save(self, key: str, src: str | Path, paths: List[str], manifest: Optional[Dict] = None) -> Path:
        """
        Archive `paths` (relative to src) under `key`. Returns the artifact path.
        """
        root = Path(src).resolve()
        manifest = dict(manifest or {"key": key})
        manifest["saved_at_unix"] = int(time.time())

        art = self.artifact_path(key)
        man = self.manifest_path(key)
        suffix = uuid.uuid4().hex[:8]
        tmp_art = art.with_name(f"{art.name}.{suffix}.tmp")
        tmp_man = man.with_name(f"{man.name}.{suffix}.tmp")
        try:
            with tarfile.open(str(tmp_art), mode="w:gz") as tar:
                for entry in paths:
                    _tar_add_path(tar, root, root / entry)

                payload = json.dumps(manifest, sort_keys=True, indent=2).encode("utf-8")
                info = tarfile.TarInfo(name=f".dagci_cache_manifest/{key}.manifest.json")
                info.size = len(payload)
                info.mtime = int(time.time())
                tar.addfile(info, fileobj=io.BytesIO(payload))

            tmp_man.write_text(json.dumps(manifest, sort_keys=True, indent=2), encoding="utf-8")
            os.replace(tmp_art, art)
            os.replace(tmp_man, man)
        finally:
            tmp_art.unlink(missing_ok=True)
            tmp_man.unlink(missing_ok=True)

        return art

    def entries(self, job_name: Optional[str] = None) -> List[Path]:
        """Artifacts, newest first, optionally only those written by job_name."""
        out = []
        for art in self.root.glob("*.tar.gz"):
            if job_name is not None:
                key = art.name[: -len(".tar.gz")]
                try:
                    stored = json.loads(self.manifest_path(key).read_text(encoding="utf-8"))
                except (OSError, ValueError):
                    continue
                if stored.get("job") != job_name:
                    continue
            out.append(art)
        return sorted(out, key=lambda p: p.stat().st_mtime, reverse=True)

    def prune(self, job_name: str, keep: int = 3) -> List[str]:
        """Keep only the newest N artifacts written by a job. Returns removed keys."""
        removed = []
        for art in self.entries(job_name)[keep:]:
            key = art.name[: -len(".tar.gz")]
            art.unlink(missing_ok=True)
            self.manifest_path(key).unlink(missing_ok=True)
            removed.append(key)
        return removed


def _tar_add_path(tar: tarfile.TarFile, root: Path, src: Path) -> None:
    src = src.resolve()
    if not src.exists():
        logger.debug("cache path %s does not exist, nothing to store", src)
        return
    try:
        src.relative_to(root)
    except ValueError:
        logger.warning("cache path %s is outside the workspace %s; skipped", src, root)
        return

    files = [src] if src.is_file() else _iter_files_under(src)
    for f in files:
        tar.add(str(f), arcname=_relpath(f, root), recursive=False)


def _safe_extract(tar: tarfile.TarFile, dest: Path) -> None:
    members = []
    for m in tar.getmembers():
        if m.name.startswith(".dagci_cache_manifest/"):
            continue
        target = (dest / m.name).resolve()
        if dest != target and dest not in target.parents:
            raise tarfile.ExtractError(f"refusing to extract outside {dest}: {m.name}")
        members.append(m)
    tar.extractall(path=str(dest), members=members)
