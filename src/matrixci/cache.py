# cache.py
from __future__ import annotations

import hashlib
import io
import json
import logging
import re
import tarfile
import time
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Tuple

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------
# Core idea
# ---------------------------------------------------------------------
# Shared build cache, keyed by what the cache step declares (typically
# toolchain + target):
#   digest = hash(
#       rendered key,
#       declared paths,
#       contents of declared input files (lock files, manifests),
#   )
#
# Layout:
#   root/
#     <slug(key)>/
#       <digest>.tar.gz
#       <digest>.manifest.json
#
# Access is advisory: readers never wait on writers. Writers build the
# archive under a unique temporary name and rename it into place, so a
# reader sees either the old archive, the new one, or none.
# ---------------------------------------------------------------------


DEFAULT_CACHE_DIR = ".matrixci/cache"
DEFAULT_CACHE_EXCLUDES = [
    ".git/**",
    ".matrixci/**",
    "**/__pycache__/**",
    "**/.DS_Store",
]


@dataclass(frozen=True)
class CacheHit:
    hit: bool
    key: str
    digest: str
    reason: str  # human readable


def _sha256_str(s: str) -> str:
    return hashlib.sha256(s.encode("utf-8")).hexdigest()


def _json_dumps_stable(obj) -> str:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def _slug(key: str) -> str:
    return re.sub(r"[^A-Za-z0-9._-]+", "_", key).strip("_") or "default"


def _relpath(p: Path, root: Path) -> str:
    return str(p.resolve().relative_to(root.resolve())).replace("\\", "/")


def _iter_files_under(root: Path) -> Iterable[Path]:
    # deterministic traversal
    for p in sorted(root.rglob("*")):
        if p.is_file():
            yield p


def _matches_any_glob(rel: str, globs: List[str]) -> bool:
    rel_path = Path(rel)
    return any(rel_path.match(g) for g in globs)


def _hash_file_contents(path: Path) -> str:
    h = hashlib.sha256()
    with path.open("rb") as f:
        for chunk in iter(lambda: f.read(1024 * 1024), b""):
            h.update(chunk)
    return h.hexdigest()


def _hash_inputs(workspace: Path, inputs: List[str]) -> Tuple[str, Dict]:
    """
    Hash declared input files (globs allowed) by relative path + content.
    Missing inputs are part of the hash so adding one changes the digest.
    """
    fps: List[Tuple[str, str]] = []
    missing: List[str] = []
    for pat in inputs:
        matches = sorted(workspace.glob(pat))
        if not matches:
            missing.append(pat)
            continue
        for m in matches:
            files = [m] if m.is_file() else list(_iter_files_under(m))
            for f in files:
                fps.append((_relpath(f, workspace), _hash_file_contents(f)))

    fps.sort()
    payload = {"files": fps, "missing": sorted(missing)}
    return _sha256_str(_json_dumps_stable(payload)), payload


def _check_paths(paths: List[str]) -> List[str]:
    out = []
    for p in paths:
        pp = Path(p)
        if pp.is_absolute() or p.startswith("~") or ".." in pp.parts:
            raise ValueError(f"cache path must be relative to the workspace: {p!r}")
        out.append(p)
    return out


def compute_digest(key: str, paths: List[str], inputs: List[str], workspace: Path) -> Tuple[str, Dict]:
    inputs_hash, inputs_manifest = _hash_inputs(workspace, inputs)
    payload = {
        "v": 1,  # bump when the hashing format changes
        "key": key,
        "paths": sorted(paths),
        "inputs_hash": inputs_hash,
    }
    digest = _sha256_str(_json_dumps_stable(payload))
    manifest = {
        "digest": digest,
        "payload": payload,
        "inputs": inputs_manifest,
        "generated_at_unix": int(time.time()),
    }
    return digest, manifest


class CacheStore:
    """File-based cache store shared by every job of a run (and across runs)."""

    def __init__(self, root: str | Path = DEFAULT_CACHE_DIR):
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)

    def _key_dir(self, key: str) -> Path:
        d = self.root / _slug(key)
        d.mkdir(parents=True, exist_ok=True)
        return d

    def artifact_path(self, key: str, digest: str) -> Path:
        return self._key_dir(key) / f"{digest}.tar.gz"

    def manifest_path(self, key: str, digest: str) -> Path:
        return self._key_dir(key) / f"{digest}.manifest.json"

    def restore(self, key: str, paths: List[str], inputs: List[str], workspace: Path) -> CacheHit:
        """
        Extract a cached archive into the workspace.

        Restore is "overwrite by extraction". A broken archive is reported as
        a miss; the job then simply rebuilds.
        """
        paths = _check_paths(paths)
        digest, _manifest = compute_digest(key, paths, inputs, workspace)
        art = self.artifact_path(key, digest)

        if not art.exists():
            return CacheHit(hit=False, key=key, digest=digest, reason="cache miss")

        try:
            with tarfile.open(str(art), mode="r:gz") as tar:
                tar.extractall(path=str(workspace), filter="data")
        except (OSError, tarfile.TarError) as e:
            logger.warning("cache %s: restore failed: %s", key, e)
            return CacheHit(hit=False, key=key, digest=digest, reason=f"cache exists but restore failed: {e}")

        return CacheHit(hit=True, key=key, digest=digest, reason="cache hit: restored archive")

    def save(self, key: str, paths: List[str], inputs: List[str], workspace: Path) -> str:
        """
        Archive the declared paths for this key. Returns the digest.

        Paths that do not exist are skipped; excludes DEFAULT_CACHE_EXCLUDES.
        """
        paths = _check_paths(paths)
        digest, manifest = compute_digest(key, paths, inputs, workspace)
        art = self.artifact_path(key, digest)
        man = self.manifest_path(key, digest)

        tmp = art.with_name(f".{art.name}.{uuid.uuid4().hex}.tmp")
        try:
            with tarfile.open(str(tmp), mode="w:gz") as tar:
                for entry in paths:
                    src = (workspace / entry).resolve()
                    if not src.exists():
                        continue
                    files = [src] if src.is_file() else list(_iter_files_under(src))
                    for f in files:
                        rel = _relpath(f, workspace)
                        if _matches_any_glob(rel, DEFAULT_CACHE_EXCLUDES):
                            continue
                        tar.add(str(f), arcname=rel, recursive=False)

                payload = json.dumps(manifest, sort_keys=True, indent=2).encode("utf-8")
                info = tarfile.TarInfo(name=f".matrixci_cache_manifest/{digest}.manifest.json")
                info.size = len(payload)
                info.mtime = int(time.time())
                tar.addfile(info, fileobj=io.BytesIO(payload))

            tmp.replace(art)
            man.write_text(json.dumps(manifest, sort_keys=True, indent=2), encoding="utf-8")
        finally:
            tmp.unlink(missing_ok=True)

        return digest

    def prune(self, key: str, keep: int = 3) -> None:
        """Keep only the newest N archives for a key (by mtime)."""
        d = self._key_dir(key)
        tars = sorted(d.glob("*.tar.gz"), key=lambda p: p.stat().st_mtime, reverse=True)
        for p in tars[keep:]:
            digest = p.name[: -len(".tar.gz")]
            p.unlink(missing_ok=True)
            (d / f"{digest}.manifest.json").unlink(missing_ok=True)
