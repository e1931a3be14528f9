# cache.py
from __future__ import annotations

import hashlib
import json
import tarfile
import threading
import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

from .ui.console import get_console

# ---------------------------------------------------------------------
# Core idea
# ---------------------------------------------------------------------
# Step-level caching (the built-in `cache` action):
#   cache_key = key template (already interpolated, e.g. "deps-py3.12")
#               + "-" + content hash of the declared `hash-files` paths
#
# Cache entry:
#   a tar.gz containing the declared `path` entries (relative to the job
#   workspace) plus a manifest.json for explainability.
#
# Entries are keyed, so writers of distinct keys never touch the same file.
# Two writers of the same key: last writer wins (atomic rename) + warning.
# ---------------------------------------------------------------------


DEFAULT_CACHE_EXCLUDES = [
    ".git/**",
    ".flowci/**",
    "**/__pycache__/**",
    "**/*.pyc",
    "**/.DS_Store",
]


@dataclass(frozen=True)
class CacheHit:
    hit: bool
    key: str
    reason: str  # human readable
    manifest: Dict = field(default_factory=dict)


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


def _matches_any_glob(rel: str, globs: List[str]) -> bool:
    rel_path = Path(rel)
    return any(rel_path.match(g) for g in globs)


def _hash_file_contents(path: Path) -> str:
    h = hashlib.sha256()
    with path.open("rb") as f:
        for chunk in iter(lambda: f.read(1024 * 1024), b""):
            h.update(chunk)
    return h.hexdigest()


def split_paths(value: Optional[str]) -> List[str]:
    """`path:` inputs are newline separated, like in the workflow files."""
    if not value:
        return []
    return [line.strip() for line in value.splitlines() if line.strip()]


def resolve_globs(root: Path, patterns: List[str]) -> List[Path]:
    """
    Expand patterns relative to `root` into existing paths.
    Supports:
      - file path: "requirements.txt"
      - dir path:  "src/"
      - glob:      "build/**", "tests/**/*.py"
    """
    out: List[Path] = []
    for pat in patterns:
        p = root / pat
        if p.exists():
            out.append(p)
            continue
        out.extend(m for m in sorted(root.glob(pat)) if m.exists())

    # De-dupe while preserving order
    seen = set()
    uniq: List[Path] = []
    for p in out:
        rp = str(p.resolve())
        if rp not in seen:
            seen.add(rp)
            uniq.append(p)
    return uniq


def iter_files(root: Path, patterns: List[str], *, excludes: Optional[List[str]] = None) -> List[Path]:
    """Every file under the resolved patterns, sorted by relative path, excludes applied."""
    exclude_globs = list(DEFAULT_CACHE_EXCLUDES) + list(excludes or [])
    files: Dict[str, Path] = {}
    for p in resolve_globs(root, patterns):
        candidates = [p] if p.is_file() else list(_iter_files_under(p))
        for f in candidates:
            rel = _relpath(f, root)
            if not _matches_any_glob(rel, exclude_globs):
                files[rel] = f
    return [files[k] for k in sorted(files)]


def hash_paths(root: Path, patterns: List[str]) -> str:
    """
    Hash the declared paths deterministically: relative path, contents and
    size of every file. Missing paths hash as an empty set.
    """
    fps: List[Tuple[str, str, int]] = []
    for f in iter_files(root, patterns):
        fps.append((_relpath(f, root), _hash_file_contents(f), f.stat().st_size))
    return _sha256_str(_json_dumps_stable({"files": fps}))


def compute_cache_key(key: str, *, workspace: Path, hash_files: Optional[List[str]] = None) -> str:
    """Final cache key: the interpolated key template plus a content hash of `hash_files`."""
    if not hash_files:
        return key
    return f"{key}-{hash_paths(workspace, hash_files)[:16]}"


class CacheStore:
    """
    File-based cache store shared by every job of a run:
      root/
        <sha256(key)>.tar.gz
        <sha256(key)>.manifest.json
    """

    def __init__(self, root: str | Path, *, keep: int = 50):
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)
        self.keep = keep
        self._lock = threading.Lock()

    def _slot(self, key: str) -> str:
        return _sha256_str(key)

    def artifact_path(self, key: str) -> Path:
        return self.root / f"{self._slot(key)}.tar.gz"

    def manifest_path(self, key: str) -> Path:
        return self.root / f"{self._slot(key)}.manifest.json"

    def contains(self, key: str) -> bool:
        return self.artifact_path(key).exists() and self.manifest_path(key).exists()

    def restore(self, key: str, *, workspace: str | Path) -> CacheHit:
        """
        Restore the cached paths into `workspace` (overwrite by extraction).
        A miss is never an error.
        """
        root = Path(workspace).resolve()
        art = self.artifact_path(key)
        man = self.manifest_path(key)

        if not art.exists() or not man.exists():
            return CacheHit(hit=False, key=key, reason="cache miss")

        try:
            with tarfile.open(str(art), mode="r:gz") as tar:
                tar.extractall(path=str(root), filter="data")
        except (OSError, tarfile.TarError) as e:
            return CacheHit(hit=False, key=key, reason=f"cache exists but restore failed: {e}")

        try:
            stored = json.loads(man.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            stored = {}

        return CacheHit(hit=True, key=key, reason="cache hit: restored", manifest=stored)

    def save(self, key: str, paths: List[str], *, workspace: str | Path) -> Dict:
        """
        Save `paths` (relative to `workspace`) under `key`. Returns the manifest.

        The archive is built in a private temp file and renamed into place, so
        concurrent writers of the same key never corrupt each other: the last
        rename wins and a warning is printed.
        """
        root = Path(workspace).resolve()
        files = iter_files(root, paths)
        manifest = {
            "key": key,
            "paths": list(paths),
            "files": [_relpath(f, root) for f in files],
            "saved_at_unix": int(time.time()),
        }

        art = self.artifact_path(key)
        man = self.manifest_path(key)
        tmp = art.with_name(f"{art.name}.{uuid.uuid4().hex}.tmp")
        try:
            with tarfile.open(str(tmp), mode="w:gz") as tar:
                for f in files:
                    tar.add(str(f), arcname=_relpath(f, root), recursive=False)

            with self._lock:
                if art.exists():
                    get_console().print_warning(f"cache key {key!r} already saved; overwriting (last writer wins)")
                tmp.replace(art)
                man.write_text(json.dumps(manifest, sort_keys=True, indent=2), encoding="utf-8")
        finally:
            tmp.unlink(missing_ok=True)

        return manifest

    def prune(self, keep: Optional[int] = None) -> List[str]:
        """
        Keep only the newest N entries. Uses file mtime as "newest".
        Returns the removed slots.
        """
        keep = self.keep if keep is None else keep
        with self._lock:
            tars = sorted(self.root.glob("*.tar.gz"), key=lambda p: p.stat().st_mtime, reverse=True)
            removed: List[str] = []
            for p in tars[keep:]:
                slot = p.name[: -len(".tar.gz")]
                p.unlink(missing_ok=True)
                (self.root / f"{slot}.manifest.json").unlink(missing_ok=True)
                removed.append(slot)
            return removed

    def flush(self) -> None:
        """Run teardown: drop stray temp files and prune old entries."""
        for tmp in self.root.glob("*.tmp"):
            tmp.unlink(missing_ok=True)
        self.prune()
