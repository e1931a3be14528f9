# artifacts.py
from __future__ import annotations

import json
import shutil
import threading
import time
import uuid
from pathlib import Path
from typing import Dict, List

from .cache import iter_files
from .errors import ArtifactNotFoundError
from .ui.console import get_console


class ArtifactStore:
    """
    Named file bundles handed from one job to another within a run:
      root/
        <run_id>/
          <name>/...files (paths relative to the uploading workspace)
          index.json  (written on flush)
    """

    def __init__(self, root: str | Path, run_id: str):
        self.run_id = run_id
        self.root = Path(root).resolve() / run_id
        self.root.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._uploaded: Dict[str, Dict] = {}

    def _dir(self, name: str) -> Path:
        if not name or "/" in name or "\\" in name or name.startswith("."):
            raise ValueError(f"invalid artifact name: {name!r}")
        return self.root / name

    def exists(self, name: str) -> bool:
        return self._dir(name).is_dir()

    def names(self) -> List[str]:
        return sorted(p.name for p in self.root.iterdir() if p.is_dir() and not p.name.startswith("."))

    def upload(self, name: str, paths: List[str], *, workspace: str | Path) -> List[str]:
        """
        Store the files matched by `paths` under `name`. Returns the stored
        relative paths (empty when nothing matched; nothing is stored then).
        """
        root = Path(workspace).resolve()
        files = iter_files(root, paths)
        if not files:
            get_console().print_warning(f"artifact {name!r}: no files found for {paths}; nothing uploaded")
            return []

        dest = self._dir(name)
        staging = self.root / f".{name}.{uuid.uuid4().hex}"
        rels: List[str] = []
        try:
            for f in files:
                rel = f.resolve().relative_to(root).as_posix()
                target = staging / rel
                target.parent.mkdir(parents=True, exist_ok=True)
                shutil.copy2(f, target)
                rels.append(rel)

            with self._lock:
                if dest.exists():
                    get_console().print_warning(
                        f"artifact {name!r} already uploaded in run {self.run_id}; overwriting (last writer wins)"
                    )
                    shutil.rmtree(dest)
                staging.rename(dest)
                self._uploaded[name] = {"files": rels, "uploaded_at_unix": int(time.time())}
        finally:
            if staging.exists():
                shutil.rmtree(staging, ignore_errors=True)

        return rels

    def download(self, name: str, *, dest: str | Path) -> List[str]:
        """Copy artifact `name` into `dest`. Raises ArtifactNotFoundError when it was never uploaded."""
        src = self._dir(name)
        with self._lock:
            if not src.is_dir():
                raise ArtifactNotFoundError(name, self.run_id)
            target = Path(dest).resolve()
            target.mkdir(parents=True, exist_ok=True)
            shutil.copytree(src, target, dirs_exist_ok=True)
            return sorted(p.relative_to(src).as_posix() for p in src.rglob("*") if p.is_file())

    def flush(self) -> None:
        """Run teardown: write the artifact index for external consumers."""
        with self._lock:
            index = {"run_id": self.run_id, "artifacts": dict(sorted(self._uploaded.items()))}
            (self.root / "index.json").write_text(json.dumps(index, indent=2), encoding="utf-8")
