# context.py
from __future__ import annotations

import re
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, FrozenSet, Iterable, Mapping, Optional

from .artifacts import ArtifactStore
from .cache import CacheStore
from .concurrency import ConcurrencyLockTable
from .model import JobInstance, WorkflowDefinition
from .ui.console import get_console


def slugify(name: str) -> str:
    return re.sub(r"[^A-Za-z0-9._-]+", "-", name).strip("-") or "job"


@dataclass(frozen=True)
class Worker:
    """One slot of the fixed-size worker pool, with its capability labels."""
    id: str
    labels: FrozenSet[str] = frozenset()

    def accepts(self, instance: JobInstance) -> bool:
        tag = instance.template.runs_on
        return tag is None or tag in self.labels


def make_workers(count: int, labels: Iterable[str]) -> list[Worker]:
    if count < 1:
        raise ValueError("worker pool needs at least one worker")
    label_set = frozenset(labels)
    return [Worker(id=f"worker-{i + 1}", labels=label_set) for i in range(count)]


@dataclass
class RunContext:
    """
    Process-wide state of one workflow execution.

    Created at run start and torn down at run end whatever the outcome:
    concurrency locks released, cache and artifact stores flushed.
    """
    run_id: str
    workflow: WorkflowDefinition
    trigger: Dict[str, Any]
    env: Dict[str, str]
    cache: CacheStore
    artifacts: ArtifactStore
    locks: ConcurrencyLockTable
    home: Path
    source_dir: Path
    closed: bool = field(default=False, init=False)

    @classmethod
    def create(
        cls,
        workflow: WorkflowDefinition,
        *,
        home: str | Path = ".flowci",
        source_dir: str | Path = ".",
        trigger: Optional[Mapping[str, Any]] = None,
        run_id: Optional[str] = None,
        cache_keep: int = 50,
    ) -> "RunContext":
        home_p = Path(home).resolve()
        rid = run_id or uuid.uuid4().hex[:12]
        payload = {"event_name": "workflow_dispatch", "ref": None, "sha": None, "inputs": {}, "event": {}}
        payload.update(dict(trigger or {}))
        return cls(
            run_id=rid,
            workflow=workflow,
            trigger=payload,
            env=dict(workflow.env),
            cache=CacheStore(home_p / "cache", keep=cache_keep),
            artifacts=ArtifactStore(home_p / "artifacts", rid),
            locks=ConcurrencyLockTable(),
            home=home_p,
            source_dir=Path(source_dir).resolve(),
        )

    @property
    def workspace_root(self) -> Path:
        return self.home / "work" / self.run_id

    def workspace_for(self, instance: JobInstance) -> Path:
        # slugs alone can collide ("x y" and "x-y"); the index never does
        ws = self.workspace_root / f"{instance.index:03d}-{slugify(instance.id)}"
        ws.mkdir(parents=True, exist_ok=True)
        return ws

    def github(self) -> Dict[str, Any]:
        return {**self.trigger, "run_id": self.run_id, "workflow": self.workflow.name}

    def expression_context(
        self,
        instance: Optional[JobInstance] = None,
        *,
        needs: Optional[Mapping[str, Any]] = None,
        job_status: str = "success",
        env: Optional[Mapping[str, str]] = None,
    ) -> Dict[str, Any]:
        """Contexts visible to `${{ }}` expressions and `if:` conditions."""
        ctx: Dict[str, Any] = {
            "github": self.github(),
            "inputs": dict(self.trigger.get("inputs") or {}),
            "env": dict(env if env is not None else self.env),
            "needs": dict(needs or {}),
            "job": {"status": job_status},
            "matrix": {},
            "steps": {},
            "runner": {},
        }
        if instance is not None:
            ctx["matrix"] = dict(instance.matrix)
            ctx["runner"] = {"name": instance.worker}
            ctx["job"]["name"] = instance.job_name
        return ctx

    def teardown(self) -> None:
        """Release every concurrency lock and flush the shared stores. Idempotent."""
        if self.closed:
            return
        self.closed = True
        held = self.locks.release_all()
        if held:
            get_console().print_debug(f"released concurrency groups at teardown: {held}")
        self.cache.flush()
        self.artifacts.flush()

    def __enter__(self) -> "RunContext":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.teardown()
