# settings.py
from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Mapping, Optional, Tuple

DEFAULT_HOME = ".flowci"
DEFAULT_CACHE_KEEP = 50


def _flag(value: Optional[str]) -> bool:
    return (value or "").strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class Settings:
    """
    Process configuration, read from FLOWCI_* environment variables.
    CLI options override whatever is set here.
    """
    workers: int = field(default_factory=lambda: os.cpu_count() or 2)
    home: str = DEFAULT_HOME
    runner_labels: Tuple[str, ...] = ()
    events_url: Optional[str] = None
    debug: bool = False
    cache_keep: int = DEFAULT_CACHE_KEEP

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if environ is None else environ
        defaults = cls()

        workers = defaults.workers
        raw_workers = env.get("FLOWCI_WORKERS")
        if raw_workers:
            try:
                workers = int(raw_workers)
            except ValueError:
                raise ValueError(f"FLOWCI_WORKERS must be an integer, got {raw_workers!r}") from None
            if workers < 1:
                raise ValueError("FLOWCI_WORKERS must be at least 1")

        cache_keep = int(env.get("FLOWCI_CACHE_KEEP", str(DEFAULT_CACHE_KEEP)))
        labels = tuple(l.strip() for l in env.get("FLOWCI_RUNNER_LABELS", "").split(",") if l.strip())

        return cls(
            workers=workers,
            home=env.get("FLOWCI_HOME") or DEFAULT_HOME,
            runner_labels=labels,
            events_url=env.get("FLOWCI_EVENTS_URL") or None,
            debug=_flag(env.get("FLOWCI_DEBUG")),
            cache_keep=cache_keep,
        )
