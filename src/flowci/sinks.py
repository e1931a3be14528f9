# sinks.py
from __future__ import annotations

import threading
import urllib.error
import urllib.request
from pathlib import Path
from typing import Optional
from urllib.parse import urljoin

from .state import RunSnapshot, TransitionEvent
from .ui.console import get_console


class JsonlEventSink:
    """Append every transition event to a JSON-lines file."""

    def __init__(self, path: str | Path):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def __call__(self, event: TransitionEvent) -> None:
        line = event.model_dump_json()
        with self._lock, self.path.open("a", encoding="utf-8") as f:
            f.write(line + "\n")


class HttpEventSink:
    """
    POST transition events (and the final snapshot) to an external collector.

    Endpoints (relative to base_url):
      POST /runs/{run_id}/events     one TransitionEvent
      POST /runs/{run_id}/snapshot   the terminal RunSnapshot
    """

    def __init__(self, base_url: str, *, timeout: float = 5.0):
        # Ensure base_url doesn't end with /
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.failures = 0

    def _post(self, path: str, body: str) -> Optional[int]:
        url = urljoin(self.base_url + "/", path.lstrip("/"))
        req = urllib.request.Request(
            url,
            data=body.encode("utf-8"),
            headers={"Content-Type": "application/json"},
            method="POST",
        )
        try:
            with urllib.request.urlopen(req, timeout=self.timeout) as response:
                return response.status
        except urllib.error.HTTPError as e:
            self.failures += 1
            get_console().print_warning(f"event collector returned HTTP {e.code} {e.reason} for {url}")
        except urllib.error.URLError as e:
            self.failures += 1
            get_console().print_debug(f"event collector unreachable at {url}: {e.reason}")
        return None

    def __call__(self, event: TransitionEvent) -> None:
        self._post(f"runs/{event.run_id}/events", event.model_dump_json())

    def send_snapshot(self, snapshot: RunSnapshot) -> None:
        self._post(f"runs/{snapshot.run_id}/snapshot", snapshot.model_dump_json())
