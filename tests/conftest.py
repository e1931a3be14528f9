from __future__ import annotations

import pytest

from flowci.definition import parse
from flowci.runner import run_workflow
from flowci.settings import Settings
from flowci.ui.console import Console, set_console


@pytest.fixture(autouse=True)
def quiet_console():
    console = Console(quiet=True)
    set_console(console)
    yield console
    set_console(Console())


@pytest.fixture
def run_raw(tmp_path):
    """Parse a raw workflow mapping and run it with its home under tmp_path."""

    def _run(raw, *, workers=2, labels=(), **kwargs):
        settings = Settings(workers=workers, home=str(tmp_path / ".flowci"), runner_labels=tuple(labels))
        return run_workflow(parse(raw), settings=settings, source_dir=tmp_path, **kwargs)

    return _run
