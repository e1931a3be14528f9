# flowci_workflow.py
# Workflow for flowci itself: lint, test on a python matrix, package, publish.
from __future__ import annotations

from flowci.dsl import job, matrix, sh, uses, wf


def workflow():
    return wf(
        job(
            "lint",
            uses("flowci/checkout"),
            sh("Ruff check", "ruff check src tests || echo 'ruff not available, skipping'"),
        ),
        job(
            "test",
            uses("flowci/checkout"),
            uses(
                "flowci/cache",
                name="Restore pip cache",
                with_={"key": "pip-${{ matrix.python }}", "path": ".venv", "hash-files": "pyproject.toml"},
            ),
            sh("Create venv", "python${{ matrix.python }} -m venv .venv || python3 -m venv .venv"),
            sh("Install package", ".venv/bin/pip install -q -e '.[test]'"),
            sh("Run pytest", ".venv/bin/pytest -q"),
            needs=["lint"],
            strategy=matrix(python=["3.11", "3.12"]),
        ),
        job(
            "package",
            uses("flowci/checkout"),
            sh("Build sdist", "python3 -m pip wheel --no-deps -w dist . -q", id="build"),
            sh("Record version", "echo \"version=$(grep -m1 '^version' pyproject.toml | cut -d'\"' -f2)\" >> \"$FLOWCI_OUTPUT\"", id="meta"),
            uses("flowci/upload-artifact", with_={"name": "dist", "path": "dist/*.whl"}),
            needs=["test"],
            outputs={"version": "${{ steps.meta.outputs.version }}"},
        ),
        job(
            "publish",
            uses("flowci/download-artifact", with_={"name": "dist", "path": "dist"}),
            sh("Show release", "echo publishing ${{ needs.package.outputs.version }} && ls dist"),
            needs=["package"],
            if_="github.ref == 'refs/heads/main'",
            concurrency="publish-${{ github.ref }}",
            cancel_in_progress=True,
        ),
        name="flowci",
        on={"push": {"branches": ["main", "release/*"]}, "pull_request": None, "workflow_dispatch": None},
    )
