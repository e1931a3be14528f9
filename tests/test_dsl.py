import pytest

from flowci.dsl import build, job, matrix, sh, uses, wf
from flowci.errors import DefinitionError
from flowci.model import StepKind


def test_functional_helpers_build_a_definition():
    definition = wf(
        job("lint", sh("ruff", "ruff check .")),
        job(
            "test",
            uses("flowci/checkout"),
            sh("pytest", "pytest -q", id="t", continue_on_error=True, timeout_minutes=5),
            needs=["lint"],
            strategy=matrix(py=["3.11", "3.12"], exclude=[{"py": "3.11"}], fail_fast=True),
            concurrency="test-${{ github.ref }}",
            cancel_in_progress=True,
        ),
        name="ci",
        on={"push": {"branches": ["main"]}},
        env={"PYTHONUNBUFFERED": 1},
    )

    assert definition.name == "ci"
    assert definition.env == {"PYTHONUNBUFFERED": "1"}
    test = definition.job("test")
    assert test.needs == ("lint",)
    assert test.matrix.axes == {"py": ["3.11", "3.12"]}
    assert test.matrix.exclude == [{"py": "3.11"}]
    assert test.matrix.fail_fast is True
    assert test.concurrency.cancel_in_progress is True
    assert [s.kind for s in test.steps] == [StepKind.USES, StepKind.RUN]
    assert test.steps[1].timeout_minutes == 5
    assert definition.triggered_by("push", "refs/heads/main")


def test_builder():
    definition = wf(
        build("deploy")
        .depends_on("test")
        .define_step("ship", "./ship.sh", cwd="deploy")
        .use_action("acme/notify", with_={"channel": "#ci"})
        .with_env(STAGE="prod")
        .when("github.ref == 'refs/heads/main'")
        .on_runner("prod")
        .with_matrix(region=["eu", "us"])
        .timeout(30)
        .in_group("deploy")
        .output("url", "${{ steps.ship.outputs.url }}"),
        job("test", sh("pytest", "pytest")),
    )
    deploy = definition.job("deploy")
    assert deploy.needs == ("test",)
    assert deploy.steps[0].working_directory == "deploy"
    assert deploy.steps[1].inputs == {"channel": "#ci"}
    assert deploy.env == {"STAGE": "prod"}
    assert deploy.if_ == "github.ref == 'refs/heads/main'"
    assert deploy.runs_on == "prod"
    assert deploy.matrix.axes == {"region": ["eu", "us"]}
    assert deploy.timeout_minutes == 30
    assert deploy.concurrency.group == "deploy"
    assert deploy.outputs == {"url": "${{ steps.ship.outputs.url }}"}


def test_job_without_steps():
    with pytest.raises(ValueError, match="at least one step"):
        job("empty")
    with pytest.raises(ValueError, match="has no steps"):
        build("empty").build()


def test_cancel_in_progress_needs_a_group():
    with pytest.raises(ValueError, match="concurrency group"):
        job("x", sh("a", "true"), cancel_in_progress=True)


def test_definition_errors_surface_from_wf():
    with pytest.raises(DefinitionError, match="needs missing job"):
        wf(job("a", sh("a", "true"), needs=["ghost"]))
