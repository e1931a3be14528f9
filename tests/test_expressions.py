import pytest

from flowci.errors import ExpressionError
from flowci.expressions import evaluate, evaluate_condition, interpolate, uses_status_functions

CTX = {
    "github": {"ref": "refs/heads/main", "event_name": "push"},
    "matrix": {"python": "3.12", "os": "linux"},
    "needs": {
        "build": {"result": "success", "outputs": {"version": "1.2.0", "labels": '["a", "b"]'}},
    },
    "env": {"COUNT": "3"},
    "job": {"status": "success"},
}


@pytest.mark.parametrize(
    "expr, expected",
    [
        ("github.ref == 'refs/heads/main'", True),
        ("github.ref == 'REFS/HEADS/MAIN'", True),
        ("github.ref != 'refs/heads/main'", False),
        ("needs.build.outputs.version", "1.2.0"),
        ("needs['build'].outputs['version']", "1.2.0"),
        ("needs.missing.outputs.version", None),
        ("env.COUNT > 2", True),
        ("env.COUNT == 3", True),
        ("'' == 0", True),
        ("null == false", True),
        ("!github.ref", False),
        ("matrix.os == 'linux' && matrix.python", "3.12"),
        ("matrix.os == 'mac' || 'fallback'", "fallback"),
        ("(1 < 2) && (2 <= 2) && !(3 >= 4)", True),
        ("'it''s'", "it's"),
        ("1.5", 1.5),
        ("true", True),
        ("${{ github.event_name == 'push' }}", True),
    ],
)
def test_evaluate(expr, expected):
    assert evaluate(expr, CTX) == expected


@pytest.mark.parametrize(
    "expr, expected",
    [
        ("contains(github.ref, 'MAIN')", True),
        ("contains(fromJSON(needs.build.outputs.labels), 'b')", True),
        ("startsWith(github.ref, 'refs/heads/')", True),
        ("endsWith(github.ref, '/dev')", False),
        ("format('py{0}-{1}', matrix.python, matrix.os)", "py3.12-linux"),
        ("format('{{literal}} {0}', 'x')", "{literal} x"),
        ("join(fromJSON(needs.build.outputs.labels), '+')", "a+b"),
        ("fromJSON('{\"a\": 1}')", {"a": 1}),
    ],
)
def test_functions(expr, expected):
    assert evaluate(expr, CTX) == expected


def test_status_functions_read_job_status():
    failed = {**CTX, "job": {"status": "failure"}}
    assert evaluate("success()", CTX) is True
    assert evaluate("failure()", failed) is True
    assert evaluate("cancelled()", failed) is False
    assert evaluate("always()", failed) is True


@pytest.mark.parametrize(
    "expr",
    [
        "github.ref ==",
        "(1 == 1",
        "eval('1')",
        "1 2",
        "'unterminated",
        "a.",
        "",
    ],
)
def test_malformed_expressions_raise(expr):
    with pytest.raises(ExpressionError):
        evaluate(expr, CTX)


def test_bad_format_placeholder_is_an_expression_error():
    with pytest.raises(ExpressionError):
        evaluate("format('{5}', 'x')", CTX)


def test_evaluate_condition_defaults_to_true():
    assert evaluate_condition(None, CTX) is True
    assert evaluate_condition("   ", CTX) is True
    assert evaluate_condition("needs.build.result == 'failure'", CTX) is False


def test_interpolate():
    assert interpolate("py${{ matrix.python }} on ${{ matrix.os }}", CTX) == "py3.12 on linux"
    assert interpolate("no expressions here", CTX) == "no expressions here"
    assert interpolate("[${{ needs.nope.outputs.x }}]", CTX) == "[]"
    assert interpolate("${{ true }}", CTX) == "true"


def test_uses_status_functions():
    assert uses_status_functions("always()")
    assert uses_status_functions("${{ failure() && github.ref == 'refs/heads/main' }}")
    assert not uses_status_functions("github.ref == 'always()'")
    assert not uses_status_functions(None)
    assert not uses_status_functions("success")
