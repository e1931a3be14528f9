# expressions.py
"""
Safe evaluator for `${{ }}` expressions and `if:` conditions.

The grammar is fixed and small; nothing is ever handed to eval():

    expr     := or
    or       := and ( '||' and )*
    and      := compare ( '&&' compare )*
    compare  := unary ( ( '==' | '!=' | '<' | '<=' | '>' | '>=' ) unary )*
    unary    := '!' unary | primary
    primary  := literal | call | path | '(' expr ')'
    call     := NAME '(' [ expr ( ',' expr )* ] ')'
    path     := NAME ( '.' NAME | '[' expr ']' )*

Literals are 'single-quoted strings' ('' escapes a quote), numbers,
true, false and null. Looking up a path that does not exist yields null.

Examples::

    evaluate("github.ref == 'refs/heads/main'", {"github": {"ref": "refs/heads/main"}})  # True
    evaluate("needs.build.outputs.version", ctx)                                          # '1.2.0'
    interpolate("py${{ matrix.python }}", {"matrix": {"python": "3.12"}})                # 'py3.12'
"""

from __future__ import annotations

import json
import math
import re
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple, Union

from .errors import ExpressionError

__all__ = [
    "Value",
    "compile_expression",
    "evaluate",
    "evaluate_condition",
    "interpolate",
    "is_truthy",
    "to_string",
    "uses_status_functions",
]

Value = Union[bool, str, int, float, None]

STATUS_FUNCTIONS = frozenset({"success", "failure", "cancelled", "always"})

_TOKEN_RE = re.compile(
    r"""
    (?P<ws>\s+)
  | (?P<number>\d+(?:\.\d+)?(?:[eE][+-]?\d+)?)
  | (?P<string>'(?:[^']|'')*')
  | (?P<name>[A-Za-z_][A-Za-z0-9_\-]*)
  | (?P<op>==|!=|<=|>=|&&|\|\||[<>!()\[\].,])
    """,
    re.VERBOSE,
)

_WRAPPED_RE = re.compile(r"^\s*\$\{\{(.*)\}\}\s*$", re.DOTALL)
_INTERP_RE = re.compile(r"\$\{\{(.*?)\}\}", re.DOTALL)


@dataclass(frozen=True)
class _Token:
    kind: str
    text: str
    pos: int


def _tokenize(expr: str) -> List[_Token]:
    tokens: List[_Token] = []
    pos = 0
    while pos < len(expr):
        m = _TOKEN_RE.match(expr, pos)
        if not m:
            raise ExpressionError(expr, f"unexpected character {expr[pos]!r} at position {pos}")
        kind = m.lastgroup or ""
        if kind != "ws":
            tokens.append(_Token(kind, m.group(), pos))
        pos = m.end()
    return tokens


# ---------------------------------------------------------------------
# AST
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class _Literal:
    value: Value


@dataclass(frozen=True)
class _Path:
    head: str
    # each accessor is a property name (str) or an index expression
    accessors: Tuple[Union[str, "_Node"], ...]


@dataclass(frozen=True)
class _Call:
    name: str
    args: Tuple["_Node", ...]


@dataclass(frozen=True)
class _Not:
    operand: "_Node"


@dataclass(frozen=True)
class _Binary:
    op: str
    left: "_Node"
    right: "_Node"


_Node = Union[_Literal, _Path, _Call, _Not, _Binary]


class _Parser:
    def __init__(self, expr: str):
        self.expr = expr
        self.tokens = _tokenize(expr)
        self.i = 0

    def _peek(self) -> Optional[_Token]:
        return self.tokens[self.i] if self.i < len(self.tokens) else None

    def _accept(self, *texts: str) -> Optional[_Token]:
        tok = self._peek()
        if tok is not None and tok.kind == "op" and tok.text in texts:
            self.i += 1
            return tok
        return None

    def _expect(self, text: str) -> None:
        if self._accept(text) is None:
            tok = self._peek()
            found = repr(tok.text) if tok else "end of expression"
            raise ExpressionError(self.expr, f"expected {text!r}, found {found}")

    def parse(self) -> _Node:
        if not self.tokens:
            raise ExpressionError(self.expr, "empty expression")
        node = self._or()
        tok = self._peek()
        if tok is not None:
            raise ExpressionError(self.expr, f"unexpected {tok.text!r} at position {tok.pos}")
        return node

    def _or(self) -> _Node:
        node = self._and()
        while self._accept("||"):
            node = _Binary("||", node, self._and())
        return node

    def _and(self) -> _Node:
        node = self._compare()
        while self._accept("&&"):
            node = _Binary("&&", node, self._compare())
        return node

    def _compare(self) -> _Node:
        node = self._unary()
        while True:
            tok = self._accept("==", "!=", "<", "<=", ">", ">=")
            if tok is None:
                return node
            node = _Binary(tok.text, node, self._unary())

    def _unary(self) -> _Node:
        if self._accept("!"):
            return _Not(self._unary())
        return self._primary()

    def _primary(self) -> _Node:
        tok = self._peek()
        if tok is None:
            raise ExpressionError(self.expr, "unexpected end of expression")

        if self._accept("("):
            node = self._or()
            self._expect(")")
            return node

        self.i += 1
        if tok.kind == "number":
            return _Literal(_parse_number(tok.text))
        if tok.kind == "string":
            return _Literal(tok.text[1:-1].replace("''", "'"))
        if tok.kind == "name":
            lowered = tok.text.lower()
            if lowered == "true":
                return _Literal(True)
            if lowered == "false":
                return _Literal(False)
            if lowered == "null":
                return _Literal(None)
            if self._accept("("):
                return self._call(tok)
            return self._path(tok.text)

        raise ExpressionError(self.expr, f"unexpected {tok.text!r} at position {tok.pos}")

    def _call(self, name_tok: _Token) -> _Node:
        name = name_tok.text
        if name.lower() not in _FUNCTIONS and name.lower() not in STATUS_FUNCTIONS:
            raise ExpressionError(self.expr, f"unknown function {name!r}")
        args: List[_Node] = []
        if not self._accept(")"):
            args.append(self._or())
            while self._accept(","):
                args.append(self._or())
            self._expect(")")
        return _Call(name.lower(), tuple(args))

    def _path(self, head: str) -> _Node:
        accessors: List[Union[str, _Node]] = []
        while True:
            if self._accept("."):
                tok = self._peek()
                if tok is None or tok.kind not in ("name", "number"):
                    raise ExpressionError(self.expr, f"expected property name after '.' in {head!r}")
                self.i += 1
                accessors.append(tok.text)
            elif self._accept("["):
                accessors.append(self._or())
                self._expect("]")
            else:
                return _Path(head, tuple(accessors))


def _parse_number(text: str) -> Union[int, float]:
    try:
        return int(text)
    except ValueError:
        return float(text)


# ---------------------------------------------------------------------
# Coercion rules
# ---------------------------------------------------------------------

def is_truthy(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0 and not math.isnan(value)
    if isinstance(value, str):
        return value != ""
    return True


def _to_number(value: Any) -> float:
    if value is None:
        return 0.0
    if isinstance(value, bool):
        return 1.0 if value else 0.0
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return 0.0
        try:
            return float(text)
        except ValueError:
            return math.nan
    return math.nan


def to_string(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (dict, list)):
        return json.dumps(value, sort_keys=True)
    return str(value)


def _equals(left: Any, right: Any) -> bool:
    if isinstance(left, str) and isinstance(right, str):
        return left.casefold() == right.casefold()
    if left is None and right is None:
        return True
    if isinstance(left, (dict, list)) or isinstance(right, (dict, list)):
        return left is right
    if type(left) is type(right) and not isinstance(left, (int, float)):
        return left == right
    a, b = _to_number(left), _to_number(right)
    return a == b  # NaN never equals


def _order(op: str, left: Any, right: Any) -> bool:
    if isinstance(left, str) and isinstance(right, str):
        a: Any = left.casefold()
        b: Any = right.casefold()
    else:
        a, b = _to_number(left), _to_number(right)
        if math.isnan(a) or math.isnan(b):
            return False
    if op == "<":
        return a < b
    if op == "<=":
        return a <= b
    if op == ">":
        return a > b
    return a >= b


# ---------------------------------------------------------------------
# Functions
# ---------------------------------------------------------------------

def _fn_contains(search: Any, item: Any) -> bool:
    if isinstance(search, list):
        return any(_equals(x, item) for x in search)
    return to_string(item).casefold() in to_string(search).casefold()


def _fn_starts_with(text: Any, prefix: Any) -> bool:
    return to_string(text).casefold().startswith(to_string(prefix).casefold())


def _fn_ends_with(text: Any, suffix: Any) -> bool:
    return to_string(text).casefold().endswith(to_string(suffix).casefold())


def _fn_format(template: Any, *args: Any) -> str:
    text = to_string(template)
    out: List[str] = []
    i = 0
    while i < len(text):
        ch = text[i]
        if text.startswith("{{", i) or text.startswith("}}", i):
            out.append(ch)
            i += 2
            continue
        if ch == "{":
            end = text.find("}", i)
            index = text[i + 1:end] if end != -1 else ""
            if not index.isdigit() or int(index) >= len(args):
                raise ValueError(f"invalid format placeholder in {text!r}")
            out.append(to_string(args[int(index)]))
            i = end + 1
            continue
        out.append(ch)
        i += 1
    return "".join(out)


def _fn_join(items: Any, sep: Any = ",") -> str:
    if isinstance(items, list):
        return to_string(sep).join(to_string(x) for x in items)
    return to_string(items)


def _fn_to_json(value: Any) -> str:
    return json.dumps(value, indent=2, sort_keys=True)


def _fn_from_json(text: Any) -> Any:
    return json.loads(to_string(text))


_FUNCTIONS: Dict[str, Callable[..., Any]] = {
    "contains": _fn_contains,
    "startswith": _fn_starts_with,
    "endswith": _fn_ends_with,
    "format": _fn_format,
    "join": _fn_join,
    "tojson": _fn_to_json,
    "fromjson": _fn_from_json,
}


def _status_check(name: str, context: Mapping[str, Any]) -> bool:
    if name == "always":
        return True
    job = context.get("job")
    status = job.get("status") if isinstance(job, Mapping) else None
    status = status or "success"
    return status == name


# ---------------------------------------------------------------------
# Evaluation
# ---------------------------------------------------------------------

def _lookup(container: Any, key: Any) -> Any:
    if isinstance(container, Mapping):
        if key in container:
            return container[key]
        if isinstance(key, str):
            lowered = key.lower()
            for k, v in container.items():
                if isinstance(k, str) and k.lower() == lowered:
                    return v
        return None
    if isinstance(container, list):
        idx = _to_number(key)
        if math.isnan(idx) or not float(idx).is_integer():
            return None
        i = int(idx)
        return container[i] if 0 <= i < len(container) else None
    return None


class Expression:
    """A compiled expression; evaluate it against any number of contexts."""

    def __init__(self, source: str, node: _Node):
        self.source = source
        self._node = node

    def __repr__(self) -> str:
        return f"Expression({self.source!r})"

    def evaluate(self, context: Mapping[str, Any]) -> Any:
        try:
            return self._eval(self._node, context)
        except ExpressionError:
            raise
        except (TypeError, ValueError) as e:
            raise ExpressionError(self.source, str(e)) from e

    def _eval(self, node: _Node, ctx: Mapping[str, Any]) -> Any:
        if isinstance(node, _Literal):
            return node.value

        if isinstance(node, _Path):
            value = _lookup(ctx, node.head)
            for acc in node.accessors:
                if value is None:
                    return None
                key = acc if isinstance(acc, str) else self._eval(acc, ctx)
                value = _lookup(value, key)
            return value

        if isinstance(node, _Call):
            if node.name in STATUS_FUNCTIONS:
                if node.args:
                    raise ExpressionError(self.source, f"{node.name}() takes no arguments")
                return _status_check(node.name, ctx)
            args = [self._eval(a, ctx) for a in node.args]
            return _FUNCTIONS[node.name](*args)

        if isinstance(node, _Not):
            return not is_truthy(self._eval(node.operand, ctx))

        if isinstance(node, _Binary):
            left = self._eval(node.left, ctx)
            if node.op == "&&":
                return self._eval(node.right, ctx) if is_truthy(left) else left
            if node.op == "||":
                return left if is_truthy(left) else self._eval(node.right, ctx)
            right = self._eval(node.right, ctx)
            if node.op == "==":
                return _equals(left, right)
            if node.op == "!=":
                return not _equals(left, right)
            return _order(node.op, left, right)

        raise ExpressionError(self.source, f"unsupported node {node!r}")


def _unwrap(expr: str) -> str:
    m = _WRAPPED_RE.match(expr)
    if m and "${{" not in m.group(1):
        return m.group(1)
    return expr


@lru_cache(maxsize=512)
def compile_expression(expr: str) -> Expression:
    """Parse `expr` once; raises ExpressionError when it is malformed."""
    source = _unwrap(expr)
    return Expression(source.strip(), _Parser(source).parse())


def evaluate(expr: str, context: Mapping[str, Any]) -> Any:
    return compile_expression(expr).evaluate(context)


def evaluate_condition(expr: Optional[str], context: Mapping[str, Any]) -> bool:
    """Evaluate an `if:` condition. Absent or blank conditions are true."""
    if isinstance(expr, bool):
        return expr
    if expr is None or not str(expr).strip():
        return True
    return is_truthy(evaluate(str(expr), context))


def interpolate(template: str, context: Mapping[str, Any]) -> str:
    """Substitute every `${{ expr }}` occurrence in `template`."""
    if "${{" not in template:
        return template

    def _sub(m: "re.Match[str]") -> str:
        return to_string(evaluate(m.group(1), context))

    return _INTERP_RE.sub(_sub, template)


def uses_status_functions(expr: Optional[str]) -> bool:
    """True when the condition calls success()/failure()/cancelled()/always()."""
    if not expr:
        return False
    try:
        tokens = _tokenize(_unwrap(str(expr)))
    except ExpressionError:
        return False
    for tok, nxt in zip(tokens, tokens[1:]):
        if tok.kind == "name" and tok.text.lower() in STATUS_FUNCTIONS and nxt.text == "(":
            return True
    return False
