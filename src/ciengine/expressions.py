"""
Expression templates and conditions.

Workflow values may embed `${{ expr }}` placeholders:

    runs-on: ${{ matrix.os }}
    group:   ${{ github.workflow }}-${{ github.ref }}
    if:      ${{ failure() && steps.build.outcome == 'failure' }}

`expr` is a small language: dotted references into a context mapping
(`matrix.os`, `steps.build.outputs.path`, `env.RUST_BACKTRACE`), literals
('str', 12, true, false, null), comparisons (== != < <= > >=), `!`, `&&`, `||`,
parentheses and a handful of functions (success, failure, always, cancelled,
contains, startsWith, endsWith). Missing references evaluate to null.

Rendering can be partial: `render(value, ctx, namespaces={"matrix"})` only
substitutes placeholders whose references all live in the listed namespaces and
leaves everything else untouched for a later pass.
"""

from __future__ import annotations

import re
from typing import Any, Callable, Iterable, List, Mapping, Optional, Tuple

from .errors import ConfigError

PLACEHOLDER = re.compile(r"\$\{\{\s*(.*?)\s*\}\}")
# `${name}` shorthand, only honoured where shell variables cannot appear (group keys)
SHORTHAND = re.compile(r"\$\{(?!\{)\s*([^{}]+?)\s*\}")
WRAPPED = re.compile(r"^\s*\$\{\{(.*)\}\}\s*$", re.DOTALL)

STATUS_FUNCTIONS = ("success", "failure", "always", "cancelled")

_TOKEN = re.compile(
    r"""
    (?P<ws>\s+)
  | (?P<str>'(?:[^']|'')*')
  | (?P<num>-?\d+(?:\.\d+)?)
  | (?P<op>==|!=|<=|>=|&&|\|\||[<>!(),])
  | (?P<ident>[A-Za-z_][A-Za-z0-9_-]*(?:\.[A-Za-z0-9_*][A-Za-z0-9_-]*)*)
    """,
    re.VERBOSE,
)


# ----------------------------------------------------------------------
# Tokenizer / parser
# ----------------------------------------------------------------------

def _tokenize(expr: str) -> List[Tuple[str, str]]:
    tokens: List[Tuple[str, str]] = []
    pos = 0
    while pos < len(expr):
        m = _TOKEN.match(expr, pos)
        if not m:
            raise ConfigError(f"unexpected character {expr[pos]!r} at {pos} in expression: {expr}")
        pos = m.end()
        kind = m.lastgroup
        if kind == "ws":
            continue
        tokens.append((kind, m.group(kind)))
    return tokens


class _Parser:
    def __init__(self, expr: str, ctx: Mapping[str, Any]):
        self.expr = expr
        self.ctx = ctx
        self.tokens = _tokenize(expr)
        self.pos = 0

    def _peek(self) -> Optional[Tuple[str, str]]:
        return self.tokens[self.pos] if self.pos < len(self.tokens) else None

    def _take(self, value: str | None = None) -> Tuple[str, str]:
        tok = self._peek()
        if tok is None:
            raise ConfigError(f"unexpected end of expression: {self.expr}")
        if value is not None and tok[1] != value:
            raise ConfigError(f"expected {value!r}, got {tok[1]!r} in expression: {self.expr}")
        self.pos += 1
        return tok

    def parse(self) -> Any:
        if not self.tokens:
            raise ConfigError("empty expression")
        value = self._or()
        if self._peek() is not None:
            raise ConfigError(f"unexpected {self._peek()[1]!r} in expression: {self.expr}")
        return value

    def _or(self) -> Any:
        left = self._and()
        while self._peek() == ("op", "||"):
            self._take()
            right = self._and()
            left = left if truthy(left) else right
        return left

    def _and(self) -> Any:
        left = self._not()
        while self._peek() == ("op", "&&"):
            self._take()
            right = self._not()
            left = right if truthy(left) else left
        return left

    def _not(self) -> Any:
        if self._peek() == ("op", "!"):
            self._take()
            return not truthy(self._not())
        return self._compare()

    def _compare(self) -> Any:
        left = self._primary()
        tok = self._peek()
        if tok and tok[0] == "op" and tok[1] in _COMPARATORS:
            self._take()
            right = self._primary()
            return _COMPARATORS[tok[1]](left, right)
        return left

    def _primary(self) -> Any:
        kind, value = self._take()
        if kind == "str":
            return value[1:-1].replace("''", "'")
        if kind == "num":
            return float(value) if "." in value else int(value)
        if kind == "op" and value == "(":
            inner = self._or()
            self._take(")")
            return inner
        if kind == "ident":
            if value == "true":
                return True
            if value == "false":
                return False
            if value == "null":
                return None
            if self._peek() == ("op", "("):
                return self._call(value)
            return lookup(self.ctx, value)
        raise ConfigError(f"unexpected {value!r} in expression: {self.expr}")

    def _call(self, name: str) -> Any:
        self._take("(")
        args: List[Any] = []
        if self._peek() != ("op", ")"):
            args.append(self._or())
            while self._peek() == ("op", ","):
                self._take()
                args.append(self._or())
        self._take(")")

        fn = _FUNCTIONS.get(name.lower())
        if fn is None:
            raise ConfigError(f"unknown function {name}() in expression: {self.expr}")
        try:
            return fn(self.ctx, *args)
        except TypeError:
            raise ConfigError(f"wrong number of arguments for {name}() in expression: {self.expr}")


# ----------------------------------------------------------------------
# Semantics
# ----------------------------------------------------------------------

def truthy(value: Any) -> bool:
    if isinstance(value, str):
        return value != ""
    return bool(value)


def stringify(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def _coerce_pair(a: Any, b: Any) -> Tuple[Any, Any]:
    # numbers compare numerically, everything else as case-insensitive text
    if isinstance(a, (int, float)) and not isinstance(a, bool) and isinstance(b, str):
        try:
            return a, float(b)
        except ValueError:
            pass
    if isinstance(b, (int, float)) and not isinstance(b, bool) and isinstance(a, str):
        try:
            return float(a), b
        except ValueError:
            pass
    if isinstance(a, str) and isinstance(b, str):
        return a.lower(), b.lower()
    return a, b


def _eq(a: Any, b: Any) -> bool:
    a, b = _coerce_pair(a, b)
    return a == b


def _ordered(op: Callable[[Any, Any], bool]) -> Callable[[Any, Any], bool]:
    def cmp(a: Any, b: Any) -> bool:
        a, b = _coerce_pair(a, b)
        try:
            return op(a, b)
        except TypeError:
            return False
    return cmp


_COMPARATORS = {
    "==": _eq,
    "!=": lambda a, b: not _eq(a, b),
    "<": _ordered(lambda a, b: a < b),
    "<=": _ordered(lambda a, b: a <= b),
    ">": _ordered(lambda a, b: a > b),
    ">=": _ordered(lambda a, b: a >= b),
}


def _job_status(ctx: Mapping[str, Any]) -> str:
    job = ctx.get("job") or {}
    return str(job.get("status", "success"))


def _contains(_ctx: Mapping[str, Any], haystack: Any, needle: Any) -> bool:
    if isinstance(haystack, (list, tuple)):
        return any(_eq(item, needle) for item in haystack)
    return stringify(needle).lower() in stringify(haystack).lower()


_FUNCTIONS = {
    "success": lambda ctx: _job_status(ctx) == "success",
    "failure": lambda ctx: _job_status(ctx) == "failure",
    "cancelled": lambda ctx: _job_status(ctx) == "cancelled",
    "always": lambda ctx: True,
    "contains": _contains,
    "startswith": lambda ctx, a, b: stringify(a).lower().startswith(stringify(b).lower()),
    "endswith": lambda ctx, a, b: stringify(a).lower().endswith(stringify(b).lower()),
}


def lookup(ctx: Mapping[str, Any], path: str) -> Any:
    value: Any = ctx
    for part in path.split("."):
        if isinstance(value, Mapping) and part in value:
            value = value[part]
        else:
            return None
    return value


# ----------------------------------------------------------------------
# Public API
# ----------------------------------------------------------------------

def evaluate(expr: str, ctx: Mapping[str, Any]) -> Any:
    """Evaluate a bare expression (no `${{ }}` wrapper)."""
    return _Parser(expr, ctx).parse()


def references(expr: str) -> List[str]:
    """Dotted references an expression reads, function names excluded."""
    tokens = _tokenize(expr)
    refs: List[str] = []
    for i, (kind, value) in enumerate(tokens):
        if kind != "ident" or value in ("true", "false", "null"):
            continue
        if i + 1 < len(tokens) and tokens[i + 1] == ("op", "("):
            continue
        refs.append(value)
    return refs


def render(
    template: Any,
    ctx: Mapping[str, Any],
    *,
    namespaces: Iterable[str] | None = None,
    shorthand: bool = False,
) -> Any:
    """
    Substitute placeholders in a string (non-strings pass through unchanged).

    Args:
        template: value possibly containing `${{ expr }}` placeholders
        ctx: context mapping expressions are evaluated against
        namespaces: if given, only placeholders whose references all start with
            one of these roots, and that call no status function, are substituted
        shorthand: also accept `${expr}` placeholders
    """
    if not isinstance(template, str):
        return template

    allowed = set(namespaces) if namespaces is not None else None

    def sub(m: re.Match) -> str:
        expr = m.group(1)
        if allowed is not None:
            roots = {ref.split(".", 1)[0] for ref in references(expr)}
            if not roots or not roots <= allowed or uses_status_function(expr):
                return m.group(0)
        return stringify(evaluate(expr, ctx))

    out = PLACEHOLDER.sub(sub, template)
    if shorthand:
        out = SHORTHAND.sub(sub, out)
    return out


def render_mapping(
    values: Mapping[str, Any],
    ctx: Mapping[str, Any],
    *,
    namespaces: Iterable[str] | None = None,
) -> dict:
    ns = list(namespaces) if namespaces is not None else None
    return {k: render(v, ctx, namespaces=ns) for k, v in values.items()}


def _unwrap(condition: str) -> str:
    m = WRAPPED.match(condition)
    return m.group(1).strip() if m else condition.strip()


def evaluate_condition(condition: str, ctx: Mapping[str, Any]) -> bool:
    """`if:` semantics: a `${{ }}` wrapper is optional and the result is coerced to bool."""
    return truthy(evaluate(_unwrap(condition), ctx))


def uses_status_function(condition: str) -> bool:
    """True if the condition calls success()/failure()/always()/cancelled()."""
    tokens = _tokenize(_unwrap(condition))
    for i, (kind, value) in enumerate(tokens):
        if kind == "ident" and value.lower() in STATUS_FUNCTIONS:
            if i + 1 < len(tokens) and tokens[i + 1] == ("op", "("):
                return True
    return False
