"""
Condition Service - Decide whether an enrichment runs for a row

Conditions are short boolean expressions written against column ids, e.g.
`employees > 50 && country === "DE"` or `"/website" != ""`. They are
evaluated by a small interpreter; nothing is passed to eval().
"""

import logging
import math
import re
from typing import Any, Callable, Dict, List, Optional, Tuple

from atlas.models.grid import ColumnDefinition, ColumnType, Row
from atlas.services.reference_service import resolve_references, stringify_value

logger = logging.getLogger(__name__)

Env = Dict[str, Any]
Node = Callable[[Env], Any]


class ConditionSyntaxError(ValueError):
    """Expression could not be parsed"""


class ConditionEvaluationError(ValueError):
    """Expression parsed but could not be evaluated"""


_UNDEFINED = object()

_TOKEN_RE = re.compile(
    r"""
    (?P<ws>\s+)
  | (?P<number>\d+(?:\.\d+)?|\.\d+)
  | (?P<string>"(?:[^"\\]|\\.)*"|'(?:[^'\\]|\\.)*')
  | (?P<op>===|!==|==|!=|<=|>=|&&|\|\||[<>!()\.,-])
  | (?P<ident>[A-Za-z_$][\w$]*)
    """,
    re.VERBOSE,
)

_KEYWORDS = {"true": True, "false": False, "null": None, "undefined": None}

MAX_NESTING = 64


def tokenize(text: str) -> List[Tuple[str, str]]:
    tokens = []
    pos = 0
    while pos < len(text):
        match = _TOKEN_RE.match(text, pos)
        if not match:
            raise ConditionSyntaxError(f"Unexpected character {text[pos]!r} at {pos}")
        pos = match.end()
        kind = match.lastgroup
        if kind == "ws":
            continue
        tokens.append((kind, match.group(kind)))
    tokens.append(("eof", ""))
    return tokens


def _unquote(literal: str) -> str:
    body = literal[1:-1]
    return re.sub(r"\\(.)", lambda m: {"n": "\n", "t": "\t"}.get(m.group(1), m.group(1)), body)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _truthy(value: Any) -> bool:
    if value is None or value is _UNDEFINED:
        return False
    if isinstance(value, float) and math.isnan(value):
        return False
    return bool(value)


def _to_number(value: Any) -> float:
    if value is None:
        return 0.0
    if isinstance(value, bool):
        return 1.0 if value else 0.0
    if _is_number(value):
        return float(value)
    if isinstance(value, str):
        stripped = value.strip()
        if stripped == "":
            return 0.0
        try:
            return float(stripped)
        except ValueError:
            return math.nan
    return math.nan


def _strict_equals(left: Any, right: Any) -> bool:
    if _is_number(left) and _is_number(right):
        return left == right
    if type(left) is not type(right):
        return False
    return left == right


def _loose_equals(left: Any, right: Any) -> bool:
    if left is None or right is None:
        return left is None and right is None
    if isinstance(left, str) and isinstance(right, str):
        return left == right
    if isinstance(left, (str, int, float, bool)) and isinstance(right, (str, int, float, bool)):
        return _to_number(left) == _to_number(right)
    return left == right


def _compare(op: str, left: Any, right: Any) -> bool:
    if isinstance(left, str) and isinstance(right, str):
        a, b = left, right
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


def _string_method(target: Any, name: str, args: List[Any]) -> Any:
    if not isinstance(target, str):
        raise ConditionEvaluationError(f"Cannot call {name}() on {type(target).__name__}")
    if name == "includes":
        return stringify_value(args[0]) in target
    if name == "startsWith":
        return target.startswith(stringify_value(args[0]))
    if name == "endsWith":
        return target.endswith(stringify_value(args[0]))
    if name == "toLowerCase":
        return target.lower()
    if name == "toUpperCase":
        return target.upper()
    if name == "trim":
        return target.strip()
    raise ConditionEvaluationError(f"Unsupported method {name}()")


class _Parser:
    """Recursive-descent parser producing evaluator closures"""

    def __init__(self, text: str):
        self.tokens = tokenize(text)
        self.pos = 0
        self.depth = 0

    def peek(self) -> Tuple[str, str]:
        return self.tokens[self.pos]

    def advance(self) -> Tuple[str, str]:
        token = self.tokens[self.pos]
        self.pos += 1
        return token

    def accept(self, *values: str) -> Optional[str]:
        kind, value = self.peek()
        if kind in ("op", "ident") and value in values:
            self.pos += 1
            return value
        return None

    def expect(self, value: str):
        if not self.accept(value):
            raise ConditionSyntaxError(f"Expected {value!r}, got {self.peek()[1]!r}")

    def nested(self, parse: Callable[[], Node]) -> Node:
        self.depth += 1
        if self.depth > MAX_NESTING:
            raise ConditionSyntaxError(f"Expression nested deeper than {MAX_NESTING} levels")
        try:
            return parse()
        finally:
            self.depth -= 1

    def parse(self) -> Node:
        node = self.parse_or()
        if self.peek()[0] != "eof":
            raise ConditionSyntaxError(f"Unexpected token {self.peek()[1]!r}")
        return node

    def parse_or(self) -> Node:
        node = self.parse_and()
        while self.accept("||", "or"):
            left, right = node, self.parse_and()
            node = lambda env, l=left, r=right: (lambda v: v if _truthy(v) else r(env))(l(env))
        return node

    def parse_and(self) -> Node:
        node = self.parse_not()
        while self.accept("&&", "and"):
            left, right = node, self.parse_not()
            node = lambda env, l=left, r=right: (lambda v: r(env) if _truthy(v) else v)(l(env))
        return node

    def parse_not(self) -> Node:
        if self.accept("not"):
            operand = self.nested(self.parse_not)
            return lambda env: not _truthy(operand(env))
        return self.parse_comparison()

    def parse_comparison(self) -> Node:
        node = self.parse_unary()
        while True:
            op = self.accept("===", "!==", "==", "!=", "<", "<=", ">", ">=")
            if not op:
                return node
            left, right = node, self.parse_unary()
            if op == "===":
                node = lambda env, l=left, r=right: _strict_equals(l(env), r(env))
            elif op == "!==":
                node = lambda env, l=left, r=right: not _strict_equals(l(env), r(env))
            elif op == "==":
                node = lambda env, l=left, r=right: _loose_equals(l(env), r(env))
            elif op == "!=":
                node = lambda env, l=left, r=right: not _loose_equals(l(env), r(env))
            else:
                node = lambda env, o=op, l=left, r=right: _compare(o, l(env), r(env))

    def parse_unary(self) -> Node:
        if self.accept("!"):
            operand = self.nested(self.parse_unary)
            return lambda env: not _truthy(operand(env))
        if self.accept("-"):
            operand = self.nested(self.parse_unary)
            return lambda env: -_to_number(operand(env))
        return self.parse_postfix()

    def parse_postfix(self) -> Node:
        node = self.parse_primary()
        while self.accept("."):
            kind, name = self.advance()
            if kind != "ident":
                raise ConditionSyntaxError(f"Expected member name, got {name!r}")
            if self.accept("("):
                args: List[Node] = []
                if not self.accept(")"):
                    args.append(self.nested(self.parse_or))
                    while self.accept(","):
                        args.append(self.nested(self.parse_or))
                    self.expect(")")
                node = lambda env, t=node, n=name, a=args: _string_method(t(env), n, [arg(env) for arg in a])
            elif name == "length":
                node = lambda env, t=node: _length(t(env))
            else:
                raise ConditionSyntaxError(f"Unsupported member {name!r}")
        return node

    def parse_primary(self) -> Node:
        kind, value = self.advance()
        if kind == "number":
            number = float(value)
            literal = int(number) if number.is_integer() and "." not in value else number
            return lambda env: literal
        if kind == "string":
            text = _unquote(value)
            return lambda env: text
        if kind == "op" and value == "(":
            node = self.nested(self.parse_or)
            self.expect(")")
            return node
        if kind == "ident":
            if value in _KEYWORDS:
                constant = _KEYWORDS[value]
                return lambda env: constant
            return lambda env: _lookup(env, value)
        raise ConditionSyntaxError(f"Unexpected token {value!r}")


def _length(value: Any) -> int:
    if isinstance(value, (str, list)):
        return len(value)
    raise ConditionEvaluationError(f"{type(value).__name__} has no length")


def _lookup(env: Env, name: str) -> Any:
    if name not in env:
        raise ConditionEvaluationError(f"{name} is not defined")
    return env[name]


def compile_expression(text: str) -> Node:
    """Parse an expression into a callable taking the variable bindings"""
    return _Parser(text).parse()


def build_bindings(row: Row, columns: List[ColumnDefinition]) -> Env:
    """Bind every column id to its typed row value"""
    env: Env = {}
    for column in columns:
        value = row.get(column.id)
        if value is None or value == "":
            env[column.id] = None
        elif _is_number(value):
            env[column.id] = value
        elif column.type == ColumnType.NUMBER and isinstance(value, str):
            number = _to_number(value)
            env[column.id] = value if math.isnan(number) else number
        else:
            env[column.id] = stringify_value(value)
    return env


def evaluate_condition(condition: Optional[str], row: Row, columns: List[ColumnDefinition]) -> bool:
    """
    Evaluate an enrichment condition for one row

    Args:
        condition: Expression text; references are resolved first
        row: Row under evaluation
        columns: Sheet columns, bound by id

    Returns:
        True when the enrichment should run. A blank condition runs, a
        result other than exactly True skips, and an expression that
        cannot be parsed or evaluated runs.
    """
    if not condition or not condition.strip():
        return True

    resolved = resolve_references(condition, row, columns)
    try:
        result = compile_expression(resolved)(build_bindings(row, columns))
    except (ConditionSyntaxError, ConditionEvaluationError, TypeError, ValueError, IndexError, RecursionError) as e:
        logger.warning(f"Condition {condition!r} could not be evaluated, running anyway: {e}")
        return True

    return result is True
