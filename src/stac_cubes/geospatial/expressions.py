"""Closed expression language for property filters, pixel expressions and time reducers.

Expressions are parsed once into a small AST so that referenced names can be validated
before any data is read. Supported syntax::

    arithmetic   + - * / % ** (or ^), unary minus
    comparison   == != < <= > >= and ``in [..]``
    boolean      and or not (also && || !)
    literals     numbers, 'strings', true, false, [lists]
    calls        abs sqrt exp log log10 sin cos tan min max, plus reducer names
    names        band or property names, e.g. B04, eo:cloud_cover, s2:mgrs_tile

Evaluation is vectorised with numpy; division by zero and other undefined results
yield ``inf``/``nan`` which callers turn into no-data.
"""

import operator
import re
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any

import numpy as np

from stac_cubes.errors import ConfigurationError

_TOKEN_RE = re.compile(
    r"""
    (?P<ws>\s+)
    |(?P<number>(?:\d+\.\d*|\.\d+|\d+)(?:[eE][+-]?\d+)?)
    |(?P<string>'[^']*'|"[^"]*")
    |(?P<op>\*\*|==|!=|<=|>=|&&|\|\||[-+*/%^<>!(),\[\]])
    |(?P<name>[A-Za-z_][A-Za-z0-9_:]*)
    """,
    re.VERBOSE,
)

_KEYWORDS = {"and": "&&", "or": "||", "not": "!", "in": "in", "true": "true", "false": "false"}

FUNCTIONS: dict[str, Callable[..., Any]] = {
    "abs": np.abs,
    "sqrt": np.sqrt,
    "exp": np.exp,
    "log": np.log,
    "log10": np.log10,
    "sin": np.sin,
    "cos": np.cos,
    "tan": np.tan,
    "min": np.minimum,
    "max": np.maximum,
}

_ARITHMETIC: dict[str, Callable[[Any, Any], Any]] = {
    "+": np.add,
    "-": np.subtract,
    "*": np.multiply,
    "/": np.true_divide,
    "%": np.fmod,
    "**": np.power,
}

_COMPARISONS: dict[str, Callable[[Any, Any], Any]] = {
    "==": operator.eq,
    "!=": operator.ne,
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
}


@dataclass(frozen=True)
class Literal:
    value: Any


@dataclass(frozen=True)
class Name:
    name: str


@dataclass(frozen=True)
class ListLiteral:
    items: tuple[Any, ...]


@dataclass(frozen=True)
class UnaryOp:
    op: str
    operand: Any


@dataclass(frozen=True)
class BinaryOp:
    op: str
    left: Any
    right: Any


@dataclass(frozen=True)
class Compare:
    op: str
    left: Any
    right: Any


@dataclass(frozen=True)
class BoolOp:
    op: str
    left: Any
    right: Any


@dataclass(frozen=True)
class Call:
    func: str
    args: tuple[Any, ...]


Node = Literal | Name | ListLiteral | UnaryOp | BinaryOp | Compare | BoolOp | Call


def _tokenize(text: str) -> list[tuple[str, Any]]:
    tokens: list[tuple[str, Any]] = []
    pos = 0
    while pos < len(text):
        match = _TOKEN_RE.match(text, pos)
        if match is None:
            raise ConfigurationError(f"Unexpected character {text[pos]!r} at position {pos} in {text!r}")
        pos = match.end()
        kind = match.lastgroup
        value = match.group()
        if kind == "ws":
            continue
        if kind == "number":
            tokens.append(("number", float(value)))
        elif kind == "string":
            tokens.append(("string", value[1:-1]))
        elif kind == "name" and value.lower() in _KEYWORDS:
            tokens.append(("op", _KEYWORDS[value.lower()]))
        elif kind == "op" and value == "^":
            tokens.append(("op", "**"))
        else:
            tokens.append((kind, value))
    tokens.append(("end", None))
    return tokens


class _Parser:
    """Recursive descent parser producing the expression AST."""

    def __init__(self, text: str) -> None:
        self.text = text
        self.tokens = _tokenize(text)
        self.pos = 0

    def _peek(self) -> tuple[str, Any]:
        return self.tokens[self.pos]

    def _advance(self) -> tuple[str, Any]:
        token = self.tokens[self.pos]
        self.pos += 1
        return token

    def _accept(self, *ops: str) -> str | None:
        kind, value = self._peek()
        if kind == "op" and value in ops:
            self.pos += 1
            return str(value)
        return None

    def _expect(self, op: str) -> None:
        if self._accept(op) is None:
            raise ConfigurationError(f"Expected {op!r} but found {self._peek()[1]!r} in {self.text!r}")

    def parse(self) -> Node:
        node = self._or()
        if self._peek()[0] != "end":
            raise ConfigurationError(f"Unexpected token {self._peek()[1]!r} in {self.text!r}")
        return node

    def _or(self) -> Node:
        node = self._and()
        while self._accept("||"):
            node = BoolOp("or", node, self._and())
        return node

    def _and(self) -> Node:
        node = self._not()
        while self._accept("&&"):
            node = BoolOp("and", node, self._not())
        return node

    def _not(self) -> Node:
        if self._accept("!"):
            return UnaryOp("not", self._not())
        return self._comparison()

    def _comparison(self) -> Node:
        node = self._additive()
        op = self._accept(*_COMPARISONS, "in")
        if op is not None:
            node = Compare(op, node, self._additive())
        return node

    def _additive(self) -> Node:
        node = self._term()
        while op := self._accept("+", "-"):
            node = BinaryOp(op, node, self._term())
        return node

    def _term(self) -> Node:
        node = self._unary()
        while op := self._accept("*", "/", "%"):
            node = BinaryOp(op, node, self._unary())
        return node

    def _unary(self) -> Node:
        if self._accept("-"):
            return UnaryOp("-", self._unary())
        if self._accept("+"):
            return self._unary()
        return self._power()

    def _power(self) -> Node:
        node = self._atom()
        if self._accept("**"):
            node = BinaryOp("**", node, self._unary())
        return node

    def _atom(self) -> Node:
        kind, value = self._advance()
        if kind == "number":
            return Literal(value)
        if kind == "string":
            return Literal(value)
        if kind == "op" and value in ("true", "false"):
            return Literal(value == "true")
        if kind == "op" and value == "(":
            node = self._or()
            self._expect(")")
            return node
        if kind == "op" and value == "[":
            items: list[Node] = []
            if not self._accept("]"):
                items.append(self._or())
                while self._accept(","):
                    items.append(self._or())
                self._expect("]")
            return ListLiteral(tuple(items))
        if kind == "name":
            if self._accept("("):
                args: list[Node] = []
                if not self._accept(")"):
                    args.append(self._or())
                    while self._accept(","):
                        args.append(self._or())
                    self._expect(")")
                return Call(str(value), tuple(args))
            return Name(str(value))
        raise ConfigurationError(f"Unexpected token {value!r} in {self.text!r}")


def referenced_names(node: Node) -> set[str]:
    """Collect the names referenced by an expression, excluding called function names."""
    if isinstance(node, Name):
        return {node.name}
    if isinstance(node, Literal):
        return set()
    if isinstance(node, ListLiteral | Call):
        children = node.items if isinstance(node, ListLiteral) else node.args
        return set().union(*(referenced_names(child) for child in children))
    if isinstance(node, UnaryOp):
        return referenced_names(node.operand)
    return referenced_names(node.left) | referenced_names(node.right)


def _evaluate(node: Node, env: Mapping[str, Any]) -> Any:
    if isinstance(node, Literal):
        return node.value
    if isinstance(node, Name):
        return env[node.name]
    if isinstance(node, ListLiteral):
        return [_evaluate(item, env) for item in node.items]
    if isinstance(node, UnaryOp):
        operand = _evaluate(node.operand, env)
        return np.logical_not(operand) if node.op == "not" else np.negative(operand)
    if isinstance(node, BinaryOp):
        return _ARITHMETIC[node.op](_evaluate(node.left, env), _evaluate(node.right, env))
    if isinstance(node, BoolOp):
        combine = np.logical_and if node.op == "and" else np.logical_or
        return combine(_evaluate(node.left, env), _evaluate(node.right, env))
    if isinstance(node, Compare):
        left = _evaluate(node.left, env)
        right = _evaluate(node.right, env)
        if node.op == "in":
            if isinstance(left, np.ndarray):
                return np.isin(left, right)
            return left in right
        return _COMPARISONS[node.op](left, right)
    return FUNCTIONS[node.func](*(_evaluate(arg, env) for arg in node.args))


def _check_calls(node: Node, allowed: Mapping[str, Any], text: str) -> None:
    if isinstance(node, Call):
        if node.func not in allowed:
            raise ConfigurationError(f"Unknown function {node.func!r} in {text!r}")
        for arg in node.args:
            _check_calls(arg, allowed, text)
    elif isinstance(node, ListLiteral):
        for item in node.items:
            _check_calls(item, allowed, text)
    elif isinstance(node, UnaryOp):
        _check_calls(node.operand, allowed, text)
    elif isinstance(node, BinaryOp | Compare | BoolOp):
        _check_calls(node.left, allowed, text)
        _check_calls(node.right, allowed, text)


class Expression:
    """A parsed expression.

    :param source: Expression text
    :param root: Parsed AST
    """

    def __init__(self, source: str, root: Node) -> None:
        self.source = source
        self.root = root
        self.names = frozenset(referenced_names(root))

    def __repr__(self) -> str:
        return f"Expression({self.source!r})"

    def validate_names(self, available: Any, kind: str = "band") -> None:
        """Raise ConfigurationError if the expression references unknown names."""
        missing = sorted(self.names - set(available))
        if missing:
            raise ConfigurationError(
                f"Expression {self.source!r} references unknown {kind}(s) {missing}; available: {sorted(available)}"
            )

    def evaluate(self, env: Mapping[str, Any]) -> Any:
        """Evaluate with numpy semantics; undefined arithmetic yields inf or nan instead of raising."""
        with np.errstate(divide="ignore", invalid="ignore", over="ignore"):
            return _evaluate(self.root, env)


def parse_tree(text: str) -> Node:
    """Parse expression text into an AST without checking function names."""
    if not isinstance(text, str) or not text.strip():
        raise ConfigurationError(f"Expression must be a non-empty string, got {text!r}")
    return _Parser(text).parse()


def compile_expression(text: str) -> Expression:
    """Parse and check an expression that may only call the built-in functions.

    :param text: Expression text
    :returns: Compiled expression
    :raises ConfigurationError: On syntax errors or unknown functions
    """
    root = parse_tree(text)
    _check_calls(root, FUNCTIONS, text)
    return Expression(text, root)


_QUERY_OPERATORS = {"eq": "==", "neq": "!=", "lt": "<", "lte": "<=", "gt": ">", "gte": ">=", "in": "in"}


def compile_property_query(query: Mapping[str, Mapping[str, Any]]) -> Expression:
    """Compile a STAC query extension mapping, e.g. ``{"eo:cloud_cover": {"lt": 10}}``.

    All conditions are combined with ``and``.

    :param query: Property name to {operator: value} mapping
    :returns: Compiled expression
    """
    root: Node | None = None
    parts = []
    for name, conditions in query.items():
        if not isinstance(conditions, Mapping) or not conditions:
            raise ConfigurationError(f"Conditions for property {name!r} must be a non-empty mapping")
        for op, value in conditions.items():
            if op not in _QUERY_OPERATORS:
                raise ConfigurationError(f"Unsupported query operator {op!r} for property {name!r}")
            right: Node = (
                ListLiteral(tuple(Literal(v) for v in value)) if isinstance(value, list | tuple | set) else Literal(value)
            )
            node = Compare(_QUERY_OPERATORS[op], Name(name), right)
            root = node if root is None else BoolOp("and", root, node)
            parts.append(f"{name} {_QUERY_OPERATORS[op]} {value!r}")
    if root is None:
        raise ConfigurationError("Property query must contain at least one condition")
    return Expression(" and ".join(parts), root)
