"""Computed fields: virtual values evaluated over fetched records.

Expressions use a small language:

    quantity * unitPrice
    CONCAT(firstName, ' ', lastName)
    status == 'paid' ? total : 0
    ROUND(SUM(subtotal, tax), 2)
    related.items[0].name

Evaluation never raises. A missing dependency, an unknown function or a
runtime error yields None for that field, so a computed field can never abort
an otherwise successful read.
"""

from __future__ import annotations

import logging
import math
import re
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, date, datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

from neodb.core.naming import to_camel_case, to_snake_case
from neodb.core.types import EntityDefinition

logger = logging.getLogger(__name__)

Function = Callable[..., Any]
Compiled = Callable[["_Scope"], Any]


class ExpressionError(ValueError):
    """An expression could not be parsed."""


# === Tokenizer ===

_TOKEN = re.compile(
    r"""\s*(?:
        (?P<number>\d+(?:\.\d+)?)
      | (?P<string>"(?:[^"\\]|\\.)*"|'(?:[^'\\]|\\.)*')
      | (?P<op>===|!==|==|!=|<=|>=|&&|\|\||[-+*/%<>!?:(),.\[\]])
      | (?P<name>[A-Za-z_][A-Za-z0-9_]*)
    )""",
    re.VERBOSE,
)

_KEYWORDS = {"true": True, "false": False, "null": None}


@dataclass(frozen=True)
class _Token:
    kind: str  # number | string | op | name | end
    text: str


def tokenize(expression: str) -> list[_Token]:
    """Split an expression into tokens.

    Raises:
        ExpressionError: On a character that starts no token
    """
    tokens: list[_Token] = []
    position = 0
    stripped = expression.rstrip()
    while position < len(stripped):
        match = _TOKEN.match(stripped, position)
        if match is None or match.end() == position:
            raise ExpressionError(f"Unexpected character at {position} in {expression!r}")
        kind = match.lastgroup or "op"
        tokens.append(_Token(kind, match.group(kind)))
        position = match.end()
    tokens.append(_Token("end", ""))
    return tokens


# === Value Coercion ===


def _number(value: Any) -> float | int:
    """Coerce to a number the way the expression language does (invalid -> 0)."""
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, (int, float)):
        return 0 if isinstance(value, float) and math.isnan(value) else value
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value) if "." in value else int(value)
        except ValueError:
            return 0
    return 0


def _text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def _datetime(value: Any) -> datetime:
    if isinstance(value, datetime):
        result = value
    elif isinstance(value, date):
        result = datetime(value.year, value.month, value.day)
    elif isinstance(value, str):
        result = datetime.fromisoformat(value.replace("Z", "+00:00"))
    else:
        raise ValueError(f"Not a date: {value!r}")
    return result if result.tzinfo else result.replace(tzinfo=UTC)


def _loose_equal(left: Any, right: Any) -> bool:
    numeric = (int, float, Decimal)
    if isinstance(left, numeric) and isinstance(right, (*numeric, str)):
        return _number(left) == _number(right)
    if isinstance(right, numeric) and isinstance(left, str):
        return _number(left) == _number(right)
    return bool(left == right)


def _strict_equal(left: Any, right: Any) -> bool:
    numeric = (int, float, Decimal)
    if isinstance(left, numeric) and isinstance(right, numeric):
        return not isinstance(left, bool) and not isinstance(right, bool) and left == right
    return type(left) is type(right) and left == right


def _add(left: Any, right: Any) -> Any:
    if isinstance(left, str) or isinstance(right, str):
        return _text(left) + _text(right)
    return _number(left) + _number(right)


def _divide(left: Any, right: Any) -> float:
    divisor = _number(right)
    return _number(left) / divisor if divisor else 0


def _modulo(left: Any, right: Any) -> float | int:
    divisor = _number(right)
    return math.fmod(_number(left), divisor) if divisor else 0


_BINARY: dict[str, Callable[[Any, Any], Any]] = {
    "+": _add,
    "-": lambda a, b: _number(a) - _number(b),
    "*": lambda a, b: _number(a) * _number(b),
    "/": _divide,
    "%": _modulo,
    "==": _loose_equal,
    "!=": lambda a, b: not _loose_equal(a, b),
    "===": _strict_equal,
    "!==": lambda a, b: not _strict_equal(a, b),
    ">": lambda a, b: _number(a) > _number(b),
    ">=": lambda a, b: _number(a) >= _number(b),
    "<": lambda a, b: _number(a) < _number(b),
    "<=": lambda a, b: _number(a) <= _number(b),
}


# === Scope and Path Lookup ===


@dataclass
class _Scope:
    record: Mapping[str, Any]
    entity: str | None = None
    related: Mapping[str, Any] = field(default_factory=dict)

    def root(self, name: str) -> Any:
        """Resolve the first path segment: record keys first, then context roots."""
        found, value = _lookup(self.record, name)
        if found:
            return value
        if name == "record":
            return self.record
        if name in ("related", "relatedData"):
            return self.related
        if name == "entity":
            return self.entity
        return None


def _lookup(container: Any, key: str) -> tuple[bool, Any]:
    """Find ``key`` in a mapping, trying camelCase and snake_case spellings."""
    if not isinstance(container, Mapping):
        return False, None
    for candidate in (key, to_camel_case(key), to_snake_case(key)):
        if candidate in container:
            return True, container[candidate]
    return False, None


# === Parser ===


class _Parser:
    """Recursive-descent parser producing a closure tree."""

    def __init__(self, expression: str, functions: Mapping[str, Function]) -> None:
        self._tokens = tokenize(expression)
        self._pos = 0
        self._functions = functions
        self._expression = expression

    @property
    def _current(self) -> _Token:
        return self._tokens[self._pos]

    def _accept(self, *ops: str) -> str | None:
        token = self._current
        if token.kind == "op" and token.text in ops:
            self._pos += 1
            return token.text
        return None

    def _expect(self, op: str) -> None:
        if self._accept(op) is None:
            raise ExpressionError(
                f"Expected '{op}' but found '{self._current.text}' in {self._expression!r}"
            )

    def parse(self) -> Compiled:
        node = self._ternary()
        if self._current.kind != "end":
            raise ExpressionError(
                f"Unexpected '{self._current.text}' in {self._expression!r}"
            )
        return node

    def _ternary(self) -> Compiled:
        condition = self._logical_or()
        if self._accept("?") is None:
            return condition
        when_true = self._ternary()
        self._expect(":")
        when_false = self._ternary()
        return lambda scope: when_true(scope) if condition(scope) else when_false(scope)

    def _logical_or(self) -> Compiled:
        node = self._logical_and()
        while self._accept("||"):
            left, right = node, self._logical_and()
            node = lambda scope, l=left, r=right: bool(l(scope)) or bool(r(scope))  # noqa: E731
        return node

    def _logical_and(self) -> Compiled:
        node = self._binary_level(0)
        while self._accept("&&"):
            left, right = node, self._binary_level(0)
            node = lambda scope, l=left, r=right: bool(l(scope)) and bool(r(scope))  # noqa: E731
        return node

    # Binary precedence, loosest first
    _LEVELS: tuple[tuple[str, ...], ...] = (
        ("===", "!==", "==", "!="),
        (">=", "<=", ">", "<"),
        ("+", "-"),
        ("*", "/", "%"),
    )

    def _binary_level(self, level: int) -> Compiled:
        if level == len(self._LEVELS):
            return self._unary()
        node = self._binary_level(level + 1)
        while op := self._accept(*self._LEVELS[level]):
            left, right, fn = node, self._binary_level(level + 1), _BINARY[op]
            node = lambda scope, l=left, r=right, f=fn: f(l(scope), r(scope))  # noqa: E731
        return node

    def _unary(self) -> Compiled:
        if self._accept("!"):
            operand = self._unary()
            return lambda scope: not operand(scope)
        if self._accept("-"):
            operand = self._unary()
            return lambda scope: -_number(operand(scope))
        return self._primary()

    def _primary(self) -> Compiled:
        token = self._current
        if token.kind == "number":
            self._pos += 1
            value: Any = float(token.text) if "." in token.text else int(token.text)
            return lambda scope: value
        if token.kind == "string":
            self._pos += 1
            literal = re.sub(r"\\(.)", r"\1", token.text[1:-1])
            return lambda scope: literal
        if self._accept("("):
            node = self._ternary()
            self._expect(")")
            return node
        if token.kind == "name":
            self._pos += 1
            if token.text in _KEYWORDS:
                keyword = _KEYWORDS[token.text]
                return lambda scope: keyword
            if self._accept("("):
                return self._call(token.text)
            return self._path(token.text)
        raise ExpressionError(f"Unexpected '{token.text or 'end'}' in {self._expression!r}")

    def _call(self, name: str) -> Compiled:
        args: list[Compiled] = []
        if self._accept(")") is None:
            args.append(self._ternary())
            while self._accept(","):
                args.append(self._ternary())
            self._expect(")")

        fn = self._functions.get(name.upper())
        if fn is None:
            raise ExpressionError(f"Unknown function '{name}'")
        return lambda scope: fn(*(arg(scope) for arg in args))

    def _path(self, head: str) -> Compiled:
        steps: list[str | int] = []
        while True:
            if self._accept("."):
                token = self._current
                if token.kind != "name":
                    raise ExpressionError(f"Expected a name after '.' in {self._expression!r}")
                self._pos += 1
                steps.append(token.text)
            elif self._accept("["):
                token = self._current
                if token.kind != "number" or "." in token.text:
                    raise ExpressionError(f"Expected an index inside [] in {self._expression!r}")
                self._pos += 1
                self._expect("]")
                steps.append(int(token.text))
            else:
                break

        def resolve(scope: _Scope) -> Any:
            current = scope.root(head)
            for step in steps:
                if current is None:
                    return None
                if isinstance(step, int):
                    if not isinstance(current, (list, tuple)) or step >= len(current):
                        return None
                    current = current[step]
                else:
                    _, current = _lookup(current, step)
            return current

        return resolve


# === Built-in Functions ===


def _round(value: Any, decimals: Any = 0) -> float | int:
    places = int(_number(decimals))
    quantum = Decimal(1).scaleb(-places)
    try:
        rounded = Decimal(str(_number(value))).quantize(quantum, rounding=ROUND_HALF_UP)
    except InvalidOperation:
        return 0
    return int(rounded) if places <= 0 else float(rounded)


def _format_date(value: Any, fmt: Any = "YYYY-MM-DD") -> str:
    moment = _datetime(value)
    return (
        _text(fmt)
        .replace("YYYY", f"{moment.year:04d}")
        .replace("MM", f"{moment.month:02d}")
        .replace("DD", f"{moment.day:02d}")
    )


_CURRENCY_SYMBOLS = {"USD": "$", "EUR": "€", "GBP": "£", "JPY": "¥", "BRL": "R$"}


def _format_currency(amount: Any, currency: Any = "USD") -> str:
    value = _number(amount)
    code = _text(currency).upper()
    symbol = _CURRENCY_SYMBOLS.get(code)
    if symbol is None:
        return f"{code} {value:,.2f}"
    sign = "-" if value < 0 else ""
    return f"{sign}{symbol}{abs(value):,.2f}"


def _items(value: Any) -> list[Any]:
    return list(value) if isinstance(value, (list, tuple)) else []


def builtin_functions() -> dict[str, Function]:
    """The functions every evaluator starts with."""
    return {
        # String
        "CONCAT": lambda *args: "".join(_text(a) for a in args),
        "UPPER": lambda s: _text(s).upper(),
        "LOWER": lambda s: _text(s).lower(),
        "TRIM": lambda s: _text(s).strip(),
        "LENGTH": lambda s: len(s) if isinstance(s, (list, tuple)) else len(_text(s)),
        "SUBSTRING": lambda s, start=0, length=None: (
            _text(s)[int(_number(start)) :]
            if length is None
            else _text(s)[int(_number(start)) : int(_number(start)) + int(_number(length))]
        ),
        "REPLACE": lambda s, old, new: _text(s).replace(_text(old), _text(new)),
        "SPLIT": lambda s, sep=",": _text(s).split(_text(sep)),
        # Math
        "ABS": lambda n: abs(_number(n)),
        "ROUND": _round,
        "FLOOR": lambda n: math.floor(_number(n)),
        "CEIL": lambda n: math.ceil(_number(n)),
        "MIN": lambda *args: min((_number(a) for a in args), default=None),
        "MAX": lambda *args: max((_number(a) for a in args), default=None),
        "SUM": lambda *args: sum(_number(a) for a in args),
        "AVG": lambda *args: sum(_number(a) for a in args) / len(args) if args else 0,
        "POW": lambda base, exp=1: _number(base) ** _number(exp),
        "SQRT": lambda n: math.sqrt(_number(n)),
        # Date
        "NOW": lambda: datetime.now(UTC).isoformat(),
        "TODAY": lambda: datetime.now(UTC).date().isoformat(),
        "YEAR": lambda d: _datetime(d).year,
        "MONTH": lambda d: _datetime(d).month,
        "DAY": lambda d: _datetime(d).day,
        "DAYS_BETWEEN": lambda d1, d2: math.floor(
            (_datetime(d2) - _datetime(d1)).total_seconds() / 86400
        ),
        "DATE_ADD": lambda d, days: (_datetime(d) + timedelta(days=_number(days))).isoformat(),
        "FORMAT_DATE": _format_date,
        # Logic
        "IF": lambda condition, when_true=None, when_false=None: (
            when_true if condition else when_false
        ),
        "COALESCE": lambda *args: next((a for a in args if a is not None), None),
        "ISNULL": lambda v: v is None,
        "ISEMPTY": lambda v: v is None or v == "" or (isinstance(v, (list, tuple)) and not v),
        # Arrays
        "COUNT": lambda arr: len(arr) if isinstance(arr, (list, tuple)) else 0,
        "FIRST": lambda arr: _items(arr)[0] if _items(arr) else None,
        "LAST": lambda arr: _items(arr)[-1] if _items(arr) else None,
        "CONTAINS": lambda arr, v: (
            v in arr if isinstance(arr, (list, tuple)) else _text(v) in _text(arr)
        ),
        "JOIN": lambda arr, sep=", ": (
            _text(sep).join(_text(a) for a in arr) if isinstance(arr, (list, tuple)) else _text(arr)
        ),
        "FILTER": lambda arr, key, v: [
            item for item in _items(arr) if isinstance(item, Mapping) and item.get(_text(key)) == v
        ],
        "MAP": lambda arr, key: [
            item.get(_text(key)) if isinstance(item, Mapping) else item for item in _items(arr)
        ],
        # Formatting
        "FORMAT_CURRENCY": _format_currency,
        "PERCENT": lambda value, total=1: _number(value) / (_number(total) or 1) * 100,
        "FORMAT_PERCENT": lambda value, decimals=1: (
            f"{_number(value):.{int(_number(decimals))}f}%"
        ),
    }


class ExpressionEvaluator:
    """Compiles and evaluates computed-field expressions.

    Compiled expressions are cached per evaluator.
    """

    def __init__(self) -> None:
        self._functions: dict[str, Function] = builtin_functions()
        self._cache: dict[str, Compiled] = {}

    def register_function(self, name: str, fn: Function) -> None:
        """Register a custom function (names are case-insensitive)."""
        self._functions[name.upper()] = fn
        self._cache.clear()

    def compile(self, expression: str) -> Compiled:
        """Parse an expression into a callable.

        Raises:
            ExpressionError: On a syntax error or unknown function
        """
        compiled = self._cache.get(expression)
        if compiled is None:
            compiled = _Parser(expression, self._functions).parse()
            self._cache[expression] = compiled
        return compiled

    def evaluate(
        self,
        expression: str,
        record: Mapping[str, Any],
        entity: str | None = None,
        related: Mapping[str, Any] | None = None,
    ) -> Any:
        """Evaluate an expression against a record. Returns None on any failure.

        Args:
            expression: Expression source
            record: Record whose fields are in scope
            entity: Entity id, reachable as ``entity``
            related: Related records, reachable as ``related.<name>``

        Returns:
            The computed value, or None if parsing or evaluation failed
        """
        try:
            return self.compile(expression)(_Scope(record, entity, related or {}))
        except Exception as e:
            logger.warning(f"Computed expression {expression!r} failed: {e}")
            return None


@dataclass(frozen=True)
class ComputedFieldSpec:
    """One computed field registered for an entity."""

    name: str  # record key the value is written to
    expression: str
    dependencies: tuple[str, ...] = ()


class ComputedFieldsEngine:
    """Evaluates an entity's computed fields over fetched records."""

    def __init__(self, evaluator: ExpressionEvaluator | None = None) -> None:
        self._evaluator = evaluator or ExpressionEvaluator()
        self._fields: dict[str, dict[str, ComputedFieldSpec]] = {}

    @property
    def evaluator(self) -> ExpressionEvaluator:
        """The underlying expression evaluator."""
        return self._evaluator

    def register_fields(self, entity_id: str, fields: list[ComputedFieldSpec]) -> None:
        """Register computed fields for an entity, replacing earlier ones."""
        self._fields[entity_id] = {spec.name: spec for spec in fields}

    def register_entity(self, entity: EntityDefinition) -> None:
        """Register every computed field an entity declares.

        Record keys are camelCase, so field names and dependencies are too.
        """
        specs = [
            ComputedFieldSpec(
                name=to_camel_case(f.column_name),
                expression=f.computed.expression,
                dependencies=tuple(
                    to_camel_case(to_snake_case(dep)) for dep in f.computed.dependencies
                ),
            )
            for f in entity.computed_fields
            if f.computed is not None
        ]
        if specs:
            self.register_fields(entity.id, specs)
        else:
            self._fields.pop(entity.id, None)

    def get_fields(self, entity_id: str) -> list[ComputedFieldSpec]:
        """Computed fields registered for an entity."""
        return list(self._fields.get(entity_id, {}).values())

    def register_function(self, name: str, fn: Function) -> None:
        """Register a custom expression function."""
        self._evaluator.register_function(name, fn)

    def compute_for_record(
        self,
        entity_id: str,
        record: dict[str, Any],
        related: Mapping[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Return a copy of ``record`` with computed fields filled in.

        Fields are evaluated in dependency order, so a computed field may depend
        on another. A field whose dependency is absent from the record, or that
        sits on a dependency cycle, is set to None.

        Args:
            entity_id: Entity the record belongs to
            record: Materialized record (camelCase keys)
            related: Related records in scope as ``related.<name>``

        Returns:
            New dict with computed values added
        """
        specs = self._fields.get(entity_id)
        if not specs:
            return record

        result = dict(record)
        pending = list(specs.values())
        done: set[str] = set()

        while pending:
            ready = [
                spec
                for spec in pending
                if all(dep in done or dep not in specs for dep in spec.dependencies)
            ]
            if not ready:
                names = ", ".join(spec.name for spec in pending)
                logger.warning(f"Computed fields on a dependency cycle for '{entity_id}': {names}")
                for spec in pending:
                    result[spec.name] = None
                break

            for spec in ready:
                missing = [d for d in spec.dependencies if d not in specs and d not in result]
                if missing:
                    result[spec.name] = None
                else:
                    result[spec.name] = self._evaluator.evaluate(
                        spec.expression, result, entity_id, related
                    )
                done.add(spec.name)
            pending = [spec for spec in pending if spec.name not in done]

        return result

    def compute_for_records(
        self,
        entity_id: str,
        records: list[dict[str, Any]],
        related: Mapping[str, Any] | None = None,
    ) -> list[dict[str, Any]]:
        """Apply ``compute_for_record`` to each record."""
        return [self.compute_for_record(entity_id, r, related) for r in records]
