"""Metadata filter expressions.

A small immutable predicate AST over chunk metadata keys. Expressions are
compiled to SQL/JSON path predicates for PostgreSQL (``metadata @@ '<path>'``)
and can be evaluated directly against a metadata dict for the SQLite backend,
following the same three-valued semantics.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Tuple, Union


class FilterOp(str, Enum):
    AND = "AND"
    OR = "OR"
    NOT = "NOT"
    EQ = "=="
    NE = "!="
    GT = ">"
    GTE = ">="
    LT = "<"
    LTE = "<="
    IN = "IN"
    NIN = "NIN"
    IS_NULL = "IS_NULL"
    IS_NOT_NULL = "IS_NOT_NULL"


COMPARISONS = {FilterOp.EQ, FilterOp.NE, FilterOp.GT, FilterOp.GTE, FilterOp.LT, FilterOp.LTE}
LOGICAL = {FilterOp.AND, FilterOp.OR}


@dataclass(frozen=True)
class Key:
    name: str


@dataclass(frozen=True)
class Value:
    value: Any


@dataclass(frozen=True)
class FilterExpression:
    """One node of the filter tree.

    Logical nodes hold two sub-expressions, ``NOT`` holds one in ``left``,
    comparisons hold a ``Key`` on the left and a ``Value`` on the right.
    """
    op: FilterOp
    left: Union['FilterExpression', Key]
    right: Optional[Union['FilterExpression', Value]] = None

    def __and__(self, other: 'FilterExpression') -> 'FilterExpression':
        return FilterExpression(FilterOp.AND, self, other)

    def __or__(self, other: 'FilterExpression') -> 'FilterExpression':
        return FilterExpression(FilterOp.OR, self, other)

    def __invert__(self) -> 'FilterExpression':
        return FilterExpression(FilterOp.NOT, self)


class F:
    """Builder shortcuts: ``F.eq("versionId", "v1") & ~F.is_null("documentTitle")``."""

    @staticmethod
    def eq(key: str, value: Any) -> FilterExpression:
        return FilterExpression(FilterOp.EQ, Key(key), Value(value))

    @staticmethod
    def ne(key: str, value: Any) -> FilterExpression:
        return FilterExpression(FilterOp.NE, Key(key), Value(value))

    @staticmethod
    def gt(key: str, value: Any) -> FilterExpression:
        return FilterExpression(FilterOp.GT, Key(key), Value(value))

    @staticmethod
    def gte(key: str, value: Any) -> FilterExpression:
        return FilterExpression(FilterOp.GTE, Key(key), Value(value))

    @staticmethod
    def lt(key: str, value: Any) -> FilterExpression:
        return FilterExpression(FilterOp.LT, Key(key), Value(value))

    @staticmethod
    def lte(key: str, value: Any) -> FilterExpression:
        return FilterExpression(FilterOp.LTE, Key(key), Value(value))

    @staticmethod
    def in_(key: str, values) -> FilterExpression:
        return FilterExpression(FilterOp.IN, Key(key), Value(tuple(values)))

    @staticmethod
    def nin(key: str, values) -> FilterExpression:
        return FilterExpression(FilterOp.NIN, Key(key), Value(tuple(values)))

    @staticmethod
    def is_null(key: str) -> FilterExpression:
        return FilterExpression(FilterOp.IS_NULL, Key(key))

    @staticmethod
    def is_not_null(key: str) -> FilterExpression:
        return FilterExpression(FilterOp.IS_NOT_NULL, Key(key))

    @staticmethod
    def and_(left: FilterExpression, right: FilterExpression) -> FilterExpression:
        return FilterExpression(FilterOp.AND, left, right)

    @staticmethod
    def or_(left: FilterExpression, right: FilterExpression) -> FilterExpression:
        return FilterExpression(FilterOp.OR, left, right)

    @staticmethod
    def not_(operand: FilterExpression) -> FilterExpression:
        return FilterExpression(FilterOp.NOT, operand)


# --- JSON path compilation -------------------------------------------------

_ESCAPES = {
    '\\': '\\\\',
    '"': '\\"',
    '\n': '\\n',
    '\r': '\\r',
    '\t': '\\t',
}


def _quote(text: str) -> str:
    """Quote a key or string value as a JSON path string literal."""
    return '"' + ''.join(_ESCAPES.get(ch, ch) for ch in text) + '"'


def _path(key: Key) -> str:
    return '$.' + _quote(key.name)


def _literal(value: Any) -> str:
    if value is None:
        return 'null'
    if isinstance(value, bool):
        return 'true' if value else 'false'
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        if math.isnan(value) or math.isinf(value):
            raise ValueError(f"Non-finite number in filter: {value!r}")
        return repr(value)
    if isinstance(value, (list, tuple, set, dict)):
        raise ValueError(f"Unsupported filter value type: {type(value).__name__}")
    return _quote(str(value))


def _compile_membership(key: Key, values: Tuple[Any, ...]) -> str:
    if not values:
        # Always-false comparison; a bare `false` is rejected under !, && and ||
        return '(1 == 0)'
    path = _path(key)
    return '(' + ' || '.join(f'{path} == {_literal(v)}' for v in values) + ')'


def to_jsonpath(expression: Optional[FilterExpression]) -> str:
    """Compile an expression into a JSON path predicate.

    Returns an empty string for an absent expression.
    """
    if expression is None:
        return ''

    op = expression.op
    if op in LOGICAL:
        joiner = ' && ' if op == FilterOp.AND else ' || '
        return '(' + to_jsonpath(expression.left) + joiner + to_jsonpath(expression.right) + ')'
    if op == FilterOp.NOT:
        return '!(' + to_jsonpath(expression.left) + ')'

    key = expression.left
    if not isinstance(key, Key):
        raise ValueError(f"{op.value} expects a metadata key on the left side")

    if op == FilterOp.IS_NULL:
        return f'!(exists({_path(key)} ? (@ != null)))'
    if op == FilterOp.IS_NOT_NULL:
        return f'exists({_path(key)} ? (@ != null))'

    if not isinstance(expression.right, Value):
        raise ValueError(f"{op.value} expects a literal value on the right side")

    if op == FilterOp.IN:
        return _compile_membership(key, tuple(expression.right.value))
    if op == FilterOp.NIN:
        return '!(' + _compile_membership(key, tuple(expression.right.value)) + ')'

    return f'{_path(key)} {op.value} {_literal(expression.right.value)}'


# --- In-process evaluation -------------------------------------------------

_MISSING = object()


def _kind(value: Any) -> str:
    if value is None:
        return 'null'
    if isinstance(value, bool):
        return 'bool'
    if isinstance(value, (int, float)):
        return 'number'
    if isinstance(value, str):
        return 'string'
    return 'other'


def _normalize(value: Any) -> Any:
    # Non-JSON scalars (UUIDs, enums) compile to their string form.
    if _kind(value) == 'other':
        return str(value)
    return value


def _compare(op: FilterOp, actual: Any, expected: Any) -> Optional[bool]:
    """Compare one stored value; ``None`` means unknown (type mismatch)."""
    expected = _normalize(expected)
    actual_kind, expected_kind = _kind(actual), _kind(expected)

    if actual_kind == 'null' or expected_kind == 'null':
        if op == FilterOp.EQ:
            return actual_kind == expected_kind
        if op == FilterOp.NE:
            return actual_kind != expected_kind
        return None
    if actual_kind != expected_kind:
        return None
    if actual_kind == 'bool' and op not in (FilterOp.EQ, FilterOp.NE):
        return None

    if op == FilterOp.EQ:
        return actual == expected
    if op == FilterOp.NE:
        return actual != expected
    if op == FilterOp.GT:
        return actual > expected
    if op == FilterOp.GTE:
        return actual >= expected
    if op == FilterOp.LT:
        return actual < expected
    return actual <= expected


def _and(a: Optional[bool], b: Optional[bool]) -> Optional[bool]:
    if a is False or b is False:
        return False
    if a is None or b is None:
        return None
    return True


def _or(a: Optional[bool], b: Optional[bool]) -> Optional[bool]:
    if a is True or b is True:
        return True
    if a is None or b is None:
        return None
    return False


def _evaluate(expression: FilterExpression, metadata: Mapping[str, Any]) -> Optional[bool]:
    op = expression.op
    if op == FilterOp.AND:
        return _and(_evaluate(expression.left, metadata), _evaluate(expression.right, metadata))
    if op == FilterOp.OR:
        return _or(_evaluate(expression.left, metadata), _evaluate(expression.right, metadata))
    if op == FilterOp.NOT:
        inner = _evaluate(expression.left, metadata)
        return None if inner is None else not inner

    actual = metadata.get(expression.left.name, _MISSING)
    if op == FilterOp.IS_NULL:
        return actual is _MISSING or actual is None
    if op == FilterOp.IS_NOT_NULL:
        return not (actual is _MISSING or actual is None)

    if op in (FilterOp.IN, FilterOp.NIN):
        result: Optional[bool] = False
        if actual is not _MISSING:
            for candidate in expression.right.value:
                result = _or(result, _compare(FilterOp.EQ, actual, candidate))
        if op == FilterOp.NIN:
            return None if result is None else not result
        return result

    # A missing key yields an empty sequence, which never matches.
    if actual is _MISSING:
        return False
    return _compare(op, actual, expression.right.value)


def matches(expression: Optional[FilterExpression], metadata: Optional[Dict[str, Any]]) -> bool:
    """Evaluate an expression against one metadata dict.

    Unknown results (comparisons between incompatible types) do not match.
    """
    if expression is None:
        return True
    return _evaluate(expression, metadata or {}) is True
