"""Dynamic search and ordering filters.

Requests carry flat keys following fixed conventions::

    search_by_<column>            equality / substring / same-day match
    search_by_<column>_min|max    inclusive numeric bounds
    search_by_<column>_from|to    inclusive date bounds
    order_by_<column>=asc|desc    ordering, applied in encounter order

``parse_filter_request`` turns those keys into typed ``FilterTerm`` objects;
``FilterCompiler`` turns the terms into predicates on a ``QueryPlan``.
Unknown columns, incompatible range suffixes and uncoercible values are
dropped, never raised.
"""
from __future__ import annotations
import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional
from sqlalchemy import String, cast

from .types import ColumnTypeMap, SemanticType
from .utils import coerce_semantic_value, is_blank

logger = logging.getLogger(__name__)

SEARCH_PREFIX = 'search_by_'
ORDER_PREFIX = 'order_by_'
_RANGE_RE = re.compile(r'^(?P<column>.+)_(?P<bound>min|max|from|to)$')


def escape_like(value: str) -> str:
    """Escape LIKE metacharacters so user input matches literally."""
    return value.replace('\\', '\\\\').replace('%', '\\%').replace('_', '\\_')


def _contains(col, v):
    return col.like(f"%{escape_like(str(v))}%", escape='\\')


# Global operator registry (extensible)
OPERATOR_REGISTRY: Dict[str, Callable[[Any, Any], Any]] = {
    'eq': lambda col, v: col == v,
    'gte': lambda col, v: col >= v,
    'lte': lambda col, v: col <= v,
    'contains': _contains,
}


def register_operator(name: str, fn: Callable[[Any, Any], Any]):  # pragma: no cover - simple
    OPERATOR_REGISTRY[name] = fn


class FilterKind(str, Enum):
    EQUALITY = 'equality'
    RANGE_MIN = 'range_min'
    RANGE_MAX = 'range_max'
    DATE_FROM = 'date_from'
    DATE_TO = 'date_to'
    ORDER_ASC = 'order_asc'
    ORDER_DESC = 'order_desc'


_RANGE_KINDS = {
    'min': FilterKind.RANGE_MIN,
    'max': FilterKind.RANGE_MAX,
    'from': FilterKind.DATE_FROM,
    'to': FilterKind.DATE_TO,
}


@dataclass(frozen=True)
class FilterTerm:
    kind: FilterKind
    column: str
    value: Any = None
    key: str = ''

    @property
    def is_order(self) -> bool:
        return self.kind in (FilterKind.ORDER_ASC, FilterKind.ORDER_DESC)

    @property
    def direction(self) -> Optional[str]:
        if self.kind is FilterKind.ORDER_ASC:
            return 'asc'
        if self.kind is FilterKind.ORDER_DESC:
            return 'desc'
        return None


@dataclass
class ParsedFilterRequest:
    searches: List[FilterTerm] = field(default_factory=list)
    orders: List[FilterTerm] = field(default_factory=list)
    ignored: List[str] = field(default_factory=list)

    def __bool__(self) -> bool:
        return bool(self.searches or self.orders)


def _parse_search_key(key: str, column_types: ColumnTypeMap):
    rest = key[len(SEARCH_PREFIX):]
    # An exact column name wins over a range suffix (a column may be called "price_min")
    if rest in column_types:
        return FilterKind.EQUALITY, rest
    m = _RANGE_RE.match(rest)
    if not m:
        return None
    column, bound = m.group('column'), m.group('bound')
    ctype = column_types.get(column)
    if ctype is None:
        return None
    if bound in ('min', 'max') and ctype.is_number:
        return _RANGE_KINDS[bound], column
    if bound in ('from', 'to') and ctype is SemanticType.DATE:
        return _RANGE_KINDS[bound], column
    return None


def parse_filter_request(data: Mapping[str, Any], column_types: ColumnTypeMap) -> ParsedFilterRequest:
    """Convert a flat request map into typed filter and order terms."""
    parsed = ParsedFilterRequest()
    for key, value in (data or {}).items():
        if not isinstance(key, str):
            continue
        if key.startswith(SEARCH_PREFIX):
            if is_blank(value):
                continue
            hit = _parse_search_key(key, column_types)
            if hit is None:
                parsed.ignored.append(key)
                continue
            kind, column = hit
            parsed.searches.append(FilterTerm(kind, column, value, key))
        elif key.startswith(ORDER_PREFIX):
            column = key[len(ORDER_PREFIX):]
            direction = str(value).strip().lower() if isinstance(value, str) else None
            if column not in column_types or direction not in ('asc', 'desc'):
                parsed.ignored.append(key)
                continue
            kind = FilterKind.ORDER_ASC if direction == 'asc' else FilterKind.ORDER_DESC
            parsed.orders.append(FilterTerm(kind, column, direction, key))
    if parsed.ignored:
        logger.debug(f"Ignored filter keys: {parsed.ignored}")
    return parsed


class FilterCompiler:
    """Compile parsed terms into WHERE / ORDER BY on a ``QueryPlan``."""

    def __init__(self, adapter):
        self.adapter = adapter

    def apply_search(self, plan, column_types: ColumnTypeMap, data: Mapping[str, Any]):
        parsed = data if isinstance(data, ParsedFilterRequest) else parse_filter_request(data, column_types)
        for term in parsed.searches:
            col = plan.table.c.get(term.column)
            if col is None:
                logger.warning(f"Column '{term.column}' is reflected but not mapped on '{plan.table.name}'; skipping {term.key}")
                continue
            expr = self.predicate_for(col, column_types.get(term.column, SemanticType.STRING), term)
            if expr is not None:
                plan.add_where(expr)
        return plan

    def apply_order(self, plan, column_types: ColumnTypeMap, data: Mapping[str, Any]):
        parsed = data if isinstance(data, ParsedFilterRequest) else parse_filter_request(data, column_types)
        for term in parsed.orders:
            if plan.table.c.get(term.column) is None:
                continue
            plan.add_order(term.column, term.direction)
        return plan

    def predicate_for(self, col, semantic_type: SemanticType, term: FilterTerm):
        if semantic_type is SemanticType.JSON:
            logger.debug(f"Search on JSON column '{term.column}' is not supported; skipping")
            return None
        try:
            value = coerce_semantic_value(semantic_type, term.value)
        except (TypeError, ValueError) as e:
            logger.warning(f"Dropping filter {term.key}={term.value!r}: {e}")
            return None
        if isinstance(value, list):
            logger.warning(f"Dropping filter {term.key}: list values are not supported")
            return None

        if term.kind is FilterKind.EQUALITY:
            if semantic_type is SemanticType.STRING:
                return OPERATOR_REGISTRY['contains'](col, value)
            if semantic_type is SemanticType.DATE:
                return OPERATOR_REGISTRY['eq'](self.adapter.day_expr(col), self.adapter.day_value(value))
            return OPERATOR_REGISTRY['eq'](col, value)
        if term.kind is FilterKind.RANGE_MIN:
            return OPERATOR_REGISTRY['gte'](col, value)
        if term.kind is FilterKind.RANGE_MAX:
            return OPERATOR_REGISTRY['lte'](col, value)
        if term.kind is FilterKind.DATE_FROM:
            return OPERATOR_REGISTRY['gte'](self.adapter.day_expr(col), self.adapter.day_value(value))
        if term.kind is FilterKind.DATE_TO:
            return OPERATOR_REGISTRY['lte'](self.adapter.day_expr(col), self.adapter.day_value(value))
        return None


def like_group_search(col, value, semantic_type: Optional[SemanticType] = None):
    """Substring predicate on a group column, casting non-text columns to text."""
    if semantic_type is None:
        is_text = isinstance(getattr(col, 'type', None), String)
    else:
        is_text = semantic_type is SemanticType.STRING
    target = col if is_text else cast(col, String)
    return OPERATOR_REGISTRY['contains'](target, value)


__all__ = [
    'OPERATOR_REGISTRY',
    'register_operator',
    'FilterKind',
    'FilterTerm',
    'ParsedFilterRequest',
    'parse_filter_request',
    'FilterCompiler',
    'escape_like',
    'like_group_search',
]
