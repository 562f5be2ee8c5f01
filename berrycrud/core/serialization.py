from __future__ import annotations
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterable, List, Optional
from sqlalchemy import inspect as sa_inspect


class ItemSerializer:
    """Turn a mapped entity into a plain dict.

    Only already-loaded relations are emitted, so serialising never issues
    SQL. A loaded to-one relation ``x`` replaces its ``x_id`` key; relations
    named in ``exclude`` are left out and keep their ``x_id``.
    """

    datetime_format = '%Y-%m-%d %H:%M:%S'

    def __init__(self, datetime_format: Optional[str] = None, max_depth: int = 4):
        if datetime_format:
            self.datetime_format = datetime_format
        self.max_depth = max_depth

    def __call__(self, entity, exclude: Iterable[str] = ()) -> Dict[str, Any]:
        return self._serialize(entity, frozenset(exclude or ()), 0, frozenset())

    def many(self, entities, exclude: Iterable[str] = ()) -> List[Dict[str, Any]]:
        return [self(e, exclude) for e in entities]

    def format_value(self, value: Any) -> Any:
        if isinstance(value, datetime):
            return value.strftime(self.datetime_format)
        if isinstance(value, date):
            return value.isoformat()
        if isinstance(value, Decimal):
            return float(value)
        if isinstance(value, Enum):
            return value.value
        return value

    def _serialize(self, entity, exclude: FrozenSet[str], depth: int, seen: FrozenSet[Any]) -> Dict[str, Any]:
        state = sa_inspect(entity)
        unloaded = state.unloaded
        out: Dict[str, Any] = {}
        for attr in state.mapper.column_attrs:
            if attr.key in unloaded:
                continue
            out[attr.key] = self.format_value(getattr(entity, attr.key))
        if depth >= self.max_depth:
            return out
        seen = seen | {_identity(entity)}
        for rel in state.mapper.relationships:
            if rel.key in exclude or rel.key in unloaded:
                continue
            value = getattr(entity, rel.key)
            if rel.uselist:
                out[rel.key] = [
                    self._serialize(v, frozenset(), depth + 1, seen)
                    for v in (value or [])
                    if _identity(v) not in seen
                ]
                continue
            if value is None or _identity(value) in seen:
                continue
            out.pop(f"{rel.key}_id", None)
            out[rel.key] = self._serialize(value, frozenset(), depth + 1, seen)
        return out


def _identity(entity):
    state = sa_inspect(entity)
    return (type(entity), state.identity) if state.identity is not None else (type(entity), id(entity))


__all__ = ['ItemSerializer']
