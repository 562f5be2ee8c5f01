from __future__ import annotations
import json
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, List, Optional

from .types import SemanticType

_TRUE = ('true', 't', '1', 'yes', 'y', 'on')
_FALSE = ('false', 'f', '0', 'no', 'n', 'off')


def is_blank(value: Any) -> bool:
    """True for absent-ish request values.

    ``0``, ``'0'`` and ``False`` are real values, not blanks.
    """
    if value is None:
        return True
    if isinstance(value, str):
        return value.strip() == ''
    if isinstance(value, (list, tuple, set, dict)):
        return len(value) == 0
    return False


def as_bool(value: Any, default: bool = False) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float, Decimal)):
        return value != 0
    lv = str(value).strip().lower()
    if lv in _TRUE:
        return True
    if lv in _FALSE:
        return False
    return default


def as_int(value: Any, default: Optional[int] = None) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return default
    try:
        return int(str(value).strip()) if isinstance(value, str) else int(value)
    except (TypeError, ValueError):
        return default


def _to_date(value: Any) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    s = str(value).strip()
    s = s.replace('Z', '+00:00') if s.endswith('Z') else s
    try:
        return datetime.fromisoformat(s).date()
    except ValueError:
        # date-only prefix of a longer timestamp
        return date.fromisoformat(s[:10])


def coerce_semantic_value(semantic_type: SemanticType, value: Any) -> Any:
    """Coerce a loosely-typed request value to the Python type of a column.

    Raises ``ValueError`` when the value cannot represent the type.
    """
    if isinstance(value, (list, tuple)):
        return [coerce_semantic_value(semantic_type, v) for v in value]
    if semantic_type is SemanticType.INTEGER:
        if isinstance(value, bool):
            return int(value)
        lv = str(value).strip().lower()
        if lv in ('true', 'false'):
            return 1 if lv == 'true' else 0
        try:
            number = Decimal(lv)
        except InvalidOperation as exc:
            raise ValueError(f"Not an integer: {value!r}") from exc
        if not number.is_finite() or number != number.to_integral_value():
            raise ValueError(f"Not an integer: {value!r}")
        return int(number)
    if semantic_type is SemanticType.NUMERIC:
        if isinstance(value, bool):
            return Decimal(int(value))
        lv = str(value).strip().lower()
        if lv in ('true', 'false'):
            return Decimal(1 if lv == 'true' else 0)
        try:
            number = Decimal(lv)
        except InvalidOperation as exc:
            raise ValueError(f"Not a number: {value!r}") from exc
        if not number.is_finite():
            raise ValueError(f"Not a number: {value!r}")
        return number
    if semantic_type is SemanticType.BOOLEAN:
        if isinstance(value, bool):
            return value
        lv = str(value).strip().lower()
        if lv in _TRUE:
            return True
        if lv in _FALSE:
            return False
        raise ValueError(f"Not a boolean: {value!r}")
    if semantic_type is SemanticType.DATE:
        return _to_date(value)
    if semantic_type is SemanticType.STRING:
        return str(value)
    return value


def decode_json_payload(value: Any) -> Any:
    """Decode JSON-encoded request values (query strings often carry them).

    Non-string values and strings that are not JSON objects/arrays are returned as-is.
    """
    if isinstance(value, (bytes, bytearray)):
        try:
            value = value.decode('utf-8')
        except UnicodeDecodeError:
            return value
    if not isinstance(value, str):
        return value
    s = value.strip()
    if not ((s.startswith('{') and s.endswith('}')) or (s.startswith('[') and s.endswith(']'))):
        return value
    try:
        return json.loads(s)
    except ValueError:
        return value


def model_columns(model_cls) -> List[str]:
    """Names of the columns on the model's mapped table."""
    table = getattr(model_cls, '__table__', None)
    if table is None:
        return []
    return [c.name for c in table.columns]


def primary_key_name(model_cls, default: str = 'id') -> str:
    table = getattr(model_cls, '__table__', None)
    try:
        pks = list(table.primary_key.columns) if table is not None else []
    except Exception:
        pks = []
    if pks:
        return pks[0].name
    return default


__all__ = [
    'is_blank',
    'as_bool',
    'as_int',
    'coerce_semantic_value',
    'decode_json_payload',
    'model_columns',
    'primary_key_name',
]
