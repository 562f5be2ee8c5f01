from __future__ import annotations

from enum import Enum
from typing import Dict


class SemanticType(str, Enum):
    """Vendor-independent classification of a column."""

    STRING = 'string'
    INTEGER = 'integer'
    NUMERIC = 'numeric'
    BOOLEAN = 'boolean'
    DATE = 'date'
    JSON = 'json'

    @classmethod
    def coerce(cls, value) -> "SemanticType":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            return cls.STRING

    @property
    def is_number(self) -> bool:
        return self in (SemanticType.INTEGER, SemanticType.NUMERIC)


ColumnTypeMap = Dict[str, SemanticType]

__all__ = ['SemanticType', 'ColumnTypeMap']
