from __future__ import annotations
from datetime import date
from typing import Any, Dict
from sqlalchemy import func, text as _text

from .base import BaseAdapter
from ..core.types import SemanticType


class SQLiteAdapter(BaseAdapter):
    name = 'sqlite'
    supports_bare_group_by = True

    async def fetch_raw_column_types(self, session, table) -> Dict[str, str]:
        # PRAGMA does not accept bound parameters; identifier comes from mapped metadata
        result = await session.execute(_text(f"PRAGMA table_info({self.quote(table.name)})"))
        return {row.name: row.type for row in result}

    def normalize_type(self, raw: str) -> SemanticType:
        t = (raw or '').lower()
        if 'int' in t:
            return SemanticType.INTEGER
        if 'bool' in t:
            return SemanticType.BOOLEAN
        if 'json' in t:
            return SemanticType.JSON
        if 'char' in t or 'text' in t or 'clob' in t:
            return SemanticType.STRING
        if any(k in t for k in ('real', 'floa', 'doub', 'decimal', 'numeric')):
            return SemanticType.NUMERIC
        if 'date' in t or 'time' in t:
            return SemanticType.DATE
        return SemanticType.STRING

    def day_expr(self, col):
        # Datetimes are stored as ISO text; date() yields 'YYYY-MM-DD'
        return func.date(col)

    def day_value(self, value: date) -> Any:
        return value.isoformat()
