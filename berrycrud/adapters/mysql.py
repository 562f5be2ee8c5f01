from __future__ import annotations
from typing import Dict
from sqlalchemy import func, text as _text

from .base import BaseAdapter
from ..core.types import SemanticType


class MySQLAdapter(BaseAdapter):
    name = 'mysql'
    # ONLY_FULL_GROUP_BY is on by default since 5.7
    supports_bare_group_by = False

    def quote(self, ident: str) -> str:
        return '`' + str(ident).replace('`', '``') + '`'

    async def fetch_raw_column_types(self, session, table) -> Dict[str, str]:
        result = await session.execute(_text(f"DESCRIBE {self.table_ident(table)}"))
        return {row.Field: row.Type for row in result}

    def normalize_type(self, raw: str) -> SemanticType:
        t = (raw or '').lower()
        # tinyint(1) is MySQL's boolean and must win over the generic int rule
        if 'tinyint(1)' in t or t.startswith('bool'):
            return SemanticType.BOOLEAN
        if 'int' in t:
            return SemanticType.INTEGER
        if 'json' in t:
            return SemanticType.JSON
        if any(k in t for k in ('decimal', 'float', 'double', 'numeric', 'real')):
            return SemanticType.NUMERIC
        if 'char' in t or 'text' in t:
            return SemanticType.STRING
        if 'date' in t or 'time' in t or t.startswith('year'):
            return SemanticType.DATE
        return SemanticType.STRING

    def day_expr(self, col):
        return func.date(col)
