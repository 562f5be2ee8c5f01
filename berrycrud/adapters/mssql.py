from __future__ import annotations
from typing import Dict
from sqlalchemy import text as _text

from .base import BaseAdapter
from ..core.types import SemanticType

_INTEGER = {'int', 'bigint', 'smallint', 'tinyint'}
_NUMERIC = {'decimal', 'numeric', 'float', 'real', 'money', 'smallmoney'}
_DATE = {'date', 'datetime', 'datetime2', 'smalldatetime', 'datetimeoffset', 'time'}


class MSSQLAdapter(BaseAdapter):
    name = 'mssql'

    # Render a schema-qualified, MSSQL-quoted identifier like [schema].[table]
    def quote(self, ident: str) -> str:
        return '[' + str(ident).replace(']', ']]') + ']'

    async def fetch_raw_column_types(self, session, table) -> Dict[str, str]:
        params = {'table': table.name}
        schema_clause = ''
        if table.schema:
            schema_clause = 'AND TABLE_SCHEMA = :schema '
            params['schema'] = table.schema
        result = await session.execute(
            _text(
                "SELECT COLUMN_NAME, DATA_TYPE FROM INFORMATION_SCHEMA.COLUMNS "
                "WHERE TABLE_CATALOG = DB_NAME() AND TABLE_NAME = :table "
                f"{schema_clause}"
                "ORDER BY ORDINAL_POSITION"
            ),
            params,
        )
        return {row.COLUMN_NAME: row.DATA_TYPE for row in result}

    def normalize_type(self, raw: str) -> SemanticType:
        t = (raw or '').lower().strip()
        if t in _INTEGER:
            return SemanticType.INTEGER
        if t in _NUMERIC:
            return SemanticType.NUMERIC
        if t in _DATE:
            return SemanticType.DATE
        if t == 'bit':
            return SemanticType.BOOLEAN
        return SemanticType.STRING
