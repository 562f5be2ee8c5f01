from __future__ import annotations
from typing import Dict
from sqlalchemy import text as _text

from .base import BaseAdapter
from ..core.types import SemanticType

_INTEGER = {'integer', 'bigint', 'smallint', 'int', 'int2', 'int4', 'int8', 'serial', 'bigserial'}
_NUMERIC = {'numeric', 'decimal', 'real', 'double precision', 'money'}
_STRING = {'character varying', 'varchar', 'text', 'char', 'character', 'uuid', 'citext'}


class PostgresAdapter(BaseAdapter):
    name = 'postgresql'

    async def fetch_raw_column_types(self, session, table) -> Dict[str, str]:
        params = {'table': table.name}
        schema_clause = 'current_schema()'
        if table.schema:
            schema_clause = ':schema'
            params['schema'] = table.schema
        result = await session.execute(
            _text(
                "SELECT column_name, data_type FROM information_schema.columns "
                f"WHERE table_name = :table AND table_schema = {schema_clause} "
                "ORDER BY ordinal_position"
            ),
            params,
        )
        return {row.column_name: row.data_type for row in result}

    def normalize_type(self, raw: str) -> SemanticType:
        t = (raw or '').lower().strip()
        if t in _INTEGER:
            return SemanticType.INTEGER
        if t in _NUMERIC:
            return SemanticType.NUMERIC
        if t == 'boolean':
            return SemanticType.BOOLEAN
        if t in ('json', 'jsonb'):
            return SemanticType.JSON
        if t == 'date' or t.startswith('timestamp') or t.startswith('time'):
            return SemanticType.DATE
        return SemanticType.STRING
