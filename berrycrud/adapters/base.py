from __future__ import annotations
from datetime import date
from typing import Any, Dict
from sqlalchemy import Date, cast

from ..core.types import ColumnTypeMap, SemanticType
from ..errors import UnsupportedDialectError


class BaseAdapter:
    """Dialect strategy: schema introspection plus the few SQL fragments that differ.

    The base class doubles as the adapter for dialects we do not know. It cannot
    introspect, so the reflector falls back to string-typed columns.
    """
    name = 'base'
    # Whether ``SELECT t.* ... GROUP BY t.col`` is accepted
    supports_bare_group_by = False

    def quote(self, ident: str) -> str:
        return '"' + str(ident).replace('"', '""') + '"'

    # Table identifier helper; adapters can override for dialect-specific quoting/qualification
    def table_ident(self, model_or_table) -> str:
        tbl = getattr(model_or_table, '__table__', model_or_table)
        name = getattr(tbl, 'name', None) or getattr(model_or_table, '__tablename__', None) or str(model_or_table)
        schema = getattr(tbl, 'schema', None)
        if schema:
            return f"{self.quote(schema)}.{self.quote(name)}"
        return self.quote(name)

    async def fetch_raw_column_types(self, session, table) -> Dict[str, str]:
        """Return ``{column: vendor type string}`` for ``table`` (a SQLAlchemy Table)."""
        raise UnsupportedDialectError(f"Schema introspection is not supported for dialect '{self.name}'")

    def normalize_type(self, raw: str) -> SemanticType:
        return SemanticType.STRING

    async def fetch_column_types(self, session, table) -> ColumnTypeMap:
        raw = await self.fetch_raw_column_types(session, table)
        return {str(col): self.normalize_type(str(t or '')) for col, t in raw.items()}

    # --- date helpers ----------------------------------------------------------
    def day_expr(self, col):
        """Expression truncating a date/datetime column to its calendar day."""
        return cast(col, Date)

    def day_value(self, value: date) -> Any:
        return value
