from __future__ import annotations

from .base import BaseAdapter
from .sqlite import SQLiteAdapter
from .postgres import PostgresAdapter
from .mysql import MySQLAdapter
from .mssql import MSSQLAdapter


def get_adapter(dialect_name: str) -> BaseAdapter:
    """Return the adapter for a SQLAlchemy dialect name.

    Unknown dialects get the bare ``BaseAdapter``, which cannot introspect.
    """
    dn = (dialect_name or '').lower()
    if dn.startswith('sqlite'):
        return SQLiteAdapter()
    if dn.startswith('postgres'):
        return PostgresAdapter()
    if dn.startswith('mysql') or dn.startswith('mariadb'):
        return MySQLAdapter()
    if dn.startswith('mssql') or 'pyodbc' in dn:
        return MSSQLAdapter()
    return BaseAdapter()


def dialect_name_of(session) -> str:
    """Best-effort dialect name for a (sync or async) session."""
    try:
        return session.get_bind().dialect.name
    except Exception:
        bind = getattr(session, 'bind', None)
        return getattr(getattr(bind, 'dialect', None), 'name', '') or ''


__all__ = [
    'BaseAdapter',
    'SQLiteAdapter',
    'PostgresAdapter',
    'MySQLAdapter',
    'MSSQLAdapter',
    'get_adapter',
    'dialect_name_of',
]
