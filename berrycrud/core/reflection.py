"""Schema reflection: column name -> semantic type, per mapped model.

Reflection never blocks a request. Unsupported dialects and failing metadata
queries degrade to labelling every mapped column ``string``.
"""
from __future__ import annotations

import logging
import threading
from typing import Any, Dict, Optional

from ..adapters import BaseAdapter, dialect_name_of, get_adapter
from .types import ColumnTypeMap, SemanticType
from .utils import model_columns

logger = logging.getLogger(__name__)


def _table_of(model_cls):
    return getattr(model_cls, '__table__')


class SchemaReflector:
    """Two-tier memoised column-type lookup.

    Tier one is an in-process map keyed ``<class>:<table>``; tier two is an
    optional shared cache (see :mod:`berrycrud.cache`) keyed
    ``<model_class>_<table>_column_types`` and tagged with the table name.
    """

    def __init__(self, cache=None, *, ttl: Optional[int] = 86400):
        self.cache = cache
        self.ttl = ttl
        self._memory: Dict[str, ColumnTypeMap] = {}
        self._lock = threading.Lock()

    # --- keys -------------------------------------------------------------------
    @staticmethod
    def memory_key(model_cls) -> str:
        return f"{model_cls.__module__}.{model_cls.__qualname__}:{_table_of(model_cls).name}"

    @staticmethod
    def cache_key(model_cls) -> str:
        return f"{model_cls.__module__}.{model_cls.__qualname__}_{_table_of(model_cls).name}_column_types"

    # --- public API ---------------------------------------------------------------
    def adapter_for(self, session) -> BaseAdapter:
        return get_adapter(self._dialect_name(session))

    def _dialect_name(self, session) -> str:
        return dialect_name_of(session)

    async def get_column_types(self, session, model_cls, *, use_cache: bool = True) -> ColumnTypeMap:
        mkey = self.memory_key(model_cls)
        if use_cache:
            with self._lock:
                hit = self._memory.get(mkey)
            if hit is not None:
                return dict(hit)

        types: Optional[ColumnTypeMap] = None
        if use_cache and self.cache is not None:
            types = await self._from_shared_cache(session, model_cls)
        if types is None:
            types = await self._fetch(session, model_cls)

        if use_cache:
            with self._lock:
                self._memory[mkey] = dict(types)
        return dict(types)

    async def invalidate(self, model_cls=None) -> None:
        """Forget cached types for ``model_cls`` (or for every model when None)."""
        if model_cls is None:
            with self._lock:
                self._memory.clear()
            return
        with self._lock:
            self._memory.pop(self.memory_key(model_cls), None)
        if self.cache is not None:
            try:
                await self.cache.delete(self.cache_key(model_cls))
            except Exception as e:
                logger.warning(f"Failed to drop cached column types for {model_cls.__name__}: {e}")

    # --- internals ------------------------------------------------------------------
    async def _from_shared_cache(self, session, model_cls) -> Optional[ColumnTypeMap]:
        async def _factory() -> Dict[str, str]:
            fetched = await self._fetch(session, model_cls)
            return {k: v.value for k, v in fetched.items()}

        try:
            raw: Any = await self.cache.remember(
                self.cache_key(model_cls),
                self.ttl,
                _factory,
                tags=[_table_of(model_cls).name],
            )
        except Exception as e:
            logger.warning(f"Column type cache unavailable ({e}); reflecting {model_cls.__name__} directly")
            return None
        if not isinstance(raw, dict):
            return None
        return {str(k): SemanticType.coerce(v) for k, v in raw.items()}

    async def _fetch(self, session, model_cls) -> ColumnTypeMap:
        table = _table_of(model_cls)
        adapter = self.adapter_for(session)
        try:
            # savepoint: a failed metadata query must not abort the caller's transaction
            async with session.begin_nested():
                types = await adapter.fetch_column_types(session, table)
            if not types:
                raise LookupError(f"no columns reported for table '{table.name}'")
            return types
        except Exception as e:
            logger.warning(
                f"Failed to fetch column types for '{table.name}' via {adapter.name} adapter: {e}. "
                f"Using string types."
            )
            return {name: SemanticType.STRING for name in model_columns(model_cls)}


__all__ = ['SchemaReflector']
