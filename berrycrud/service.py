"""CrudService: one mapped model, one AsyncSession, the full request pipeline.

``index`` runs: validate -> reflect column types -> search/order filters ->
soft-delete scope -> incremental sync -> grouping -> execute -> (optional)
hierarchical reshaping, with advisory caching around the whole payload.

Subclass to bind a model and hook into the lifecycle::

    class ApartmentService(CrudService):
        model = Apartment
        load_relations = ('block',)

        async def after_create(self, entity):
            await super().after_create(entity)
            ...
"""
from __future__ import annotations

import hashlib
import json
import logging
from datetime import date, datetime, time
from functools import lru_cache
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Sequence
from sqlalchemy import inspect as sa_inspect, literal, select
from sqlalchemy.exc import SQLAlchemyError

from .cache import CacheBackend, cache_from_settings
from .config import CrudSettings, get_settings
from .core.filters import FilterCompiler, parse_filter_request
from .core.grouping import GroupByPlanner, GroupSpec, parse_group_bies
from .core.hierarchy import GroupPage, HierarchicalResponseBuilder, render
from .core.pagination import Pagination
from .core.plan import QueryPlan
from .core.reflection import SchemaReflector
from .core.relations import RelationRegistry, RelationResolver
from .core.serialization import ItemSerializer
from .core.types import ColumnTypeMap
from .core.utils import as_bool, as_int, is_blank, primary_key_name
from .errors import (
    CreateError,
    CrudError,
    DeleteError,
    NotFoundError,
    QueryExecutionError,
    UpdateError,
    ValidationError,
)
from .jobs import JobDispatcher, JobQueue, queue_from_settings
from .rules import BULK_ACTIONS, RuleBuilder

logger = logging.getLogger(__name__)

_MISS = object()

# Process-wide defaults so reflection and relation metadata are shared by every
# service instance (services themselves are request-scoped).
_default_registry = RelationRegistry()


@lru_cache(maxsize=1)
def default_cache() -> Optional[CacheBackend]:
    return cache_from_settings(get_settings())


@lru_cache(maxsize=1)
def default_reflector() -> SchemaReflector:
    return SchemaReflector(default_cache(), ttl=get_settings().column_types_ttl)


def compose_items(data: Dict[str, Any]) -> List[Dict[str, Any]]:
    """Expand a bulk payload: every entry of ``items`` inherits the top-level values."""
    values = {k: v for k, v in data.items() if k != 'items'}
    items = data.get('items')
    if not items:
        return [values]
    return [{**values, **dict(item)} for item in items]


def _as_name_list(value: Any) -> List[str]:
    if is_blank(value):
        return []
    if isinstance(value, str):
        return [v.strip() for v in value.split(',') if v.strip()]
    return [str(v) for v in value]


class CrudService:
    model: Any = None
    name: Optional[str] = None
    load_relations: Sequence[str] = ()
    soft_delete_column = 'deleted_at'
    updated_at_column = 'updated_at'
    is_transaction_enabled = True

    def __init__(
        self,
        session,
        model=None,
        *,
        settings: Optional[CrudSettings] = None,
        cache: Optional[CacheBackend] = None,
        reflector: Optional[SchemaReflector] = None,
        registry: Optional[RelationRegistry] = None,
        serializer: Optional[ItemSerializer] = None,
        job_queue: Optional[JobQueue] = None,
        name: Optional[str] = None,
        is_cacheable: Optional[bool] = None,
    ):
        self.session = session
        self.model = model or self.model
        if self.model is None:
            raise ValueError(f"{type(self).__name__} has no model")
        self.settings = settings or get_settings()
        self.cache = cache if cache is not None else default_cache()
        self.reflector = reflector or default_reflector()
        self.resolver = RelationResolver(registry or _default_registry)
        self.serializer = serializer or ItemSerializer()
        self.hierarchy = HierarchicalResponseBuilder(self.serializer)
        queue = job_queue if job_queue is not None else queue_from_settings(self.settings)
        self.dispatcher = JobDispatcher.from_settings(queue, self.settings)
        self.name = name or self.name or self.table_name
        pk = self.settings.primary_key
        self.pk_name = pk if self.table.c.get(pk) is not None else primary_key_name(self.model)
        if is_cacheable is None:
            is_cacheable = self.settings.cache.enabled
        self.is_cacheable = bool(is_cacheable) and self.cache is not None
        self._cache_checked = False
        self._custom_rules: Dict[str, Any] = {}
        self._in_bulk = False
        self.is_job = False
        self.instance = None
        self.extra_data: Dict[str, Any] = {}

    # --- model helpers -------------------------------------------------------------
    @property
    def table(self):
        return self.model.__table__

    @property
    def table_name(self) -> str:
        return self.table.name

    @property
    def pk_column(self):
        return self.table.c[self.pk_name]

    def is_soft_delete(self) -> bool:
        return bool(self.soft_delete_column) and self.table.c.get(self.soft_delete_column) is not None

    def _attr_key(self, column_name: str) -> str:
        col = self.table.c[column_name]
        return sa_inspect(self.model).get_property_by_column(col).key

    def column_values(self, data: Dict[str, Any], *, skip: Iterable[str] = ()) -> Dict[str, Any]:
        """Attribute values for the keys of ``data`` that are mapped columns."""
        skip = set(skip)
        return {
            self._attr_key(col.name): data[col.name]
            for col in self.table.columns
            if col.name in data and col.name not in skip
        }

    def serialize(self, entity, exclude: Iterable[str] = ()) -> Dict[str, Any]:
        return self.serializer(entity, exclude)

    @property
    def adapter(self):
        return self.reflector.adapter_for(self.session)

    async def column_types(self) -> ColumnTypeMap:
        return await self.reflector.get_column_types(self.session, self.model)

    # --- rules -------------------------------------------------------------------------
    def set_rules(self, action: str, fields: Dict[str, Any], replace: bool = False) -> 'CrudService':
        self._custom_rules[action] = (fields, replace)
        return self

    async def rule_builder(self) -> RuleBuilder:
        builder = RuleBuilder(self.model, await self.column_types(), pk_name=self.pk_name)
        for action, (fields, replace) in self._custom_rules.items():
            builder.extend(action, fields, replace)
        return builder

    async def validate(self, action: str, data: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        builder = await self.rule_builder()
        return builder.validate(action, data)

    async def check_foreign_keys(self, data: Dict[str, Any]) -> None:
        """Every foreign-key value in ``data`` must reference an existing row."""
        for col in self.table.columns:
            if col.name not in data or data[col.name] is None:
                continue
            for fk in col.foreign_keys:
                target = fk.column
                stmt = select(literal(1)).select_from(target.table).where(target == data[col.name]).limit(1)
                result = await self.execute(stmt)
                if result.first() is None:
                    msg = f"{col.name}: the selected value {data[col.name]!r} does not exist in {target.table.name}"
                    raise ValidationError(msg, errors=[{'field': col.name, 'message': msg, 'type': 'exists'}])

    # --- execution ------------------------------------------------------------------
    async def execute(self, stmt):
        try:
            return await self.session.execute(stmt)
        except SQLAlchemyError as e:
            logger.error(f"Query on '{self.table_name}' failed: {e}")
            raise QueryExecutionError(str(e), context={'model': self.model.__name__}) from e

    async def fetch(self, plan: QueryPlan) -> List[Any]:
        result = await self.execute(plan.statement())
        return list(result.scalars().unique().all())

    async def count(self, plan: QueryPlan) -> int:
        result = await self.execute(plan.count_statement())
        return int(result.scalar_one())

    # --- plan building ---------------------------------------------------------------
    def new_plan(self) -> QueryPlan:
        plan = QueryPlan(self.model, self.pk_name)
        for path in self.load_relations:
            plan.add_eager_load(path)
        return plan

    def apply_trashed_scope(self, plan: QueryPlan, data: Dict[str, Any]) -> None:
        if not self.is_soft_delete():
            return
        col = self.table.c[self.soft_delete_column]
        status = as_int(data.get('trashed_status'), 0)
        if status == -1:
            plan.add_where(col.isnot(None))
        elif status != 1:
            plan.add_where(col.is_(None))

    def apply_incremental_sync(self, plan: QueryPlan, data: Dict[str, Any]) -> None:
        value = data.get('updated_at')
        col = self.table.c.get(self.updated_at_column) if self.updated_at_column else None
        if col is None or is_blank(value):
            return
        if isinstance(value, date) and not isinstance(value, datetime):
            value = datetime.combine(value, time.min)
        plan.add_where(col >= value)

    async def build_plan(self, data: Dict[str, Any], column_types: ColumnTypeMap, group_specs: Optional[List[GroupSpec]] = None) -> QueryPlan:
        adapter = self.adapter
        plan = self.new_plan()
        parsed = parse_filter_request(data, column_types)
        compiler = FilterCompiler(adapter)
        compiler.apply_search(plan, column_types, parsed)
        compiler.apply_order(plan, column_types, parsed)
        self.apply_trashed_scope(plan, data)
        self.apply_incremental_sync(plan, data)
        if group_specs:
            GroupByPlanner(adapter, self.resolver).apply_grouping(plan, column_types, group_specs, data)
        logger.debug(f"Plan for {self.name}: {plan.describe()}")
        return plan

    # --- caching -------------------------------------------------------------------
    async def validate_cache(self) -> bool:
        """Check the backend once per service; may switch caching off."""
        if not self.is_cacheable or self.cache is None:
            return False
        if self._cache_checked:
            return self.is_cacheable
        self._cache_checked = True
        cfg = self.settings.cache
        try:
            await self.cache.ping()
        except Exception as e:
            msg = f"Cache backend '{self.cache.name}' is not available: {e}."
            if cfg.auto_disable_on_error:
                self.is_cacheable = False
                msg += ' Caching has been disabled.'
            logger.warning(msg)
            return self.is_cacheable
        if cfg.validate_tagging and not self.cache.supports_tags:
            msg = f"Cache backend '{self.cache.name}' does not support tagging."
            if cfg.auto_disable_on_error:
                self.is_cacheable = False
                msg += ' Caching has been disabled.'
            else:
                msg += ' Cached entries cannot be invalidated by table.'
            logger.warning(msg)
        return self.is_cacheable

    def cache_key(self, kind: str, data: Dict[str, Any]) -> str:
        raw = json.dumps(data, sort_keys=True, default=str)
        return f"{self.table_name}:{kind}:{hashlib.sha1(raw.encode('utf-8')).hexdigest()}"

    async def cached(self, key: str, factory: Callable[[], Awaitable[Any]]) -> Any:
        if not await self.validate_cache():
            return await factory()
        try:
            hit = await self.cache.get(key, _MISS)
        except Exception as e:
            logger.warning(f"Cache read failed for '{key}': {e}")
            hit = _MISS
        if hit is not _MISS:
            return hit
        value = await factory()
        try:
            await self.cache.set(key, value, self.settings.cache.ttl, [self.table_name])
        except Exception as e:
            logger.warning(f"Cache write failed for '{key}': {e}")
        return value

    async def flush_model_cache(self, tag: Optional[str] = None) -> None:
        if not self.is_cacheable or self.cache is None:
            return
        try:
            await self.cache.flush_tags([tag or self.table_name])
        except Exception as e:
            logger.warning(f"Failed to flush cache for '{tag or self.table_name}': {e}")

    # --- hooks ---------------------------------------------------------------------
    async def before_index(self, data: Dict[str, Any]) -> None:
        pass

    async def after_index(self, payload: Dict[str, Any]) -> None:
        pass

    async def before_show(self, data: Dict[str, Any]) -> None:
        pass

    async def after_show(self, payload: Dict[str, Any]) -> None:
        pass

    async def before_create(self, data: Dict[str, Any]) -> None:
        pass

    async def after_create(self, entity) -> None:
        await self.flush_model_cache()

    async def before_update(self, entity, data: Dict[str, Any]) -> None:
        pass

    async def after_update(self, entity) -> None:
        await self.flush_model_cache()

    async def before_delete(self, entity, data: Dict[str, Any]) -> None:
        pass

    async def after_delete(self, entity) -> None:
        await self.flush_model_cache()

    async def before_restore(self, entity, data: Dict[str, Any]) -> None:
        pass

    async def after_restore(self, entity) -> None:
        await self.flush_model_cache()

    async def before_bulk_action(self, data: Dict[str, Any]) -> None:
        pass

    async def after_bulk_action(self, entities: List[Any]) -> None:
        await self.flush_model_cache()

    # --- read operations ---------------------------------------------------------------
    async def index(self, data: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        data = await self.validate('index', data)
        await self.before_index(data)
        column_types = await self.column_types()
        specs = parse_group_bies(data.get('group_bies'))
        is_all = as_bool(data.get('is_all'), False)
        hierarchical = as_bool(data.get('hierarchical'), False) and bool(specs)
        # a group config with its own page takes over pagination from the top level
        per_group_pages = any(s.config is not None and s.config.page is not None for s in specs)
        page = as_int(data.get('page'), 1) or 1
        per_page = as_int(data.get('limit'), self.settings.default_limit) or self.settings.default_limit

        async def produce() -> Dict[str, Any]:
            plan = await self.build_plan(data, column_types, specs)
            if hierarchical:
                items = await self.fetch(plan)
                tree = self.hierarchy.build(
                    items,
                    specs,
                    hierarchical=True,
                    paginate=not (is_all or per_group_pages),
                    per_page=per_page,
                    page=page,
                    include_relations=_as_name_list(data.get('include_relations')),
                )
                if isinstance(tree, GroupPage):
                    return tree.to_dict()
                return {'data': render(tree)}
            if is_all:
                return {'data': self.serializer.many(await self.fetch(plan))}
            pagination = Pagination.for_request(page, per_page, await self.count(plan))
            plan.paginate(pagination.current, pagination.per_page)
            items = await self.fetch(plan)
            return {'data': self.serializer.many(items), 'pagination': pagination.to_dict()}

        if self.is_cacheable:
            payload = dict(await self.cached(self.cache_key('index', data), produce))
        else:
            payload = await produce()
        payload['extra_data'] = dict(self.extra_data)
        await self.after_index(payload)
        return payload

    async def get_by_id(self, data: Dict[str, Any]):
        """Load the row named by the primary key in ``data`` (trashed rows included)."""
        if self.pk_name not in (data or {}):
            raise NotFoundError(f"Request key not found with name: {self.pk_name}", model=self.model)
        key = data[self.pk_name]
        plan = self.new_plan()
        plan.add_where(self.pk_column == key)
        result = await self.execute(plan.statement())
        entity = result.scalars().first()
        if entity is None:
            raise NotFoundError(f"Not found with {self.pk_name}: {key}", model=self.model, record_id=key)
        self.instance = entity
        return entity

    async def show(self, data: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        data = await self.validate('show', data)
        await self.before_show(data)

        async def produce() -> Dict[str, Any]:
            return self.serialize(await self.get_by_id(data))

        if self.is_cacheable:
            payload = await self.cached(self.cache_key('show', {self.pk_name: data[self.pk_name]}), produce)
        else:
            payload = await produce()
        await self.after_show(payload)
        return payload

    # --- write operations ----------------------------------------------------------------
    async def _run_write(self, operation: str, error_cls, work: Callable[[], Awaitable[Any]]):
        try:
            entity = await work()
            await self.session.flush()
            if self.is_transaction_enabled and not self._in_bulk:
                await self.session.commit()
        except Exception as e:
            if self._in_bulk:
                if isinstance(e, CrudError):
                    raise
                raise error_cls(str(e), context={'model': self.model.__name__}) from e
            if self.is_transaction_enabled:
                await self.session.rollback()
            if self.is_job:
                logger.error(f"Cannot {operation} {self.model.__name__}: {e}")
                return None
            if isinstance(e, CrudError):
                raise
            raise error_cls(str(e), context={'model': self.model.__name__}) from e
        if entity is not None and not self._in_bulk:
            await self._reload(entity)
        logger.info(f"{self.model.__name__} {operation}d")
        return entity

    async def _reload(self, entity) -> None:
        state = sa_inspect(entity)
        if state.was_deleted or state.detached:
            return
        await self.session.refresh(entity)

    async def create(self, data: Optional[Dict[str, Any]] = None):
        data = await self.validate('create', data)

        async def work():
            await self.check_foreign_keys(data)
            await self.before_create(data)
            entity = self.model(**self.column_values(data))
            self.session.add(entity)
            return entity

        entity = await self._run_write('create', CreateError, work)
        if entity is not None:
            self.instance = entity
            await self.after_create(entity)
        return entity

    async def update(self, data: Optional[Dict[str, Any]] = None):
        data = await self.validate('update', data)

        async def work():
            entity = await self.get_by_id(data)
            await self.check_foreign_keys(data)
            await self.before_update(entity, data)
            for key, value in self.column_values(data, skip=[self.pk_name]).items():
                setattr(entity, key, value)
            return entity

        entity = await self._run_write('update', UpdateError, work)
        if entity is not None:
            self.instance = entity
            await self.after_update(entity)
        return entity

    async def delete(self, data: Optional[Dict[str, Any]] = None):
        data = await self.validate('delete', data)

        async def work():
            entity = await self.get_by_id(data)
            await self.before_delete(entity, data)
            if self.is_soft_delete() and not as_bool(data.get('is_force_destroy'), False):
                setattr(entity, self._attr_key(self.soft_delete_column), datetime.now())
            else:
                await self.session.delete(entity)
            return entity

        entity = await self._run_write('delete', DeleteError, work)
        if entity is not None:
            await self.after_delete(entity)
        return entity

    async def restore(self, data: Optional[Dict[str, Any]] = None):
        data = await self.validate('restore', data)

        async def work():
            entity = await self.get_by_id(data)
            if self.is_soft_delete():
                await self.before_restore(entity, data)
                setattr(entity, self._attr_key(self.soft_delete_column), None)
            return entity

        entity = await self._run_write('restore', UpdateError, work)
        if entity is not None:
            await self.after_restore(entity)
        return entity

    async def create_or_update(self, data: Dict[str, Any], conditions: Optional[Dict[str, Any]] = None):
        """Update the first row matching ``conditions`` (or the primary key in ``data``), else create."""
        conditions = {k: v for k, v in (conditions or {}).items() if self.table.c.get(k) is not None}
        if conditions:
            stmt = select(self.model).where(*[self.table.c[k] == v for k, v in conditions.items()]).limit(1)
            found = (await self.execute(stmt)).scalars().first()
            if found is not None:
                return await self.update({**data, self.pk_name: getattr(found, self._attr_key(self.pk_name))})
        if self.pk_name in data and data[self.pk_name] is not None:
            stmt = select(self.model).where(self.pk_column == data[self.pk_name]).limit(1)
            if (await self.execute(stmt)).scalars().first() is not None:
                return await self.update(data)
        return await self.create(data)

    async def _bulk_one(self, action: str, item: Dict[str, Any]):
        if action == 'create':
            return await self.create(item)
        if action == 'update':
            return await self.update(item)
        if action == 'show':
            return await self.get_by_id(await self.validate('show', item))
        if action == 'delete':
            return await self.delete(item)
        return await self.restore(item)

    async def bulk_action(self, data: Optional[Dict[str, Any]] = None) -> Optional[Dict[str, Any]]:
        """Run every composed item's ``bulk_action`` in one transaction."""
        data = await self.validate('bulk_action', data)
        items = compose_items(data)
        await self.before_bulk_action(data)
        changed: List[Any] = []
        self._in_bulk = True
        try:
            for item in items:
                action = str(item.get('bulk_action') or '').lower()
                if action not in BULK_ACTIONS:
                    msg = f"bulk_action must be one of: {', '.join(BULK_ACTIONS)}"
                    raise ValidationError(msg, errors=[{'field': 'bulk_action', 'message': msg, 'type': 'in'}])
                changed.append(await self._bulk_one(action, item))
            if self.is_transaction_enabled:
                await self.session.commit()
        except Exception as e:
            if self.is_transaction_enabled:
                await self.session.rollback()
            if self.is_job:
                logger.error(f"Bulk action on {self.model.__name__} failed: {e}")
                return None
            if isinstance(e, CrudError):
                raise
            raise CrudError(str(e), context={'model': self.model.__name__}) from e
        finally:
            self._in_bulk = False
        for entity in changed:
            await self._reload(entity)
        self.extra_data.update({'total_count': len(items), 'success_count': len(changed)})
        await self.after_bulk_action(changed)
        return {'data': self.serializer.many(changed), 'extra_data': dict(self.extra_data)}

    # --- background jobs ---------------------------------------------------------------
    async def create_job(self, data: Optional[Dict[str, Any]] = None) -> bool:
        data = await self.validate('create', data)
        return await self.dispatcher.dispatch(self.name, 'create', data, lambda: self.create(data))

    async def update_job(self, data: Optional[Dict[str, Any]] = None) -> bool:
        data = await self.validate('update', data)
        return await self.dispatcher.dispatch(self.name, 'update', data, lambda: self.update(data))

    async def bulk_action_job(self, data: Optional[Dict[str, Any]] = None) -> bool:
        data = await self.validate('bulk_action', data)
        if data.get('bulk_action') not in ('create', 'update'):
            msg = 'bulk_action must be create or update when queued as a job'
            raise ValidationError(msg, errors=[{'field': 'bulk_action', 'message': msg, 'type': 'in'}])
        return await self.dispatcher.dispatch(self.name, 'bulk_action', data, lambda: self.bulk_action(data))


__all__ = ['CrudService', 'compose_items', 'default_cache', 'default_reflector']
