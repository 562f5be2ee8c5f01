"""BerryCRUD public API and lightweight lazy exports.

Importing the package does not pull in SQLAlchemy-heavy submodules (or
Celery/Redis); names resolve on first attribute access.

Exposes:
- CrudService, compose_items
- SchemaReflector, FilterCompiler, parse_filter_request, RelationResolver,
  RelationRegistry, GroupByPlanner, parse_group_bies, HierarchicalResponseBuilder
- QueryPlan, Pagination, ItemSerializer, SemanticType
- MemoryCache, RedisCache, CeleryJobQueue, JobDispatcher, register_celery_task
- RuleBuilder, CrudSettings, get_settings and the error classes
"""
from __future__ import annotations

_EXPORTS = {
    'CrudService': '.service',
    'compose_items': '.service',
    'SchemaReflector': '.core.reflection',
    'FilterCompiler': '.core.filters',
    'parse_filter_request': '.core.filters',
    'RelationResolver': '.core.relations',
    'RelationRegistry': '.core.relations',
    'GroupByPlanner': '.core.grouping',
    'parse_group_bies': '.core.grouping',
    'HierarchicalResponseBuilder': '.core.hierarchy',
    'QueryPlan': '.core.plan',
    'Pagination': '.core.pagination',
    'ItemSerializer': '.core.serialization',
    'SemanticType': '.core.types',
    'MemoryCache': '.cache',
    'RedisCache': '.cache',
    'CeleryJobQueue': '.jobs',
    'JobDispatcher': '.jobs',
    'register_celery_task': '.jobs',
    'RuleBuilder': '.rules',
    'CrudSettings': '.config',
    'get_settings': '.config',
    'CrudError': '.errors',
    'NotFoundError': '.errors',
    'ValidationError': '.errors',
    'CreateError': '.errors',
    'UpdateError': '.errors',
    'DeleteError': '.errors',
    'QueryExecutionError': '.errors',
    'JobDispatchError': '.errors',
}


def __getattr__(name: str):  # PEP 562 lazy exports
    import importlib as _importlib
    module = _EXPORTS.get(name)
    if module is None:
        raise AttributeError(name)
    return getattr(_importlib.import_module(module, __name__), name)


__all__ = list(_EXPORTS)
