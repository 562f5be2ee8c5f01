"""Reshape a flat, already-filtered result into nested groups.

Items are partitioned level by level following the ``group_bies`` order::

    [{'group': {...}, 'data': [...], 'pagination'?: {...}, 'aggregations'?: {...}}, ...]

The tree is built from loaded attributes only; relations referenced by group
paths must have been eager-loaded by the query (the group-by planner does
this).
"""
from __future__ import annotations
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Sequence, Set, Union
from sqlalchemy import inspect as sa_inspect

from .grouping import GroupConfig, GroupSpec, parse_group_bies
from .pagination import Pagination, paginate_list
from .serialization import ItemSerializer

logger = logging.getLogger(__name__)


@dataclass
class GroupNode:
    group: Dict[str, Any]
    data: List[Any]
    pagination: Optional[Pagination] = None
    aggregations: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {'group': self.group}
        if self.pagination is not None:
            out['pagination'] = self.pagination.to_dict()
        out['data'] = [d.to_dict() if isinstance(d, GroupNode) else d for d in self.data]
        if self.aggregations is not None:
            out['aggregations'] = self.aggregations
        return out


@dataclass
class GroupPage:
    pagination: Pagination
    data: List[GroupNode]

    def to_dict(self) -> Dict[str, Any]:
        return {
            'pagination': self.pagination.to_dict(),
            'data': [n.to_dict() for n in self.data],
        }


Tree = Union[List[GroupNode], GroupPage]


def _loaded_attr(obj, name: str):
    """Attribute value without triggering a lazy load (None when unloaded)."""
    if obj is None:
        return None
    try:
        state = sa_inspect(obj)
    except Exception:
        return getattr(obj, name, None)
    if name in state.unloaded:
        return None
    return getattr(obj, name, None)


def column_value(obj, column_name: str):
    if obj is None:
        return None
    try:
        mapper = sa_inspect(type(obj))
        col = mapper.local_table.c.get(column_name)
        key = mapper.get_property_by_column(col).key if col is not None else column_name
    except Exception:
        key = column_name
    return _loaded_attr(obj, key)


def follow_relations(obj, relation_path: Optional[str]):
    if not relation_path:
        return obj
    for name in relation_path.split('.'):
        obj = _loaded_attr(obj, name)
        if obj is None:
            return None
    return obj


def _number(value):
    if isinstance(value, Decimal):
        return float(value)
    return value


def calculate_aggregations(items: Sequence[Any], config: GroupConfig, formatter=None) -> Dict[str, Any]:
    """``count``, ``sum_<col>``, ``avg_<col>``, ``max_<col>``, ``min_<col>`` over ``items``."""
    result: Dict[str, Any] = {}
    if config.wants_count:
        result['count'] = len(items)
    columns = config.aggregate_columns
    for fn in ('sum', 'avg', 'max', 'min'):
        for col in columns[fn]:
            values = [v for v in (column_value(i, col) for i in items) if v is not None]
            if fn == 'sum':
                result[f"sum_{col}"] = _number(sum(values)) if values else 0
            elif fn == 'avg':
                result[f"avg_{col}"] = _number(sum(values) / len(values)) if values else None
            else:
                picked = (max if fn == 'max' else min)(values) if values else None
                result[f"{fn}_{col}"] = formatter(picked) if formatter and picked is not None else _number(picked)
    return result


def implied_relations(specs: Iterable[GroupSpec], include_relations: Iterable[str] = ()) -> List[str]:
    """Relations whose data is carried by ancestor group nodes."""
    include = set(include_relations or ())
    out: List[str] = []
    for spec in specs:
        rel = spec.implied_relation
        if rel and rel not in include and rel not in out:
            out.append(rel)
    return out


class HierarchicalResponseBuilder:
    def __init__(self, serializer: Optional[ItemSerializer] = None):
        self.serializer = serializer or ItemSerializer()

    def build(
        self,
        items: Sequence[Any],
        group_specs: Any,
        hierarchical: bool = False,
        paginate: bool = False,
        per_page: int = 10,
        page: int = 1,
        include_relations: Optional[Iterable[str]] = None,
    ):
        """Return ``items`` unchanged in flat mode, a tree otherwise.

        ``paginate`` paginates the top-level groups (-> ``GroupPage``); a group
        config carrying ``page`` paginates the data of each of its nodes.
        """
        specs = group_specs if isinstance(group_specs, list) and all(isinstance(s, GroupSpec) for s in group_specs) else parse_group_bies(group_specs)
        if not hierarchical or not specs:
            return items
        exclude = set(implied_relations(specs, include_relations or ()))
        nodes = self._level(list(items), specs, 0, exclude, per_page)
        if paginate:
            page_nodes, pagination = paginate_list(nodes, page, per_page)
            return GroupPage(pagination=pagination, data=page_nodes)
        return nodes

    def _level(self, items: List[Any], specs: List[GroupSpec], level: int, exclude: Set[str], per_page: int) -> List[Any]:
        if level >= len(specs):
            return [self.serializer(i, exclude) for i in items]
        spec = specs[level]
        relation_path = spec.relation_path
        buckets: Dict[Any, List[Any]] = {}
        for item in items:
            value = column_value(follow_relations(item, relation_path), spec.column_name)
            if value is None:
                continue
            buckets.setdefault(_bucket_key(value), []).append(item)

        nodes: List[GroupNode] = []
        for group_items in buckets.values():
            node = GroupNode(group=self.group_metadata(group_items[0], spec), data=[])
            children = self._level(group_items, specs, level + 1, exclude, per_page)
            cfg = spec.config
            if cfg is not None and cfg.page is not None:
                node.data, node.pagination = paginate_list(children, cfg.page, cfg.limit or per_page)
            else:
                node.data = children
            if cfg is not None and cfg.aggregations:
                node.aggregations = calculate_aggregations(group_items, cfg, self.serializer.format_value)
            nodes.append(node)
        return nodes

    def group_metadata(self, item, spec: GroupSpec) -> Dict[str, Any]:
        if spec.is_relation:
            related = follow_relations(item, spec.relation_path)
            if related is not None:
                return self.serializer(related)
        return {spec.path: self.serializer.format_value(column_value(item, spec.path))}


def _bucket_key(value):
    try:
        hash(value)
        return value
    except TypeError:
        return repr(value)


def render(result) -> Any:
    """JSON-ready form of whatever ``build`` returned."""
    if isinstance(result, GroupPage):
        return result.to_dict()
    if isinstance(result, list) and result and isinstance(result[0], GroupNode):
        return [n.to_dict() for n in result]
    return result


__all__ = [
    'GroupNode',
    'GroupPage',
    'HierarchicalResponseBuilder',
    'calculate_aggregations',
    'implied_relations',
    'render',
]
