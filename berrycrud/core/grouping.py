"""Dynamic GROUP BY planning.

``group_bies`` arrives as a list of paths, a mapping ``path -> config`` or
either of those JSON-encoded. Each entry becomes a ``GroupSpec``; the planner
then picks one of three renderings:

* top-N per group: ``ROW_NUMBER() OVER (PARTITION BY col ORDER BY ...)``
  filtered ``rn <= limit``, for the first spec with ``limit`` and no ``page``;
* one representative row per group (same window, ``rn = 1``) when the caller
  asked for a specific row or the dialect rejects bare GROUP BY columns;
* plain ``GROUP BY``. Which row supplies the non-grouped columns is then up
  to the database.
"""
from __future__ import annotations
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Tuple

from .filters import ORDER_PREFIX, like_group_search
from .plan import REPRESENTATIVE, TOP_N, WindowSpec
from .relations import RelationResolver, ResolvedPath
from .types import ColumnTypeMap
from .utils import as_bool, as_int, decode_json_payload, is_blank

logger = logging.getLogger(__name__)

GROUP_AGGREGATES = ('first', 'last', 'min', 'max')
_DIRECTIONS = ('asc', 'desc')


def _direction_or(value: Any, default: Optional[str] = 'asc') -> Optional[str]:
    if isinstance(value, str) and value.strip().lower() in _DIRECTIONS:
        return value.strip().lower()
    return default


def _column_list(value: Any) -> List[str]:
    if value is None or value is False:
        return []
    if isinstance(value, str):
        return [v.strip() for v in value.split(',') if v.strip()]
    if isinstance(value, (list, tuple)):
        return [str(v) for v in value if not is_blank(v)]
    return []


@dataclass
class GroupConfig:
    limit: Optional[int] = None
    page: Optional[int] = None
    order_by: Optional[str] = None
    order_direction: str = 'asc'
    search: Any = None
    aggregations: Dict[str, Any] = field(default_factory=dict)
    inline_order: Optional[Tuple[str, str]] = None
    is_all: bool = False

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any]) -> 'GroupConfig':
        limit = as_int(raw.get('limit'))
        page = as_int(raw.get('page'))
        inline_order = None
        for key, value in raw.items():
            if isinstance(key, str) and key.startswith(ORDER_PREFIX):
                direction = _direction_or(value, None)
                if direction is not None:
                    inline_order = (key[len(ORDER_PREFIX):], direction)
                    break
        aggregations = raw.get('aggregations')
        return cls(
            limit=limit if limit and limit > 0 else None,
            page=page if page and page > 0 else None,
            order_by=str(raw['order_by']) if not is_blank(raw.get('order_by')) else None,
            order_direction=_direction_or(raw.get('order_direction')),
            search=raw.get('search'),
            aggregations=dict(aggregations) if isinstance(aggregations, Mapping) else {},
            inline_order=inline_order,
            is_all=as_bool(raw.get('is_all'), False),
        )

    @property
    def wants_top_n(self) -> bool:
        return self.limit is not None and self.page is None

    @property
    def aggregate_columns(self) -> Dict[str, List[str]]:
        return {fn: _column_list(self.aggregations.get(fn)) for fn in ('sum', 'avg', 'max', 'min')}

    @property
    def wants_count(self) -> bool:
        return as_bool(self.aggregations.get('count'), False)


@dataclass
class GroupSpec:
    path: str
    config: Optional[GroupConfig] = None

    @property
    def is_relation(self) -> bool:
        return '.' in self.path

    @property
    def relation_path(self) -> Optional[str]:
        return self.path.rsplit('.', 1)[0] if self.is_relation else None

    @property
    def column_name(self) -> str:
        return self.path.rsplit('.', 1)[-1]

    @property
    def implied_relation(self) -> Optional[str]:
        """Relation whose data a group node already carries.

        ``block.manager_id`` -> ``block``; ``object_id`` -> ``object``.
        """
        if self.is_relation:
            return self.path.split('.', 1)[0]
        if self.path.endswith('_id') and len(self.path) > 3:
            return self.path[:-3]
        return None


def _spec(path: Any, config: Any) -> Optional[GroupSpec]:
    if not isinstance(path, str) or not path.strip():
        logger.warning(f"Ignoring group spec with invalid path {path!r}")
        return None
    cfg = GroupConfig.from_mapping(config) if isinstance(config, Mapping) else None
    return GroupSpec(path.strip(), cfg)


def parse_group_bies(raw: Any) -> List[GroupSpec]:
    """Normalise every accepted ``group_bies`` shape into ``GroupSpec`` objects."""
    raw = decode_json_payload(raw)
    if is_blank(raw):
        return []
    specs: List[GroupSpec] = []
    if isinstance(raw, str):
        items = [(None, raw)]
    elif isinstance(raw, Mapping):
        items = list(raw.items())
    elif isinstance(raw, (list, tuple)):
        items = []
        for entry in raw:
            if isinstance(entry, Mapping):
                items.extend(entry.items())
            else:
                items.append((None, entry))
    else:
        logger.warning(f"Unsupported group_bies payload of type {type(raw).__name__}")
        return []
    for key, value in items:
        # {"0": "object_id"} is a list that went through an associative array
        if key is None or (isinstance(key, str) and key.isdigit() and isinstance(value, str)) or isinstance(key, int):
            spec = _spec(value, None)
        else:
            spec = _spec(key, value)
        if spec is not None and spec.path not in [s.path for s in specs]:
            specs.append(spec)
    return specs


class GroupByPlanner:
    def __init__(self, adapter, resolver: Optional[RelationResolver] = None):
        self.adapter = adapter
        self.resolver = resolver or RelationResolver()

    def apply_grouping(self, plan, column_types: ColumnTypeMap, group_specs: Any, data: Optional[Mapping[str, Any]] = None):
        data = data or {}
        specs = group_specs if _is_spec_list(group_specs) else parse_group_bies(group_specs)
        if not specs:
            return plan

        resolved: List[Tuple[GroupSpec, ResolvedPath]] = []
        for spec in specs:
            rp = self.resolver.resolve(plan.model, spec.path)
            if rp is None:
                continue
            self.resolver.apply(plan, rp)
            resolved.append((spec, rp))
            if spec.config is not None and not is_blank(spec.config.search):
                stype = None if rp.is_relation else column_types.get(rp.column_name)
                plan.add_where(like_group_search(rp.column, spec.config.search, stype))
        if not resolved:
            return plan

        top = [(s, rp) for s, rp in resolved if s.config is not None and s.config.wants_top_n]
        if top:
            self._apply_top_n(plan, top)
            return plan

        for s, _ in resolved:
            if s.config is not None and s.config.page is not None:
                logger.info(f"Group '{s.path}' requests page {s.config.page}; pagination applies to its group data")

        order_name, direction, explicit = self._representative_order(plan, resolved, data)
        group_cols = [rp.column for _, rp in resolved]
        if explicit:
            plan.window = WindowSpec(
                partition_by=group_cols,
                order_by=[(plan.table.c[order_name], direction)],
                direction=direction,
                max_rank=1,
                mode=REPRESENTATIVE,
            )
        elif self.adapter.supports_bare_group_by:
            for col in group_cols:
                plan.add_group_by(col)
        else:
            logger.info(
                f"Dialect '{self.adapter.name}' rejects bare GROUP BY columns; "
                f"selecting one row per group ordered by '{plan.pk_name}'"
            )
            plan.window = WindowSpec(
                partition_by=group_cols,
                order_by=[(plan.pk_column, 'asc')],
                max_rank=1,
                mode=REPRESENTATIVE,
            )
        return plan

    # --- helpers ------------------------------------------------------------------
    def _root_column(self, plan, name: Optional[str], context: str) -> str:
        if name and plan.table.c.get(name) is not None:
            return name
        if name:
            logger.warning(f"Order column '{name}' for {context} does not exist on '{plan.table.name}'; using '{plan.pk_name}'")
        return plan.pk_column.name

    def _apply_top_n(self, plan, top) -> None:
        spec, rp = top[0]
        if len(top) > 1:
            logger.warning(
                f"Only one per-group limit is applied per query; using '{spec.path}' "
                f"and ignoring {[s.path for s, _ in top[1:]]}"
            )
        cfg = spec.config
        order_name = self._root_column(plan, cfg.order_by, f"group '{spec.path}'")
        plan.window = WindowSpec(
            partition_by=[rp.column],
            order_by=[(plan.table.c[order_name], cfg.order_direction)],
            direction=cfg.order_direction,
            max_rank=cfg.limit,
            mode=TOP_N,
        )

    def _representative_order(self, plan, resolved, data) -> Tuple[str, str, bool]:
        aggregate = data.get('group_aggregate')
        if aggregate is not None:
            aggregate = str(aggregate).strip().lower()
            if aggregate not in GROUP_AGGREGATES:
                logger.warning(f"Unknown group_aggregate '{aggregate}'; expected one of {GROUP_AGGREGATES}")
                aggregate = None
        order_by = data.get('group_order_by') if not is_blank(data.get('group_order_by')) else None
        direction = _direction_or(data.get('group_order_direction'))
        if order_by is None:
            for spec, _ in resolved:
                cfg = spec.config
                if cfg is None:
                    continue
                if cfg.inline_order is not None:
                    order_by, direction = cfg.inline_order
                    break
                if cfg.order_by is not None:
                    order_by, direction = cfg.order_by, cfg.order_direction
                    break
        explicit = aggregate is not None or order_by is not None
        name = self._root_column(plan, str(order_by) if order_by is not None else None, 'group representative')
        if aggregate in ('last', 'max'):
            direction = 'desc'
        return name, direction, explicit


def _is_spec_list(value: Any) -> bool:
    return isinstance(value, list) and all(isinstance(v, GroupSpec) for v in value) and bool(value)


__all__ = [
    'GroupConfig',
    'GroupSpec',
    'GroupByPlanner',
    'parse_group_bies',
    'GROUP_AGGREGATES',
]
