from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple
from sqlalchemy import distinct, func, inspect as sa_inspect, select
from sqlalchemy.orm import aliased, selectinload

from .utils import primary_key_name

TOP_N = 'top_n'
REPRESENTATIVE = 'representative'
RANK_LABEL = 'rn'


def _table_key(table) -> str:
    return getattr(table, 'fullname', None) or getattr(table, 'name', None) or repr(table)


def _column_key(col) -> str:
    tbl = getattr(col, 'table', None)
    return f"{_table_key(tbl) if tbl is not None else ''}.{getattr(col, 'name', str(col))}"


def _direction(expr, direction: str):
    return expr.desc() if (direction or '').lower() == 'desc' else expr.asc()


def merge_eager_paths(paths) -> List[str]:
    """De-duplicate relation paths, dropping paths that prefix a longer one.

    ``['block', 'block.manager', 'object', 'object']`` -> ``['block.manager', 'object']``
    """
    uniq: List[str] = []
    for p in paths or []:
        p = (p or '').strip('.')
        if p and p not in uniq:
            uniq.append(p)
    return [p for p in uniq if not any(o != p and o.startswith(p + '.') for o in uniq)]


@dataclass
class JoinStep:
    table: Any
    onclause: Any
    relation: str = ''


@dataclass
class WindowSpec:
    """``ROW_NUMBER() OVER (PARTITION BY ... ORDER BY ...)`` filter.

    ``top_n`` keeps ``rn <= max_rank``; ``representative`` keeps ``rn = 1``.
    """
    partition_by: List[Any]
    order_by: List[Tuple[Any, str]]
    direction: str = 'asc'
    max_rank: int = 1
    mode: str = REPRESENTATIVE


@dataclass
class QueryPlan:
    """Everything a single request accumulates before a SELECT is rendered."""
    model: Any
    pk_name: str = ''
    wheres: List[Any] = field(default_factory=list)
    joins: List[JoinStep] = field(default_factory=list)
    orders: List[Tuple[str, str]] = field(default_factory=list)
    group_by: List[Any] = field(default_factory=list)
    eager_loads: List[str] = field(default_factory=list)
    window: Optional[WindowSpec] = None
    limit: Optional[int] = None
    offset: Optional[int] = None

    def __post_init__(self):
        if not self.pk_name:
            self.pk_name = primary_key_name(self.model)

    @property
    def table(self):
        return self.model.__table__

    @property
    def pk_column(self):
        col = self.table.c.get(self.pk_name)
        if col is None:
            col = list(self.table.primary_key.columns)[0]
        return col

    # --- accumulation -----------------------------------------------------------
    def add_where(self, expr) -> None:
        self.wheres.append(expr)

    def joined_tables(self) -> List[str]:
        return [_table_key(j.table) for j in self.joins]

    def add_join(self, step: JoinStep) -> bool:
        """Append a LEFT JOIN unless the table is the root or already joined."""
        key = _table_key(step.table)
        if key == _table_key(self.table) or key in self.joined_tables():
            return False
        self.joins.append(step)
        return True

    def add_order(self, column: str, direction: str = 'asc') -> None:
        self.orders.append((column, (direction or 'asc').lower()))

    def add_group_by(self, col) -> None:
        if _column_key(col) not in [_column_key(c) for c in self.group_by]:
            self.group_by.append(col)

    def add_eager_load(self, path: str) -> None:
        if path and path not in self.eager_loads:
            self.eager_loads.append(path)

    def eager_load_paths(self) -> List[str]:
        return merge_eager_paths(self.eager_loads)

    def paginate(self, page: int, per_page: int) -> None:
        page = max(int(page or 1), 1)
        self.limit = int(per_page)
        self.offset = (page - 1) * int(per_page)

    # --- rendering ----------------------------------------------------------------
    def _from_clause(self):
        frm = self.table
        for step in self.joins:
            frm = frm.outerjoin(step.table, step.onclause)
        return frm

    def _loader_options(self, entity) -> List[Any]:
        opts = []
        for path in self.eager_load_paths():
            current_cls = self.model
            loader = None
            for idx, name in enumerate(path.split('.')):
                rels = sa_inspect(current_cls).relationships
                if name not in rels:
                    loader = None
                    break
                attr = getattr(entity if idx == 0 else current_cls, name)
                loader = selectinload(attr) if loader is None else loader.selectinload(attr)
                current_cls = rels[name].mapper.class_
            if loader is not None:
                opts.append(loader)
        return opts

    def _windowed(self):
        w = self.window
        ordering = [_direction(expr, d) for expr, d in w.order_by]
        # primary key as final tie-breaker keeps ranks deterministic
        ordering.append(self.pk_column.asc())
        rn = func.row_number().over(partition_by=list(w.partition_by), order_by=ordering).label(RANK_LABEL)
        inner = select(*self.table.c, rn).select_from(self._from_clause())
        if self.wheres:
            inner = inner.where(*self.wheres)
        subq = inner.subquery('ranked')
        entity = aliased(self.model, subq)
        if w.mode == TOP_N:
            stmt = select(entity).where(subq.c[RANK_LABEL] <= int(w.max_rank))
        else:
            stmt = select(entity).where(subq.c[RANK_LABEL] == 1)
        return stmt, entity, subq.c

    def _base(self):
        if self.window is not None:
            return self._windowed()
        stmt = select(self.model).select_from(self._from_clause())
        if self.wheres:
            stmt = stmt.where(*self.wheres)
        if self.group_by:
            stmt = stmt.group_by(*self.group_by)
        return stmt, self.model, self.table.c

    def statement(self, *, with_loaders: bool = True, with_pagination: bool = True):
        stmt, entity, cols = self._base()
        order_cols = [(cols[name], d) for name, d in self.orders if name in cols]
        if not order_cols:
            order_cols = [(cols[self.pk_column.name], 'asc')]
        stmt = stmt.order_by(*[_direction(c, d) for c, d in order_cols])
        if with_loaders:
            opts = self._loader_options(entity)
            if opts:
                stmt = stmt.options(*opts)
        if with_pagination:
            if self.limit is not None:
                stmt = stmt.limit(self.limit)
            if self.offset:
                stmt = stmt.offset(self.offset)
        return stmt

    def count_statement(self):
        """Count of distinct root rows.

        To-many joins (filters or window partitions over a collection) repeat a
        root row; those repeats are collapsed the same way ``unique()`` does on fetch.
        """
        inner = self.statement(with_loaders=False, with_pagination=False).order_by(None).subquery()
        return select(func.count(distinct(inner.c[self.pk_column.name])))

    def describe(self) -> Dict[str, Any]:
        """Compact, loggable summary."""
        return {
            'model': getattr(self.model, '__name__', str(self.model)),
            'wheres': len(self.wheres),
            'joins': self.joined_tables(),
            'orders': list(self.orders),
            'group_by': [_column_key(c) for c in self.group_by],
            'eager_loads': self.eager_load_paths(),
            'window': None if self.window is None else {
                'mode': self.window.mode,
                'partition_by': [_column_key(c) for c in self.window.partition_by],
                'max_rank': self.window.max_rank,
            },
            'limit': self.limit,
            'offset': self.offset,
        }


__all__ = [
    'QueryPlan',
    'WindowSpec',
    'JoinStep',
    'merge_eager_paths',
    'TOP_N',
    'REPRESENTATIVE',
    'RANK_LABEL',
]
