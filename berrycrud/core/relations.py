"""Relation registry and dotted-path resolution.

Relation metadata is read once per model from the SQLAlchemy mapper and kept
as plain ``RelationDescriptor`` records; resolution afterwards is dictionary
lookups only.
"""
from __future__ import annotations
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from sqlalchemy import inspect as sa_inspect

from .plan import JoinStep

logger = logging.getLogger(__name__)

MANY_TO_ONE = 'MANYTOONE'
ONE_TO_MANY = 'ONETOMANY'
MANY_TO_MANY = 'MANYTOMANY'


@dataclass(frozen=True, eq=False)
class RelationDescriptor:
    name: str
    parent: Any
    target: Any
    direction: str
    cardinality: str  # 'one' | 'many'
    foreign_key: Optional[str]
    owner_key: Optional[str]
    onclause: Any
    secondary: Any = None
    secondary_onclause: Any = None

    @property
    def target_table(self):
        return self.target.__table__

    @property
    def is_single(self) -> bool:
        return self.cardinality == 'one'

    @classmethod
    def from_property(cls, parent, prop) -> 'RelationDescriptor':
        direction = prop.direction.name
        foreign_key = owner_key = None
        pairs = list(prop.local_remote_pairs or [])
        if pairs and direction == MANY_TO_ONE:
            foreign_key, owner_key = pairs[0][0].name, pairs[0][1].name
        elif pairs and direction == ONE_TO_MANY:
            foreign_key, owner_key = pairs[0][1].name, pairs[0][0].name
        return cls(
            name=prop.key,
            parent=parent,
            target=prop.mapper.class_,
            direction=direction,
            cardinality='many' if prop.uselist else 'one',
            foreign_key=foreign_key,
            owner_key=owner_key,
            onclause=prop.primaryjoin,
            secondary=prop.secondary,
            secondary_onclause=prop.secondaryjoin,
        )


class RelationRegistry:
    """``model -> {relation name: RelationDescriptor}``.

    Populate eagerly with :meth:`from_registry` (e.g. ``Base.registry``) or let
    :meth:`relations_of` fill entries on first use.
    """

    def __init__(self):
        self._relations: Dict[Any, Dict[str, RelationDescriptor]] = {}
        self._lock = threading.Lock()

    @classmethod
    def from_registry(cls, registry) -> 'RelationRegistry':
        reg = cls()
        for mapper in list(getattr(registry, 'mappers', []) or []):
            reg.register(mapper.class_)
        return reg

    def register(self, model_cls) -> Dict[str, RelationDescriptor]:
        rels = {
            prop.key: RelationDescriptor.from_property(model_cls, prop)
            for prop in sa_inspect(model_cls).relationships
        }
        with self._lock:
            self._relations[model_cls] = rels
        return rels

    def relations_of(self, model_cls) -> Dict[str, RelationDescriptor]:
        with self._lock:
            rels = self._relations.get(model_cls)
        if rels is None:
            rels = self.register(model_cls)
        return rels

    def get(self, model_cls, name: str) -> Optional[RelationDescriptor]:
        return self.relations_of(model_cls).get(name)

    def __contains__(self, model_cls) -> bool:
        return model_cls in self._relations


@dataclass
class ResolvedPath:
    path: str
    relations: List[RelationDescriptor] = field(default_factory=list)
    column: Any = None
    joins: List[JoinStep] = field(default_factory=list)
    eager_load: Optional[str] = None

    @property
    def column_name(self) -> str:
        return self.column.name

    @property
    def is_relation(self) -> bool:
        return bool(self.relations)

    @property
    def relation_names(self) -> List[str]:
        return [r.name for r in self.relations]

    @property
    def target(self):
        return self.relations[-1].target if self.relations else None


class RelationResolver:
    def __init__(self, registry: Optional[RelationRegistry] = None):
        self.registry = registry or RelationRegistry()

    def resolve(self, model_cls, dotted_path: str) -> Optional[ResolvedPath]:
        """Resolve ``'a.b.col'`` (or a bare column) against ``model_cls``.

        Returns None, with a warning, when any hop or the terminal column is unknown.
        """
        parts = str(dotted_path or '').split('.')
        if not parts or any(not p for p in parts):
            logger.warning(f"Invalid relation path '{dotted_path}' on {model_cls.__name__}")
            return None
        column_name = parts[-1]
        root_table = model_cls.__table__
        current = model_cls
        relations: List[RelationDescriptor] = []
        joins: List[JoinStep] = []
        for name in parts[:-1]:
            rel = self.registry.get(current, name)
            if rel is None:
                logger.warning(f"Relation '{name}' does not exist on model {current.__name__} (path '{dotted_path}')")
                return None
            if rel.target_table is root_table:
                logger.warning(
                    f"Relation '{name}' on {current.__name__} points back to table '{root_table.name}'; "
                    f"path '{dotted_path}' is not supported"
                )
                return None
            if rel.secondary is not None:
                joins.append(JoinStep(rel.secondary, rel.onclause, name))
                joins.append(JoinStep(rel.target_table, rel.secondary_onclause, name))
            else:
                joins.append(JoinStep(rel.target_table, rel.onclause, name))
            relations.append(rel)
            current = rel.target
        column = current.__table__.c.get(column_name)
        if column is None:
            logger.warning(f"Column '{column_name}' does not exist on table '{current.__table__.name}' (path '{dotted_path}')")
            return None
        return ResolvedPath(
            path=dotted_path,
            relations=relations,
            column=column,
            joins=joins,
            eager_load='.'.join(r.name for r in relations) or None,
        )

    def apply(self, plan, resolved: ResolvedPath) -> None:
        """Add the path's joins (de-duplicated) and eager load to ``plan``."""
        for step in resolved.joins:
            plan.add_join(step)
        if resolved.eager_load:
            plan.add_eager_load(resolved.eager_load)


__all__ = [
    'RelationDescriptor',
    'RelationRegistry',
    'ResolvedPath',
    'RelationResolver',
    'MANY_TO_ONE',
    'ONE_TO_MANY',
    'MANY_TO_MANY',
]
