"""Validation models derived from a mapped model and its reflected column types.

Each action gets a pydantic model built with ``create_model``; callers may
merge extra fields into it or replace it entirely::

    rules = RuleBuilder(Apartment, column_types)
    rules.extend('create', {'title': (str, Field(min_length=3))})
    clean = rules.validate('create', payload)
"""
from __future__ import annotations

import logging
from datetime import date, datetime
from decimal import Decimal
from typing import Annotated, Any, Dict, List, Literal, Optional, Tuple, Type, Union

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, create_model
from pydantic import ValidationError as PydanticValidationError

from .core.types import ColumnTypeMap, SemanticType
from .core.utils import is_blank, primary_key_name
from .errors import ValidationError

logger = logging.getLogger(__name__)

ACTIONS = ('index', 'show', 'create', 'update', 'delete', 'restore', 'bulk_action')
BULK_ACTIONS = ('create', 'update', 'show', 'delete', 'restore')
TIMESTAMP_COLUMNS = ('created_at', 'updated_at', 'deleted_at')


def _lower(value: Any) -> Any:
    return value.strip().lower() if isinstance(value, str) else value


Direction = Annotated[Optional[Literal['asc', 'desc']], BeforeValidator(_lower)]
BulkAction = Annotated[Optional[Literal['create', 'update', 'show', 'delete', 'restore']], BeforeValidator(_lower)]

_PY_TYPES: Dict[SemanticType, Any] = {
    SemanticType.INTEGER: int,
    SemanticType.NUMERIC: Decimal,
    SemanticType.BOOLEAN: bool,
    # a bare date string stays a date, one with a time part becomes a datetime
    SemanticType.DATE: Union[date, datetime],
    SemanticType.STRING: Any,
    SemanticType.JSON: Any,
}


def _py_type(semantic_type: SemanticType) -> Any:
    return _PY_TYPES.get(semantic_type, Any)


def _flag_to_number(value: Any) -> Any:
    if isinstance(value, bool):
        return int(value)
    lv = _lower(value)
    if lv in ('true', 'false'):
        return 1 if lv == 'true' else 0
    return value


def _search_type(semantic_type: SemanticType) -> Any:
    """Search filters on number columns also take ``true``/``false`` as 1/0."""
    py = _py_type(semantic_type)
    if semantic_type.is_number:
        return Annotated[Optional[py], BeforeValidator(_flag_to_number)]
    return Optional[py]


class _Rules(BaseModel):
    model_config = ConfigDict(extra='allow', arbitrary_types_allowed=True)


class RuleBuilder:
    def __init__(self, model_cls, column_types: ColumnTypeMap, *, pk_name: Optional[str] = None):
        self.model_cls = model_cls
        self.column_types = dict(column_types)
        self.pk_name = pk_name or primary_key_name(model_cls)
        self._custom: Dict[str, Tuple[Dict[str, Any], bool]] = {}

    @property
    def table(self):
        return self.model_cls.__table__

    def _type_of(self, column: str) -> SemanticType:
        return self.column_types.get(column, SemanticType.STRING)

    def extend(self, action: str, fields: Dict[str, Any], replace: bool = False) -> 'RuleBuilder':
        """Merge ``fields`` (``create_model`` field definitions) into ``action``'s rules."""
        if action not in ACTIONS:
            raise ValueError(f"Unknown action '{action}'")
        self._custom[action] = (dict(fields), replace)
        return self

    # --- per-action field sets --------------------------------------------------
    def index_fields(self) -> Dict[str, Any]:
        fields: Dict[str, Any] = {
            'page': (Optional[int], Field(None, ge=1)),
            'limit': (Optional[int], Field(None, ge=1)),
            'is_all': (Optional[bool], None),
            'hierarchical': (Optional[bool], None),
            'trashed_status': (Optional[int], Field(None, ge=-1, le=1)),
            'updated_at': (Optional[Union[date, datetime]], None),
            'search': (Optional[str], None),
        }
        for col in self.table.columns:
            stype = self._type_of(col.name)
            search = _search_type(stype)
            fields[f"search_by_{col.name}"] = (search, None)
            if stype.is_number:
                fields[f"search_by_{col.name}_min"] = (search, None)
                fields[f"search_by_{col.name}_max"] = (search, None)
            elif stype is SemanticType.DATE:
                fields[f"search_by_{col.name}_from"] = (search, None)
                fields[f"search_by_{col.name}_to"] = (search, None)
            fields[f"order_by_{col.name}"] = (Direction, None)
        return fields

    def _key_field(self) -> Dict[str, Any]:
        return {self.pk_name: (_py_type(self._type_of(self.pk_name)), ...)}

    def show_fields(self) -> Dict[str, Any]:
        return self._key_field()

    def restore_fields(self) -> Dict[str, Any]:
        return self._key_field()

    def delete_fields(self) -> Dict[str, Any]:
        fields = self._key_field()
        fields['is_force_destroy'] = (Optional[bool], None)
        return fields

    def create_fields(self) -> Dict[str, Any]:
        fields: Dict[str, Any] = {}
        for col in self.table.columns:
            if col.name == self.pk_name or col.name in TIMESTAMP_COLUMNS:
                continue
            py = _py_type(self._type_of(col.name))
            required = not col.nullable and col.default is None and col.server_default is None
            fields[col.name] = (py, ...) if required else (Optional[py], None)
        fields['is_job'] = (Optional[bool], None)
        return fields

    def update_fields(self) -> Dict[str, Any]:
        fields: Dict[str, Any] = self._key_field()
        for col in self.table.columns:
            if col.name == self.pk_name or col.name in TIMESTAMP_COLUMNS:
                continue
            py = _py_type(self._type_of(col.name))
            fields[col.name] = (Optional[py], None)
        fields['is_job'] = (Optional[bool], None)
        return fields

    def bulk_action_fields(self) -> Dict[str, Any]:
        return {
            'bulk_action': (BulkAction, None),
            'items': (Optional[List[Dict[str, Any]]], None),
            'is_job': (Optional[bool], None),
        }

    # --- models -----------------------------------------------------------------
    def fields_for(self, action: str) -> Dict[str, Any]:
        if action not in ACTIONS:
            raise ValueError(f"Unknown action '{action}'")
        custom, replace = self._custom.get(action, ({}, False))
        if replace:
            return dict(custom)
        fields = getattr(self, f"{action}_fields")()
        fields.update(custom)
        return fields

    def model_for(self, action: str) -> Type[BaseModel]:
        name = f"{self.model_cls.__name__}{action.title().replace('_', '')}Rules"
        return create_model(name, __base__=_Rules, **self.fields_for(action))

    def validate(self, action: str, data: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        """Validate ``data``; returns the coerced values in input key order."""
        data = dict(data or {})
        if action == 'index':
            # empty query-string values mean "not given"
            data = {k: (None if isinstance(v, str) and is_blank(v) else v) for k, v in data.items()}
        model = self.model_for(action)
        try:
            parsed = model.model_validate(data)
        except PydanticValidationError as e:
            errors = [
                {
                    'field': '.'.join(str(p) for p in err.get('loc', ())),
                    'message': err.get('msg', 'Invalid value'),
                    'type': err.get('type', 'value_error'),
                }
                for err in e.errors()
            ]
            first = errors[0] if errors else {'field': '', 'message': 'Invalid data'}
            logger.debug(f"{action} validation failed for {self.model_cls.__name__}: {errors}")
            raise ValidationError(f"{first['field']}: {first['message']}", errors=errors) from e
        dumped = parsed.model_dump(exclude_unset=True)
        ordered = {k: dumped[k] for k in data if k in dumped}
        for k, v in dumped.items():
            ordered.setdefault(k, v)
        return ordered


__all__ = ['RuleBuilder', 'ACTIONS', 'BULK_ACTIONS', 'TIMESTAMP_COLUMNS']
