"""Exception taxonomy for BerryCRUD.

Only a handful of these ever reach a caller: the query-construction core
degrades instead of raising (reflection falls back to ``string`` columns,
bad filter or group terms are dropped). What remains are lookup misses,
validation failures, write failures and storage execution errors.
"""
from __future__ import annotations

from typing import Any, Dict, List, Optional


class CrudError(Exception):
    """Base class for every error raised by BerryCRUD."""

    def __init__(self, message: str = '', *, context: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.context: Dict[str, Any] = dict(context or {})

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {'message': self.message, 'type': type(self).__name__}
        if self.context:
            out['context'] = self.context
        return out


class NotFoundError(CrudError):
    """A record, or the key needed to look one up, is missing."""

    def __init__(
        self,
        message: str = 'Not found',
        *,
        model: Any = None,
        record_id: Any = None,
        criteria: Optional[Dict[str, Any]] = None,
    ):
        context: Dict[str, Any] = {}
        if model is not None:
            context['model'] = getattr(model, '__name__', str(model))
        if record_id is not None:
            context['record_id'] = record_id
        if criteria:
            context['criteria'] = dict(criteria)
        super().__init__(message, context=context)
        self.model = model
        self.record_id = record_id
        self.criteria = dict(criteria or {})


class ValidationError(CrudError):
    """Request data failed the derived (or custom) rules."""

    def __init__(self, message: str = 'Invalid data', *, errors: Optional[List[Dict[str, Any]]] = None):
        super().__init__(message, context={'errors': list(errors or [])})
        self.errors: List[Dict[str, Any]] = list(errors or [])


class CreateError(CrudError):
    pass


class UpdateError(CrudError):
    pass


class DeleteError(CrudError):
    pass


class QueryExecutionError(CrudError):
    """Storage rejected a built query (connectivity, bad raw fragment...)."""


class JobDispatchError(CrudError):
    """A background job could not be queued and fallback is disabled."""


class UnsupportedDialectError(CrudError):
    """Raised by adapters that cannot introspect their dialect."""


__all__ = [
    'CrudError',
    'NotFoundError',
    'ValidationError',
    'CreateError',
    'UpdateError',
    'DeleteError',
    'QueryExecutionError',
    'JobDispatchError',
    'UnsupportedDialectError',
]
