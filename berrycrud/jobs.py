"""Background job dispatch.

A service hands ``(service, operation, payload)`` to a ``JobQueue``. When the
queue is unusable the dispatcher runs the same operation inline instead
(``queue.auto_disable_on_error``) or raises ``JobDispatchError``.

Worker side (Celery)::

    celery = Celery('app', broker='redis://...')
    register_celery_task(celery, async_session_factory, {'apartments': ApartmentService})
"""
from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional

from .errors import CrudError, JobDispatchError

logger = logging.getLogger(__name__)

DEFAULT_TASK_NAME = 'berrycrud.run_operation'
JOB_OPERATIONS = ('create', 'update', 'bulk_action')


def json_safe(payload: Any) -> Any:
    """Round-trip through JSON so brokers never see Decimal/date objects."""
    return json.loads(json.dumps(payload, default=str))


class JobQueue:
    name = 'base'

    def is_configured(self) -> bool:
        return False

    def validate(self) -> None:
        """Raise ``JobDispatchError`` when jobs cannot be queued."""
        if not self.is_configured():
            raise JobDispatchError(f"Queue '{self.name}' is not configured")

    def enqueue(self, service: str, operation: str, payload: Dict[str, Any]) -> Any:
        raise NotImplementedError


class CeleryJobQueue(JobQueue):
    name = 'celery'

    def __init__(self, celery_app=None, *, task_name: str = DEFAULT_TASK_NAME, broker_url: str = '', queue: Optional[str] = None):
        if celery_app is None and broker_url:
            from celery import Celery
            celery_app = Celery('berrycrud', broker=broker_url)
            celery_app.conf.update(task_serializer='json', accept_content=['json'], result_serializer='json')
        self.celery_app = celery_app
        self.task_name = task_name
        self.queue = queue

    def is_configured(self) -> bool:
        if self.celery_app is None:
            return False
        return bool(getattr(self.celery_app.conf, 'broker_url', None))

    def enqueue(self, service: str, operation: str, payload: Dict[str, Any]) -> Any:
        kwargs = {'service': service, 'operation': operation, 'payload': json_safe(payload)}
        options = {'queue': self.queue} if self.queue else {}
        return self.celery_app.send_task(self.task_name, kwargs=kwargs, **options)


def queue_from_settings(settings) -> Optional[JobQueue]:
    cfg = settings.queue
    if not cfg.enabled:
        return None
    return CeleryJobQueue(task_name=cfg.task_name, broker_url=cfg.broker_url)


class JobDispatcher:
    def __init__(self, queue: Optional[JobQueue], *, validate_before_dispatch: bool = True, auto_disable_on_error: bool = True):
        self.queue = queue
        self.validate_before_dispatch = validate_before_dispatch
        self.auto_disable_on_error = auto_disable_on_error

    @classmethod
    def from_settings(cls, queue: Optional[JobQueue], settings) -> 'JobDispatcher':
        return cls(
            queue,
            validate_before_dispatch=settings.queue.validate_before_dispatch,
            auto_disable_on_error=settings.queue.auto_disable_on_error,
        )

    async def dispatch(
        self,
        service: str,
        operation: str,
        payload: Dict[str, Any],
        fallback: Callable[[], Awaitable[Any]],
    ) -> bool:
        """Queue the operation; True when queued, False when it ran inline."""
        try:
            if self.queue is None:
                raise JobDispatchError('No job queue configured')
            if self.validate_before_dispatch:
                self.queue.validate()
            # publishing blocks on the broker connection
            await asyncio.to_thread(self.queue.enqueue, service, operation, payload)
        except Exception as e:
            if not self.auto_disable_on_error:
                if isinstance(e, JobDispatchError):
                    raise
                raise JobDispatchError(f"Failed to dispatch {operation} job: {e}") from e
            logger.warning(f"Queueing {service}.{operation} failed ({e}); running it synchronously")
            await fallback()
            return False
        logger.info(f"Queued {service}.{operation}")
        return True


async def run_operation(session_factory, services: Mapping[str, Callable[..., Any]], service: str, operation: str, payload: Dict[str, Any]) -> bool:
    """Worker entry point: open a session and run one service operation."""
    if operation not in JOB_OPERATIONS:
        raise JobDispatchError(f"Operation '{operation}' cannot run as a job")
    factory = services.get(service)
    if factory is None:
        raise JobDispatchError(f"Unknown service '{service}'")
    async with session_factory() as session:
        svc = factory(session)
        svc.is_job = True
        try:
            await getattr(svc, operation)(payload)
        except CrudError as e:
            logger.error(f"Job {service}.{operation} failed: {e}")
            return False
    return True


def register_celery_task(celery_app, session_factory, services: Mapping[str, Callable[..., Any]], task_name: str = DEFAULT_TASK_NAME):
    """Install the worker task that executes queued service operations."""

    @celery_app.task(name=task_name)
    def _run(service: str, operation: str, payload: Dict[str, Any]) -> bool:
        return asyncio.run(run_operation(session_factory, services, service, operation, payload))

    return _run


__all__ = [
    'JobQueue',
    'CeleryJobQueue',
    'JobDispatcher',
    'queue_from_settings',
    'register_celery_task',
    'run_operation',
    'json_safe',
    'DEFAULT_TASK_NAME',
    'JOB_OPERATIONS',
]
