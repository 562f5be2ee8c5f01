"""Background job dispatch and the worker entry point."""

import threading
from datetime import date
from decimal import Decimal
from types import SimpleNamespace

import pytest
from celery import Celery
from sqlalchemy import func, select

from berrycrud import jobs
from berrycrud.cache import MemoryCache
from berrycrud.errors import JobDispatchError, ValidationError
from berrycrud.jobs import (
    CeleryJobQueue,
    JobDispatcher,
    JobQueue,
    json_safe,
    register_celery_task,
    run_operation,
)
from berrycrud.service import CrudService
from tests.models import Apartment


class RecordingQueue(JobQueue):
    name = 'recording'

    def __init__(self, configured=True, fail=False):
        self.configured = configured
        self.fail = fail
        self.sent = []

    def is_configured(self):
        return self.configured

    def enqueue(self, service, operation, payload):
        if self.fail:
            raise ConnectionError("broker unreachable")
        self.sent.append((service, operation, json_safe(payload)))


class ApartmentService(CrudService):
    model = Apartment


def make_service(db_session, reflector, settings, queue):
    return ApartmentService(db_session, settings=settings, reflector=reflector, cache=MemoryCache(), job_queue=queue)


async def count_rows(db_session):
    return (await db_session.execute(select(func.count()).select_from(Apartment))).scalar_one()


def test_json_safe():
    assert json_safe({'price': Decimal('1.50'), 'on': date(2024, 1, 2)}) == {'price': '1.50', 'on': '2024-01-02'}


@pytest.mark.asyncio
class TestDispatch:
    async def test_create_job_is_queued(self, db_session, reflector, settings):
        queue = RecordingQueue()
        service = make_service(db_session, reflector, settings, queue)
        assert await service.create_job({'title': 'Queued', 'price': '12.5'}) is True
        assert queue.sent == [('apartments', 'create', {'title': 'Queued', 'price': '12.5'})]
        assert await count_rows(db_session) == 0

    async def test_unconfigured_queue_runs_synchronously(self, db_session, reflector, settings):
        queue = RecordingQueue(configured=False)
        service = make_service(db_session, reflector, settings, queue)
        assert await service.create_job({'title': 'Inline'}) is False
        assert queue.sent == []
        assert await count_rows(db_session) == 1

    async def test_broker_failure_runs_synchronously(self, db_session, reflector, settings, sample_apartments):
        service = make_service(db_session, reflector, settings, RecordingQueue(fail=True))
        assert await service.update_job({'id': sample_apartments[0].id, 'rooms': 9}) is False
        assert (await service.show({'id': sample_apartments[0].id}))['rooms'] == 9

    async def test_failure_propagates_when_auto_disable_is_off(self):
        dispatcher = JobDispatcher(RecordingQueue(fail=True), auto_disable_on_error=False)

        async def fallback():
            raise AssertionError("must not run")

        with pytest.raises(JobDispatchError):
            await dispatcher.dispatch('apartments', 'create', {}, fallback)
        with pytest.raises(JobDispatchError):
            await JobDispatcher(None, auto_disable_on_error=False).dispatch('apartments', 'create', {}, fallback)

    async def test_enqueue_runs_off_the_event_loop(self):
        loop_thread = threading.get_ident()
        seen = []

        class ThreadRecordingQueue(RecordingQueue):
            def enqueue(self, service, operation, payload):
                seen.append(threading.get_ident())

        async def fallback():
            raise AssertionError("must not run")

        assert await JobDispatcher(ThreadRecordingQueue()).dispatch('apartments', 'create', {}, fallback) is True
        assert len(seen) == 1 and seen[0] != loop_thread

    async def test_bulk_job_only_for_writes(self, db_session, reflector, settings):
        queue = RecordingQueue()
        service = make_service(db_session, reflector, settings, queue)
        with pytest.raises(ValidationError):
            await service.bulk_action_job({'bulk_action': 'delete', 'items': [{'id': 1}]})
        assert await service.bulk_action_job({'bulk_action': 'create', 'items': [{'title': 'a'}]}) is True
        assert queue.sent[0][1] == 'bulk_action'

    async def test_payload_is_validated_before_queueing(self, db_session, reflector, settings):
        queue = RecordingQueue()
        service = make_service(db_session, reflector, settings, queue)
        with pytest.raises(ValidationError):
            await service.create_job({'price': 1})
        assert queue.sent == []


@pytest.mark.asyncio
class TestRunOperation:
    async def test_runs_service_operation(self, session_factory, reflector, settings, db_session):
        services = {
            'apartments': lambda session: ApartmentService(session, settings=settings, reflector=reflector, cache=MemoryCache()),
        }
        assert await run_operation(session_factory, services, 'apartments', 'create', {'title': 'From worker'}) is True
        assert await count_rows(db_session) == 1

    async def test_invalid_payload_reports_failure(self, session_factory, reflector, settings):
        services = {
            'apartments': lambda session: ApartmentService(session, settings=settings, reflector=reflector, cache=MemoryCache()),
        }
        assert await run_operation(session_factory, services, 'apartments', 'create', {}) is False

    async def test_unknown_service_or_operation(self, session_factory):
        with pytest.raises(JobDispatchError):
            await run_operation(session_factory, {}, 'apartments', 'create', {})
        with pytest.raises(JobDispatchError):
            await run_operation(session_factory, {'apartments': ApartmentService}, 'apartments', 'delete', {})


class TestCelery:
    def test_queue_sends_named_task(self):
        sent = []
        app = SimpleNamespace(
            conf=SimpleNamespace(broker_url='memory://'),
            send_task=lambda name, kwargs=None, **options: sent.append((name, kwargs, options)),
        )
        queue = CeleryJobQueue(app, queue='crud')
        assert queue.is_configured()
        queue.enqueue('apartments', 'create', {'price': Decimal('2')})
        assert sent == [(
            'berrycrud.run_operation',
            {'service': 'apartments', 'operation': 'create', 'payload': {'price': '2'}},
            {'queue': 'crud'},
        )]

    def test_queue_without_app_is_not_configured(self):
        queue = CeleryJobQueue()
        assert not queue.is_configured()
        with pytest.raises(JobDispatchError):
            queue.validate()

    def test_registered_task_runs_operation(self, monkeypatch):
        calls = []

        async def fake_run_operation(session_factory, services, service, operation, payload):
            calls.append((session_factory, service, operation, payload))
            return True

        monkeypatch.setattr(jobs, 'run_operation', fake_run_operation)
        app = Celery('tests')
        task = register_celery_task(app, 'factory', {'apartments': ApartmentService})
        assert task.name == 'berrycrud.run_operation'
        assert task('apartments', 'create', {'title': 'x'}) is True
        assert calls == [('factory', 'apartments', 'create', {'title': 'x'})]
