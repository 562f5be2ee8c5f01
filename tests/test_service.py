"""CrudService end to end against the sample data."""

import logging
from datetime import datetime
from decimal import Decimal

import pytest
from sqlalchemy import func, select, text

from berrycrud.cache import MemoryCache
from berrycrud.errors import NotFoundError, QueryExecutionError, ValidationError
from berrycrud.service import CrudService, compose_items
from tests.models import Apartment, Note


class ApartmentService(CrudService):
    model = Apartment
    load_relations = ('block', 'object')


def make_service(db_session, reflector, settings, cls=ApartmentService, **kwargs):
    kwargs.setdefault('cache', MemoryCache())
    return cls(db_session, settings=settings, reflector=reflector, **kwargs)


async def count_rows(db_session, model=Apartment):
    return (await db_session.execute(select(func.count()).select_from(model))).scalar_one()


def test_compose_items():
    data = {'bulk_action': 'update', 'price': 5, 'items': [{'id': 1}, {'id': 2, 'price': 7}]}
    assert compose_items(data) == [
        {'bulk_action': 'update', 'price': 5, 'id': 1},
        {'bulk_action': 'update', 'price': 7, 'id': 2},
    ]
    assert compose_items({'bulk_action': 'create', 'title': 'x'}) == [{'bulk_action': 'create', 'title': 'x'}]


@pytest.mark.asyncio
class TestIndex:
    async def test_default_listing(self, db_session, reflector, settings, sample_apartments):
        service = make_service(db_session, reflector, settings)
        payload = await service.index({})
        assert len(payload['data']) == 10
        assert payload['pagination'] == {
            'current': 1,
            'previous': 0,
            'next': 0,
            'perPage': 10,
            'totalPage': 1,
            'totalItem': 10,
        }
        assert payload['extra_data'] == {}
        first = payload['data'][0]
        assert first['title'] == 'Studio 1'
        assert first['price'] == 80.0
        assert first['listed_at'] == '2024-01-05 10:00:00'
        assert first['block']['name'] == 'Block A'
        assert first['object']['name'] == 'North Site'
        assert 'block_id' not in first and 'object_id' not in first

    async def test_paging(self, db_session, reflector, settings, sample_apartments):
        service = make_service(db_session, reflector, settings)
        payload = await service.index({'page': '2', 'limit': '3'})
        assert [a['title'] for a in payload['data']] == ['Flat 4', 'Penthouse 5', 'Studio 6']
        assert payload['pagination']['totalPage'] == 4
        assert payload['pagination']['next'] == 3

    async def test_filters_and_is_all(self, db_session, reflector, settings, sample_apartments):
        service = make_service(db_session, reflector, settings)
        payload = await service.index({
            'search_by_price_min': '100',
            'search_by_price_max': '500',
            'order_by_price': 'desc',
            'is_all': 'true',
        })
        assert 'pagination' not in payload
        assert [a['title'] for a in payload['data']] == ['Flat 4', 'Flat 9', 'Flat 8', 'Flat 3', 'Flat 2', 'Flat 7']

    async def test_false_filters_number_columns(self, db_session, reflector, settings, sample_apartments):
        db_session.add(Apartment(title='Free flat', price=Decimal('0'), rooms=1))
        await db_session.commit()
        service = make_service(db_session, reflector, settings)
        for value in (False, 'false'):
            payload = await service.index({'search_by_price': value, 'is_all': True})
            assert [a['title'] for a in payload['data']] == ['Free flat']
            payload = await service.index({'search_by_rooms': value, 'is_all': True})
            assert [a['title'] for a in payload['data']] == ['Penthouse 5']

    async def test_invalid_request(self, db_session, reflector, settings, sample_apartments):
        service = make_service(db_session, reflector, settings)
        with pytest.raises(ValidationError):
            await service.index({'page': 'first'})

    async def test_incremental_sync(self, db_session, reflector, settings, sample_apartments):
        service = make_service(db_session, reflector, settings)
        payload = await service.index({'updated_at': '2024-04-08'})
        assert [a['title'] for a in payload['data']] == ['Flat 8', 'Flat 9', 'Villa 10']

    async def test_grouped_listing(self, db_session, reflector, settings, sample_apartments):
        service = make_service(db_session, reflector, settings)
        payload = await service.index({'group_bies': '["object_id"]'})
        assert len(payload['data']) == 2
        assert payload['pagination']['totalItem'] == 2

    async def test_top_n_listing(self, db_session, reflector, settings, sample_apartments):
        service = make_service(db_session, reflector, settings)
        payload = await service.index({
            'group_bies': {'block_id': {'limit': 3, 'order_by': 'price', 'order_direction': 'desc'}},
            'is_all': True,
        })
        assert sorted(a['title'] for a in payload['data']) == sorted([
            'Penthouse 5', 'Flat 4', 'Flat 3', 'Villa 10', 'Flat 9', 'Flat 8',
        ])

    async def test_top_n_over_collection_counts_each_row_once(self, db_session, reflector, settings, sample_apartments):
        service = make_service(db_session, reflector, settings)
        payload = await service.index({'group_bies': {'tags.label': {'limit': 2, 'order_by': 'price'}}})
        titles = sorted(a['title'] for a in payload['data'])
        assert titles == ['Flat 2', 'Flat 3', 'Flat 7', 'Studio 1', 'Studio 6']
        assert payload['pagination']['totalItem'] == 5

    async def test_hierarchical_listing(self, db_session, reflector, settings, sample_apartments):
        service = make_service(db_session, reflector, settings)
        payload = await service.index({
            'group_bies': {'object_id': {'limit': 2}},
            'hierarchical': 'true',
        })
        assert payload['pagination']['totalItem'] == 2
        assert len(payload['data']) == 2
        for node in payload['data']:
            assert set(node['group']) == {'object_id'}
            assert len(node['data']) == 2
            for leaf in node['data']:
                assert 'object' not in leaf
                assert leaf['object_id'] == node['group']['object_id']
                assert 'block' in leaf

        payload = await service.index({
            'group_bies': {'object_id': {'limit': 2}},
            'hierarchical': True,
            'is_all': True,
            'include_relations': 'object',
        })
        assert 'pagination' not in payload
        assert all('object' in leaf for node in payload['data'] for leaf in node['data'])

    async def test_hierarchical_group_page_replaces_top_level_pagination(self, db_session, reflector, settings, sample_apartments):
        service = make_service(db_session, reflector, settings)
        payload = await service.index({
            'group_bies': {'block_id': {'limit': 3}, 'object_id': {'page': 1, 'limit': 1}},
            'hierarchical': True,
        })
        assert 'pagination' not in payload
        assert len(payload['data']) == 2
        for block in payload['data']:
            assert 'pagination' not in block
            for node in block['data']:
                assert node['pagination']['perPage'] == 1
                assert len(node['data']) == 1


@pytest.mark.asyncio
class TestShow:
    async def test_show(self, db_session, reflector, settings, sample_apartments):
        service = make_service(db_session, reflector, settings)
        item = await service.show({'id': sample_apartments[1].id})
        assert item['title'] == 'Flat 2'
        assert item['block']['name'] == 'Block A'

    async def test_missing_row(self, db_session, reflector, settings, sample_apartments):
        service = make_service(db_session, reflector, settings)
        with pytest.raises(NotFoundError) as exc:
            await service.show({'id': 999})
        assert exc.value.context['record_id'] == 999
        with pytest.raises(ValidationError):
            await service.show({})


@pytest.mark.asyncio
class TestWrites:
    async def test_create(self, db_session, reflector, settings, populated_db):
        service = make_service(db_session, reflector, settings)
        block = populated_db['blocks'][2]
        entity = await service.create({'title': 'Loft 11', 'price': '650', 'block_id': block.id})
        assert entity.id is not None
        assert entity.price == Decimal('650')
        assert entity.is_active is True
        assert service.instance is entity
        assert await count_rows(db_session) == 11

    async def test_create_checks_foreign_keys(self, db_session, reflector, settings, sample_apartments):
        service = make_service(db_session, reflector, settings)
        with pytest.raises(ValidationError) as exc:
            await service.create({'title': 'Orphan', 'block_id': 999})
        assert exc.value.errors[0]['type'] == 'exists'
        assert await count_rows(db_session) == 10

    async def test_before_create_hook(self, db_session, reflector, settings, sample_apartments):
        class Shouting(ApartmentService):
            async def before_create(self, data):
                data['title'] = data['title'].upper()

        service = make_service(db_session, reflector, settings, cls=Shouting)
        entity = await service.create({'title': 'quiet'})
        assert entity.title == 'QUIET'

    async def test_update(self, db_session, reflector, settings, sample_apartments):
        service = make_service(db_session, reflector, settings)
        entity = await service.update({'id': sample_apartments[0].id, 'price': '85.5', 'rooms': 0})
        assert entity.price == Decimal('85.5')
        assert entity.rooms == 0
        assert entity.title == 'Studio 1'
        with pytest.raises(NotFoundError):
            await service.update({'id': 999, 'price': 1})

    async def test_soft_delete_and_restore(self, db_session, reflector, settings, sample_apartments):
        service = make_service(db_session, reflector, settings)
        target = sample_apartments[2].id
        entity = await service.delete({'id': target})
        assert isinstance(entity.deleted_at, datetime)
        assert await count_rows(db_session) == 10

        active = await service.index({'is_all': True})
        assert target not in [a['id'] for a in active['data']]
        trashed = await service.index({'is_all': True, 'trashed_status': -1})
        assert [a['id'] for a in trashed['data']] == [target]
        everything = await service.index({'is_all': True, 'trashed_status': 1})
        assert len(everything['data']) == 10

        restored = await service.restore({'id': target})
        assert restored.deleted_at is None
        active = await service.index({'is_all': True})
        assert len(active['data']) == 10

    async def test_force_destroy(self, db_session, reflector, settings, sample_apartments):
        service = make_service(db_session, reflector, settings)
        await service.delete({'id': sample_apartments[5].id, 'is_force_destroy': True})
        assert await count_rows(db_session) == 9

    async def test_delete_without_soft_delete_column(self, db_session, reflector, settings):
        db_session.add(Note(body="remember the milk"))
        await db_session.commit()
        service = CrudService(db_session, Note, settings=settings, reflector=reflector, cache=MemoryCache())
        assert not service.is_soft_delete()
        note_id = (await db_session.execute(select(Note.id))).scalar_one()
        await service.delete({'id': note_id})
        assert await count_rows(db_session, Note) == 0

    async def test_create_or_update(self, db_session, reflector, settings, sample_apartments):
        service = make_service(db_session, reflector, settings)
        entity = await service.create_or_update({'title': 'Flat 2', 'price': 130}, {'title': 'Flat 2'})
        assert entity.id == sample_apartments[1].id
        assert entity.price == Decimal('130')

        entity = await service.create_or_update({'title': 'Flat 12', 'price': 140}, {'title': 'Flat 12'})
        assert entity.id not in [a.id for a in sample_apartments]
        assert await count_rows(db_session) == 11


@pytest.mark.asyncio
class TestBulkAction:
    async def test_bulk_create(self, db_session, reflector, settings, sample_apartments):
        service = make_service(db_session, reflector, settings)
        payload = await service.bulk_action({
            'bulk_action': 'create',
            'price': '10',
            'items': [{'title': 'Bulk 1'}, {'title': 'Bulk 2', 'price': '20'}],
        })
        assert [(a['title'], a['price']) for a in payload['data']] == [('Bulk 1', 10.0), ('Bulk 2', 20.0)]
        assert payload['extra_data'] == {'total_count': 2, 'success_count': 2}
        assert await count_rows(db_session) == 12

    async def test_bulk_mixed_actions(self, db_session, reflector, settings, sample_apartments):
        service = make_service(db_session, reflector, settings)
        payload = await service.bulk_action({'items': [
            {'bulk_action': 'update', 'id': sample_apartments[0].id, 'rooms': 4},
            {'bulk_action': 'delete', 'id': sample_apartments[1].id},
            {'bulk_action': 'show', 'id': sample_apartments[2].id},
        ]})
        assert [a['id'] for a in payload['data']] == [a.id for a in sample_apartments[:3]]
        assert payload['data'][0]['rooms'] == 4
        assert payload['data'][1]['deleted_at'] is not None

    async def test_bulk_is_all_or_nothing(self, db_session, reflector, settings, sample_apartments):
        service = make_service(db_session, reflector, settings)
        with pytest.raises(NotFoundError):
            await service.bulk_action({'items': [
                {'bulk_action': 'create', 'title': 'Never saved'},
                {'bulk_action': 'update', 'id': 999, 'rooms': 1},
            ]})
        assert await count_rows(db_session) == 10

    async def test_bulk_requires_known_action(self, db_session, reflector, settings, sample_apartments):
        service = make_service(db_session, reflector, settings)
        with pytest.raises(ValidationError):
            await service.bulk_action({'items': [{'title': 'x'}]})


@pytest.mark.asyncio
class TestCaching:
    async def test_index_is_cached_until_a_write(self, db_session, reflector, settings, sample_apartments):
        cache = MemoryCache()
        service = make_service(db_session, reflector, settings, cache=cache, is_cacheable=True)
        first = await service.index({})
        assert first['pagination']['totalItem'] == 10

        # Written behind the service's back: the cached payload is still served
        db_session.add(Apartment(title="Sneaky", price=Decimal('1')))
        await db_session.commit()
        assert (await service.index({}))['pagination']['totalItem'] == 10

        # A write through the service flushes the table's tag
        await service.create({'title': 'Loud'})
        assert (await service.index({}))['pagination']['totalItem'] == 12

    async def test_show_is_cached(self, db_session, reflector, settings, sample_apartments):
        cache = MemoryCache()
        service = make_service(db_session, reflector, settings, cache=cache, is_cacheable=True)
        key = service.cache_key('show', {'id': sample_apartments[0].id})
        item = await service.show({'id': sample_apartments[0].id})
        assert await cache.get(key) == item

    async def test_backend_without_tags_disables_caching(self, db_session, reflector, settings, sample_apartments, caplog):
        service = make_service(
            db_session, reflector, settings, cache=MemoryCache(supports_tags=False), is_cacheable=True,
        )
        with caplog.at_level(logging.WARNING, logger='berrycrud.service'):
            await service.index({})
        assert service.is_cacheable is False
        assert any('does not support tagging' in rec.getMessage() for rec in caplog.records)

    async def test_unreachable_backend_disables_caching(self, db_session, reflector, settings, sample_apartments):
        class DownCache(MemoryCache):
            name = 'down'

            async def ping(self):
                raise ConnectionError("connection refused")

        service = make_service(db_session, reflector, settings, cache=DownCache(), is_cacheable=True)
        payload = await service.index({})
        assert len(payload['data']) == 10
        assert service.is_cacheable is False

    async def test_disabled_by_default(self, db_session, reflector, settings):
        service = make_service(db_session, reflector, settings)
        assert service.is_cacheable is False


@pytest.mark.asyncio
async def test_storage_errors_become_query_execution_errors(db_session, reflector, settings):
    service = make_service(db_session, reflector, settings)
    with pytest.raises(QueryExecutionError):
        await service.execute(text("SELECT * FROM no_such_table"))
