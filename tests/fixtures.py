"""Database fixtures for BerryCRUD tests (shared)."""

import pytest
from datetime import datetime, timedelta
from decimal import Decimal
from sqlalchemy.ext.asyncio import AsyncSession

from berrycrud.cache import MemoryCache
from berrycrud.config import CrudSettings
from berrycrud.core.reflection import SchemaReflector

from .models import Manager, Block, SiteObject, Tag, Apartment


async def create_sample_managers(session: AsyncSession):
    managers = [
        Manager(name="Alice Manager", email="alice@example.com"),
        Manager(name="Bob Manager", email="bob@example.com"),
    ]
    session.add_all(managers)
    await session.flush()
    await session.commit()
    return managers


@pytest.fixture(scope="function")
async def sample_managers(db_session: AsyncSession):
    return await create_sample_managers(db_session)


async def create_sample_blocks(session: AsyncSession, managers):
    """Blocks A and B belong to the first manager, C to the second (and stays empty)."""
    m1, m2 = managers
    blocks = [
        Block(name="Block A", manager_id=m1.id),
        Block(name="Block B", manager_id=m1.id),
        Block(name="Block C", manager_id=m2.id),
    ]
    session.add_all(blocks)
    await session.flush()
    await session.commit()
    return blocks


@pytest.fixture(scope="function")
async def sample_blocks(db_session: AsyncSession, sample_managers):
    return await create_sample_blocks(db_session, sample_managers)


async def create_sample_objects(session: AsyncSession):
    objects = [SiteObject(name="North Site"), SiteObject(name="South Site")]
    session.add_all(objects)
    await session.flush()
    await session.commit()
    return objects


@pytest.fixture(scope="function")
async def sample_objects(db_session: AsyncSession):
    return await create_sample_objects(db_session)


async def create_sample_tags(session: AsyncSession):
    tags = [Tag(label="sea view"), Tag(label="balcony")]
    session.add_all(tags)
    await session.flush()
    await session.commit()
    return tags


@pytest.fixture(scope="function")
async def sample_tags(db_session: AsyncSession):
    return await create_sample_tags(db_session)


# (title, price, rooms, is_active, listed_at, block index, object index)
APARTMENT_ROWS = [
    ("Studio 1", "80.00", 1, True, datetime(2024, 1, 5, 10, 0), 0, 0),
    ("Flat 2", "120.00", 2, True, datetime(2024, 1, 5, 18, 30), 0, 0),
    ("Flat 3", "250.00", 2, False, datetime(2024, 1, 10, 9, 0), 0, 1),
    ("Flat 4", "500.00", 3, True, datetime(2024, 2, 1, 12, 0), 0, 1),
    ("Penthouse 5", "900.00", 0, True, datetime(2024, 2, 15, 8, 0), 0, 0),
    ("Studio 6", "95.00", 1, True, datetime(2024, 1, 20, 11, 0), 1, 1),
    ("Flat 7", "100.00", 2, True, datetime(2024, 1, 25, 16, 0), 1, 1),
    ("Flat 8", "310.00", 3, False, datetime(2024, 3, 1, 9, 30), 1, 0),
    ("Flat 9", "420.00", 3, True, datetime(2024, 3, 5, 14, 0), 1, 0),
    ("Villa 10", "1500.00", 5, True, datetime(2024, 3, 10, 10, 0), 1, 1),
]


async def create_sample_apartments(session: AsyncSession, blocks, objects, tags=None):
    """Ten apartments: five in Block A, five in Block B, spread over both objects.

    ``updated_at`` advances one day per row starting 2024-04-01.
    """
    base = datetime(2024, 4, 1, 12, 0)
    apartments = []
    for i, (title, price, rooms, active, listed_at, b_idx, o_idx) in enumerate(APARTMENT_ROWS):
        apartments.append(
            Apartment(
                title=title,
                price=Decimal(price),
                rooms=rooms,
                is_active=active,
                listed_at=listed_at,
                block_id=blocks[b_idx].id,
                object_id=objects[o_idx].id,
                metadata_json={"floor": i + 1},
                updated_at=base + timedelta(days=i),
            )
        )
    if tags:
        sea_view, balcony = tags
        apartments[0].tags = [sea_view]
        apartments[1].tags = [sea_view, balcony]
        apartments[2].tags = [balcony]
    session.add_all(apartments)
    await session.flush()
    await session.commit()
    # Reads in tests start from an empty identity map
    session.expunge_all()
    return apartments


@pytest.fixture(scope="function")
async def sample_apartments(db_session: AsyncSession, sample_blocks, sample_objects, sample_tags):
    return await create_sample_apartments(db_session, sample_blocks, sample_objects, sample_tags)


async def create_many_apartments(session: AsyncSession, total: int, groups: int, price=None):
    """``total`` apartments spread round-robin over ``groups`` new objects."""
    objects = [SiteObject(name=f"Site {i + 1}") for i in range(groups)]
    session.add_all(objects)
    await session.flush()
    rows = [
        Apartment(
            title=f"Unit {i + 1}",
            price=Decimal(price) if price is not None else Decimal(i % 97),
            rooms=i % 4,
            is_active=True,
            object_id=objects[i % groups].id,
        )
        for i in range(total)
    ]
    session.add_all(rows)
    await session.flush()
    await session.commit()
    return objects, rows


@pytest.fixture(scope="function")
async def populated_db(db_session: AsyncSession, sample_managers, sample_blocks, sample_objects, sample_tags, sample_apartments):
    return {
        'managers': sample_managers,
        'blocks': sample_blocks,
        'objects': sample_objects,
        'tags': sample_tags,
        'apartments': sample_apartments,
    }


@pytest.fixture(scope="function")
def memory_cache():
    return MemoryCache()


@pytest.fixture(scope="function")
def reflector():
    # Shared-cache tier off: tests that need it build their own
    return SchemaReflector()


@pytest.fixture(scope="function")
def settings():
    return CrudSettings(_env_file=None)
