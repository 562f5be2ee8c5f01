"""
Basic example of using BerryCRUD with SQLAlchemy (async).

This example demonstrates:
- Binding a model to a CrudService subclass
- Flat key filters (search_by_*, order_by_*) and pagination
- Top-N-per-group queries and hierarchical responses
- Bulk writes and soft delete

Run with ``aiosqlite`` installed: ``python examples/basic_example.py``
"""

import asyncio
import json
import logging
from datetime import datetime
from decimal import Decimal
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Numeric
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.orm import DeclarativeBase, relationship

from berrycrud import CrudService, MemoryCache, SchemaReflector


# SQLAlchemy Models
class Base(DeclarativeBase):
    pass


class Block(Base):
    __tablename__ = 'blocks'

    id = Column(Integer, primary_key=True)
    name = Column(String(100), nullable=False)

    apartments = relationship("Apartment", back_populates="block")


class Apartment(Base):
    __tablename__ = 'apartments'

    id = Column(Integer, primary_key=True)
    title = Column(String(200), nullable=False)
    price = Column(Numeric(12, 2), nullable=False, default=0)
    rooms = Column(Integer)
    block_id = Column(Integer, ForeignKey('blocks.id'))
    listed_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime)
    deleted_at = Column(DateTime)

    block = relationship("Block", back_populates="apartments")


class ApartmentService(CrudService):
    model = Apartment
    load_relations = ('block',)

    async def after_create(self, entity):
        await super().after_create(entity)
        logging.getLogger(__name__).info(f"New apartment #{entity.id}: {entity.title}")


async def seed(session: AsyncSession):
    blocks = [Block(name="Block A"), Block(name="Block B")]
    session.add_all(blocks)
    await session.flush()
    prices = [80, 120, 250, 500, 900, 95, 100, 310, 420, 1500]
    for i, price in enumerate(prices):
        session.add(Apartment(
            title=f"Apartment {i + 1}",
            price=Decimal(price),
            rooms=i % 4,
            block_id=blocks[i // 5].id,
        ))
    await session.commit()


def show(title, payload):
    print(f"\n=== {title} ===")
    print(json.dumps(payload, indent=2, default=str))


async def main():
    logging.basicConfig(level=logging.INFO)
    engine = create_async_engine("sqlite+aiosqlite:///:memory:")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    reflector = SchemaReflector()
    cache = MemoryCache()

    async with session_factory() as session:
        await seed(session)
        service = ApartmentService(session, reflector=reflector, cache=cache, is_cacheable=True)

        show("Price between 100 and 500, most expensive first", await service.index({
            'search_by_price_min': '100',
            'search_by_price_max': '500',
            'order_by_price': 'desc',
            'limit': 3,
        }))

        show("Two most expensive apartments per block", await service.index({
            'group_bies': {'block_id': {'limit': 2, 'order_by': 'price', 'order_direction': 'desc'}},
            'is_all': True,
        }))

        show("Hierarchical: blocks with counted and summed apartments", await service.index({
            'group_bies': {'block.name': {'limit': 5, 'aggregations': {'count': True, 'sum': 'price'}}},
            'hierarchical': True,
        }))

        show("Bulk create", await service.bulk_action({
            'bulk_action': 'create',
            'block_id': 1,
            'items': [{'title': 'Loft', 'price': 700}, {'title': 'Garden flat', 'price': 640}],
        }))

        await service.delete({'id': 1})
        show("Trashed only", await service.index({'trashed_status': -1}))

    await engine.dispose()


if __name__ == "__main__":
    asyncio.run(main())
