import asyncio

import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from dinehub.commands import LifecycleManager
from dinehub.event_store import init_schema
from dinehub.store import MemoryStore
from dinehub.subscriber import EntityMirror


async def _settle(rounds: int = 20) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.fixture
def settle():
    """Let pending snapshot deliveries reach the mirror."""
    return _settle


@pytest.fixture
def store():
    return MemoryStore(
        seed={
            "restaurants": [
                {"id": "r1", "name": "Spice Route", "isOpen": True, "price": 450},
                {"id": "r2", "name": "Harbour Grill", "isOpen": False, "price": 900},
            ]
        }
    )


@pytest.fixture
async def mirror(store):
    mirror = EntityMirror(store, init_timeout=1.0)
    await mirror.start()
    await mirror.wait_ready()
    yield mirror
    await mirror.close()


@pytest.fixture
async def session_factory(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'events.db'}")
    await init_schema(engine)
    yield async_sessionmaker(engine, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def manager(store, mirror, session_factory):
    return LifecycleManager(store, mirror, session_factory)


@pytest.fixture
def order_draft():
    def build(**overrides) -> dict:
        draft = {
            "userId": "u1",
            "restaurantId": "r1",
            "items": [
                {"name": "Paneer Tikka", "price": 320, "quantity": 2},
                {"name": "Garlic Naan", "price": 90, "quantity": 2},
            ],
            "type": "delivery",
            "total": 820,
            "customerName": "Asha",
            "customerPhone": "+91 98450 11223",
            "address": "12 MG Road",
            "paymentMethod": "upi",
            "paymentId": "pay_001",
        }
        draft.update(overrides)
        return draft

    return build


@pytest.fixture
def booking_draft():
    def build(**overrides) -> dict:
        draft = {
            "userId": "u2",
            "restaurantId": "r1",
            "type": "table",
            "date": "2026-10-24",
            "time": "19:30",
            "customers": 4,
            "customerNames": ["Ravi", "Meera"],
            "phone": "+91 99000 12345",
            "amount": 620,
            "paymentStatus": "paid",
            "occasion": "anniversary",
            "paymentId": "pay_002",
        }
        draft.update(overrides)
        return draft

    return build
