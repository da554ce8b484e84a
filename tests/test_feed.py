import asyncio
from datetime import timedelta

import pytest
from sqlmodel import Session, SQLModel, create_engine

from comanda.feed import SqlOrderFeed
from comanda.models import Order, is_order_complete, utcnow


@pytest.fixture()
def db(tmp_path):
    engine = create_engine(f"sqlite:///{tmp_path / 'feed.db'}", connect_args={"check_same_thread": False})
    SQLModel.metadata.create_all(engine)
    yield engine
    engine.dispose()


def _insert(engine, **kw) -> int:
    with Session(engine) as s:
        o = Order(customer_name="Ana", item_description="1x Pastel", **kw)
        s.add(o)
        s.commit()
        s.refresh(o)
        return o.id


def test_order_completeness():
    assert is_order_complete(Order(customer_name="Ana", item_description="Pastel"))
    assert not is_order_complete(Order(customer_name=" ", item_description="Pastel"))
    assert not is_order_complete(Order(customer_name="Ana", item_description=""))
    assert not is_order_complete(Order(customer_name="Ana", item_description="Pastel", amount=0))
    assert is_order_complete(Order(customer_name="Ana", item_description="Pastel", amount=None))


def test_list_orders_returns_detached_snapshots(db):
    first = _insert(db)
    second = _insert(db, created_at=utcnow() + timedelta(seconds=1))
    feed = SqlOrderFeed(db)

    orders = asyncio.run(feed.list_orders())
    assert [o.id for o in orders] == [first, second]
    assert orders[0].customer_name == "Ana"


def test_mark_printed(db):
    oid = _insert(db)
    feed = SqlOrderFeed(db)
    asyncio.run(feed.mark_printed(oid))
    assert asyncio.run(feed.get_order(oid)).printed is True


def test_mark_printed_unknown_order(db):
    feed = SqlOrderFeed(db)
    with pytest.raises(LookupError):
        asyncio.run(feed.mark_printed(999))


def test_commit_notifies_subscribers(db):
    feed = SqlOrderFeed(db)

    async def scenario():
        seen = []
        unsubscribe = feed.subscribe(seen.append)
        oid = await asyncio.to_thread(_insert, db)
        # la notifica arriva con call_soon_threadsafe
        for _ in range(20):
            if seen:
                break
            await asyncio.sleep(0.01)
        unsubscribe()
        await asyncio.to_thread(_insert, db)
        await asyncio.sleep(0.05)
        return oid, seen

    oid, seen = asyncio.run(scenario())
    assert [o.id for o in seen] == [oid]
    assert seen[0].item_description == "1x Pastel"


def test_rollback_does_not_notify(db):
    feed = SqlOrderFeed(db)
    seen = []
    feed.subscribe(seen.append)
    with Session(db) as s:
        s.add(Order(customer_name="Ana", item_description="x"))
        s.flush()
        s.rollback()
    assert seen == []
