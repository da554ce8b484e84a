# comanda/feed.py
"""
Order feed: le tre operazioni di cui ha bisogno la stampa automatica.

- list_orders(): elenco corrente (per diff e polling)
- subscribe(cb): notifica a ogni insert/update di un ordine
- mark_printed(id): unica scrittura sull'ordine

La notifica arriva dagli eventi di sessione SQLAlchemy dopo il commit,
quindi qualunque codice che salva un Order (router, script, altri servizi)
sveglia la stampa automatica senza doverla chiamare esplicitamente.
"""
from __future__ import annotations
import asyncio
import logging
import weakref
from typing import Callable, Dict, List, Optional, Protocol

from sqlalchemy import event
from sqlalchemy.orm import Session as OrmSession
from sqlmodel import Session, select

from .models import Order, snapshot

log = logging.getLogger(__name__)

OrderCallback = Callable[[Order], None]

_PENDING_KEY = "comanda.changed_orders"
_FEEDS: "weakref.WeakSet[SqlOrderFeed]" = weakref.WeakSet()


class OrderFeed(Protocol):
    async def list_orders(self) -> List[Order]: ...

    async def get_order(self, order_id: int) -> Optional[Order]: ...

    def subscribe(self, callback: OrderCallback) -> Callable[[], None]: ...

    async def mark_printed(self, order_id: int) -> None: ...


@event.listens_for(OrmSession, "after_flush")
def _collect_orders(session, flush_context):
    pending: Dict[int, Order] = session.info.setdefault(_PENDING_KEY, {})
    for obj in list(session.new) + list(session.dirty):
        if isinstance(obj, Order) and obj.id is not None:
            pending[obj.id] = snapshot(obj)


@event.listens_for(OrmSession, "after_commit")
def _dispatch_orders(session):
    pending: Dict[int, Order] = session.info.pop(_PENDING_KEY, None) or {}
    if not pending:
        return
    for feed in list(_FEEDS):
        if feed.engine is session.bind:
            for order in pending.values():
                feed._emit(order)


@event.listens_for(OrmSession, "after_soft_rollback")
def _discard_orders(session, previous_transaction):
    session.info.pop(_PENDING_KEY, None)


class SqlOrderFeed:
    def __init__(self, engine, window: int = 500):
        self.engine = engine
        self.window = window
        self._subscribers: List[OrderCallback] = []
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        _FEEDS.add(self)

    # ---- notifiche ----
    def subscribe(self, callback: OrderCallback) -> Callable[[], None]:
        try:
            self._loop = asyncio.get_running_loop()
        except RuntimeError:
            self._loop = None
        self._subscribers.append(callback)

        def unsubscribe():
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def _emit(self, order: Order) -> None:
        loop = self._loop
        for cb in list(self._subscribers):
            if loop is None:
                cb(order)
            elif loop.is_closed():
                log.debug("loop chiuso, notifica ordine %s scartata", order.id)
            else:
                # il commit può arrivare da un thread del pool
                loop.call_soon_threadsafe(cb, order)

    # ---- letture ----
    def _list(self) -> List[Order]:
        with Session(self.engine, expire_on_commit=False) as session:
            rows = session.exec(select(Order).order_by(Order.id.desc()).limit(self.window)).all()
            return [snapshot(o) for o in reversed(rows)]

    async def list_orders(self) -> List[Order]:
        return await asyncio.to_thread(self._list)

    def _get(self, order_id: int) -> Optional[Order]:
        with Session(self.engine, expire_on_commit=False) as session:
            order = session.get(Order, order_id)
            return snapshot(order) if order else None

    async def get_order(self, order_id: int) -> Optional[Order]:
        return await asyncio.to_thread(self._get, order_id)

    # ---- scrittura ----
    def _mark(self, order_id: int) -> None:
        with Session(self.engine) as session:
            order = session.get(Order, order_id)
            if order is None:
                raise LookupError(f"ordine {order_id} inesistente")
            if not order.printed:
                order.printed = True
                session.add(order)
                session.commit()

    async def mark_printed(self, order_id: int) -> None:
        await asyncio.to_thread(self._mark, order_id)
