# comanda/models.py
from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional
from sqlmodel import SQLModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """SQLite restituisce datetime naive: li consideriamo sempre UTC."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


class Order(SQLModel, table=True):
    # L'anagrafica ordini è gestita altrove: qui si scrive solo `printed`
    id: Optional[int] = Field(default=None, primary_key=True)
    customer_name: str = ""
    address: str = ""
    item_description: str = ""
    notes: str = ""
    amount: Optional[Decimal] = Field(default=None, max_digits=10, decimal_places=2)
    payment_type: str = ""
    created_at: datetime = Field(default_factory=utcnow, nullable=False, index=True)
    printed: bool = Field(default=False, index=True)


def is_order_complete(order) -> bool:
    if not (order.customer_name or "").strip():
        return False
    if not (order.item_description or "").strip():
        return False
    return order.amount is None or order.amount > 0


def snapshot(order: Order) -> Order:
    """Copia staccata dalla sessione, sicura da passare tra thread."""
    return Order(**order.model_dump())
