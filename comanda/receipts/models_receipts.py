# comanda/receipts/models_receipts.py
from __future__ import annotations
from typing import Optional
from sqlmodel import SQLModel, Field
from sqlalchemy import Column, JSON
from datetime import datetime

from ..models import utcnow


class PrintLayout(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    name: str
    is_default: bool = Field(default=False, index=True)
    paper_width: int = 32
    # LayoutConfig serializzato (camelCase, come arriva dall'editor)
    body: dict = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    updated_at: datetime = Field(default_factory=utcnow)


class PrintLog(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    created_at: datetime = Field(default_factory=utcnow, index=True)

    order_id: Optional[int] = Field(default=None, index=True)
    printer_id: Optional[str] = Field(default=None, index=True)
    transport: str = "simulation"  # "device" | "usb" | "simulation"
    source: str = "auto"           # "auto" | "manual" | "test"
    attempt: int = 1

    body: str
    status: str = "ok"             # "ok" | "error"
    error_kind: Optional[str] = None
    error_text: Optional[str] = None
    summary: Optional[str] = None  # prima riga utile per elenco
