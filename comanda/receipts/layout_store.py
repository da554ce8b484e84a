# comanda/receipts/layout_store.py
from __future__ import annotations
import asyncio
import logging
from typing import List, Optional

from pydantic import ValidationError
from sqlmodel import Session, select

from ..models import utcnow
from .layout import LayoutConfig, default_layout
from .models_receipts import PrintLayout

log = logging.getLogger(__name__)


def layout_from_row(row: PrintLayout) -> Optional[LayoutConfig]:
    """Un layout salvato non più valido → None (il renderer userà l'emergenza)."""
    try:
        layout = LayoutConfig.model_validate(row.body or {})
    except ValidationError as e:
        log.error("layout %s (%s) non valido: %s", row.id, row.name, e)
        return None
    return layout.model_copy(update={
        "id": row.id,
        "name": row.name,
        "is_default": row.is_default,
        "paper_width": row.paper_width,
    })


def list_layouts(session: Session) -> List[PrintLayout]:
    return session.exec(select(PrintLayout).order_by(PrintLayout.id)).all()


def save_layout(session: Session, layout: LayoutConfig) -> PrintLayout:
    row = session.get(PrintLayout, layout.id) if layout.id else None
    if row is None:
        row = PrintLayout(name=layout.name)
    row.name = layout.name
    row.paper_width = layout.paper_width
    row.body = layout.to_body()
    row.updated_at = utcnow()
    session.add(row)
    session.commit()
    session.refresh(row)
    if layout.is_default:
        set_default(session, row.id)
    return row


def set_default(session: Session, layout_id: int) -> PrintLayout:
    target = session.get(PrintLayout, layout_id)
    if target is None:
        raise LookupError(f"layout {layout_id} inesistente")
    for row in list_layouts(session):
        row.is_default = row.id == layout_id
        session.add(row)
    session.commit()
    session.refresh(target)
    return target


def load_default(session: Session) -> Optional[LayoutConfig]:
    row = session.exec(
        select(PrintLayout).order_by(PrintLayout.is_default.desc(), PrintLayout.id)
    ).first()
    if row is None:
        return None
    return layout_from_row(row)


def seed_default_layout(session: Session, paper_width: int = 32) -> None:
    """Riceve la sessione dall'esterno: non ne crea di nuove."""
    if session.exec(select(PrintLayout)).first():
        return
    save_layout(session, default_layout(paper_width))


class LayoutProvider:
    """Layout corrente letto dal DB a ogni job (l'editor può cambiarlo a caldo)."""

    def __init__(self, engine):
        self.engine = engine

    def _load(self) -> Optional[LayoutConfig]:
        with Session(self.engine, expire_on_commit=False) as session:
            return load_default(session)

    async def current(self) -> Optional[LayoutConfig]:
        return await asyncio.to_thread(self._load)
