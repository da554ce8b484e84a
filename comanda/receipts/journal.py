# comanda/receipts/journal.py
from __future__ import annotations
import asyncio
import logging
from typing import List, Optional

from sqlmodel import Session, select

from .models_receipts import PrintLog

log = logging.getLogger(__name__)


def _first_non_empty_line(s: str) -> str:
    for ln in s.splitlines():
        t = ln.strip()
        if t:
            return t[:120]
    return ""


class PrintJournal:
    """Registro delle stampe (una riga per tentativo, ok o errore)."""

    def __init__(self, engine):
        self.engine = engine

    def record(self, *, body: str, order_id: Optional[int], printer_id: Optional[str],
               transport: str, source: str, ok: bool, error_kind: Optional[str] = None,
               error_text: Optional[str] = None, attempt: int = 1) -> PrintLog:
        row = PrintLog(
            order_id=order_id,
            printer_id=printer_id,
            transport=transport,
            source=source,
            attempt=attempt,
            body=body,
            status="ok" if ok else "error",
            error_kind=error_kind,
            error_text=error_text,
            summary=_first_non_empty_line(body),
        )
        with Session(self.engine, expire_on_commit=False) as session:
            session.add(row)
            session.commit()
        return row

    async def arecord(self, **kw) -> Optional[PrintLog]:
        # il log non deve mai far fallire una stampa già avvenuta
        try:
            return await asyncio.to_thread(self.record, **kw)
        except Exception:
            log.exception("scrittura PrintLog fallita")
            return None

    def recent(self, session: Session, limit: int = 50, status: Optional[str] = None) -> List[PrintLog]:
        q = select(PrintLog)
        if status:
            q = q.where(PrintLog.status == status)
        q = q.order_by(PrintLog.created_at.desc(), PrintLog.id.desc()).limit(limit)
        return session.exec(q).all()
