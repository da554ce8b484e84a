# comanda/routers/printer.py
from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Annotated, Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from sqlmodel import Session

from ..db import get_session_dep
from ..models import Order, utcnow
from ..receipts.layout import LayoutConfig
from ..receipts.layout_store import layout_from_row, list_layouts, load_default, save_layout, set_default
from ..receipts.models_receipts import PrintLayout
from ..receipts.reconciler import ReconciliationEngine
from ..receipts.renderer import render
from ..ws import manager

router = APIRouter(prefix="/printer", tags=["printer"])

# ---- Dipendenze tipizzate ----
SessionDep = Annotated[Session, Depends(get_session_dep)]


def get_engine(request: Request) -> ReconciliationEngine:
    return request.app.state.autoprint


EngineDep = Annotated[ReconciliationEngine, Depends(get_engine)]


# ---------- Payload ----------
def _alias(*names: str):
    return Field(default=None, validation_alias=AliasChoices(*names))


class OrderPayload(BaseModel):
    """Ordine come arriva dal gestionale (camelCase, snake_case o colonne legacy)."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: Optional[int] = None
    customer_name: Optional[str] = _alias("customerName", "customer_name", "nome_cliente")
    address: Optional[str] = _alias("address", "endereco")
    item_description: Optional[str] = _alias("itemDescription", "item_description", "pedido")
    notes: Optional[str] = _alias("notes", "observacoes")
    amount: Optional[Decimal] = _alias("amount", "valor")
    payment_type: Optional[str] = _alias("paymentType", "payment_type", "tipo_pagamento")
    created_at: Optional[datetime] = _alias("createdAt", "created_at")

    @property
    def only_id(self) -> bool:
        return self.id is not None and not (self.customer_name or self.item_description)

    def to_order(self) -> Order:
        return Order(
            id=self.id,
            customer_name=self.customer_name or "",
            address=self.address or "",
            item_description=self.item_description or "",
            notes=self.notes or "",
            amount=self.amount,
            payment_type=self.payment_type or "",
            # senza data l'ordine non ne inventa una: la riga resta vuota
            created_at=self.created_at,
            printed=False,
        )


class PrintRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    printer_id: Optional[str] = Field(default=None, alias="printerId")
    order_data: OrderPayload = Field(alias="orderData")
    print_text: Optional[str] = Field(default=None, alias="printText")


class TestPageConfig(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    printer_id: Optional[str] = Field(default=None, alias="printerId")
    device_path: Optional[str] = Field(default=None, alias="devicePath")


class TestPageRequest(BaseModel):
    config: Optional[TestPageConfig] = None


class SelectRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    printer_id: Optional[str] = Field(default=None, alias="printerId")


class PreviewRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    order_data: Optional[OrderPayload] = Field(default=None, alias="orderData")
    order_id: Optional[int] = Field(default=None, alias="orderId")
    layout_id: Optional[int] = Field(default=None, alias="layoutId")
    overrides: Dict[str, Any] = Field(default_factory=dict)


# ---------- Rilevamento / stato ----------
@router.get("/detect")
async def detect(engine: EngineDep):
    printers = await engine.locator.discover()
    engine.auto_select_printer(printers)
    return {
        "success": True,
        "printers": [p.to_dict() for p in printers],
        "count": len(printers),
        "selectedPrinterId": engine.selected_printer_id,
    }


@router.get("/status")
async def status(engine: EngineDep):
    st = await engine.locator.check_status(engine.selected_printer_id)
    return {"success": True, **st}


@router.post("/activate")
async def activate(body: SelectRequest, engine: EngineDep):
    if not body.printer_id:
        raise HTTPException(status_code=400, detail="printerId obbligatorio")
    ok = await engine.locator.activate(body.printer_id)
    return {"success": ok}


# ---------- Stampa ----------
@router.post("/print")
async def print_order(body: PrintRequest, engine: EngineDep):
    order = body.order_data.to_order()
    if body.order_data.only_id and not body.print_text:
        stored = await engine.feed.get_order(body.order_data.id)
        if stored is None:
            return JSONResponse({"success": False, "message": "Pedido não encontrado"}, status_code=404)
        order = stored
    outcome = await engine.print_manual(order, printer_id=body.printer_id, text=body.print_text)
    return outcome.to_dict()


@router.post("/test")
async def print_test(engine: EngineDep, body: Optional[TestPageRequest] = None):
    cfg = (body.config if body else None) or TestPageConfig()
    outcome = await engine.print_test(printer_id=cfg.printer_id, device_path=cfg.device_path)
    return {"success": outcome.ok, "message": outcome.message, "simulated": outcome.simulated}


# ---------- Stampa automatica ----------
@router.get("/auto")
def auto_status(engine: EngineDep):
    return engine.snapshot()


@router.post("/auto/enable")
async def auto_enable(engine: EngineDep):
    changed = engine.enable()
    return {"success": True, "changed": changed, **engine.snapshot()}


@router.post("/auto/disable")
async def auto_disable(engine: EngineDep):
    changed = engine.disable()
    return {"success": True, "changed": changed, **engine.snapshot()}


@router.post("/auto/reset")
async def auto_reset(engine: EngineDep):
    engine.reset()
    return {"success": True, **engine.snapshot()}


@router.post("/select")
def select_printer(body: SelectRequest, engine: EngineDep):
    engine.select_printer(body.printer_id)
    return {"success": True, **engine.snapshot()}


# ---------- Layout ----------
def _layout_out(row: PrintLayout) -> dict:
    layout = layout_from_row(row)
    return {
        "id": row.id,
        "name": row.name,
        "isDefault": row.is_default,
        "paperWidth": row.paper_width,
        "valid": layout is not None,
        "layout": layout.model_dump(by_alias=True, mode="json") if layout else row.body,
    }


@router.get("/layouts")
def get_layouts(session: SessionDep):
    return [_layout_out(r) for r in list_layouts(session)]


@router.post("/layouts")
def post_layout(layout: LayoutConfig, session: SessionDep):
    row = save_layout(session, layout)
    return _layout_out(row)


@router.post("/layouts/{layout_id}/default")
def post_layout_default(layout_id: int, session: SessionDep):
    try:
        row = set_default(session, layout_id)
    except LookupError:
        raise HTTPException(status_code=404, detail=f"Layout {layout_id} non trovato")
    return _layout_out(row)


@router.post("/preview")
def preview(body: PreviewRequest, session: SessionDep, engine: EngineDep):
    if body.order_id is not None:
        order = session.get(Order, body.order_id)
        if order is None:
            raise HTTPException(status_code=404, detail=f"Ordine {body.order_id} non trovato")
    elif body.order_data is not None:
        order = body.order_data.to_order()
    else:
        raise HTTPException(status_code=400, detail="orderId o orderData obbligatorio")

    if body.layout_id is not None:
        row = session.get(PrintLayout, body.layout_id)
        if row is None:
            raise HTTPException(status_code=404, detail=f"Layout {body.layout_id} non trovato")
        layout = layout_from_row(row)
    else:
        layout = load_default(session)

    overrides = {"printDate": utcnow(), **body.overrides}
    text = render(order, layout, overrides, engine.render_settings)
    return {"success": True, "text": text, "lines": text.split("\n")}


# ---------- Log ----------
@router.get("/logs")
def logs(request: Request, session: SessionDep,
         status: Optional[str] = Query(None, pattern="^(ok|error)$"),
         limit: int = Query(50, ge=1, le=500)):
    rows = request.app.state.journal.recent(session, limit=limit, status=status)
    return [
        {
            "id": r.id,
            "createdAt": r.created_at.isoformat(),
            "orderId": r.order_id,
            "printerId": r.printer_id,
            "transport": r.transport,
            "source": r.source,
            "status": r.status,
            "errorKind": r.error_kind,
            "errorText": r.error_text,
            "summary": r.summary,
        }
        for r in rows
    ]


# ---------- Notifiche ----------
@router.get("/notifications")
def notifications(limit: int = Query(50, ge=1, le=50)):
    """Ultime notifiche operatore, per chi si collega dopo (il /ws manda solo le nuove)."""
    return list(manager.recent)[-limit:]
