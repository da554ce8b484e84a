import logging

from fastapi import FastAPI, WebSocket
from fastapi.responses import PlainTextResponse
from fastapi.websockets import WebSocketDisconnect

from .config import CONFIG, AppConfig
from .db import create_db_and_tables, engine as db_engine, seed_all_once
from .feed import SqlOrderFeed
from .receipts.devices import DeviceLocator
from .receipts.journal import PrintJournal
from .receipts.layout_store import LayoutProvider
from .receipts.printing_service import PrinterSink
from .receipts.reconciler import ReconciliationEngine
from .receipts.renderer import RenderSettings
from .receipts.state import StateStore
from .routers import printer
from .ws import manager

logging.basicConfig(
    level=getattr(logging, CONFIG.log_level, logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
log = logging.getLogger("comanda")

app = FastAPI(title="Comanda - Stampa ordini")


def build_autoprint(config: AppConfig, engine=db_engine, notifier=manager.notify) -> ReconciliationEngine:
    """Un solo motore per processo, con le dipendenze esplicite."""
    return ReconciliationEngine(
        feed=SqlOrderFeed(engine),
        sink=PrinterSink(config.printer),
        locator=DeviceLocator(config.printer),
        layouts=LayoutProvider(engine),
        state=StateStore(config.autoprint.state_file),
        notifier=notifier,
        journal=PrintJournal(engine),
        settings=config.autoprint,
        render_settings=RenderSettings.from_config(config.receipt),
    )


@app.on_event("startup")
async def on_startup():
    create_db_and_tables()
    seed_all_once(CONFIG.receipt.paper_width)
    autoprint = build_autoprint(CONFIG)
    app.state.autoprint = autoprint
    app.state.journal = autoprint.journal
    await autoprint.start()
    log.info("stato stampa automatica: %s", autoprint.snapshot())


@app.on_event("shutdown")
async def on_shutdown():
    autoprint = getattr(app.state, "autoprint", None)
    if autoprint is not None:
        await autoprint.stop()


@app.get("/health", response_class=PlainTextResponse)
def health():
    return "OK"


@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    await manager.connect(websocket)
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        manager.disconnect(websocket)


app.include_router(printer.router)
