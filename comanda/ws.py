# comanda/ws.py
import json
import logging
from collections import deque
from typing import Deque, Set
from fastapi import WebSocket

from .models import utcnow

log = logging.getLogger(__name__)


class ConnectionManager:
    def __init__(self, history: int = 50) -> None:
        self.active_connections: Set[WebSocket] = set()
        self.recent: Deque[dict] = deque(maxlen=history)

    async def connect(self, websocket: WebSocket):
        await websocket.accept()
        self.active_connections.add(websocket)

    def disconnect(self, websocket: WebSocket):
        self.active_connections.discard(websocket)

    async def broadcast_text(self, message: str):
        """Invia testo a tutti i client connessi; rimuove quelli morti."""
        dead = []
        for ws in list(self.active_connections):
            try:
                await ws.send_text(message)
            except Exception:
                dead.append(ws)
        for ws in dead:
            self.disconnect(ws)

    async def broadcast_json(self, payload: dict):
        """Invia JSON a tutti i client connessi."""
        await self.broadcast_text(json.dumps(payload, default=str))

    async def notify(self, event: str, **data):
        """Notifica operatore (toast lato client)."""
        payload = {"type": event, "at": utcnow().isoformat(), **data}
        self.recent.append(payload)
        log.info("notify %s %s", event, data)
        await self.broadcast_json(payload)


manager = ConnectionManager()
