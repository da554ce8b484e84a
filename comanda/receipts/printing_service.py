# comanda/receipts/printing_service.py
from __future__ import annotations
import asyncio
import logging
import os
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Optional, Sequence

from escpos.exceptions import DeviceNotFoundError
from escpos.printer import Usb
from usb.core import NoBackendError

from ..config import PrinterConfig
from .devices import Transport
from .errors import DeviceNotFound, PrintError, PrintTimeout, classify_os_error
from .renderer import ReceiptLine, render_jinja, sanitize_text

log = logging.getLogger(__name__)

# ========= Debug =========
DEBUG = os.environ.get("PRINT_DEBUG", "").strip() in ("1", "true", "TRUE", "yes", "on")


def dbg(*args):
    if DEBUG:
        log.info("[PRINT][DBG] %s", " ".join(str(a) for a in args))


def err(*args):
    log.error("[PRINT][ERR] %s", " ".join(str(a) for a in args))


TEST_PAGE = (
    "TESTE DE IMPRESSAO\n"
    "{{ '=' * width }}\n"
    "Data: {{ now.strftime('%d/%m/%Y %H:%M') }}\n"
    "Transporte: {{ transport }}\n"
    "{% if store_name %}{{ store_name }}\n{% endif %}"
    "{{ '-' * width }}\n"
    "Acentos: ação, café, pão\n"
    "{{ '=' * width }}\n"
)


@dataclass
class PrintOutcome:
    ok: bool
    transport: Transport
    error: Optional[PrintError] = None
    attempts: int = 1

    @property
    def simulated(self) -> bool:
        return self.ok and self.transport.simulated

    @property
    def message(self) -> str:
        if self.error is not None:
            return self.error.message
        if self.simulated:
            return "Impressão simulada (nenhuma impressora conectada)"
        return "Impressão enviada com sucesso"

    def to_dict(self) -> dict:
        return {
            "success": self.ok,
            "message": self.message,
            "simulated": self.simulated,
            "transport": self.transport.to_dict(),
            "error": self.error.kind if self.error else None,
            "attempts": self.attempts,
        }


class PrinterSink:
    """Scrive lo scontrino sul transport risolto e classifica gli errori."""

    def __init__(self, config: Optional[PrinterConfig] = None, usb_factory: Optional[Callable] = None):
        self.config = config or PrinterConfig()
        self.usb_factory = usb_factory or Usb

    # ========= Direct write =========
    def _encode(self, text: str) -> bytes:
        payload = text + "\n" * self.config.feed_lines
        return payload.encode(self.config.encoding, errors="replace")

    def _append_device(self, path: str, data: bytes) -> None:
        t0 = time.time()
        with open(path, "ab", buffering=0) as fh:
            fh.write(data)
        dbg(f"write {len(data)} bytes on {path} in {time.time()-t0:.3f}s")

    async def _bounded(self, label: str, fn, *args) -> bool:
        """
        Esegue la scrittura bloccante in un thread con timeout.
        Allo scadere il thread non si può interrompere: si aspetta comunque
        che esca, così il device resta occupato fino alla fine della scrittura.
        Ritorna False se il timeout è scaduto.
        """
        work = asyncio.ensure_future(asyncio.to_thread(fn, *args))
        try:
            await asyncio.wait_for(asyncio.shield(work), timeout=self.config.write_timeout)
        except asyncio.TimeoutError:
            err(f"{label}: nessuna risposta in {self.config.write_timeout}s, attendo la fine della scrittura")
            try:
                await work
            except Exception as e:
                log.warning("%s: scrittura terminata con errore dopo il timeout: %r", label, e)
            return False
        return True

    async def _write_device(self, path: str, text: str) -> None:
        data = self._encode(text)
        if not await self._bounded(path, self._append_device, path, data):
            raise PrintTimeout(f"nessuna risposta in {self.config.write_timeout}s", path=path)

    # ========= ESC/POS USB =========
    def _usb_session(self, transport: Transport, lines: Sequence[ReceiptLine]) -> None:
        # python-escpos apre il device al primo comando: il "non trovato"
        # può arrivare dal costruttore come da set()/text()
        try:
            p = self.usb_factory(transport.vendor_id, transport.product_id, timeout=0)
        except (DeviceNotFoundError, NoBackendError) as e:
            raise DeviceNotFound(str(e), path=transport.label) from e
        try:
            for ln in lines:
                p.set(align=ln.align, bold=ln.bold, double_height=ln.double_height)
                p.text(ln.text + "\n")
            p.set(align="left", bold=False, double_height=False)
            p.text("\n" * self.config.feed_lines)
            p.cut()
            dbg(f"usb session ok ({len(lines)} righe) on {transport.label}")
        except (DeviceNotFoundError, NoBackendError) as e:
            raise DeviceNotFound(str(e), path=transport.label) from e
        finally:
            try:
                p.close()
                dbg("Printer closed")
            except Exception as e:
                err("close failed:", repr(e))

    async def _write_usb(self, transport: Transport, text: str, lines: Optional[Sequence[ReceiptLine]]) -> None:
        if not lines:
            lines = [ReceiptLine(t) for t in text.split("\n")]
        if not await self._bounded(transport.label, self._usb_session, transport, lines):
            raise PrintTimeout("sessione USB bloccata", path=transport.label)

    # ========= Simulation =========
    def _simulate(self, text: str) -> None:
        log.warning("stampa SIMULATA (nessun device disponibile):\n%s", text)

    async def write(self, transport: Transport, text: str,
                    lines: Optional[Sequence[ReceiptLine]] = None) -> PrintOutcome:
        dbg(f"write start -> {transport.label}")
        try:
            if transport.kind == "device":
                await self._write_device(transport.device_path, text)
            elif transport.kind == "usb":
                await self._write_usb(transport, text, lines)
            else:
                self._simulate(text)
        except Exception as e:
            error = classify_os_error(e, path=transport.device_path or transport.label)
            err(f"{transport.label}: {error.kind} {error.detail}")
            return PrintOutcome(False, transport, error)
        return PrintOutcome(True, transport)

    async def deliver(self, chain: Sequence[Transport], text: str,
                      lines: Optional[Sequence[ReceiptLine]] = None) -> PrintOutcome:
        """Percorre la catena: si passa al candidato successivo solo se il device non c'è."""
        outcome: Optional[PrintOutcome] = None
        for transport in chain:
            outcome = await self.write(transport, text, lines)
            if outcome.ok or not isinstance(outcome.error, DeviceNotFound):
                return outcome
            log.info("%s non trovato, provo il prossimo transport", transport.label)
        if outcome is None:
            return PrintOutcome(False, Transport("simulation"), DeviceNotFound("catena vuota"))
        return outcome

    async def deliver_with_retry(self, chain: Sequence[Transport], text: str,
                                 lines: Optional[Sequence[ReceiptLine]] = None,
                                 retries: Optional[int] = None,
                                 backoff: Optional[float] = None) -> PrintOutcome:
        """Solo per la stampa manuale: ritenta gli errori transitori (busy/timeout)."""
        retries = max(1, retries if retries is not None else self.config.manual_retries)
        backoff = backoff if backoff is not None else self.config.retry_backoff
        attempt = 0
        while True:
            attempt += 1
            outcome = await self.deliver(chain, text, lines)
            outcome.attempts = attempt
            if outcome.ok or not outcome.error.transient or attempt >= retries:
                return outcome
            delay = backoff * (2 ** (attempt - 1))
            log.info("errore transitorio (%s), nuovo tentativo tra %.2fs", outcome.error.kind, delay)
            await asyncio.sleep(delay)

    def test_page(self, transport: Transport, width: int = 32, store_name: str = "",
                  now: Optional[datetime] = None) -> List[ReceiptLine]:
        text = render_jinja(TEST_PAGE, {
            "width": width,
            "now": now or datetime.now(),
            "transport": transport.label,
            "store_name": store_name,
        })
        return [ReceiptLine(sanitize_text(t)[:width]) for t in text.rstrip("\n").split("\n")]
