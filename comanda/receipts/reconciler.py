# comanda/receipts/reconciler.py
"""
Stampa automatica degli ordini nuovi.

Tre rilevatori indipendenti alimentano la stessa coda:
  - diff:  a ogni rilettura dell'elenco ordini, gli id comparsi rispetto alla precedente
  - poll:  a intervallo fisso si rilegge l'elenco; passa prima dal diff, poi
           tutto l'elenco ripassa dal filtro (recupera ciò che il diff ha rimandato)
  - push:  notifica del feed (commit su un Order)
Tutti passano da `try_admit`, che applica lo stesso filtro e fa
mark-then-enqueue senza await in mezzo: con un solo event loop nessun altro
rilevatore può infilarsi tra la marcatura e l'accodamento.

La coda è svuotata da un solo drain alla volta (FIFO); il lock del device è
condiviso con la stampa manuale e la pagina di test.
"""
from __future__ import annotations
import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Awaitable, Callable, Deque, Dict, Iterable, List, Optional, Set

from ..config import AutoPrintConfig
from ..models import Order, as_utc, is_order_complete, utcnow
from .devices import DeviceLocator, ONLINE, PrinterDescriptor
from .journal import PrintJournal
from .layout import LayoutConfig
from .printing_service import PrinterSink, PrintOutcome
from .renderer import ReceiptLine, RenderSettings, render_lines, sanitize_text
from .state import KEY_ACTIVATED_AT, KEY_ENABLED, KEY_PRINTER, KEY_PROCESSED, StateStore

log = logging.getLogger(__name__)

DISABLED, NO_PRINTER, ARMED = "disabled", "enabled_no_printer", "armed"

Notifier = Callable[..., Awaitable[None]]


@dataclass
class PrintJob:
    order_id: Optional[int]
    target_printer_id: Optional[str]
    rendered_text: str = ""
    attempt: int = 0
    source: str = "auto"
    lines: List[ReceiptLine] = field(default_factory=list)


def _parse_ts(value) -> Optional[datetime]:
    if not value:
        return None
    try:
        return as_utc(datetime.fromisoformat(str(value)))
    except ValueError:
        log.warning("activated_at non valido nello stato: %r", value)
        return None


class ReconciliationEngine:
    def __init__(
        self,
        feed,
        sink: PrinterSink,
        locator: DeviceLocator,
        layouts,
        state: StateStore,
        notifier: Optional[Notifier] = None,
        journal: Optional[PrintJournal] = None,
        settings: Optional[AutoPrintConfig] = None,
        render_settings: Optional[RenderSettings] = None,
        clock: Callable[[], float] = time.monotonic,
        now: Callable[[], datetime] = utcnow,
    ):
        self.feed = feed
        self.sink = sink
        self.locator = locator
        self.layouts = layouts
        self.state = state
        self.notifier = notifier
        self.journal = journal
        self.settings = settings or AutoPrintConfig()
        self.render_settings = render_settings or RenderSettings()
        self.clock = clock
        self.now = now

        self._started_at = clock()
        self.queue: Deque[int] = deque()
        self._queued: Set[int] = set()
        self.orders: Dict[int, Order] = {}
        self._known_ids: Optional[Set[int]] = None
        self.last_printed_id: Optional[int] = None
        self.admitted_by: Dict[str, int] = {}
        self.device_lock = asyncio.Lock()
        self._draining = False
        self._tasks: Set[asyncio.Task] = set()
        self._poll_task: Optional[asyncio.Task] = None
        self._unsubscribe: Optional[Callable[[], None]] = None

        # stato persistito
        self.enabled = bool(state.get(KEY_ENABLED, False))
        self.activated_at = _parse_ts(state.get(KEY_ACTIVATED_AT))
        self.processed: Set[int] = {int(x) for x in state.get(KEY_PROCESSED, []) or []}
        self.selected_printer_id: Optional[str] = state.get(KEY_PRINTER)
        if self.enabled and self.activated_at is None:
            # stato incoerente (abilitato senza epoca): nuova epoca da adesso
            self.activated_at = self.now()
            self._persist_all()

    # ========= Stato =========
    @property
    def phase(self) -> str:
        if not self.enabled:
            return DISABLED
        if not self.selected_printer_id:
            return NO_PRINTER
        return ARMED

    @property
    def grace_remaining(self) -> float:
        return max(0.0, self.settings.init_grace_seconds - (self.clock() - self._started_at))

    def _persist_processed(self) -> None:
        self.state.set(KEY_PROCESSED, sorted(self.processed))

    def _persist_all(self) -> None:
        self.state.update({
            KEY_ENABLED: self.enabled,
            KEY_ACTIVATED_AT: self.activated_at.isoformat() if self.activated_at else None,
            KEY_PROCESSED: sorted(self.processed),
        })

    def _clear_queue(self) -> int:
        dropped = len(self.queue)
        self.queue.clear()
        self._queued.clear()
        return dropped

    def enable(self) -> bool:
        if self.enabled:
            return False
        self.enabled = True
        self.activated_at = self.now()
        self.processed.clear()
        self._clear_queue()
        self._persist_all()
        log.info("stampa automatica attivata alle %s", self.activated_at.isoformat())
        self._spawn(self._notify("autoprint.enabled", activatedAt=self.activated_at.isoformat()))
        return True

    def disable(self) -> bool:
        if not self.enabled:
            return False
        self.enabled = False
        self.activated_at = None
        dropped = self._clear_queue()
        self._persist_all()
        log.info("stampa automatica disattivata (%d job in coda scartati)", dropped)
        self._spawn(self._notify("autoprint.disabled", dropped=dropped))
        return True

    def reset(self) -> None:
        self.enabled = False
        self.activated_at = None
        self.processed.clear()
        self._clear_queue()
        self.state.delete(KEY_ENABLED, KEY_ACTIVATED_AT, KEY_PROCESSED)
        log.info("stato stampa automatica azzerato")
        self._spawn(self._notify("autoprint.reset"))

    def select_printer(self, printer_id: Optional[str]) -> None:
        self.selected_printer_id = printer_id or None
        if self.selected_printer_id:
            self.state.set(KEY_PRINTER, self.selected_printer_id)
        else:
            self.state.delete(KEY_PRINTER)
        log.info("stampante selezionata: %s", self.selected_printer_id)

    def auto_select_printer(self, printers: Iterable[PrinterDescriptor]) -> Optional[str]:
        printers = list(printers)
        if self.selected_printer_id and any(p.id == self.selected_printer_id for p in printers):
            return self.selected_printer_id
        for p in printers:
            if p.status == ONLINE:
                self.select_printer(p.id)
                return p.id
        return self.selected_printer_id

    # ========= Ammissione =========
    def rejection(self, order: Order) -> Optional[str]:
        """Motivo per cui l'ordine non entra in coda, None se ammissibile."""
        if not self.enabled:
            return "disabled"
        if not self.selected_printer_id:
            return "no_printer"
        if self.grace_remaining > 0:
            return "grace"
        if order.id is None:
            return "no_id"
        if order.printed:
            return "printed"
        if not is_order_complete(order):
            return "incomplete"
        if order.id in self.processed:
            return "processed"
        if order.id in self._queued:
            return "queued"
        created = as_utc(order.created_at)
        if self.activated_at is None or created is None or created <= self.activated_at:
            return "before_activation"
        return None

    def try_admit(self, order: Order, source: str = "") -> bool:
        reason = self.rejection(order)
        if reason:
            log.debug("ordine %s non ammesso (%s): %s", order.id, source, reason)
            return False
        if len(self.queue) >= self.settings.max_queue:
            # non marcato: un passaggio successivo lo riprenderà
            log.warning("coda piena (%d), ordine %s rimandato", len(self.queue), order.id)
            return False
        # mark-then-enqueue, nessun await tra le due
        self.processed.add(order.id)
        self.orders[order.id] = order
        self.queue.append(order.id)
        self._queued.add(order.id)
        self._persist_processed()
        if source:
            self.admitted_by[source] = self.admitted_by.get(source, 0) + 1
        log.info("ordine %s in coda (rilevato da %s)", order.id, source or "?")
        self._kick()
        return True

    def _update_view(self, orders: Iterable[Order]) -> None:
        view = {o.id: o for o in orders if o.id is not None}
        for oid in self._queued:
            if oid not in view and oid in self.orders:
                view[oid] = self.orders[oid]
        self.orders = view

    # ========= Rilevatori =========
    def on_refresh(self, orders: Iterable[Order]) -> List[int]:
        """Diff: ammette solo gli id comparsi rispetto all'elenco precedente."""
        orders = list(orders)
        self._update_view(orders)
        previous = self._known_ids
        self._known_ids = {o.id for o in orders if o.id is not None}
        if previous is None:
            # primo elenco = baseline
            return []
        return [o.id for o in orders if o.id not in previous and self.try_admit(o, "diff")]

    async def refresh(self) -> List[int]:
        return self.on_refresh(await self.feed.list_orders())

    async def poll_once(self) -> List[int]:
        """Un giro del loop: diff sull'elenco appena letto, poi il filtro completo sullo stesso elenco."""
        orders = await self.feed.list_orders()
        admitted = self.on_refresh(orders)
        admitted += [o.id for o in orders if self.try_admit(o, "poll")]
        return admitted

    def on_push(self, order: Order) -> List[int]:
        if order.id is not None:
            self.orders[order.id] = order
        return [o.id for o in list(self.orders.values()) if self.try_admit(o, "push")]

    async def _poll_loop(self) -> None:
        while True:
            await asyncio.sleep(self.settings.poll_interval)
            try:
                await self.poll_once()
            except Exception:
                log.exception("polling ordini fallito")

    # ========= Drain =========
    def _spawn(self, coro) -> Optional[asyncio.Task]:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            coro.close()
            return None
        task = loop.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _kick(self) -> None:
        if not self._draining and self.queue:
            self._spawn(self.drain())

    async def drain(self) -> int:
        if self._draining:
            return 0
        self._draining = True
        done = 0
        try:
            while self.queue:
                order_id = self.queue.popleft()
                self._queued.discard(order_id)
                try:
                    await self._process(order_id)
                except Exception:
                    log.exception("job ordine %s interrotto", order_id)
                done += 1
        finally:
            self._draining = False
        return done

    async def _current_layout(self) -> Optional[LayoutConfig]:
        try:
            return await self.layouts.current()
        except Exception:
            log.exception("lettura layout fallita, uso lo scontrino di emergenza")
            return None

    async def _resolve_order(self, order_id: int) -> Optional[Order]:
        try:
            order = await self.feed.get_order(order_id)
        except Exception:
            log.exception("lettura ordine %s fallita, uso la copia in memoria", order_id)
            return self.orders.get(order_id)
        if order is not None:
            self.orders[order_id] = order
        return order

    async def _render(self, order: Order, job: PrintJob) -> None:
        layout = await self._current_layout()
        job.lines = render_lines(order, layout, {"printDate": self.now()}, self.render_settings)
        job.rendered_text = "\n".join(ln.text for ln in job.lines)

    async def _send(self, job: PrintJob, retry: bool = False,
                    requested_path: Optional[str] = None) -> PrintOutcome:
        printer = self.locator.find(job.target_printer_id)
        chain = self.locator.transport_chain(printer, requested_path)
        async with self.device_lock:
            job.attempt += 1
            if retry:
                outcome = await self.sink.deliver_with_retry(chain, job.rendered_text, job.lines)
            else:
                outcome = await self.sink.deliver(chain, job.rendered_text, job.lines)
        if outcome.simulated:
            await self._notify("printer.simulated", orderId=job.order_id,
                               message="Nenhuma impressora disponível: impressão simulada")
        if self.journal is not None:
            await self.journal.arecord(
                body=job.rendered_text,
                order_id=job.order_id,
                printer_id=job.target_printer_id,
                transport=outcome.transport.kind,
                source=job.source,
                ok=outcome.ok,
                error_kind=outcome.error.kind if outcome.error else None,
                error_text=outcome.error.detail if outcome.error else None,
                attempt=outcome.attempts,
            )
        return outcome

    async def _confirm_printed(self, order_id: int) -> bool:
        try:
            await self.feed.mark_printed(order_id)
        except Exception as e:
            # stampato ma non registrato: il prossimo poll potrebbe ristamparlo
            log.error("ordine %s stampato ma mark_printed fallito: %r", order_id, e)
            await self._notify("print.unconfirmed", orderId=order_id,
                               message="Pedido impresso, mas não foi marcado como impresso")
            return False
        order = self.orders.get(order_id)
        if order is not None:
            order.printed = True
        return True

    async def _process(self, order_id: int) -> None:
        order = await self._resolve_order(order_id)
        if order is None:
            log.warning("ordine %s non più esistente, job abbandonato", order_id)
            return
        if order.printed:
            log.info("ordine %s già stampato, salto", order_id)
            return
        job = PrintJob(order_id=order_id, target_printer_id=self.selected_printer_id)
        await self._render(order, job)
        outcome = await self._send(job)
        if outcome.ok:
            await self._confirm_printed(order_id)
            self.last_printed_id = order_id
            await self._notify("print.ok", orderId=order_id, simulated=outcome.simulated)
        else:
            # terminale per l'automatico: l'id resta nel Processed Set
            log.warning("stampa automatica ordine %s fallita: %s", order_id, outcome.message)
            await self._notify("print.error", orderId=order_id,
                               kind=outcome.error.kind, message=outcome.message)

    # ========= Stampa manuale =========
    async def print_manual(self, order: Order, printer_id: Optional[str] = None,
                           text: Optional[str] = None) -> PrintOutcome:
        """Stampa su richiesta: ignora il Processed Set, stesso lock della coda."""
        job = PrintJob(
            order_id=order.id,
            target_printer_id=printer_id or self.selected_printer_id,
            source="manual",
        )
        if text:
            job.rendered_text = sanitize_text(text)
            job.lines = [ReceiptLine(t) for t in job.rendered_text.split("\n")]
        else:
            await self._render(order, job)
        outcome = await self._send(job, retry=True)
        if outcome.ok and order.id is not None:
            try:
                await self.feed.mark_printed(order.id)
            except LookupError:
                log.debug("ordine %s non presente nello store", order.id)
            except Exception:
                log.exception("mark_printed dopo stampa manuale fallito")
        return outcome

    async def print_test(self, printer_id: Optional[str] = None,
                         device_path: Optional[str] = None) -> PrintOutcome:
        printer = self.locator.find(printer_id or self.selected_printer_id)
        transport = self.locator.resolve_transport(printer, device_path)
        job = PrintJob(order_id=None, target_printer_id=printer.id if printer else None, source="test")
        job.lines = self.sink.test_page(transport, store_name=self.render_settings.store_name)
        job.rendered_text = "\n".join(ln.text for ln in job.lines)
        return await self._send(job, requested_path=device_path)

    # ========= Ciclo di vita =========
    def _on_feed_change(self, order: Order) -> None:
        self.on_push(order)

    async def start(self) -> None:
        if self._unsubscribe is None:
            self._unsubscribe = self.feed.subscribe(self._on_feed_change)
        printers = await self.locator.discover()
        self.auto_select_printer(printers)
        try:
            await self.refresh()
        except Exception:
            log.exception("primo caricamento ordini fallito")
        if self._poll_task is None:
            self._poll_task = asyncio.create_task(self._poll_loop())
        log.info("stampa automatica avviata (fase %s)", self.phase)

    async def stop(self) -> None:
        if self._poll_task is not None:
            self._poll_task.cancel()
            try:
                await self._poll_task
            except asyncio.CancelledError:
                pass
            self._poll_task = None
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        dropped = self._clear_queue()
        if dropped:
            log.info("%d job in coda non stampati allo stop", dropped)
        if self._tasks:
            # il job già nel sink termina
            await asyncio.wait(list(self._tasks), timeout=self.sink.config.write_timeout)

    async def _notify(self, event: str, **data) -> None:
        if self.notifier is None:
            return
        try:
            await self.notifier(event, **data)
        except Exception:
            log.exception("notifica %s fallita", event)

    def snapshot(self) -> dict:
        return {
            "enabled": self.enabled,
            "phase": self.phase,
            "activatedAt": self.activated_at.isoformat() if self.activated_at else None,
            "selectedPrinterId": self.selected_printer_id,
            "processedIds": sorted(self.processed),
            "queue": list(self.queue),
            "draining": self._draining,
            "lastPrintedId": self.last_printed_id,
            "admittedBy": dict(self.admitted_by),
            "graceRemaining": round(self.grace_remaining, 1),
        }
