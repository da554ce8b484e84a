# comanda/receipts/devices.py
"""
Rilevamento stampanti e risoluzione del transport.

`discover()` prova in sequenza tutte le strategie disponibili sull'host
(registro stampanti del sistema, bus USB, file di device noti, creazione
best-effort dei nodi /dev/usblpN), concatena e deduplica. Non solleva mai:
un errore in una strategia viene loggato e si prosegue con le altre.
"""
from __future__ import annotations
import asyncio
import glob
import logging
import os
import re
import sys
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional, Sequence

from ..config import PrinterConfig

log = logging.getLogger(__name__)

ONLINE, OFFLINE, INACTIVE, ERROR = "online", "offline", "inactive", "error"

LSUSB_LINE = re.compile(r"Bus (\d+) Device (\d+): ID ([0-9a-fA-F]{4}):([0-9a-fA-F]{4})\s*(.*)")
PRINTER_KEYWORDS = re.compile(r"\b(printer|pos|receipt|thermal|epson|bixolon|citizen|zebra)\b", re.I)

VENDOR_NAMES = {
    "04b8": "Epson",
    "03f0": "HP",
    "04a9": "Canon",
    "04e8": "Samsung",
    "0924": "Xerox",
    "0482": "Kyocera",
    "413c": "Dell",
    "04f9": "Brother",
    "0409": "NEC",
    "1a86": "QinHeng Electronics (CH340)",
    "0403": "FTDI",
    "10c4": "Cygnal Integrated Products",
    "067b": "Prolific Technology",
    "1659": "Thermal Printer",
    "0fe6": "ICS Advent",
    "0519": "Thermal POS",
}
# vendor che in pratica vendono solo termiche/adattatori per termiche
THERMAL_VENDORS = {"04b8", "0519", "1659", "0fe6", "1a86"}

USBLP_MAJOR = 180

Runner = Callable[[Sequence[str]], Awaitable[str]]


@dataclass(frozen=True)
class Transport:
    kind: str  # "device" | "usb" | "simulation"
    device_path: Optional[str] = None
    vendor_id: Optional[int] = None
    product_id: Optional[int] = None

    @property
    def simulated(self) -> bool:
        return self.kind == "simulation"

    @property
    def label(self) -> str:
        if self.kind == "device":
            return f"device:{self.device_path}"
        if self.kind == "usb":
            return f"usb:{self.vendor_id:04x}:{self.product_id:04x}"
        return "simulation"

    def to_dict(self) -> dict:
        return {
            "kind": self.kind,
            "devicePath": self.device_path,
            "vendorId": f"{self.vendor_id:04x}" if self.vendor_id is not None else None,
            "productId": f"{self.product_id:04x}" if self.product_id is not None else None,
        }


SIMULATION = Transport("simulation")


@dataclass
class PrinterDescriptor:
    id: str
    display_name: str
    status: str = ONLINE
    transport: Optional[Transport] = None
    can_activate: bool = False
    source: str = ""
    is_default: bool = False
    manufacturer: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "displayName": self.display_name,
            "status": self.status,
            "transport": self.transport.to_dict() if self.transport else None,
            "canActivate": self.can_activate,
            "source": self.source,
            "isDefault": self.is_default,
            "manufacturer": self.manufacturer,
        }


def identity_key(name: str, vendor_id: Optional[int] = None, product_id: Optional[int] = None) -> str:
    if vendor_id is not None and product_id is not None:
        return f"{vendor_id:04x}:{product_id:04x}"
    return re.sub(r"\s+", "", name or "").lower()


def dedupe(printers: Sequence[PrinterDescriptor]) -> List[PrinterDescriptor]:
    seen = set()
    out: List[PrinterDescriptor] = []
    for p in printers:
        if p.id in seen:
            continue
        seen.add(p.id)
        out.append(p)
    return out


async def run_command(argv: Sequence[str], timeout: float = 5.0) -> str:
    proc = await asyncio.create_subprocess_exec(
        *argv,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    try:
        out, errb = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        raise
    if proc.returncode != 0:
        raise RuntimeError(f"{argv[0]} exit {proc.returncode}: {errb.decode(errors='replace').strip()}")
    return out.decode(errors="replace")


# ========= Parser =========
def parse_lpstat(output: str) -> List[PrinterDescriptor]:
    default = None
    m = re.search(r"system default destination:\s*(\S+)", output)
    if m:
        default = m.group(1)
    out = []
    for line in output.splitlines():
        m = re.match(r"printer (\S+)", line)
        if not m:
            continue
        name = m.group(1)
        low = line.lower()
        if "disabled" in low:
            status = INACTIVE
        elif "idle" in low or "printing" in low or "enabled" in low:
            status = ONLINE
        else:
            status = OFFLINE
        out.append(PrinterDescriptor(
            id=identity_key(name),
            display_name=name,
            status=status,
            can_activate=status == INACTIVE,
            source="cups",
            is_default=name == default,
        ))
    return out


def parse_wmic(output: str) -> List[PrinterDescriptor]:
    rows = [ln.strip() for ln in output.splitlines() if ln.strip()]
    if not rows:
        return []
    header = [h.strip().lower() for h in rows[0].split(",")]
    out = []
    for row in rows[1:]:
        cols = dict(zip(header, (c.strip() for c in row.split(","))))
        name = cols.get("name")
        if not name:
            continue
        status = (cols.get("status") or "").lower()
        out.append(PrinterDescriptor(
            id=identity_key(name),
            display_name=name,
            status=ONLINE if status in ("ok", "idle", "") else OFFLINE,
            source="windows",
            is_default=(cols.get("default") or "").upper() == "TRUE",
        ))
    return out


def parse_lsusb(output: str) -> List[PrinterDescriptor]:
    out = []
    for line in output.splitlines():
        m = LSUSB_LINE.search(line)
        if not m:
            continue
        vid_s, pid_s, name = m.group(3).lower(), m.group(4).lower(), m.group(5).strip()
        if not (PRINTER_KEYWORDS.search(name) or vid_s in THERMAL_VENDORS):
            continue
        vid, pid = int(vid_s, 16), int(pid_s, 16)
        vendor = VENDOR_NAMES.get(vid_s)
        out.append(PrinterDescriptor(
            id=identity_key(name, vid, pid),
            display_name=name or f"{vendor or 'USB'} {vid_s}:{pid_s}",
            status=ONLINE,
            transport=Transport("usb", vendor_id=vid, product_id=pid),
            source="usb",
            manufacturer=vendor or "Fabricante Desconhecido",
        ))
    return out


# ========= Locator =========
class DeviceLocator:
    def __init__(self, config: Optional[PrinterConfig] = None, runner: Optional[Runner] = None,
                 platform: Optional[str] = None):
        self.config = config or PrinterConfig()
        self.runner = runner or run_command
        self.platform = platform or sys.platform
        self.last_detected: List[PrinterDescriptor] = []

    # ---- strategie ----
    async def _registry(self) -> List[PrinterDescriptor]:
        if self.platform.startswith("win"):
            return parse_wmic(await self.runner(["wmic", "printer", "get", "name,default,status", "/format:csv"]))
        return parse_lpstat(await self.runner(["lpstat", "-p", "-d"]))

    async def _usb_bus(self) -> List[PrinterDescriptor]:
        if not self.platform.startswith("linux"):
            return []
        return parse_lsusb(await self.runner(["lsusb"]))

    def _device_paths(self) -> List[str]:
        found = []
        for pattern in self.config.device_globs:
            for path in sorted(glob.glob(pattern)):
                if path not in found:
                    found.append(path)
        return found

    async def _device_files(self) -> List[PrinterDescriptor]:
        out = []
        for path in self._device_paths():
            writable = os.access(path, os.W_OK)
            if not writable:
                log.warning("device %s presente ma non scrivibile", path)
            out.append(PrinterDescriptor(
                id=identity_key(path),
                display_name=path,
                status=ONLINE if writable else ERROR,
                transport=Transport("device", device_path=path),
                source="device",
            ))
        return out

    async def _ensure_device_nodes(self, usb_count: int) -> List[PrinterDescriptor]:
        """mknod /dev/usblpN se il kernel non li ha creati; richiede sudo senza password."""
        if not (self.config.ensure_device_nodes and self.platform.startswith("linux") and usb_count):
            return []
        created = []
        for n in range(usb_count):
            path = f"/dev/usblp{n}"
            if os.path.exists(path):
                continue
            try:
                await self.runner(["sudo", "-n", "mknod", path, "c", str(USBLP_MAJOR), str(n)])
                await self.runner(["sudo", "-n", "chmod", "666", path])
            except Exception as e:
                log.info("mknod %s non riuscito: %s", path, e)
                break
            created.append(path)
        return [
            PrinterDescriptor(
                id=identity_key(p), display_name=p,
                transport=Transport("device", device_path=p), source="mknod",
            )
            for p in created
        ]

    async def discover(self) -> List[PrinterDescriptor]:
        found: List[PrinterDescriptor] = []
        usb: List[PrinterDescriptor] = []
        for name, strategy in (
            ("registry", self._registry),
            ("usb", self._usb_bus),
            ("device", self._device_files),
        ):
            try:
                res = await strategy()
            except Exception as e:
                log.warning("strategia %s fallita: %s", name, e)
                continue
            log.debug("strategia %s: %d stampanti", name, len(res))
            if name == "usb":
                usb = res
            found.extend(res)
        try:
            found.extend(await self._ensure_device_nodes(len(usb)))
        except Exception as e:
            log.warning("ensure device nodes fallito: %s", e)
        self.last_detected = dedupe(found)
        log.info("rilevate %d stampanti", len(self.last_detected))
        return list(self.last_detected)

    def find(self, printer_id: Optional[str]) -> Optional[PrinterDescriptor]:
        if not printer_id:
            return None
        for p in self.last_detected:
            if p.id == printer_id:
                return p
        return None

    # ---- transport ----
    def _accessible(self, path: str) -> bool:
        return os.path.exists(path) and os.access(path, os.W_OK)

    def transport_chain(self, printer: Optional[PrinterDescriptor] = None,
                        requested_path: Optional[str] = None) -> List[Transport]:
        candidates: List[str] = []
        own = printer.transport if printer else None
        for path in (
            requested_path,
            self.config.device_path,
            own.device_path if own and own.kind == "device" else None,
            *self.config.fallback_device_paths,
        ):
            if path and path not in candidates:
                candidates.append(path)
        chain = [Transport("device", device_path=p) for p in candidates if self._accessible(p)]
        if own and own.kind == "usb" and self.config.use_usb_protocol:
            chain.append(own)
        chain.append(SIMULATION)
        return chain

    def resolve_transport(self, printer: Optional[PrinterDescriptor] = None,
                          requested_path: Optional[str] = None) -> Transport:
        return self.transport_chain(printer, requested_path)[0]

    async def check_status(self, printer_id: Optional[str] = None) -> dict:
        printers = await self.discover()
        chosen = self.find(printer_id) or (printers[0] if printers else None)
        transport = self.resolve_transport(chosen)
        return {
            "connected": any(p.status == ONLINE for p in printers),
            "model": printers[0].display_name if printers else None,
            "status": chosen.status if chosen else OFFLINE,
            "platform": self.platform,
            "count": len(printers),
            "simulated": transport.simulated,
            "transport": transport.to_dict(),
        }

    async def activate(self, printer_id: str) -> bool:
        """Riattiva una coda CUPS disabilitata (cupsenable + cupsaccept)."""
        printer = self.find(printer_id)
        if printer is None or not printer.can_activate:
            return False
        try:
            await self.runner(["cupsenable", printer.display_name])
            await self.runner(["cupsaccept", printer.display_name])
        except Exception as e:
            log.warning("attivazione %s fallita: %s", printer.display_name, e)
            return False
        printer.status = ONLINE
        printer.can_activate = False
        return True
