# comanda/config.py
from __future__ import annotations
import json
import logging
import os
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import List, Optional

from .paths import CONFIG_FILE as DEFAULT_CONFIG_FILE, STATE_FILE as DEFAULT_STATE_FILE

log = logging.getLogger(__name__)

CONFIG_FILE = Path(os.getenv("COMANDA_CONFIG_FILE", str(DEFAULT_CONFIG_FILE)))

# Percorsi tipici delle termiche USB su Linux, in ordine di priorità
DEFAULT_FALLBACK_DEVICE_PATHS = ["/dev/usb/lp1", "/dev/usb/lp0", "/dev/lp0", "/dev/lp1"]
DEFAULT_DEVICE_GLOBS = ["/dev/usb/lp*", "/dev/usblp*"]


@dataclass
class PrinterConfig:
    device_path: Optional[str] = None
    # ⚠️ Usare default_factory per oggetti mutabili
    fallback_device_paths: List[str] = field(default_factory=lambda: list(DEFAULT_FALLBACK_DEVICE_PATHS))
    device_globs: List[str] = field(default_factory=lambda: list(DEFAULT_DEVICE_GLOBS))
    encoding: str = "cp860"
    feed_lines: int = 4
    write_timeout: float = 10.0
    use_usb_protocol: bool = True
    ensure_device_nodes: bool = True
    manual_retries: int = 3
    retry_backoff: float = 0.5


@dataclass
class AutoPrintConfig:
    poll_interval: float = 5.0
    init_grace_seconds: float = 10.0
    max_queue: int = 100
    state_file: str = str(DEFAULT_STATE_FILE)


@dataclass
class ReceiptConfig:
    paper_width: int = 32
    currency_symbol: str = "R$"
    timezone: str = "America/Sao_Paulo"
    store_name: str = ""
    footer_message: str = "Obrigado pela preferência!"


@dataclass
class AppConfig:
    printer: PrinterConfig = field(default_factory=PrinterConfig)
    autoprint: AutoPrintConfig = field(default_factory=AutoPrintConfig)
    receipt: ReceiptConfig = field(default_factory=ReceiptConfig)
    log_level: str = "INFO"


def _merge(dst: dict, src: dict) -> dict:
    for k, v in src.items():
        if isinstance(v, dict) and isinstance(dst.get(k), dict):
            dst[k] = _merge(dst[k], v)
        else:
            dst[k] = v
    return dst


def _build(cls, data: dict):
    # chiavi sconosciute nel file → ignorate
    known = {f.name for f in fields(cls)}
    return cls(**{k: v for k, v in data.items() if k in known})


def load_config(path: Optional[Path] = None) -> AppConfig:
    path = Path(path) if path else CONFIG_FILE
    data = asdict(AppConfig())
    if path.exists():
        try:
            file_data = json.loads(path.read_text(encoding="utf-8"))
            data = _merge(data, file_data or {})
        except (OSError, ValueError) as e:
            # file malformato → mantieni default
            log.warning("config %s ignorato: %s", path, e)

    env_state = os.getenv("COMANDA_STATE_FILE")
    if env_state:
        data["autoprint"]["state_file"] = env_state
    env_device = os.getenv("COMANDA_DEVICE_PATH")
    if env_device:
        data["printer"]["device_path"] = env_device

    p = data["printer"]
    return AppConfig(
        printer=_build(PrinterConfig, {
            **p,
            "fallback_device_paths": [str(x) for x in p.get("fallback_device_paths") or []],
            "device_globs": [str(x) for x in p.get("device_globs") or []],
            "feed_lines": int(p.get("feed_lines", 4)),
            "write_timeout": float(p.get("write_timeout", 10.0)),
            "manual_retries": int(p.get("manual_retries", 3)),
        }),
        autoprint=_build(AutoPrintConfig, data["autoprint"]),
        receipt=_build(ReceiptConfig, {
            **data["receipt"],
            "paper_width": int(data["receipt"].get("paper_width", 32)),
        }),
        log_level=str(data.get("log_level", "INFO")).upper(),
    )


# istanza singleton caricata a import
CONFIG = load_config()
