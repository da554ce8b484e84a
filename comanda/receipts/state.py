# comanda/receipts/state.py
from __future__ import annotations
import json
import logging
import os
import threading
from pathlib import Path
from typing import Any, Dict

log = logging.getLogger(__name__)

NAMESPACE = "autoprint"
KEY_ENABLED = f"{NAMESPACE}.enabled"
KEY_ACTIVATED_AT = f"{NAMESPACE}.activated_at"
KEY_PROCESSED = f"{NAMESPACE}.processed_ids"
KEY_PRINTER = f"{NAMESPACE}.selected_printer"


class StateStore:
    """
    Piccolo key/value persistito in un file JSON.

    Ogni scrittura riscrive il file via file temporaneo + os.replace, così un
    crash a metà non lascia mai un JSON troncato. File corrotto → stato vuoto.
    """

    def __init__(self, path):
        self.path = Path(path)
        self._lock = threading.Lock()
        self._data: Dict[str, Any] = self._read()

    def _read(self) -> Dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            log.warning("stato %s illeggibile, riparto da zero: %s", self.path, e)
            return {}
        return data if isinstance(data, dict) else {}

    def _flush(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp.write_text(json.dumps(self._data, sort_keys=True), encoding="utf-8")
        os.replace(tmp, self.path)

    def get(self, key: str, default: Any = None) -> Any:
        return self._data.get(key, default)

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            self._data[key] = value
            self._flush()

    def update(self, values: Dict[str, Any]) -> None:
        with self._lock:
            self._data.update(values)
            self._flush()

    def delete(self, *keys: str) -> None:
        with self._lock:
            for k in keys:
                self._data.pop(k, None)
            self._flush()

    def clear(self, namespace: str = NAMESPACE) -> None:
        with self._lock:
            prefix = namespace + "."
            self._data = {k: v for k, v in self._data.items() if not k.startswith(prefix)}
            self._flush()
