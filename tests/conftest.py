import json
import os
import tempfile
from pathlib import Path

import pytest

# Ambiente isolato PRIMA di importare l'app: DB, stato e config temporanei
_TMP = Path(tempfile.mkdtemp(prefix="comanda-test-"))
_CONFIG = _TMP / "config.json"
_CONFIG.write_text(json.dumps({
    "printer": {
        "fallback_device_paths": [],
        "device_globs": [],
        "ensure_device_nodes": False,
        "use_usb_protocol": False,
        "retry_backoff": 0,
    },
    "autoprint": {"init_grace_seconds": 0, "poll_interval": 0.2},
}), encoding="utf-8")

os.environ.setdefault("COMANDA_CONFIG_FILE", str(_CONFIG))
os.environ.setdefault("COMANDA_DB_URL", f"sqlite:///{_TMP / 'test.db'}")
os.environ.setdefault("COMANDA_STATE_FILE", str(_TMP / "state.json"))


@pytest.fixture(scope="module")
def client():
    """
    TestClient con startup/shutdown: il motore di stampa automatica gira
    sul loop del client per tutta la durata del modulo.
    """
    from fastapi.testclient import TestClient
    from comanda.main import app

    with TestClient(app) as c:
        yield c
