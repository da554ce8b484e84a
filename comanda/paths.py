# comanda/paths.py
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent
DATA_DIR = BASE_DIR.parent / "data"
CONFIG_FILE = BASE_DIR / "config.json"
STATE_FILE = DATA_DIR / "autoprint_state.json"
