# comanda/db.py
from sqlmodel import SQLModel, create_engine, Session
from sqlalchemy import event
import os

# Modelli (solo import: registrano le tabelle nel metadata)
from .models import Order  # noqa: F401
from .receipts.models_receipts import PrintLayout, PrintLog  # noqa: F401
from .receipts.layout_store import seed_default_layout

# ---- Engine ----
DB_URL = os.getenv("COMANDA_DB_URL", "sqlite:///comanda.db")
IS_SQLITE = DB_URL.startswith("sqlite")

connect_args = {"check_same_thread": False, "timeout": 30} if IS_SQLITE else {}

engine = create_engine(
    DB_URL,
    echo=False,
    connect_args=connect_args,
    pool_pre_ping=True,
    pool_recycle=1800,  # ricicla connessioni stantie
)

# Migliorie per SQLite
if IS_SQLITE:
    @event.listens_for(engine, "connect")
    def set_sqlite_pragmas(dbapi_connection, connection_record):
        cur = dbapi_connection.cursor()
        # WAL: il poll legge mentre il gestionale scrive
        cur.execute("PRAGMA journal_mode=WAL;")
        # Timeout quando il DB è lockato da un writer
        cur.execute("PRAGMA busy_timeout=30000;")
        cur.close()


# ---- Schema ----
def create_db_and_tables():
    SQLModel.metadata.create_all(engine)


# ---- Sessioni: dipendenza FastAPI ----
def get_session_dep():
    """Dipendenza per FastAPI: garantisce sempre la chiusura della sessione."""
    with Session(engine, expire_on_commit=False) as session:
        yield session


def seed_all_once(paper_width: int = 32):
    with Session(engine) as s:
        seed_default_layout(s, paper_width)
