import logging
import os
import tempfile
from pathlib import Path

from sqlalchemy import create_engine, text
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import declarative_base, sessionmaker

logger = logging.getLogger(__name__)

BASE_DIR = Path(__file__).resolve().parents[1]
DATABASE_DIR = BASE_DIR / "database"
FALLBACK_DB = Path(tempfile.gettempdir()) / "orbita_panel.db"


def resolve_database_url() -> tuple[str, bool]:
    """Return the configured URL and whether it came from DATABASE_URL."""
    url = os.getenv("DATABASE_URL")
    if url:
        return url, True
    DATABASE_DIR.mkdir(parents=True, exist_ok=True)
    return f"sqlite:///{DATABASE_DIR / os.getenv('DATABASE_FILE', 'orbita.db')}", False


def _engine_kwargs(url: str) -> dict:
    if url.lower().startswith("sqlite"):
        return {"future": True, "connect_args": {"check_same_thread": False}}
    return {"future": True, "pool_pre_ping": True}


def _probe_sqlite(engine) -> None:
    with engine.begin() as conn:
        conn.execute(text("CREATE TABLE IF NOT EXISTS __healthcheck (id INTEGER PRIMARY KEY)"))


def build_engine(url: str, explicit: bool):
    engine = create_engine(url, **_engine_kwargs(url))
    if not url.lower().startswith("sqlite"):
        return engine, url

    try:
        _probe_sqlite(engine)
    except OperationalError as exc:
        # sqlite cannot always lock files inside the project directory
        if explicit or "disk i/o error" not in str(exc).lower():
            raise
        fallback_url = f"sqlite:///{FALLBACK_DB}"
        logger.warning("sqlite at %s is not writable, using %s", url, fallback_url)
        return create_engine(fallback_url, **_engine_kwargs(fallback_url)), fallback_url

    return engine, url


engine, DATABASE_URL = build_engine(*resolve_database_url())
SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False, future=True, expire_on_commit=False)
Base = declarative_base()


def init_db() -> None:
    from . import models  # noqa: F401  registers the tables on Base

    Base.metadata.create_all(bind=engine)
