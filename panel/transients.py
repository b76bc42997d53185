from datetime import datetime, timedelta
from typing import Any

from sqlalchemy.orm import Session

from .helpers import as_utc, utcnow
from .models import Transient


def cache_key(name: str, identifier: Any) -> str:
    return f"{name}:{identifier}"


def _live_row(db: Session, key: str, now: datetime) -> Transient | None:
    row = db.query(Transient).filter(Transient.key == key).first()
    if not row:
        return None
    if as_utc(row.expires_at) <= now:
        db.delete(row)
        db.flush()
        return None
    return row


def get(db: Session, key: str, default: Any = None, *, now: datetime | None = None) -> Any:
    row = _live_row(db, key, now or utcnow())
    return row.value if row else default


def put(db: Session, key: str, value: Any, ttl_seconds: int, *, now: datetime | None = None) -> None:
    now = now or utcnow()
    row = db.query(Transient).filter(Transient.key == key).first()
    if not row:
        row = Transient(key=key)
        db.add(row)
    row.value = value
    row.expires_at = now + timedelta(seconds=ttl_seconds)
    db.flush()


def forget(db: Session, key: str) -> None:
    db.query(Transient).filter(Transient.key == key).delete()
    db.flush()


def increment(db: Session, key: str, ttl_seconds: int, *, now: datetime | None = None) -> int:
    now = now or utcnow()
    row = _live_row(db, key, now)
    current = int(row.value or 0) if row else 0
    put(db, key, current + 1, ttl_seconds, now=now)
    return current + 1


def purge_expired(db: Session, *, now: datetime | None = None) -> int:
    return db.query(Transient).filter(Transient.expires_at < (now or utcnow())).delete()
