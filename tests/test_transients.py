from datetime import timedelta

from panel import transients
from panel.helpers import utcnow
from panel.models import Transient


def test_values_expire(db):
    now = utcnow()
    transients.put(db, "EMAIL_VERIFY_CODE:a@example.com", "123456", 300, now=now)
    assert transients.get(db, "EMAIL_VERIFY_CODE:a@example.com", now=now) == "123456"
    assert transients.get(db, "EMAIL_VERIFY_CODE:a@example.com", now=now + timedelta(seconds=301)) is None
    assert db.query(Transient).count() == 0


def test_increment_restarts_expiry(db):
    now = utcnow()
    key = transients.cache_key("PASSWORD_ERROR_LIMIT", "a@example.com")
    assert transients.increment(db, key, 60, now=now) == 1
    assert transients.increment(db, key, 60, now=now + timedelta(seconds=50)) == 2
    assert transients.get(db, key, now=now + timedelta(seconds=100)) == 2
    transients.forget(db, key)
    assert transients.get(db, key, default=0) == 0


def test_purge_expired(db):
    now = utcnow()
    transients.put(db, "old", 1, 10, now=now - timedelta(minutes=5))
    transients.put(db, "fresh", 2, 600, now=now)
    db.commit()
    assert transients.purge_expired(db, now=now) == 1
    db.commit()
    assert [row.key for row in db.query(Transient).all()] == ["fresh"]
