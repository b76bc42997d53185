import hashlib
import hmac
import secrets
from datetime import datetime, timedelta

from sqlalchemy.orm import Session
from werkzeug.security import check_password_hash, generate_password_hash

from . import transients
from .errors import PanelError
from .helpers import as_utc, env_int, token_hash, utcnow
from .models import AuthSession, User
from .settings_manager import (
    PASSWORD_LIMIT_COUNT_KEY,
    PASSWORD_LIMIT_ENABLE_KEY,
    PASSWORD_LIMIT_EXPIRE_KEY,
    SettingsManager,
)

TEMP_TOKEN = "TEMP_TOKEN"
PASSWORD_ERROR_LIMIT = "PASSWORD_ERROR_LIMIT"


def session_ttl_days() -> int:
    return env_int("SESSION_TTL_DAYS", 7)


def hash_password(raw_password: str) -> str:
    return generate_password_hash(raw_password)


def verify_password(user: User, raw_password: str) -> bool:
    algo = (user.password_algo or "").lower()
    stored = user.password or ""
    raw = raw_password or ""
    if algo == "md5":
        return hmac.compare_digest(hashlib.md5(raw.encode()).hexdigest(), stored)
    if algo == "sha256":
        return hmac.compare_digest(hashlib.sha256(raw.encode()).hexdigest(), stored)
    if algo == "md5salt":
        salted = hashlib.md5(f"{raw}{user.password_salt or ''}".encode()).hexdigest()
        return hmac.compare_digest(salted, stored)
    try:
        return check_password_hash(stored, raw)
    except ValueError:
        return False


def set_password(user: User, raw_password: str) -> None:
    user.password = hash_password(raw_password)
    user.password_algo = None
    user.password_salt = None


def create_session(db: Session, user: User, *, ip: str | None = None, user_agent: str | None = None) -> str:
    raw_token = secrets.token_urlsafe(32)
    now = utcnow()
    db.query(AuthSession).filter(AuthSession.expires_at < now).delete()
    db.add(
        AuthSession(
            user_id=user.id,
            session_token=token_hash(raw_token),
            ip=ip,
            user_agent=(user_agent or "")[:512] or None,
            expires_at=now + timedelta(days=session_ttl_days()),
            last_seen_at=now,
        )
    )
    user.last_login_at = now
    db.flush()
    return raw_token


def resolve_session(db: Session, raw_token: str | None) -> tuple[User | None, str | None]:
    if not raw_token:
        return None, "Unauthorized"
    auth_session = db.query(AuthSession).filter(AuthSession.session_token == token_hash(raw_token)).first()
    if not auth_session:
        return None, "Unauthorized"
    expires_at = as_utc(auth_session.expires_at)
    if not expires_at or expires_at < utcnow():
        db.delete(auth_session)
        db.commit()
        return None, "Session expired"
    user = db.query(User).filter(User.id == auth_session.user_id).first()
    if not user:
        return None, "Unauthorized"
    if user.banned:
        return None, "Your account has been suspended"
    return user, None


def list_sessions(db: Session, user: User) -> list[dict]:
    rows = (
        db.query(AuthSession)
        .filter(AuthSession.user_id == user.id, AuthSession.expires_at >= utcnow())
        .order_by(AuthSession.id.desc())
        .all()
    )
    return [
        {
            "id": row.id,
            "ip": row.ip,
            "user_agent": row.user_agent,
            "login_at": as_utc(row.created_at).isoformat() if row.created_at else None,
            "expires_at": as_utc(row.expires_at).isoformat(),
        }
        for row in rows
    ]


def remove_session(db: Session, user: User, session_id) -> bool:
    try:
        session_id = int(session_id)
    except (TypeError, ValueError):
        return False
    removed = (
        db.query(AuthSession)
        .filter(AuthSession.id == session_id, AuthSession.user_id == user.id)
        .delete()
    )
    return bool(removed)


def revoke_by_raw_token(db: Session, raw_token: str) -> None:
    db.query(AuthSession).filter(AuthSession.session_token == token_hash(raw_token)).delete()


def issue_temp_token(db: Session, user_id: int, ttl_seconds: int) -> str:
    code = secrets.token_hex(16)
    transients.put(db, transients.cache_key(TEMP_TOKEN, code), user_id, ttl_seconds)
    return code


def consume_temp_token(db: Session, code: str) -> User:
    key = transients.cache_key(TEMP_TOKEN, code)
    user_id = transients.get(db, key)
    if not user_id:
        raise PanelError("Token error")
    user = db.query(User).filter(User.id == int(user_id)).first()
    if not user:
        raise PanelError("The user does not exist", 404)
    if user.banned:
        raise PanelError("Your account has been suspended", 403)
    transients.forget(db, key)
    return user


def login_url(code: str, redirect: str | None, base_url: str) -> str:
    return f"{base_url.rstrip('/')}/#/login?verify={code}&redirect={redirect or 'dashboard'}"


def check_password_limit(db: Session, email: str, now: datetime | None = None) -> None:
    settings = SettingsManager(db)
    if not settings.get_bool(PASSWORD_LIMIT_ENABLE_KEY):
        return
    errors = int(transients.get(db, transients.cache_key(PASSWORD_ERROR_LIMIT, email), 0, now=now) or 0)
    if errors >= settings.get_int(PASSWORD_LIMIT_COUNT_KEY, min_value=1):
        minutes = settings.get_int(PASSWORD_LIMIT_EXPIRE_KEY, min_value=1)
        raise PanelError(
            f"There are too many password errors, please try again after {minutes} minutes.", 429
        )


def record_password_error(db: Session, email: str, now: datetime | None = None) -> None:
    settings = SettingsManager(db)
    if not settings.get_bool(PASSWORD_LIMIT_ENABLE_KEY):
        return
    ttl = 60 * settings.get_int(PASSWORD_LIMIT_EXPIRE_KEY, min_value=1)
    transients.increment(db, transients.cache_key(PASSWORD_ERROR_LIMIT, email), ttl, now=now)


def authenticate(db: Session, email: str, password: str) -> User:
    check_password_limit(db, email)
    user = db.query(User).filter(User.email == email).first()
    if not user:
        raise PanelError("Incorrect email or password")
    if not verify_password(user, password):
        record_password_error(db, email)
        db.commit()
        raise PanelError("Incorrect email or password")
    if user.banned:
        raise PanelError("Your account has been suspended", 403)
    return user
