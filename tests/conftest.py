import os
import sys
import tempfile
from datetime import timedelta
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

_DB_DIR = tempfile.mkdtemp(prefix="orbita-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{Path(_DB_DIR) / 'test.db'}"
os.environ["MAIL_SUPPRESS_SEND"] = "1"
os.environ["TELEGRAM_BOT_TOKEN"] = ""
os.environ["ADMIN_SECURE_PATH"] = "secret-admin"

from panel.auth import hash_password  # noqa: E402
from panel.db import Base, SessionLocal, engine  # noqa: E402
from panel.helpers import guid, utcnow  # noqa: E402
from panel.models import Plan, ServerGroup, User  # noqa: E402
from panel.settings_manager import SettingsManager  # noqa: E402

PASSWORD = "password123"


@pytest.fixture(autouse=True)
def fresh_schema():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield


@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def app():
    from panel.app import create_app

    flask_app = create_app()
    flask_app.config["TESTING"] = True
    return flask_app


@pytest.fixture
def client(app):
    return app.test_client()


def make_group(db, name="default") -> ServerGroup:
    group = ServerGroup(name=name)
    db.add(group)
    db.commit()
    return group


def make_plan(db, group=None, **fields) -> Plan:
    group = group or make_group(db)
    values = {
        "group_id": group.id,
        "name": "Basic",
        "transfer_enable": 100,
        "show": True,
        "sell": True,
        "renew": True,
        "month_price": 1000,
        "year_price": 10000,
    }
    values.update(fields)
    plan = Plan(**values)
    db.add(plan)
    db.commit()
    return plan


def make_user(db, email="user@example.com", password=PASSWORD, **fields) -> User:
    user = User(
        email=email,
        password=hash_password(password),
        uuid=guid(True),
        token=guid(),
        **fields,
    )
    db.add(user)
    db.commit()
    return user


def subscribe(db, user, plan, days=30):
    user.plan_id = plan.id
    user.group_id = plan.group_id
    user.transfer_enable = plan.transfer_enable * 1073741824
    user.expired_at = utcnow() + timedelta(days=days)
    db.commit()
    return user


def set_settings(db, values: dict):
    manager = SettingsManager(db)
    for key, value in values.items():
        manager.set_setting(key, value)
    db.commit()


def login(client, email="user@example.com", password=PASSWORD):
    response = client.post("/api/v1/passport/auth/login", json={"email": email, "password": password})
    assert response.status_code == 200, response.get_json()
    return response.get_json()["data"]
