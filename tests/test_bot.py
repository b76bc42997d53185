from conftest import make_user

from bot.bot import bind_user, extract_token, traffic_text, unbind_user
from panel.models import User


def test_extract_token():
    assert extract_token("https://panel.example.com/api/v1/client/subscribe?token=abc123") == "abc123"
    assert extract_token("https://panel.example.com/api/v1/client/subscribe") is None
    assert extract_token("  abc123 ") == "abc123"
    assert extract_token(None) is None


def test_bind_and_unbind(db):
    user = make_user(db)
    other = make_user(db, "other@example.com")
    url = f"https://panel.example.com/api/v1/client/subscribe?token={user.token}"

    assert bind_user(db, 1001, None) == "Parameters are wrong, please send it with the subscribe URL"
    assert bind_user(db, 1001, "https://panel.example.com/?token=nope") == "The user does not exist"
    assert bind_user(db, 1001, url) == "Bind successful"
    assert bind_user(db, 1002, url) == "This account is already bound to a Telegram account"
    assert bind_user(db, 1001, other.token) == "This Telegram account is already bound to another user"

    db.expire_all()
    assert db.query(User).filter(User.id == user.id).one().telegram_id == "1001"

    assert unbind_user(db, 1001) == "Unbind successful"
    assert unbind_user(db, 1001) == "No bound user information found"


def test_traffic_text(db):
    user = make_user(db, transfer_enable=10 * 1073741824, u=1073741824, d=512 * 1048576)
    text = traffic_text(user)
    assert text.splitlines() == [
        "Traffic query",
        "Plan traffic: 10.00 GB",
        "Upload: 1.00 GB",
        "Download: 512.00 MB",
        "Remaining: 8.50 GB",
    ]
