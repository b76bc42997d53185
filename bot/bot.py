import asyncio
import logging
import os
from urllib.parse import parse_qs, urlparse

from aiogram import Bot, Dispatcher, types
from aiogram.filters import Command, CommandObject, CommandStart
from sqlalchemy.orm import Session

from panel.db import SessionLocal
from panel.helpers import traffic_convert
from panel.models import User

logger = logging.getLogger(__name__)

HELP_TEXT = (
    "Commands:\n"
    "/bind <subscribe url> - link this Telegram account\n"
    "/traffic - show traffic usage\n"
    "/unbind - unlink this Telegram account"
)


def extract_token(raw: str | None) -> str | None:
    raw = (raw or "").strip()
    if not raw:
        return None
    if "://" in raw:
        values = parse_qs(urlparse(raw).query).get("token")
        return values[0] if values else None
    return raw


def bind_user(db: Session, telegram_id: int, raw: str | None) -> str:
    token = extract_token(raw)
    if not token:
        return "Parameters are wrong, please send it with the subscribe URL"
    user = db.query(User).filter(User.token == token).first()
    if not user:
        return "The user does not exist"
    if user.telegram_id:
        return "This account is already bound to a Telegram account"
    if db.query(User.id).filter(User.telegram_id == str(telegram_id)).first():
        return "This Telegram account is already bound to another user"
    user.telegram_id = str(telegram_id)
    db.commit()
    logger.info("user %s bound telegram %s", user.id, telegram_id)
    return "Bind successful"


def unbind_user(db: Session, telegram_id: int) -> str:
    user = db.query(User).filter(User.telegram_id == str(telegram_id)).first()
    if not user:
        return "No bound user information found"
    user.telegram_id = None
    db.commit()
    return "Unbind successful"


def traffic_text(user: User) -> str:
    used = (user.u or 0) + (user.d or 0)
    remaining = max(0, (user.transfer_enable or 0) - used)
    return (
        "Traffic query\n"
        f"Plan traffic: {traffic_convert(user.transfer_enable or 0)}\n"
        f"Upload: {traffic_convert(user.u or 0)}\n"
        f"Download: {traffic_convert(user.d or 0)}\n"
        f"Remaining: {traffic_convert(remaining)}"
    )


async def handle_start(message: types.Message) -> None:
    await message.answer(HELP_TEXT)


async def handle_bind(message: types.Message, command: CommandObject) -> None:
    with SessionLocal() as db:
        reply = bind_user(db, message.from_user.id, command.args)
    await message.answer(reply)


async def handle_unbind(message: types.Message) -> None:
    with SessionLocal() as db:
        reply = unbind_user(db, message.from_user.id)
    await message.answer(reply)


async def handle_traffic(message: types.Message) -> None:
    with SessionLocal() as db:
        user = db.query(User).filter(User.telegram_id == str(message.from_user.id)).first()
        reply = traffic_text(user) if user else "No bound user information found, use /bind first"
    await message.answer(reply)


def register_handlers(dp: Dispatcher) -> None:
    dp.message(CommandStart())(handle_start)
    dp.message(Command("bind"))(handle_bind)
    dp.message(Command("unbind"))(handle_unbind)
    dp.message(Command("traffic"))(handle_traffic)


async def start_bot():
    token = os.getenv("TELEGRAM_BOT_TOKEN", "")
    if not token:
        raise RuntimeError("TELEGRAM_BOT_TOKEN is not set")

    bot = Bot(token=token)
    dp = Dispatcher()
    register_handlers(dp)
    await dp.start_polling(bot)


if __name__ == "__main__":
    asyncio.run(start_bot())
