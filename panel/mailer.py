import logging
import os
import smtplib

from flask import Flask
from flask_mail import Mail, Message

from .helpers import env_bool, env_int
from .settings_manager import APP_NAME_KEY, get_runtime_setting_value

logger = logging.getLogger(__name__)

mail = Mail()


def configure_mail(app: Flask) -> None:
    app.config.setdefault("MAIL_SERVER", os.getenv("MAIL_SERVER", "localhost"))
    app.config.setdefault("MAIL_PORT", env_int("MAIL_PORT", 25))
    app.config.setdefault("MAIL_USERNAME", os.getenv("MAIL_USERNAME"))
    app.config.setdefault("MAIL_PASSWORD", os.getenv("MAIL_PASSWORD"))
    app.config.setdefault("MAIL_USE_TLS", env_bool("MAIL_USE_TLS", False))
    app.config.setdefault("MAIL_USE_SSL", env_bool("MAIL_USE_SSL", False))
    app.config.setdefault("MAIL_SUPPRESS_SEND", env_bool("MAIL_SUPPRESS_SEND", False))
    app.config.setdefault(
        "MAIL_DEFAULT_SENDER",
        os.getenv("MAIL_DEFAULT_SENDER") or os.getenv("MAIL_USERNAME") or "noreply@localhost",
    )
    mail.init_app(app)


def send_mail(recipient: str, subject: str, body: str) -> bool:
    app_name = get_runtime_setting_value(APP_NAME_KEY)
    message = Message(f"{app_name} {subject}".strip(), recipients=[recipient], body=body)
    try:
        mail.send(message)
    except (smtplib.SMTPException, OSError) as exc:
        logger.error("mail to %s failed: %s", recipient, exc)
        return False
    logger.info("mail '%s' sent to %s", subject, recipient)
    return True


def send_verify_code(recipient: str, code: str) -> bool:
    return send_mail(
        recipient,
        "Email verification code",
        f"Your verification code is {code}. It is valid for 5 minutes.",
    )


def send_login_link(recipient: str, link: str) -> bool:
    return send_mail(
        recipient,
        "Login link",
        f"Open the link below within 5 minutes to sign in:\n\n{link}\n\n"
        "If you did not request this, ignore this mail.",
    )
