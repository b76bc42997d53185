import hashlib
import hmac
import logging
from typing import Any
from urllib.parse import urlencode

import requests
from sqlalchemy.orm import Session

from .errors import PanelError
from .helpers import site_url
from .models import Payment

logger = logging.getLogger(__name__)


def _md5(text: str) -> str:
    return hashlib.md5(text.encode("utf-8")).hexdigest()


def _signature_matches(sign: str, expected: str) -> bool:
    return bool(sign) and hmac.compare_digest(sign.encode("utf-8"), expected.encode("utf-8"))


def _sorted_query(params: dict, encode: bool) -> str:
    items = sorted((key, value) for key, value in params.items() if key not in {"sign", "sign_type"})
    if encode:
        return urlencode(items)
    return "&".join(f"{key}={value}" for key, value in items)


class EPay:
    def __init__(self, config: dict):
        self.config = config

    def form(self) -> dict:
        return {
            "url": {"label": "URL", "description": "", "type": "input"},
            "pid": {"label": "PID", "description": "", "type": "input"},
            "key": {"label": "KEY", "description": "", "type": "input"},
        }

    def pay(self, order: dict) -> dict:
        params = {
            "money": f"{order['total_amount'] / 100:.2f}",
            "name": order["trade_no"],
            "notify_url": order["notify_url"],
            "return_url": order["return_url"],
            "out_trade_no": order["trade_no"],
            "pid": self.config.get("pid", ""),
        }
        params["sign"] = _md5(_sorted_query(params, encode=False) + str(self.config.get("key", "")))
        params["sign_type"] = "MD5"
        return {"type": 1, "data": f"{str(self.config.get('url', '')).rstrip('/')}/submit.php?{urlencode(params)}"}

    def notify(self, params: dict) -> dict | None:
        key = str(self.config.get("key") or "")
        if not key:
            return None
        expected = _md5(_sorted_query(params, encode=False) + key)
        if not _signature_matches(str(params.get("sign") or ""), expected):
            return None
        if params.get("trade_status") != "TRADE_SUCCESS":
            return None
        return {"trade_no": params.get("out_trade_no"), "callback_no": params.get("trade_no")}


class MGate:
    def __init__(self, config: dict):
        self.config = config
        self.session = requests.Session()

    def form(self) -> dict:
        return {
            "mgate_url": {"label": "API URL", "description": "", "type": "input"},
            "mgate_app_id": {"label": "APP ID", "description": "", "type": "input"},
            "mgate_app_secret": {"label": "App Secret", "description": "", "type": "input"},
            "mgate_source_currency": {
                "label": "Source currency",
                "description": "Defaults to CNY",
                "type": "input",
            },
        }

    def pay(self, order: dict) -> dict:
        params = {
            "out_trade_no": order["trade_no"],
            "total_amount": order["total_amount"],
            "notify_url": order["notify_url"],
            "return_url": order["return_url"],
        }
        if self.config.get("mgate_source_currency"):
            params["source_currency"] = self.config["mgate_source_currency"]
        params["app_id"] = self.config.get("mgate_app_id", "")
        params["sign"] = _md5(_sorted_query(params, encode=True) + str(self.config.get("mgate_app_secret", "")))

        url = f"{str(self.config.get('mgate_url', '')).rstrip('/')}/v1/gateway/fetch"
        try:
            response = self.session.post(url, data=params, timeout=8)
            response.raise_for_status()
            payload = response.json()
        except (requests.RequestException, ValueError) as exc:
            logger.error("MGate request for %s failed: %s", order["trade_no"], exc)
            raise PanelError("Payment gateway request failed", 502) from exc

        data = payload.get("data") if isinstance(payload, dict) else None
        if not isinstance(data, dict) or not data.get("trade_no"):
            message = payload.get("message") if isinstance(payload, dict) else None
            raise PanelError(message or "Payment gateway request failed", 502)
        return {"type": 1, "data": data.get("pay_url")}

    def notify(self, params: dict) -> dict | None:
        secret = str(self.config.get("mgate_app_secret") or "")
        if not secret:
            return None
        expected = _md5(_sorted_query(params, encode=True) + secret)
        if not _signature_matches(str(params.get("sign") or ""), expected):
            return None
        return {"trade_no": params.get("out_trade_no"), "callback_no": params.get("trade_no")}


DRIVERS = {
    "EPay": EPay,
    "MGate": MGate,
}


class PaymentService:
    def __init__(self, db: Session, method: str, payment_id: int | None = None, uuid: str | None = None):
        driver_cls = DRIVERS.get(method)
        if driver_cls is None:
            raise PanelError("Gate is not found", 404)
        self.db = db
        self.method = method
        self.payment: Payment | None = None
        if payment_id is not None:
            self.payment = db.query(Payment).filter(Payment.id == payment_id).first()
        elif uuid is not None:
            self.payment = db.query(Payment).filter(Payment.uuid == uuid).first()
        self.config: dict[str, Any] = dict(self.payment.config or {}) if self.payment else {}
        self.driver = driver_cls(self.config)

    def _callback_urls(self, trade_no: str) -> tuple[str, str]:
        payment = self.payment
        notify_base = (payment.notify_domain or "").rstrip("/") if payment else ""
        notify_path = f"/api/v1/guest/payment/notify/{self.method}/{payment.uuid if payment else ''}"
        notify_url = f"{notify_base}{notify_path}" if notify_base else site_url(notify_path)
        return notify_url, site_url(f"/#/order/{trade_no}")

    def pay(self, order: dict) -> dict:
        if not self.payment or not self.payment.enable or self.payment.payment != self.method:
            raise PanelError("Payment method is not available")
        notify_url, return_url = self._callback_urls(order["trade_no"])
        return self.driver.pay({**order, "notify_url": notify_url, "return_url": return_url})

    def notify(self, params: dict) -> dict | None:
        if not self.payment or self.payment.payment != self.method:
            raise PanelError("Gate is not found", 404)
        if not self.payment.enable:
            raise PanelError("gate is not enable", 404)
        return self.driver.notify(params)

    def form(self) -> dict:
        fields = self.driver.form()
        for key, field in fields.items():
            field["value"] = self.config.get(key, "")
        return fields


def serialize_payment(payment: Payment, admin: bool = False) -> dict:
    data = {
        "id": payment.id,
        "name": payment.name,
        "payment": payment.payment,
        "icon": payment.icon,
        "handling_fee_fixed": payment.handling_fee_fixed,
        "handling_fee_percent": payment.handling_fee_percent,
    }
    if admin:
        data.update(
            {
                "uuid": payment.uuid,
                "config": payment.config or {},
                "notify_domain": payment.notify_domain,
                "enable": bool(payment.enable),
                "sort": payment.sort,
                "notify_url": site_url(f"/api/v1/guest/payment/notify/{payment.payment}/{payment.uuid}"),
            }
        )
    return data
