"""
Payment reconciliation

Two confirmation paths feed the order status machine:

* manual review of bank-transfer proof by an admin (Confirmed / Declined);
* PayFast-style gateway notifications, verified with the gateway's legacy
  MD5 signature scheme. MD5 is used here only because the gateway requires
  it; nothing else in the app should sign with it.

Also builds the gateway redirect for PayFast orders and the GoPayFast web
checkout form.
"""
import hashlib
import hmac
import logging
import math
from typing import Any, Dict, Mapping, Optional, Tuple
from urllib.parse import quote, urlencode

import requests
from pymongo.database import Database

from config import AppConfig
from database import to_object_id, utcnow
from errors import (
    AmountMismatchError,
    InvalidTransitionError,
    OrderNotFoundError,
    SignatureMismatchError,
    ValidationError,
)
from order_status import RESTOCK_STATUSES, OrderStatusMachine, StatusChange
from schemas import PaymentResult

logger = logging.getLogger(__name__)

# characters JavaScript's encodeURIComponent leaves alone; the gateway signs with that encoding
_UNRESERVED = "-_.!~*'()"


def _encode(value: Any) -> str:
    return quote(str(value), safe=_UNRESERVED)


def payfast_signature(data: Mapping[str, Any], passphrase: Optional[str] = None) -> str:
    """MD5 over `key=value&...` sorted by key, with the passphrase appended last."""
    payload = "&".join(f"{key}={_encode(data[key])}" for key in sorted(data))
    if passphrase:
        payload += f"&passphrase={_encode(passphrase)}"
    return hashlib.md5(payload.encode("utf-8")).hexdigest()


def verify_payfast_signature(data: Mapping[str, Any], received: Optional[str], passphrase: Optional[str] = None) -> bool:
    if not received:
        return False
    expected = payfast_signature(data, passphrase)
    return hmac.compare_digest(expected.encode("utf-8"), str(received).encode("utf-8"))


def build_payfast_redirect(order_id: str, total_amount: float, config: AppConfig) -> PaymentResult:
    params = {
        "merchant_id": config.payfast_merchant_id or "",
        "merchant_key": config.payfast_merchant_key or "",
        "return_url": config.payfast_return_url or "",
        "cancel_url": config.payfast_cancel_url or "",
        "notify_url": config.payfast_notify_url or "",
        "m_payment_id": order_id,
        "amount": f"{total_amount:.2f}",
        "item_name": f"Order #{order_id}",
    }
    params["signature"] = payfast_signature(params, config.payfast_passphrase)
    return PaymentResult(redirect_url=f"{config.payfast_url or ''}?{urlencode(params)}", status="pending")


class PaymentService:
    def __init__(self, database: Database, config: AppConfig):
        self.orders = database["order"]
        self.config = config
        self.machine = OrderStatusMachine(database, config.mongo_transactions)

    def verify_payment(self, order_id: str, payment_status: Any) -> StatusChange:
        """Admin review of a bank-transfer proof."""
        if payment_status not in ("Confirmed", "Declined"):
            raise ValidationError('Invalid paymentStatus. Must be "Confirmed" or "Declined".')
        oid = to_object_id(order_id)
        order = self.orders.find_one({"_id": oid}) if oid else None
        if order is None:
            raise OrderNotFoundError(order_id)

        if payment_status == "Declined":
            change = self.machine.transition(order_id, "Cancelled", extra={"payment_status": "Declined"})
        elif order.get("status") in RESTOCK_STATUSES:
            # restocked orders are not revived
            raise InvalidTransitionError(order["status"], "Processing")
        elif order.get("payment_method") == "BankTransfer" and order.get("status") == "Pending":
            change = self.machine.transition(order_id, "Processing", extra={"payment_status": "Confirmed"})
        else:
            change = self.machine.transition(order_id, order["status"], extra={"payment_status": "Confirmed"})
        logger.info("Payment for order %s marked %s", order_id, payment_status)
        return change

    def handle_notification(self, form: Mapping[str, Any]) -> StatusChange:
        """Apply a gateway notification; safe to receive more than once."""
        data = dict(form)
        received = data.pop("signature", None)
        if not verify_payfast_signature(data, received, self.config.payfast_passphrase):
            logger.warning("Rejected gateway notification for %s: signature mismatch", data.get("m_payment_id"))
            raise SignatureMismatchError()

        order_id = str(data.get("m_payment_id") or "")
        oid = to_object_id(order_id)
        order = self.orders.find_one({"_id": oid}) if oid else None
        if order is None:
            raise OrderNotFoundError(order_id)

        if data.get("amount_gross") not in (None, ""):
            try:
                gross = float(data["amount_gross"])
            except (TypeError, ValueError):
                raise AmountMismatchError(order["total_amount"], str(data["amount_gross"]))
            if not math.isfinite(gross) or abs(gross - float(order["total_amount"])) > 0.01:
                raise AmountMismatchError(order["total_amount"], str(data["amount_gross"]))

        completed = data.get("payment_status") == "COMPLETE"
        result = PaymentResult(
            id=data.get("pf_payment_id"),
            status=data.get("payment_status"),
            update_time=utcnow().isoformat(),
            raw_data=data,
        )
        extra = {"payment_result": result.model_dump()}
        target = "Processing" if completed else "Cancelled"
        current = order.get("status")
        if current in ("Pending", target):
            extra["payment_status"] = "Confirmed" if completed else "Declined"
        else:
            # the order has moved on; keep the latest gateway result only
            if completed and current in RESTOCK_STATUSES:
                logger.warning(
                    "Gateway reported payment COMPLETE for order %s already %s; refund needed",
                    order_id,
                    current,
                )
            else:
                logger.info(
                    "Gateway %s for order %s in status %s recorded without transition",
                    data.get("payment_status"),
                    order_id,
                    current,
                )
            target = current
        change = self.machine.transition(order_id, target, extra=extra)
        logger.info("Gateway notification for order %s applied: %s", order_id, data.get("payment_status"))
        return change


class GoPayFastClient:
    """Web checkout against the GoPayFast transaction API."""

    def __init__(self, config: AppConfig):
        self.config = config

    def fetch_token(self, basket_id: str, amount: str) -> str:
        response = requests.post(
            f"{self.config.gopayfast_base_url}/GetAccessToken",
            data={
                "MERCHANT_ID": self.config.gopayfast_merchant_id,
                "SECURED_KEY": self.config.gopayfast_secured_key,
                "BASKET_ID": basket_id,
                "TXNAMT": amount,
            },
            timeout=self.config.http_timeout,
        )
        response.raise_for_status()
        token = response.json().get("ACCESS_TOKEN")
        if not token:
            raise ValidationError("PayFast auth failed: no ACCESS_TOKEN in response")
        return token

    def signature(self, basket_id: str) -> str:
        raw = f"{basket_id}{self.config.gopayfast_merchant_id}{self.config.gopayfast_secured_key}"
        return hashlib.sha256(raw.encode("utf-8")).hexdigest()

    def checkout_form(self, order: Dict[str, Any]) -> Tuple[str, Dict[str, str]]:
        basket_id = str(order["_id"])
        amount = f"{float(order['total_amount']):.2f}"
        token = self.fetch_token(basket_id, amount)
        address = order.get("shipping_address") or {}
        form = {
            "MERCHANT_ID": self.config.gopayfast_merchant_id or "",
            "MERCHANT_NAME": self.config.store_name,
            "TOKEN": token,
            "PROCCODE": "00",
            "TXNAMT": amount,
            "CURRENCY_CODE": "PKR",
            "CUSTOMER_MOBILE_NO": address.get("phone") or "",
            "CUSTOMER_EMAIL_ADDRESS": address.get("email") or "",
            "SIGNATURE": self.signature(basket_id),
            "VERSION": "PY-PAYFAST-1.0",
            "TXNDESC": f"Order #{basket_id}",
            "SUCCESS_URL": self.config.payfast_return_url or "",
            "FAILURE_URL": self.config.payfast_cancel_url or "",
            "BASKET_ID": basket_id,
            "ORDER_DATE": utcnow().strftime("%Y-%m-%d %H:%M:%S"),
            "CHECKOUT_URL": self.config.payfast_notify_url or "",
        }
        return f"{self.config.gopayfast_base_url}/PostTransaction", form
