"""
Customer notifications

Order confirmation and status update messages over e-mail (Resend HTTP API)
and WhatsApp (Cloud API templates). Dispatch runs after the order write has
committed; every failure is logged and swallowed here so it can never undo or
fail the request that triggered it.
"""
import logging
from datetime import timedelta
from html import escape
from typing import Any, Dict, Optional

import requests

from config import AppConfig
from database import utcnow

logger = logging.getLogger(__name__)

RESEND_API_URL = "https://api.resend.com/emails"
WHATSAPP_API_URL = "https://graph.facebook.com/v19.0/{phone_number_id}/messages"

STATUS_COPY = {
    "Pending": ("Awaiting Payment", "We've received your order and are waiting for payment confirmation.", "#95a5a6"),
    "Processing": ("Order Processing", "We've received your order and are preparing it for shipment.", "#3498db"),
    "Shipped": ("Order Shipped!", "Your order is on its way to you!", "#2ecc71"),
    "Delivered": ("Order Delivered", "Your order has been successfully delivered.", "#27ae60"),
    "Cancelled": ("Order Cancelled", "Your order has been cancelled.", "#e74c3c"),
    "Returned": ("Return Processed", "We've received your returned items.", "#f39c12"),
}

WHATSAPP_STATUS_TEMPLATES = {
    "Processing": "order_process",
    "Shipped": "order_shipped",
    "Delivered": "order_deliver",
    "Returned": "order_return",
    "Cancelled": "order_cancel",
}


def _money(value: Any) -> str:
    return f"Rs{float(value or 0):.2f}"


def _first_name(order: Dict[str, Any]) -> str:
    full_name = (order.get("shipping_address") or {}).get("full_name") or ""
    return full_name.split(" ")[0] if full_name else "Customer"


def _format_date(days_ahead: int) -> str:
    return (utcnow() + timedelta(days=days_ahead)).strftime("%b %d, %Y")


def contact_for(order: Dict[str, Any], user: Optional[Dict[str, Any]]) -> Dict[str, Optional[str]]:
    if user:
        return {"email": user.get("email"), "phone": user.get("phone")}
    address = order.get("shipping_address") or {}
    return {"email": address.get("email"), "phone": address.get("phone")}


def _items_table(order: Dict[str, Any]) -> str:
    rows = []
    for item in order.get("items") or []:
        option = item.get("price_option") or {}
        size = f"{float(option.get('weight') or 0):g}g" if option.get("type") == "weight-based" else "Packet"
        rows.append(
            "<tr>"
            f"<td>{escape(str(item.get('name', '')))}<br><small>{size}</small></td>"
            f"<td>{item.get('quantity')}</td>"
            f"<td>{_money(option.get('price'))}</td>"
            f"<td>{_money(float(option.get('price') or 0) * int(item.get('quantity') or 0))}</td>"
            "</tr>"
        )
    return (
        "<table><thead><tr><th>Item</th><th>Quantity</th><th>Price</th><th>Total</th></tr></thead>"
        f"<tbody>{''.join(rows)}</tbody></table>"
    )


def _totals_block(order: Dict[str, Any]) -> str:
    lines = [
        f"<p><strong>Subtotal:</strong> {_money(order.get('subtotal'))}</p>",
        f"<p><strong>Shipping:</strong> {_money(order.get('shipping_cost'))}</p>",
    ]
    if order.get("cod_fee"):
        lines.append(f"<p><strong>COD Fee:</strong> {_money(order['cod_fee'])}</p>")
    if order.get("discount"):
        lines.append(f"<p><strong>Discount:</strong> -{_money(order['discount'])}</p>")
    lines.append(f"<p><strong>Total:</strong> {_money(order.get('total_amount'))}</p>")
    return "".join(lines)


def order_confirmation_email(order: Dict[str, Any], store_name: str) -> str:
    address = order.get("shipping_address") or {}
    return (
        f"<h2>Order Confirmation #{order['_id']}</h2>"
        f"<p>Dear {escape(address.get('full_name') or 'Customer')},</p>"
        f"<p>Thank you for shopping with {escape(store_name)}! Here are your order details.</p>"
        f"{_items_table(order)}{_totals_block(order)}"
        f"<p>Payment Method: {escape(order.get('payment_method', ''))}</p>"
    )


def status_email(order: Dict[str, Any], status: str, tracking_base_url: Optional[str] = None) -> str:
    title, message, color = STATUS_COPY[status]
    address = order.get("shipping_address") or {}
    tracking = ""
    tracking_id = order.get("tracking_id")
    if status == "Shipped" and tracking_id:
        tracking = f"<h3>Tracking Information</h3><p><strong>Tracking Number:</strong> {escape(tracking_id)}</p>"
        if tracking_base_url:
            tracking += f'<a href="{tracking_base_url}/{escape(tracking_id)}">Track Your Package</a>'
    return (
        f'<h1 style="color: {color}">{title}</h1>'
        f"<p>Dear {escape(address.get('full_name') or 'Customer')},</p>"
        f"<p>{message}</p>"
        f"<p><strong>Order Number:</strong> #{order['_id']}</p>"
        f"<p><strong>Status:</strong> {status}</p>"
        f"{tracking}{_items_table(order)}{_totals_block(order)}"
    )


def status_template_params(order: Dict[str, Any], status: str, base_url: str) -> Dict[str, Any]:
    params: Dict[str, Any] = {
        "order_url": f"{base_url}/user/dashboard/order-history/{order['_id']}",
        "customer_name": _first_name(order),
        "order_number": str(order["_id"])[-6:],
    }
    if status == "Processing":
        params["estimated_date"] = _format_date(3)
    elif status == "Shipped":
        params["tracking_id"] = order.get("tracking_id") or "Not available, will update soon"
        params["estimated_date"] = _format_date(2)
    elif status == "Cancelled":
        params["estimated_date"] = 4
    return params


class Notifier:
    """Outbound e-mail and WhatsApp sink."""

    def __init__(self, config: AppConfig):
        self.config = config

    # -----------------
    # Transports
    # -----------------
    def send_email(self, to: str, subject: str, html: str) -> None:
        if not self.config.resend_api_key:
            logger.warning("Email not sent to %s: RESEND_API_KEY is not set", to)
            return
        response = requests.post(
            RESEND_API_URL,
            json={"from": self.config.email_from, "to": [to], "subject": subject, "html": html},
            headers={"Authorization": f"Bearer {self.config.resend_api_key}"},
            timeout=self.config.http_timeout,
        )
        response.raise_for_status()
        logger.info("Email '%s' sent to %s", subject, to)

    def send_whatsapp(self, phone: str, template: str, params: Dict[str, Any]) -> None:
        if not (self.config.whatsapp_phone_number_id and self.config.whatsapp_access_token):
            logger.warning("WhatsApp message %s not sent: WhatsApp is not configured", template)
            return
        response = requests.post(
            WHATSAPP_API_URL.format(phone_number_id=self.config.whatsapp_phone_number_id),
            json={
                "messaging_product": "whatsapp",
                "to": phone,
                "type": "template",
                "template": {
                    "name": template,
                    "language": {"code": "en_US"},
                    "components": [
                        {
                            "type": "body",
                            "parameters": [{"type": "text", "text": str(v)} for v in params.values()],
                        }
                    ],
                },
            },
            headers={"Authorization": f"Bearer {self.config.whatsapp_access_token}"},
            timeout=self.config.http_timeout,
        )
        response.raise_for_status()
        logger.info("WhatsApp template %s sent", template)

    # -----------------
    # Order events
    # -----------------
    def order_created(self, order: Dict[str, Any], user: Optional[Dict[str, Any]] = None) -> None:
        contact = contact_for(order, user)
        if contact["email"]:
            try:
                self.send_email(
                    contact["email"],
                    f"Order Confirmation - {self.config.store_name}",
                    order_confirmation_email(order, self.config.store_name),
                )
            except Exception:
                logger.exception("Order confirmation email failed for order %s", order.get("_id"))

        if contact["phone"] and user and user.get("verification_method") == "phone":
            count = len(order.get("items") or [])
            params = {
                "customer_name": _first_name(order),
                "order_id": str(order["_id"]),
                "item_count": f"{count} {'item' if count == 1 else 'items'}",
                "order_total": _money(order.get("total_amount")),
                "preparation_time": "2-3 days",
            }
            try:
                self.send_whatsapp(contact["phone"], "order_confirmation_utility", params)
            except Exception:
                logger.exception("Order confirmation WhatsApp failed for order %s", order.get("_id"))

    def status_changed(self, order: Dict[str, Any], status: str, user: Optional[Dict[str, Any]] = None) -> None:
        if status not in STATUS_COPY:
            return
        contact = contact_for(order, user)

        if self.config.whatsapp_status_updates and contact["phone"] and status in WHATSAPP_STATUS_TEMPLATES:
            try:
                self.send_whatsapp(
                    contact["phone"],
                    WHATSAPP_STATUS_TEMPLATES[status],
                    status_template_params(order, status, self.config.base_url),
                )
            except Exception:
                logger.exception("Status WhatsApp failed for order %s", order.get("_id"))

        if contact["email"]:
            try:
                self.send_email(
                    contact["email"],
                    f"{status} Update - Order #{order['_id']}",
                    status_email(order, status, self.config.tracking_base_url),
                )
            except Exception:
                logger.exception("Status email failed for order %s", order.get("_id"))
