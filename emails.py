"""Transactional e-mail through the EmailJS REST API."""
import html
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import requests

import config
from errors import EmailDeliveryError

logger = logging.getLogger(__name__)

EMAILJS_URL = "https://api.emailjs.com/api/v1.0/email/send"
REQUEST_TIMEOUT = 10
CURRENCY = "AUD"
DEFAULT_COUNTRY = "Australia"


def split_name(full_name: str):
    parts = (full_name or "").split()
    first = parts[0] if parts else ""
    return first, " ".join(parts[1:])


def render_items_html(items: List[Dict[str, Any]]) -> str:
    rows = []
    for index, item in enumerate(items):
        border = "border-bottom:0;" if index == len(items) - 1 else "border-bottom:1px solid #e5e7eb;"
        rows.append(
            f"""
      <tr>
        <td valign="top" style="padding:14px 14px;{border}vertical-align:top;">
          <div style="font-size:14px;color:#111827;font-weight:600;line-height:1.25;">
            {html.escape(str(item.get("name", "")))}
          </div>
          <div style="margin-top:4px;font-size:12px;color:#6b7280;line-height:1.25;">
            Quantity: {int(item.get("quantity", 0))}
          </div>
        </td>
        <td valign="top" align="right"
            style="padding:14px 14px;{border}vertical-align:top;font-size:14px;color:#111827;font-weight:600;white-space:nowrap;">
          ${float(item.get("price", 0)):.2f}
        </td>
      </tr>"""
        )
    return "".join(rows)


def format_order_date(moment: datetime) -> str:
    return f"{moment:%A}, {moment.day} {moment:%B %Y}"


class EmailService:
    """Sends templated e-mails. Unconfigured services skip sending and return False."""

    def __init__(
        self,
        service_id: Optional[str] = config.EMAILJS_SERVICE_ID,
        public_key: Optional[str] = config.EMAILJS_PUBLIC_KEY,
        access_token: str = config.EMAILJS_ACCESS_TOKEN,
        session: Optional[requests.Session] = None,
    ):
        self.service_id = service_id
        self.public_key = public_key
        self.access_token = access_token or ""
        self.session = session or requests.Session()
        if self.configured:
            logger.info("EmailJS initialized successfully")
        else:
            logger.warning("EMAILJS_SERVICE_ID or EMAILJS_PUBLIC_KEY not configured")

    @property
    def configured(self) -> bool:
        return bool(self.service_id and self.public_key)

    def _send(self, template_id: str, template_params: Dict[str, Any]) -> None:
        body = {
            "service_id": self.service_id,
            "template_id": template_id,
            "user_id": self.public_key,
            "accessToken": self.access_token,
            "template_params": template_params,
        }
        try:
            response = self.session.post(EMAILJS_URL, json=body, timeout=REQUEST_TIMEOUT)
        except requests.RequestException as e:
            raise EmailDeliveryError(f"EmailJS request failed: {e}") from e
        if response.status_code != 200:
            raise EmailDeliveryError(f"EmailJS returned status {response.status_code}")
        if response.text.strip() != "OK":
            raise EmailDeliveryError(f"EmailJS returned unexpected response: {response.text[:100]}")

    def send_order_confirmation(self, to: str, details: Dict[str, Any]) -> bool:
        if not self.configured:
            logger.warning("EmailJS not configured, skipping order confirmation for %s", details.get("id"))
            return False

        first_name, last_name = split_name(details.get("customer_name", ""))
        items = details.get("items", [])
        address = details.get("shipping_address") or {}
        now = datetime.now(timezone.utc)
        template_params = {
            "to_email": to,
            "first_name": first_name,
            "last_name": last_name,
            "order_number": details["id"],
            "order_date": format_order_date(now),
            "currency": CURRENCY,
            "total": f"{details['total']:.2f}",
            "subtotal": f"{details['subtotal']:.2f}",
            "discount": f"{details.get('discount', 0):.2f}",
            "shipping": f"{details.get('shipping', 0):.2f}",
            "item_count": sum(int(i.get("quantity", 0)) for i in items),
            "items_html": render_items_html(items),
            "customer_email": details.get("customer_email", to),
            "customer_phone": details.get("customer_phone") or "",
            "address1": address.get("address1") or "",
            "address2": address.get("address2") or "",
            "city": address.get("city") or "",
            "state": address.get("state") or "",
            "postcode": address.get("postcode") or "",
            "country": address.get("country") or DEFAULT_COUNTRY,
            "refund_policy_url": config.STORE_REFUND_POLICY_URL,
            "year": str(now.year),
            "subject": f"Order Confirmation - Order #{details['id']}",
        }
        logger.info("Sending order confirmation email to %s for order %s", to, details["id"])
        self._send(config.EMAILJS_TEMPLATE_ID, template_params)
        logger.info("Order confirmation email sent to %s", to)
        return True

    def send_payment_reminder(self, to: str, details: Dict[str, Any]) -> bool:
        if not self.configured:
            logger.warning("EmailJS not configured, skipping payment reminder for %s", details.get("id"))
            return False

        first_name, last_name = split_name(details.get("customer_name", ""))
        items = details.get("items", [])
        template_params = {
            "to_email": to,
            "first_name": first_name,
            "last_name": last_name,
            "order_number": details["id"],
            "currency": CURRENCY,
            "total": f"{details['total']:.2f}",
            "subtotal": f"{details['subtotal']:.2f}",
            "discount": f"{details.get('coupon_discount', 0):.2f}",
            "item_count": sum(int(i.get("quantity", 0)) for i in items),
            "items_html": render_items_html(items),
            "reminder_number": details.get("reminder_number", 1),
            "subject": f"Payment reminder - Order #{details['id']}",
        }
        self._send(config.EMAILJS_REMINDER_TEMPLATE_ID, template_params)
        logger.info("Payment reminder #%s sent to %s", details.get("reminder_number"), to)
        return True

    def send_verification_code(self, to: str, code: str) -> bool:
        if not self.configured:
            logger.warning("EmailJS not configured, skipping verification email to %s", to)
            return False
        self._send(
            config.EMAILJS_VERIFICATION_TEMPLATE_ID,
            {"to_email": to, "code": code, "subject": "Your verification code"},
        )
        logger.info("Verification code sent to %s", to)
        return True
