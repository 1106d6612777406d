"""
Delayed payment reminders through QStash.

QStash holds a message for the requested delay and then POSTs it to our
webhook. Each message carries a full snapshot of the order so the webhook
does not depend on anything but the order status at delivery time.
"""
import logging
from typing import Any, Dict, Iterable, List, Optional

import httpx
from qstash import QStash, Receiver
from qstash.errors import QStashError, SignatureError

import config

logger = logging.getLogger(__name__)

WEBHOOK_PATH = "/webhooks/qstash/email"
PAYMENT_REMINDER = "payment_reminder"


def customer_display_name(customer: Dict[str, Any], fallback: Optional[str] = None) -> str:
    name = " ".join(p for p in (customer.get("first_name"), customer.get("last_name")) if p)
    return name or fallback or customer.get("email", "")


def build_reminder_payload(order: Dict[str, Any], customer: Dict[str, Any], reminder_number: int) -> Dict[str, Any]:
    return {
        "type": PAYMENT_REMINDER,
        "email": customer["email"],
        "order_details": {
            "id": order["order_id"],
            "total": order["total"],
            "subtotal": order["subtotal"],
            "coupon_discount": order.get("coupon_discount", 0),
            "customer_name": customer_display_name(customer, order.get("shipping_name")),
            "items": [{"name": i["name"], "quantity": i["qty"], "price": i["price"]} for i in order["items"]],
            "reminder_number": reminder_number,
        },
    }


def _build_client(token: Optional[str], qstash_url: Optional[str]) -> Optional[QStash]:
    if not token:
        return None
    if qstash_url:
        return QStash(token, base_url=qstash_url)
    return QStash(token)


class ReminderScheduler:
    def __init__(
        self,
        token: Optional[str] = config.QSTASH_TOKEN,
        base_url: Optional[str] = config.APP_BASE_URL,
        qstash_url: Optional[str] = config.QSTASH_URL,
        delays: Optional[List[int]] = None,
        client: Optional[QStash] = None,
    ):
        self.base_url = base_url.rstrip("/") if base_url else None
        self.delays = list(config.PAYMENT_REMINDER_DELAYS if delays is None else delays)
        self.client = client or _build_client(token, qstash_url)
        if self.client is None:
            logger.warning("QSTASH_TOKEN not configured - scheduled emails will not work")

    def schedule(self, payload: Dict[str, Any], delay_seconds: int) -> Optional[str]:
        """Publish one delayed message. Returns its message id, or None if nothing was scheduled."""
        if self.client is None:
            logger.warning("QStash not configured, skipping scheduled email")
            return None
        if not self.base_url:
            logger.error("APP_BASE_URL not configured, cannot schedule email")
            return None

        details = payload.get("order_details", {})
        try:
            response = self.client.message.publish_json(
                url=f"{self.base_url}{WEBHOOK_PATH}",
                body=payload,
                delay=f"{int(delay_seconds)}s",
            )
        except (QStashError, httpx.HTTPError) as e:
            logger.error("Failed to schedule email via QStash: %s", e)
            return None

        logger.info(
            "Scheduled payment reminder #%s for order %s in %ss",
            details.get("reminder_number"),
            details.get("id"),
            delay_seconds,
        )
        return response.message_id

    def schedule_payment_reminders(self, order: Dict[str, Any], customer: Dict[str, Any]) -> List[str]:
        handles = []
        for number, delay in enumerate(self.delays, start=1):
            message_id = self.schedule(build_reminder_payload(order, customer, number), delay)
            if message_id:
                handles.append(message_id)
        return handles

    def cancel(self, message_ids: Iterable[str]) -> None:
        """Best-effort removal of messages that have not been delivered yet."""
        if self.client is None:
            return
        for message_id in message_ids:
            try:
                self.client.message.cancel(message_id)
            except (QStashError, httpx.HTTPError) as e:
                # Already delivered or cancelled messages land here too
                logger.warning("Failed to cancel QStash message %s: %s", message_id, e)
                continue
            logger.info("Cancelled QStash message %s", message_id)


class SignatureReceiver:
    """Checks the Upstash-Signature header against the current and next signing keys."""

    def __init__(self, current_signing_key: str, next_signing_key: str):
        self.receiver = Receiver(current_signing_key=current_signing_key, next_signing_key=next_signing_key)

    def verify(self, signature: Optional[str], body: bytes, url: Optional[str] = None) -> bool:
        if not signature:
            return False
        try:
            self.receiver.verify(signature=signature, body=body.decode("utf-8"), url=url)
        except (SignatureError, UnicodeDecodeError) as e:
            logger.warning("Rejected QStash signature: %s", e)
            return False
        return True
