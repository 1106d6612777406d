"""Delivery side of the payment reminder workflow."""
import logging

from pymongo.database import Database

from emails import EmailService
from reminders import PAYMENT_REMINDER
from schemas import OrderStatus, ReminderPayload

logger = logging.getLogger(__name__)


class ReminderWebhookHandler:
    """
    Handles messages QStash delivers after their delay.

    Reminder cancellation is only best effort, so the order status is
    checked again here before anything is sent.
    """

    def __init__(self, db: Database, email: EmailService):
        self.orders = db["orders"]
        self.email = email

    def handle(self, payload: ReminderPayload) -> dict:
        details = payload.order_details
        logger.info("Received QStash webhook: %s for order %s", payload.type, details.id)

        if payload.type != PAYMENT_REMINDER:
            return {"success": True}

        order = self.orders.find_one({"order_id": details.id}, {"status": 1})
        if not order:
            logger.warning("Order %s not found, skipping reminder", details.id)
            return {"success": True, "skipped": True, "reason": "order_not_found"}

        if order.get("status") != OrderStatus.pending.value:
            logger.info(
                "Order %s is already %s, skipping reminder #%s", details.id, order.get("status"), details.reminder_number
            )
            return {"success": True, "skipped": True, "reason": "order_not_pending"}

        # Delivery errors propagate so QStash retries the message
        sent = self.email.send_payment_reminder(payload.email, details.model_dump())
        if not sent:
            return {"success": True, "skipped": True, "reason": "email_not_configured"}
        logger.info("Payment reminder #%s sent for order %s", details.reminder_number, details.id)
        return {"success": True}
