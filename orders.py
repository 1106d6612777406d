"""
Order placement and order lifecycle.

Placing an order reads the requested products, checks stock, prices the
cart (referral discount first, then up to three coupons in the order the
customer gave them), reserves stock one item at a time with a conditional
update and stores the order as ``pending``. E-mails, coupon bookkeeping and
reminder scheduling run afterwards and can never fail the order.

Stock reservation is not transactional across items: if a later item runs
out between the check and its update, stock already taken for earlier
items stays taken.
"""
import logging
import secrets
from collections import OrderedDict
from typing import Dict, List, Optional

from bson import ObjectId
from pymongo import DESCENDING
from pymongo.database import Database

from coupons import CouponService, normalize_code
from customers import CustomerService
from database import create_document, get_documents, to_object_id, utcnow
from emails import EmailService
from errors import BadRequestError, NotFoundError, StorefrontError
from pricing import order_total, round_money, stack_coupons
from referrals import ReferralService
from reminders import ReminderScheduler, customer_display_name
from schemas import MAX_COUPONS_PER_ORDER, Order, OrderCreate, OrderItem, OrderStatus, ShipmentUpdate

logger = logging.getLogger(__name__)

ORDER_ID_ATTEMPTS = 5
STOP_REMINDER_STATUSES = (OrderStatus.paid.value, OrderStatus.shipped.value)


class OrderService:
    def __init__(
        self,
        db: Database,
        customers: CustomerService,
        referrals: ReferralService,
        coupons: CouponService,
        email: EmailService,
        reminders: ReminderScheduler,
    ):
        self.collection = db["orders"]
        self.products = db["products"]
        self.customers = customers
        self.referrals = referrals
        self.coupons = coupons
        self.email = email
        self.reminders = reminders

    # Placement

    def _merge_items(self, payload: OrderCreate) -> "OrderedDict[ObjectId, int]":
        if not payload.items:
            raise BadRequestError("Order must include at least 1 item")
        qty_by_product: "OrderedDict[ObjectId, int]" = OrderedDict()
        for item in payload.items:
            oid = to_object_id(item.product_id)
            if not oid:
                raise BadRequestError("One or more products do not exist")
            qty_by_product[oid] = qty_by_product.get(oid, 0) + int(item.qty)
        return qty_by_product

    def _snapshot_items(self, qty_by_product: Dict[ObjectId, int]) -> List[dict]:
        products = {p["_id"]: p for p in self.products.find({"_id": {"$in": list(qty_by_product)}})}
        if len(products) != len(qty_by_product):
            raise BadRequestError("One or more products do not exist")

        items = []
        for product_id, qty in qty_by_product.items():
            product = products[product_id]
            if qty <= 0:
                raise BadRequestError("Invalid qty")
            if (product.get("stock_qty") or 0) < qty:
                raise BadRequestError(f"Not enough stock for {product['name']}")
            items.append(
                {
                    "product_id": product_id,
                    "name": product["name"],
                    "price": float(product["price"]),
                    "qty": qty,
                    "image_url": product.get("product_image_url"),
                }
            )
        return items

    def _coupon_codes(self, codes: List[str]) -> List[str]:
        unique = list(dict.fromkeys(c for c in (normalize_code(code) for code in codes) if c))
        if len(unique) > MAX_COUPONS_PER_ORDER:
            raise BadRequestError(f"A maximum of {MAX_COUPONS_PER_ORDER} coupons can be applied")
        return unique

    def _generate_order_id(self) -> str:
        for _ in range(ORDER_ID_ATTEMPTS):
            order_id = secrets.token_hex(4)
            if self.collection.find_one({"order_id": order_id}, {"_id": 1}) is None:
                return order_id
        raise BadRequestError("Failed to generate unique order id")

    def _reserve_stock(self, items: List[dict]) -> None:
        for item in items:
            result = self.products.update_one(
                {"_id": item["product_id"], "stock_qty": {"$gte": item["qty"]}},
                {"$inc": {"stock_qty": -item["qty"]}, "$set": {"updated_at": utcnow()}},
            )
            if result.modified_count != 1:
                raise BadRequestError(f"Not enough stock for {item['name']}")

    def create(self, customer_id: str, payload: OrderCreate) -> dict:
        customer = self.customers.find_by_id(customer_id)
        qty_by_product = self._merge_items(payload)
        coupon_codes = self._coupon_codes(payload.coupon_codes)
        items = self._snapshot_items(qty_by_product)

        subtotal = round_money(sum(i["price"] * i["qty"] for i in items))

        discount_amount = 0.0
        referral_fields: dict = {}
        if (payload.referral_code or "").strip():
            referral = self.referrals.resolve_code(payload.referral_code)
            discount_amount = referral.discount_for(subtotal)
            referral_fields = {
                "referral_code_used": referral.code,
                "referral_owner_customer_id": str(referral.owner["_id"]),
                "referral_program_id": str(referral.program["_id"]),
                "referral_discount_type": referral.program["discount_type"],
                "referral_discount_value": referral.program["discount_value"],
                "referral_discount_amount": discount_amount,
            }

        coupons = [self.coupons.validate(code, str(customer["_id"])) for code in coupon_codes]
        _, coupon_discount = stack_coupons(subtotal, discount_amount, [c["value"] for c in coupons])
        discount_amount = min(subtotal, round_money(discount_amount + coupon_discount))
        total = order_total(subtotal, discount_amount)

        order_id = self._generate_order_id()
        self._reserve_stock(items)

        order = Order(
            order_id=order_id,
            customer_id=str(customer["_id"]),
            items=[OrderItem(**{**i, "product_id": str(i["product_id"])}) for i in items],
            subtotal=subtotal,
            discount_amount=discount_amount,
            total=total,
            shipping_name=payload.shipping_name,
            shipping_address1=payload.shipping_address1,
            shipping_city=payload.shipping_city,
            shipping_state=payload.shipping_state,
            shipping_postcode=payload.shipping_postcode,
            coupon_codes_used=[c["code"] for c in coupons],
            coupon_discount=coupon_discount,
            **referral_fields,
        )
        doc = order.model_dump()
        doc["customer_id"] = customer["_id"]
        doc["items"] = items
        for key in ("referral_owner_customer_id", "referral_program_id"):
            if doc.get(key):
                doc[key] = ObjectId(doc[key])
        created = create_document(self.collection, doc)
        logger.info(
            "Order %s placed by %s: subtotal=%.2f discount=%.2f total=%.2f",
            order_id, customer["_id"], subtotal, discount_amount, total,
        )

        self._after_create(created, customer, coupons)
        return created

    def _after_create(self, order: dict, customer: dict, coupons: List[dict]) -> None:
        for coupon in coupons:
            try:
                if not self.coupons.mark_as_used(coupon["_id"], order["_id"]):
                    logger.warning("Coupon %s was already used when order %s completed", coupon["code"], order["order_id"])
            except Exception:
                logger.exception("Failed to mark coupon %s as used", coupon["code"])

        try:
            self.email.send_order_confirmation(customer["email"], self._confirmation_details(order, customer))
        except StorefrontError:
            logger.exception("Failed to send order confirmation for %s", order["order_id"])

        try:
            handles = self.reminders.schedule_payment_reminders(order, customer)
        except Exception:
            logger.exception("Failed to schedule payment reminders for %s", order["order_id"])
            handles = []
        if handles:
            self.collection.update_one({"_id": order["_id"]}, {"$set": {"reminder_message_ids": handles}})
            order["reminder_message_ids"] = handles

    @staticmethod
    def _confirmation_details(order: dict, customer: dict) -> dict:
        address = dict(customer.get("shipping_address") or {})
        if order.get("shipping_address1"):
            address.update(
                address1=order.get("shipping_address1"),
                address2=None,
                city=order.get("shipping_city"),
                state=order.get("shipping_state"),
                postcode=order.get("shipping_postcode"),
            )
        return {
            "id": order["order_id"],
            "total": order["total"],
            "subtotal": order["subtotal"],
            "discount": order["discount_amount"],
            "shipping": 0.0,
            "items": [{"name": i["name"], "quantity": i["qty"], "price": i["price"]} for i in order["items"]],
            "customer_name": customer_display_name(customer, order.get("shipping_name")),
            "customer_email": customer["email"],
            "customer_phone": customer.get("phone"),
            "shipping_address": address,
        }

    # Reads

    def _enrich(self, orders: List[dict]) -> List[dict]:
        ids = list({o["customer_id"] for o in orders if o.get("customer_id")})
        owners = {c["_id"]: c for c in self.customers.collection.find({"_id": {"$in": ids}})}
        for order in orders:
            owner = owners.get(order.get("customer_id"))
            order["customer_email"] = owner.get("email") if owner else None
            order["customer_info"] = {
                "_id": owner["_id"],
                "email": owner.get("email"),
                "first_name": owner.get("first_name"),
                "last_name": owner.get("last_name"),
                "phone": owner.get("phone"),
                "shipping_address": owner.get("shipping_address"),
            } if owner else None
        return orders

    def _get(self, order_id: str) -> dict:
        oid = to_object_id(order_id)
        doc = self.collection.find_one({"_id": oid}) if oid else None
        if not doc:
            raise NotFoundError("Order not found")
        return doc

    def get_enriched(self, order_id: str) -> dict:
        return self._enrich([self._get(order_id)])[0]

    def list_mine(self, customer_id: str) -> List[dict]:
        oid = to_object_id(customer_id)
        return get_documents(self.collection, {"customer_id": oid}, sort=[("created_at", DESCENDING)])

    def get_mine(self, customer_id: str, order_id: str) -> dict:
        oid, owner = to_object_id(order_id), to_object_id(customer_id)
        doc = self.collection.find_one({"_id": oid, "customer_id": owner}) if oid and owner else None
        if not doc:
            raise NotFoundError("Order not found")
        return doc

    def list_all(self) -> List[dict]:
        return self._enrich(get_documents(self.collection, sort=[("created_at", DESCENDING)]))

    def list_by_referral_code(self, code: str) -> List[dict]:
        normalized = normalize_code(code)
        if not normalized:
            return []
        return get_documents(self.collection, {"referral_code_used": normalized}, sort=[("created_at", DESCENDING)])

    # Lifecycle

    def _stop_reminders(self, order: dict) -> None:
        handles = order.get("reminder_message_ids") or []
        if not handles:
            return
        try:
            self.reminders.cancel(handles)
        except Exception:
            logger.exception("Failed to cancel reminders for order %s", order.get("order_id"))
        self.collection.update_one({"_id": order["_id"]}, {"$set": {"reminder_message_ids": []}})

    def update_status(self, order_id: str, status: str) -> dict:
        order = self._get(order_id)
        status = OrderStatus(status).value
        self.collection.update_one({"_id": order["_id"]}, {"$set": {"status": status, "updated_at": utcnow()}})
        logger.info("Order %s status %s -> %s", order["order_id"], order.get("status"), status)
        if status in STOP_REMINDER_STATUSES:
            self._stop_reminders(order)
        return self.get_enriched(order_id)

    def cancel_mine(self, customer_id: str, order_id: str) -> dict:
        order = self.get_mine(customer_id, order_id)
        if order.get("status") != OrderStatus.pending.value:
            raise BadRequestError("Only pending orders can be canceled")

        result = self.collection.update_one(
            {"_id": order["_id"], "status": OrderStatus.pending.value},
            {"$set": {"status": OrderStatus.canceled.value, "updated_at": utcnow()}},
        )
        if result.modified_count != 1:
            raise BadRequestError("Only pending orders can be canceled")

        self._stop_reminders(order)
        for item in order.get("items", []):
            # Restoring stock we reserved earlier is always valid
            self.products.update_one({"_id": item["product_id"]}, {"$inc": {"stock_qty": item["qty"]}})
        logger.info("Order %s canceled by customer %s", order["order_id"], customer_id)
        return self.get_mine(customer_id, order_id)

    def update_shipment(self, order_id: str, payload: ShipmentUpdate) -> dict:
        order = self._get(order_id)
        changes = payload.model_dump(exclude_unset=True)
        changes["updated_at"] = utcnow()
        self.collection.update_one({"_id": order["_id"]}, {"$set": changes})
        return self.get_enriched(order_id)
