"""Single-use, fixed-value coupons issued to one customer."""
import logging
import secrets
from datetime import datetime
from typing import List, Optional

from pymongo import DESCENDING, ReturnDocument
from pymongo.database import Database

from database import as_utc, create_document, get_documents, to_object_id, utcnow
from errors import BadRequestError, NotFoundError
from schemas import Coupon, CouponUpdate

logger = logging.getLogger(__name__)

CODE_ATTEMPTS = 5


def normalize_code(code: Optional[str]) -> str:
    return str(code or "").strip().upper()


class CouponService:
    def __init__(self, db: Database):
        self.collection = db["coupons"]
        self.customers = db["customers"]

    def _generate_code(self) -> str:
        for _ in range(CODE_ATTEMPTS):
            code = secrets.token_hex(4).upper()
            if self.collection.find_one({"code": code}, {"_id": 1}) is None:
                return code
        raise BadRequestError("Failed to generate unique coupon code")

    def create(self, customer_id: str, value: float, expiry_date: Optional[datetime] = None, description: Optional[str] = None) -> dict:
        oid = to_object_id(customer_id)
        if not oid or self.customers.find_one({"_id": oid}, {"_id": 1}) is None:
            raise BadRequestError("Customer not found")

        coupon = Coupon(
            code=self._generate_code(),
            customer_id=str(oid),
            value=value,
            expiry_date=expiry_date,
            description=description,
        )
        doc = coupon.model_dump()
        doc["customer_id"] = oid
        created = create_document(self.collection, doc)
        logger.info("Created coupon %s (%.2f) for customer %s", created["code"], value, oid)
        return created

    def list_all(self) -> List[dict]:
        coupons = get_documents(self.collection, sort=[("created_at", DESCENDING)])
        owner_ids = list({c["customer_id"] for c in coupons if c.get("customer_id")})
        owners = {c["_id"]: c for c in self.customers.find({"_id": {"$in": owner_ids}})}
        for coupon in coupons:
            owner = owners.get(coupon.get("customer_id"), {})
            coupon["customer_email"] = owner.get("email")
            coupon["customer_name"] = f"{owner.get('first_name') or ''} {owner.get('last_name') or ''}"
        return coupons

    def list_by_customer(self, customer_id: str) -> List[dict]:
        oid = to_object_id(customer_id)
        if not oid:
            return []
        return get_documents(
            self.collection,
            {"customer_id": oid, "is_used": False, "active": True},
            sort=[("created_at", DESCENDING)],
        )

    def get_by_id(self, coupon_id: str) -> dict:
        oid = to_object_id(coupon_id)
        doc = self.collection.find_one({"_id": oid}) if oid else None
        if not doc:
            raise NotFoundError("Coupon not found")
        return doc

    def get_by_code(self, code: str) -> Optional[dict]:
        return self.collection.find_one({"code": normalize_code(code)})

    def validate(self, code: str, customer_id: str) -> dict:
        coupon = self.get_by_code(code)
        if not coupon:
            raise BadRequestError("Invalid coupon code")
        if not coupon.get("active"):
            raise BadRequestError("This coupon is no longer active")
        if coupon.get("is_used"):
            raise BadRequestError("This coupon has already been used")
        if str(coupon.get("customer_id")) != str(customer_id):
            raise BadRequestError("This coupon does not belong to you")
        expiry = as_utc(coupon.get("expiry_date"))
        if expiry and expiry < utcnow():
            raise BadRequestError("This coupon has expired")
        return coupon

    def mark_as_used(self, coupon_id, order_id) -> bool:
        result = self.collection.update_one(
            {"_id": coupon_id, "is_used": False},
            {"$set": {"is_used": True, "used_in_order_id": order_id, "updated_at": utcnow()}},
        )
        return result.modified_count == 1

    def update(self, coupon_id: str, payload: CouponUpdate) -> dict:
        oid = to_object_id(coupon_id)
        changes = payload.model_dump(exclude_unset=True)
        changes["updated_at"] = utcnow()
        doc = None
        if oid:
            doc = self.collection.find_one_and_update(
                {"_id": oid}, {"$set": changes}, return_document=ReturnDocument.AFTER
            )
        if not doc:
            raise NotFoundError("Coupon not found")
        return doc

    def delete(self, coupon_id: str) -> None:
        oid = to_object_id(coupon_id)
        result = self.collection.delete_one({"_id": oid}) if oid else None
        if not result or result.deleted_count == 0:
            raise NotFoundError("Coupon not found")
