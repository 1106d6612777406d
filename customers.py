"""Customer accounts, personal referral codes and signup coupons."""
import logging
import secrets
from datetime import datetime, timedelta
from typing import List, Optional

from pymongo import DESCENDING, ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from coupons import CouponService, normalize_code
from database import create_document, get_documents, to_object_id, utcnow
from errors import BadRequestError, NotFoundError
from schemas import Customer, CustomerAdminUpdate, ShippingAddress

logger = logging.getLogger(__name__)

CODE_ATTEMPTS = 5
WELCOME_COUPON_VALUE = 5
REFERRAL_COUPON_VALUE = 2
PROTECTED_PROFILE_FIELDS = ("password_hash", "is_admin", "email")


def normalize_email(email: Optional[str]) -> str:
    return str(email or "").lower().strip()


def one_year_from(moment: datetime) -> datetime:
    try:
        return moment.replace(year=moment.year + 1)
    except ValueError:
        # Feb 29th
        return moment + timedelta(days=365)


class CustomerService:
    def __init__(self, db: Database, coupons: CouponService):
        self.collection = db["customers"]
        self.referrals = db["referrals"]
        self.coupons = coupons

    def find_by_id(self, customer_id) -> dict:
        oid = to_object_id(customer_id)
        doc = self.collection.find_one({"_id": oid}) if oid else None
        if not doc:
            raise NotFoundError("Customer not found")
        return doc

    def find_by_email(self, email: str) -> Optional[dict]:
        return self.collection.find_one({"email": normalize_email(email)})

    def find_by_referral_code(self, code: str) -> Optional[dict]:
        normalized = normalize_code(code)
        if not normalized:
            return None
        return self.collection.find_one({"referral_code": normalized})

    def email_exists(self, email: str) -> bool:
        normalized = normalize_email(email)
        if not normalized:
            return False
        return self.collection.find_one({"email": normalized}, {"_id": 1}) is not None

    def list(self) -> List[dict]:
        return get_documents(self.collection, sort=[("created_at", DESCENDING)])

    def _generate_unique_referral_code(self) -> str:
        for _ in range(CODE_ATTEMPTS):
            code = secrets.token_hex(4).upper()
            if self.collection.find_one({"referral_code": code}, {"_id": 1}) is None:
                return code
        raise BadRequestError("Failed to generate unique referral code")

    def create(
        self,
        email: str,
        password_hash: str,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        phone: Optional[str] = None,
        referred_by_code: Optional[str] = None,
        shipping_address: Optional[ShippingAddress] = None,
    ) -> dict:
        email = normalize_email(email)
        if self.email_exists(email):
            raise BadRequestError("Email already registered")

        referrer = self.find_by_referral_code(referred_by_code) if referred_by_code else None

        customer = Customer(
            email=email,
            password_hash=password_hash,
            first_name=first_name,
            last_name=last_name,
            phone=phone,
            shipping_address=shipping_address,
            referral_code=self._generate_unique_referral_code(),
        )
        try:
            created = create_document(self.collection, customer)
        except DuplicateKeyError:
            raise BadRequestError("Email already registered")
        logger.info("Registered customer %s", created["_id"])

        expires = one_year_from(utcnow())
        try:
            self.coupons.create(str(created["_id"]), WELCOME_COUPON_VALUE, expires, "Welcome bonus")
        except Exception:
            logger.exception("Failed to create welcome coupon for %s", created["_id"])

        if referrer:
            try:
                self.coupons.create(str(created["_id"]), REFERRAL_COUPON_VALUE, expires, "Referral bonus")
                self.coupons.create(
                    str(referrer["_id"]), REFERRAL_COUPON_VALUE, expires, f"Referral bonus - referred {email}"
                )
            except Exception:
                logger.exception("Failed to create referral coupons for %s", created["_id"])

        return created

    def _update(self, customer_id, changes: dict) -> dict:
        oid = to_object_id(customer_id)
        changes["updated_at"] = utcnow()
        doc = None
        if oid:
            try:
                doc = self.collection.find_one_and_update(
                    {"_id": oid}, {"$set": changes}, return_document=ReturnDocument.AFTER
                )
            except DuplicateKeyError:
                raise BadRequestError("Email already registered")
        if not doc:
            raise NotFoundError("Customer not found")
        return doc

    def update_profile(self, customer_id, update: dict) -> dict:
        changes = {k: v for k, v in update.items() if k not in PROTECTED_PROFILE_FIELDS}
        return self._update(customer_id, changes)

    def update_password_hash(self, customer_id, password_hash: str) -> dict:
        return self._update(customer_id, {"password_hash": password_hash})

    def admin_update(self, customer_id: str, payload: CustomerAdminUpdate) -> dict:
        existing = self.find_by_id(customer_id)
        changes = payload.model_dump(exclude_unset=True)

        if changes.get("email"):
            changes["email"] = normalize_email(changes["email"])

        if changes.get("referral_program_id"):
            program_id = to_object_id(changes["referral_program_id"])
            if not program_id or self.referrals.find_one({"_id": program_id}, {"_id": 1}) is None:
                raise BadRequestError("Referral program not found")
            changes["referral_program_id"] = program_id
            # A code, once issued, never changes
            if not existing.get("referral_code"):
                changes["referral_code"] = self._generate_unique_referral_code()
        elif "referral_program_id" in changes:
            changes["referral_program_id"] = None

        return self._update(existing["_id"], changes)
