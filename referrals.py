"""Referral programs and resolution of personal referral codes."""
from dataclasses import dataclass
from typing import List, Optional

from pymongo import DESCENDING, ReturnDocument
from pymongo.database import Database

from coupons import normalize_code
from customers import CustomerService
from database import create_document, get_documents, to_object_id, utcnow
from errors import BadRequestError, NotFoundError
from pricing import referral_discount
from schemas import Referral, ReferralCreate, ReferralUpdate

INVALID_REFERRAL = "Invalid referral code"


@dataclass
class ResolvedReferral:
    code: str
    owner: dict
    program: dict

    def discount_for(self, subtotal: float) -> float:
        return referral_discount(subtotal, self.program["discount_type"], self.program["discount_value"])


class ReferralService:
    def __init__(self, db: Database, customers: CustomerService):
        self.collection = db["referrals"]
        self.customers = customers

    def list(self) -> List[dict]:
        return get_documents(self.collection, sort=[("created_at", DESCENDING)])

    def get(self, referral_id: str) -> dict:
        oid = to_object_id(referral_id)
        doc = self.collection.find_one({"_id": oid}) if oid else None
        if not doc:
            raise NotFoundError("Referral not found")
        return doc

    def create(self, payload: ReferralCreate) -> dict:
        return create_document(self.collection, Referral(**payload.model_dump()))

    def update(self, referral_id: str, payload: ReferralUpdate) -> dict:
        oid = to_object_id(referral_id)
        changes = payload.model_dump(exclude_unset=True)
        changes["updated_at"] = utcnow()
        doc = None
        if oid:
            doc = self.collection.find_one_and_update(
                {"_id": oid}, {"$set": changes}, return_document=ReturnDocument.AFTER
            )
        if not doc:
            raise NotFoundError("Referral not found")
        return doc

    def get_active_by_id(self, program_id) -> Optional[dict]:
        oid = to_object_id(program_id)
        if not oid:
            return None
        return self.collection.find_one({"_id": oid, "active": True})

    def resolve_code(self, code: Optional[str]) -> ResolvedReferral:
        """
        Follow code -> owning customer -> assigned program -> active program.

        Every failure reports the same message so callers cannot tell which
        codes exist.
        """
        normalized = normalize_code(code)
        if not normalized:
            raise BadRequestError("Referral code is required")

        owner = self.customers.find_by_referral_code(normalized)
        if not owner or not owner.get("referral_program_id"):
            raise BadRequestError(INVALID_REFERRAL)

        program = self.get_active_by_id(owner["referral_program_id"])
        if not program:
            raise BadRequestError(INVALID_REFERRAL)

        return ResolvedReferral(code=normalized, owner=owner, program=program)
