"""E-mail ownership checks that gate registration."""
import logging
import secrets
from datetime import timedelta

from pymongo.database import Database

from customers import CustomerService, normalize_email
from database import as_utc, create_document, utcnow
from emails import EmailService
from errors import BadRequestError, StorefrontError
from schemas import EmailVerification
from security import create_verification_token, get_password_hash, verify_password

logger = logging.getLogger(__name__)

CODE_TTL = timedelta(minutes=10)
RATE_WINDOW = timedelta(minutes=10)
MAX_CODES_PER_WINDOW = 3
MAX_ATTEMPTS = 5


def generate_code() -> str:
    return str(100000 + secrets.randbelow(900000))


class EmailVerificationService:
    def __init__(self, db: Database, customers: CustomerService, email: EmailService):
        self.collection = db["email_verifications"]
        self.customers = customers
        self.email = email

    def send_code(self, email: str) -> dict:
        email = normalize_email(email)
        if not email:
            raise BadRequestError("Email is required")
        if self.customers.email_exists(email):
            raise BadRequestError("Email already registered")

        window_start = utcnow() - RATE_WINDOW
        recent = [
            r for r in self.collection.find({"email": email}, {"created_at": 1})
            if as_utc(r.get("created_at")) and as_utc(r["created_at"]) >= window_start
        ]
        if len(recent) >= MAX_CODES_PER_WINDOW:
            raise BadRequestError("Too many requests. Please try again later.")

        code = generate_code()
        record = EmailVerification(email=email, code=get_password_hash(code), expires_at=utcnow() + CODE_TTL)
        create_document(self.collection, record)

        try:
            self.email.send_verification_code(email, code)
        except StorefrontError:
            logger.exception("Failed to send verification code to %s", email)

        return {"message": "Verification code sent"}

    def verify_code(self, email: str, code: str) -> dict:
        email = normalize_email(email)
        now = utcnow()
        pending = [
            r for r in self.collection.find({"email": email, "verified": False}).sort("created_at", -1)
            if as_utc(r["expires_at"]) > now
        ]
        if not pending:
            raise BadRequestError("No pending verification found. Please request a new code.")

        record = pending[0]
        if record.get("attempts", 0) >= MAX_ATTEMPTS:
            raise BadRequestError("Too many failed attempts. Please request a new code.")

        if not verify_password(code, record["code"]):
            self.collection.update_one({"_id": record["_id"]}, {"$inc": {"attempts": 1}})
            raise BadRequestError("Invalid verification code")

        self.collection.update_one(
            {"_id": record["_id"]}, {"$set": {"verified": True, "verified_at": now, "updated_at": now}}
        )
        return {"verification_token": create_verification_token(email)}
