"""Registration, login and self-service profile management."""
import logging

from customers import CustomerService, normalize_email
from database import serialize
from errors import BadRequestError, UnauthorizedError
from schemas import ChangePasswordPayload, LoginPayload, RegisterPayload, UpdateProfilePayload
from security import create_access_token, get_password_hash, verification_token_matches, verify_password

logger = logging.getLogger(__name__)


def issue_token(customer: dict) -> str:
    return create_access_token({"sub": str(customer["_id"]), "email": customer["email"]})


class AuthService:
    def __init__(self, customers: CustomerService):
        self.customers = customers

    def register(self, payload: RegisterPayload) -> dict:
        email = normalize_email(payload.email)
        if not verification_token_matches(payload.verification_token, email):
            raise BadRequestError("Email verification expired or invalid. Please start over.")

        created = self.customers.create(
            email=email,
            password_hash=get_password_hash(payload.password),
            first_name=payload.first_name,
            last_name=payload.last_name,
            phone=payload.phone,
            referred_by_code=(payload.referral_code or "").strip() or None,
            shipping_address=payload.shipping_address,
        )
        return {"customer": serialize(created), "access_token": issue_token(created)}

    def login(self, payload: LoginPayload) -> dict:
        customer = self.customers.find_by_email(payload.email)
        if not customer or not verify_password(payload.password, customer.get("password_hash")):
            raise UnauthorizedError("Invalid email or password")
        return {"customer": serialize(customer), "access_token": issue_token(customer)}

    def email_exists(self, email: str) -> dict:
        normalized = normalize_email(email)
        if not normalized:
            raise BadRequestError("Email is required")
        return {"exists": self.customers.email_exists(normalized)}

    def me(self, customer_id: str) -> dict:
        return {"customer": serialize(self.customers.find_by_id(customer_id))}

    def update_me(self, customer_id: str, payload: UpdateProfilePayload) -> dict:
        changes = payload.model_dump(exclude_unset=True)
        customer = self.customers.update_profile(customer_id, changes)
        return {"customer": serialize(customer)}

    def change_password(self, customer_id: str, payload: ChangePasswordPayload) -> dict:
        customer = self.customers.find_by_id(customer_id)
        if not customer.get("password_hash"):
            raise UnauthorizedError("Invalid credentials")
        if not verify_password(payload.current_password, customer["password_hash"]):
            raise UnauthorizedError("Current password is incorrect")
        self.customers.update_password_hash(customer_id, get_password_hash(payload.new_password))
        logger.info("Password changed for customer %s", customer_id)
        return {"updated": True}
