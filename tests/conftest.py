"""Pytest fixtures for the Storefront API tests."""

import base64
import hashlib
import time
from unittest.mock import MagicMock

import mongomock
import pytest
from fastapi.testclient import TestClient
from jose import jwt

from auth import issue_token
from coupons import CouponService
from customers import CustomerService
from database import ensure_indexes, get_db, utcnow
from emails import EmailService
from reminders import ReminderScheduler
from security import get_password_hash
from uploads import UploadService

PASSWORD = "password123"
PASSWORD_HASH = get_password_hash(PASSWORD)
REMINDER_HANDLES = ["msg-1", "msg-2"]
WEBHOOK_URL = "https://shop.example.com/webhooks/qstash/email"


@pytest.fixture
def db():
    """A fresh in-memory database per test."""
    database = mongomock.MongoClient()["storefront_test"]
    ensure_indexes(database)
    return database


@pytest.fixture
def email():
    service = MagicMock(spec=EmailService)
    service.send_order_confirmation.return_value = True
    service.send_payment_reminder.return_value = True
    service.send_verification_code.return_value = True
    return service


@pytest.fixture
def reminders():
    scheduler = MagicMock(spec=ReminderScheduler)
    scheduler.schedule_payment_reminders.return_value = list(REMINDER_HANDLES)
    return scheduler


@pytest.fixture
def uploads():
    service = MagicMock(spec=UploadService)
    service.upload_image.return_value = {
        "file_url": "https://cdn.example.com/products/image.png",
        "key": "products/image.png",
    }
    service.presign_put_object.return_value = {
        "upload_url": "https://s3.example.com/signed",
        "file_url": "https://cdn.example.com/products/image.png",
        "key": "products/image.png",
    }
    return service


@pytest.fixture
def client(db, email, reminders, uploads):
    """Test client with the database and outbound services replaced."""
    import main

    main.app.dependency_overrides[get_db] = lambda: db
    main.app.dependency_overrides[main.get_email] = lambda: email
    main.app.dependency_overrides[main.get_reminders] = lambda: reminders
    main.app.dependency_overrides[main.get_uploads] = lambda: uploads
    main.app.dependency_overrides[main.get_receiver] = lambda: None

    yield TestClient(main.app)

    main.app.dependency_overrides.clear()


@pytest.fixture
def make_customer(db):
    """Register customers the way signup does, skipping the e-mail step."""

    def _make(email="buyer@example.com", is_admin=False, referred_by_code=None, **fields):
        service = CustomerService(db, CouponService(db))
        customer = service.create(
            email=email,
            password_hash=PASSWORD_HASH,
            first_name=fields.pop("first_name", "Test"),
            last_name=fields.pop("last_name", "Customer"),
            referred_by_code=referred_by_code,
        )
        changes = dict(fields)
        if is_admin:
            changes["is_admin"] = True
        if changes:
            db["customers"].update_one({"_id": customer["_id"]}, {"$set": changes})
            customer.update(changes)
        return customer

    return _make


@pytest.fixture
def make_product(db):
    def _make(name="Mango Bites", price=10.0, stock_qty=10, category_ids=None):
        category_ids = list(category_ids or [])
        doc = {
            "name": name,
            "price": price,
            "stock_qty": stock_qty,
            "category_ids": category_ids,
            "category_id": category_ids[0] if category_ids else None,
            "product_image_url": None,
            "created_at": utcnow(),
            "updated_at": utcnow(),
        }
        doc["_id"] = db["products"].insert_one(doc).inserted_id
        return doc

    return _make


def auth_headers(customer):
    return {"Authorization": f"Bearer {issue_token(customer)}"}


@pytest.fixture
def customer(make_customer):
    return make_customer()


@pytest.fixture
def admin(make_customer):
    return make_customer(email="admin@example.com", is_admin=True)


def qstash_signature(body: bytes, key: str, **claims) -> str:
    """Build an Upstash-Signature header value the way QStash signs deliveries."""
    now = int(time.time())
    digest = base64.urlsafe_b64encode(hashlib.sha256(body).digest()).decode()
    token_claims = {"iss": "Upstash", "sub": WEBHOOK_URL, "iat": now, "nbf": now, "exp": now + 300, "body": digest}
    token_claims.update(claims)
    return jwt.encode(token_claims, key, algorithm="HS256")
