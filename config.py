"""
Runtime settings for the Storefront API.

Values come from the process environment. A local ``.env`` file is loaded
first when present so development setups do not need exported variables.
"""
import os
from typing import List

from dotenv import load_dotenv

load_dotenv()


def _csv(name: str, default: str) -> List[str]:
    raw = os.getenv(name, default)
    return [part.strip() for part in raw.split(",") if part.strip()]


# Database
DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME")

# Auth settings
SECRET_KEY = os.getenv("SECRET_KEY", "secret-key-change-me")
ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", 60 * 24 * 7))
VERIFICATION_TOKEN_EXPIRE_MINUTES = 15

# Delayed dispatch (QStash)
# Unset means the SDK default endpoint
QSTASH_URL = os.getenv("QSTASH_URL")
QSTASH_TOKEN = os.getenv("QSTASH_TOKEN")
QSTASH_CURRENT_SIGNING_KEY = os.getenv("QSTASH_CURRENT_SIGNING_KEY")
QSTASH_NEXT_SIGNING_KEY = os.getenv("QSTASH_NEXT_SIGNING_KEY")
APP_BASE_URL = (os.getenv("APP_BASE_URL") or "").rstrip("/") or None
PAYMENT_REMINDER_DELAYS = [int(s) for s in _csv("PAYMENT_REMINDER_DELAYS", "86400,172800")]

# Outbound e-mail (EmailJS)
EMAILJS_SERVICE_ID = os.getenv("EMAILJS_SERVICE_ID")
EMAILJS_PUBLIC_KEY = os.getenv("EMAILJS_PUBLIC_KEY")
EMAILJS_ACCESS_TOKEN = os.getenv("EMAILJS_ACCESS_TOKEN", "")
EMAILJS_TEMPLATE_ID = os.getenv("EMAILJS_TEMPLATE_ID", "template_order_confirmation")
EMAILJS_REMINDER_TEMPLATE_ID = os.getenv("EMAILJS_REMINDER_TEMPLATE_ID", "template_payment_reminder")
EMAILJS_VERIFICATION_TEMPLATE_ID = os.getenv("EMAILJS_VERIFICATION_TEMPLATE_ID", "template_verification")
STORE_REFUND_POLICY_URL = os.getenv("STORE_REFUND_POLICY_URL", "https://va-ecru.vercel.app/refund-policy")

# Object storage (S3)
AWS_REGION = os.getenv("AWS_REGION", "ap-southeast-2")
AWS_S3_BUCKET = os.getenv("AWS_S3_BUCKET")
AWS_S3_PUBLIC_BASE_URL = os.getenv("AWS_S3_PUBLIC_BASE_URL", "")
AWS_S3_OBJECT_ACL = os.getenv("AWS_S3_OBJECT_ACL") or None

# Misc
LOW_STOCK_THRESHOLD = int(os.getenv("LOW_STOCK_THRESHOLD", 5))
CORS_ORIGINS = _csv("CORS_ORIGINS", "http://localhost:4200,https://va-ecru.vercel.app")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
PORT = int(os.getenv("PORT", 8000))
