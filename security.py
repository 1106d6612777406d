"""Password hashing, JWT handling and the bearer-token dependencies."""
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Depends
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt
from passlib.context import CryptContext
from pymongo.database import Database

import config
from database import get_db, to_object_id
from errors import ForbiddenError, UnauthorizedError

VERIFICATION_PURPOSE = "email-verification"

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/login", auto_error=False)


def verify_password(plain_password, hashed_password):
    if not hashed_password:
        return False
    return pwd_context.verify(plain_password, hashed_password)


def get_password_hash(password):
    return pwd_context.hash(password)


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None):
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=config.ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({"exp": expire})
    encoded_jwt = jwt.encode(to_encode, config.SECRET_KEY, algorithm=config.ALGORITHM)
    return encoded_jwt


def decode_token(token: str) -> Optional[dict]:
    try:
        return jwt.decode(token, config.SECRET_KEY, algorithms=[config.ALGORITHM])
    except JWTError:
        return None


def create_verification_token(email: str) -> str:
    return create_access_token(
        {"email": email, "purpose": VERIFICATION_PURPOSE},
        expires_delta=timedelta(minutes=config.VERIFICATION_TOKEN_EXPIRE_MINUTES),
    )


def verification_token_matches(token: str, email: str) -> bool:
    payload = decode_token(token)
    if not payload:
        return False
    return payload.get("email") == email.lower().strip() and payload.get("purpose") == VERIFICATION_PURPOSE


def get_current_customer_id(token: Optional[str] = Depends(oauth2_scheme)) -> str:
    """Resolve the bearer token to a customer id without touching the database."""
    if not token:
        raise UnauthorizedError("Not authenticated")
    payload = decode_token(token)
    customer_id = payload.get("sub") if payload else None
    if not customer_id or payload.get("purpose"):
        raise UnauthorizedError("Could not validate credentials")
    return customer_id


def get_current_admin(customer_id: str = Depends(get_current_customer_id), db: Database = Depends(get_db)) -> dict:
    oid = to_object_id(customer_id)
    customer = db["customers"].find_one({"_id": oid}) if oid else None
    if not customer:
        raise UnauthorizedError("Could not validate credentials")
    if not customer.get("is_admin"):
        raise ForbiddenError("Admin only")
    return customer
