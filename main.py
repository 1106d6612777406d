import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, File, Form, Header, Query, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from pymongo.database import Database
from starlette.concurrency import run_in_threadpool

import config
import database
from analytics import AnalyticsService
from auth import AuthService
from catalog import CategoryService, ProductService
from coupons import CouponService
from customers import CustomerService
from database import get_db, serialize
from emails import EmailService
from errors import BadRequestError, StorefrontError, UnauthorizedError
from orders import OrderService
from referrals import ReferralService
from reminders import ReminderScheduler, SignatureReceiver
from schemas import (
    Category,
    CategoryUpdate,
    ChangePasswordPayload,
    CouponCreate,
    CouponUpdate,
    CustomerAdminUpdate,
    LoginPayload,
    OrderCreate,
    PresignPayload,
    ProductCreate,
    ProductUpdate,
    ReferralCreate,
    ReferralUpdate,
    RegisterPayload,
    ReminderPayload,
    SendVerificationPayload,
    ShipmentUpdate,
    StatusChange,
    UpdateProfilePayload,
    VerifyCodePayload,
)
from security import get_current_admin, get_current_customer_id
from uploads import MAX_IMAGE_BYTES, UploadService
from verification import EmailVerificationService
from webhooks import ReminderWebhookHandler

logging.basicConfig(level=config.LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)


# Outbound collaborators are process-wide; everything touching Mongo is built per request

email_service = EmailService()
reminder_scheduler = ReminderScheduler()
upload_service = UploadService()
signature_receiver: Optional[SignatureReceiver] = None
if config.QSTASH_CURRENT_SIGNING_KEY and config.QSTASH_NEXT_SIGNING_KEY:
    signature_receiver = SignatureReceiver(config.QSTASH_CURRENT_SIGNING_KEY, config.QSTASH_NEXT_SIGNING_KEY)
    logger.info("QStash webhook receiver initialized")
else:
    logger.warning("QStash signing keys not configured - webhook verification disabled")


def get_email() -> EmailService:
    return email_service


def get_reminders() -> ReminderScheduler:
    return reminder_scheduler


def get_uploads() -> UploadService:
    return upload_service


def get_receiver() -> Optional[SignatureReceiver]:
    return signature_receiver


def get_coupons(db: Database = Depends(get_db)):
    return CouponService(db)


def get_customers(db: Database = Depends(get_db), coupons: CouponService = Depends(get_coupons)):
    return CustomerService(db, coupons)


def get_referrals(db: Database = Depends(get_db), customers: CustomerService = Depends(get_customers)):
    return ReferralService(db, customers)


def get_auth(customers: CustomerService = Depends(get_customers)):
    return AuthService(customers)


def get_verification(
    db: Database = Depends(get_db),
    customers: CustomerService = Depends(get_customers),
    email: EmailService = Depends(get_email),
):
    return EmailVerificationService(db, customers, email)


def get_categories(db: Database = Depends(get_db), uploads: UploadService = Depends(get_uploads)):
    return CategoryService(db, uploads)


def get_products(db: Database = Depends(get_db), uploads: UploadService = Depends(get_uploads)):
    return ProductService(db, uploads)


def get_orders(
    db: Database = Depends(get_db),
    customers: CustomerService = Depends(get_customers),
    referrals: ReferralService = Depends(get_referrals),
    coupons: CouponService = Depends(get_coupons),
    email: EmailService = Depends(get_email),
    reminders: ReminderScheduler = Depends(get_reminders),
):
    return OrderService(db, customers, referrals, coupons, email, reminders)


def get_analytics(db: Database = Depends(get_db)):
    return AnalyticsService(db)


def get_webhook_handler(db: Database = Depends(get_db), email: EmailService = Depends(get_email)):
    return ReminderWebhookHandler(db, email)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if database.db is not None:
        database.ensure_indexes(database.db)
        CategoryService(database.db, upload_service).ensure_default_categories()
    yield


app = FastAPI(title="Storefront API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(StorefrontError)
async def storefront_error_handler(request: Request, exc: StorefrontError) -> JSONResponse:
    headers = {"WWW-Authenticate": "Bearer"} if isinstance(exc, UnauthorizedError) else None
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail, "error_type": type(exc).__name__},
        headers=headers,
    )


def read_image(upload: UploadFile) -> bytes:
    if not (upload.content_type or "").startswith("image/"):
        raise BadRequestError("Only image uploads are allowed")
    data = upload.file.read()
    if len(data) > MAX_IMAGE_BYTES:
        raise BadRequestError("File too large (max 10MB)")
    return data


@app.get("/")
def root():
    return {"message": "Storefront API Running"}


@app.get("/test")
def test_database():
    try:
        collections = get_db().list_collection_names()
        return {"backend": "ok", "db": "ok", "collections": collections}
    except Exception as e:
        return {"backend": "ok", "db": f"error: {str(e)[:80]}"}


# Auth endpoints
@app.post("/auth/send-verification")
def send_verification(payload: SendVerificationPayload, verification: EmailVerificationService = Depends(get_verification)):
    return verification.send_code(payload.email)


@app.post("/auth/verify-code")
def verify_code(payload: VerifyCodePayload, verification: EmailVerificationService = Depends(get_verification)):
    return verification.verify_code(payload.email, payload.code)


@app.post("/auth/register", status_code=201)
def register(payload: RegisterPayload, auth: AuthService = Depends(get_auth)):
    return auth.register(payload)


@app.post("/auth/login")
def login(payload: LoginPayload, auth: AuthService = Depends(get_auth)):
    return auth.login(payload)


@app.get("/auth/email-exists")
def email_exists(email: str = "", auth: AuthService = Depends(get_auth)):
    return auth.email_exists(email)


@app.get("/auth/me")
def me(customer_id: str = Depends(get_current_customer_id), auth: AuthService = Depends(get_auth)):
    return auth.me(customer_id)


@app.patch("/auth/me")
def update_me(
    payload: UpdateProfilePayload,
    customer_id: str = Depends(get_current_customer_id),
    auth: AuthService = Depends(get_auth),
):
    return auth.update_me(customer_id, payload)


@app.patch("/auth/me/password")
def change_password(
    payload: ChangePasswordPayload,
    customer_id: str = Depends(get_current_customer_id),
    auth: AuthService = Depends(get_auth),
):
    return auth.change_password(customer_id, payload)


# Customers (admin)
@app.get("/customers")
def list_customers(admin=Depends(get_current_admin), customers: CustomerService = Depends(get_customers)):
    return serialize(customers.list())


@app.get("/customers/{customer_id}")
def get_customer(customer_id: str, admin=Depends(get_current_admin), customers: CustomerService = Depends(get_customers)):
    return serialize(customers.find_by_id(customer_id))


@app.patch("/customers/{customer_id}")
def update_customer(
    customer_id: str,
    payload: CustomerAdminUpdate,
    admin=Depends(get_current_admin),
    customers: CustomerService = Depends(get_customers),
):
    return serialize(customers.admin_update(customer_id, payload))


# Categories
@app.get("/categories")
def list_categories(categories: CategoryService = Depends(get_categories)):
    return serialize(categories.find_all())


@app.get("/categories/{category_id}")
def get_category(category_id: str, categories: CategoryService = Depends(get_categories)):
    return serialize(categories.find_one(category_id))


@app.post("/categories", status_code=201)
def create_category(payload: Category, admin=Depends(get_current_admin), categories: CategoryService = Depends(get_categories)):
    return serialize(categories.create(payload))


@app.patch("/categories/{category_id}")
def update_category(
    category_id: str,
    payload: CategoryUpdate,
    admin=Depends(get_current_admin),
    categories: CategoryService = Depends(get_categories),
):
    return serialize(categories.update(category_id, payload))


@app.post("/categories/{category_id}/image")
def upload_category_image(
    category_id: str,
    image: UploadFile = File(...),
    admin=Depends(get_current_admin),
    categories: CategoryService = Depends(get_categories),
):
    data = read_image(image)
    return serialize(categories.attach_image(category_id, data, image.filename, image.content_type))


@app.delete("/categories/{category_id}")
def delete_category(category_id: str, admin=Depends(get_current_admin), categories: CategoryService = Depends(get_categories)):
    return categories.remove(category_id)


# Products
@app.get("/products")
def list_products(
    q: Optional[str] = None,
    category_id: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(24, ge=1, le=200),
    products: ProductService = Depends(get_products),
):
    return serialize(products.find_all(q=q, category_id=category_id, page=page, limit=limit))


@app.get("/products/{product_id}")
def get_product(product_id: str, products: ProductService = Depends(get_products)):
    return serialize(products.find_one(product_id))


@app.post("/products", status_code=201)
def create_product(payload: ProductCreate, admin=Depends(get_current_admin), products: ProductService = Depends(get_products)):
    return serialize(products.create(payload))


@app.patch("/products/{product_id}")
def update_product(
    product_id: str,
    payload: ProductUpdate,
    admin=Depends(get_current_admin),
    products: ProductService = Depends(get_products),
):
    return serialize(products.update(product_id, payload))


@app.post("/products/{product_id}/image")
def upload_product_image(
    product_id: str,
    image: UploadFile = File(...),
    admin=Depends(get_current_admin),
    products: ProductService = Depends(get_products),
):
    data = read_image(image)
    return serialize(products.attach_image(product_id, data, image.filename, image.content_type))


@app.delete("/products/{product_id}")
def delete_product(product_id: str, admin=Depends(get_current_admin), products: ProductService = Depends(get_products)):
    return products.remove(product_id)


# Coupons
@app.get("/coupons/my")
def my_coupons(customer_id: str = Depends(get_current_customer_id), coupons: CouponService = Depends(get_coupons)):
    return serialize(coupons.list_by_customer(customer_id))


@app.get("/coupons/validate/{code}")
def validate_coupon(code: str, customer_id: str = Depends(get_current_customer_id), coupons: CouponService = Depends(get_coupons)):
    coupon = coupons.validate(code, customer_id)
    return {"code": coupon["code"], "value": coupon["value"], "description": coupon.get("description")}


@app.get("/coupons")
def list_coupons(admin=Depends(get_current_admin), coupons: CouponService = Depends(get_coupons)):
    return serialize(coupons.list_all())


@app.post("/coupons", status_code=201)
def create_coupon(payload: CouponCreate, admin=Depends(get_current_admin), coupons: CouponService = Depends(get_coupons)):
    return serialize(coupons.create(payload.customer_id, payload.value, payload.expiry_date, payload.description))


@app.get("/coupons/{coupon_id}")
def get_coupon(coupon_id: str, admin=Depends(get_current_admin), coupons: CouponService = Depends(get_coupons)):
    return serialize(coupons.get_by_id(coupon_id))


@app.patch("/coupons/{coupon_id}")
def update_coupon(
    coupon_id: str,
    payload: CouponUpdate,
    admin=Depends(get_current_admin),
    coupons: CouponService = Depends(get_coupons),
):
    return serialize(coupons.update(coupon_id, payload))


@app.delete("/coupons/{coupon_id}")
def delete_coupon(coupon_id: str, admin=Depends(get_current_admin), coupons: CouponService = Depends(get_coupons)):
    coupons.delete(coupon_id)
    return {"success": True}


# Referral programs (admin)
@app.get("/referrals")
def list_referrals(admin=Depends(get_current_admin), referrals: ReferralService = Depends(get_referrals)):
    return serialize(referrals.list())


@app.post("/referrals", status_code=201)
def create_referral(payload: ReferralCreate, admin=Depends(get_current_admin), referrals: ReferralService = Depends(get_referrals)):
    return serialize(referrals.create(payload))


@app.get("/referrals/{referral_id}")
def get_referral(referral_id: str, admin=Depends(get_current_admin), referrals: ReferralService = Depends(get_referrals)):
    return serialize(referrals.get(referral_id))


@app.patch("/referrals/{referral_id}")
def update_referral(
    referral_id: str,
    payload: ReferralUpdate,
    admin=Depends(get_current_admin),
    referrals: ReferralService = Depends(get_referrals),
):
    return serialize(referrals.update(referral_id, payload))


# Orders
@app.post("/orders", status_code=201)
def create_order(payload: OrderCreate, customer_id: str = Depends(get_current_customer_id), orders: OrderService = Depends(get_orders)):
    return serialize(orders.create(customer_id, payload))


@app.get("/orders/my")
def my_orders(customer_id: str = Depends(get_current_customer_id), orders: OrderService = Depends(get_orders)):
    return serialize(orders.list_mine(customer_id))


@app.get("/orders/my/{order_id}")
def my_order(order_id: str, customer_id: str = Depends(get_current_customer_id), orders: OrderService = Depends(get_orders)):
    return serialize(orders.get_mine(customer_id, order_id))


@app.patch("/orders/my/{order_id}/cancel")
def cancel_my_order(order_id: str, customer_id: str = Depends(get_current_customer_id), orders: OrderService = Depends(get_orders)):
    return serialize(orders.cancel_mine(customer_id, order_id))


@app.get("/orders/validate-referral/{code}")
def validate_referral(code: str, referrals: ReferralService = Depends(get_referrals)):
    resolved = referrals.resolve_code(code)
    return {
        "code": resolved.code,
        "discount_type": resolved.program["discount_type"],
        "discount_value": resolved.program["discount_value"],
        "program_name": resolved.program["name"],
    }


@app.get("/orders")
def list_orders(admin=Depends(get_current_admin), orders: OrderService = Depends(get_orders)):
    return serialize(orders.list_all())


@app.get("/orders/sales")
def sales_analytics(admin=Depends(get_current_admin), analytics: AnalyticsService = Depends(get_analytics)):
    return serialize(analytics.sales_analytics())


@app.get("/orders/dashboard")
def dashboard_stats(admin=Depends(get_current_admin), analytics: AnalyticsService = Depends(get_analytics)):
    return serialize(analytics.dashboard_stats())


@app.get("/orders/referral/{code}")
def orders_by_referral(code: str, admin=Depends(get_current_admin), orders: OrderService = Depends(get_orders)):
    return serialize(orders.list_by_referral_code(code))


@app.patch("/orders/{order_id}/status")
def change_order_status(
    order_id: str,
    payload: StatusChange,
    admin=Depends(get_current_admin),
    orders: OrderService = Depends(get_orders),
):
    return serialize(orders.update_status(order_id, payload.status))


@app.patch("/orders/{order_id}/shipment")
def update_order_shipment(
    order_id: str,
    payload: ShipmentUpdate,
    admin=Depends(get_current_admin),
    orders: OrderService = Depends(get_orders),
):
    return serialize(orders.update_shipment(order_id, payload))


# Uploads (admin)
@app.post("/uploads/s3/presign")
def presign_upload(payload: PresignPayload, admin=Depends(get_current_admin), uploads: UploadService = Depends(get_uploads)):
    return uploads.presign_put_object(payload.file_name, payload.content_type, payload.folder)


@app.post("/uploads/s3/image")
def upload_image(
    file: Optional[UploadFile] = File(None),
    folder: Optional[str] = Form(None),
    admin=Depends(get_current_admin),
    uploads: UploadService = Depends(get_uploads),
):
    if file is None:
        raise BadRequestError("Missing file")
    data = read_image(file)
    return uploads.upload_image(data, file.filename, file.content_type, folder)


# Delayed dispatch webhook
@app.post("/webhooks/qstash/email")
async def qstash_email_webhook(
    request: Request,
    upstash_signature: Optional[str] = Header(None),
    receiver: Optional[SignatureReceiver] = Depends(get_receiver),
    handler: ReminderWebhookHandler = Depends(get_webhook_handler),
):
    body = await request.body()
    if receiver is not None and not receiver.verify(upstash_signature, body):
        logger.warning("Invalid QStash signature")
        raise UnauthorizedError("Invalid signature")

    try:
        payload = ReminderPayload.model_validate_json(body)
    except ValidationError:
        raise BadRequestError("Invalid webhook payload")
    return await run_in_threadpool(handler.handle, payload)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=config.PORT)
