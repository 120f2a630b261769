import json
import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime
from html import escape
from typing import Any, Dict, Optional

import requests
from fastapi import BackgroundTasks, Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import HTMLResponse, JSONResponse
from pydantic import ValidationError as PydanticValidationError
from pymongo.database import Database
from starlette.datastructures import UploadFile

import database
from auth import optional_user, require_admin, require_user
from config import AppConfig, get_config
from coupons import CouponService
from database import create_document, get_db, get_documents, serialize_doc, to_object_id, utcnow
from errors import (
    OrderNotFoundError,
    ProductNotFoundError,
    ServiceUnavailableError,
    StoreError,
    ValidationError,
)
from image_store import ImageStore
from notifications import Notifier
from order_status import OrderStatusMachine
from orders import OrderService
from payments import GoPayFastClient, PaymentService
from pricing import priced_product_view
from reviews import ReviewService
from schemas import (
    Coupon,
    CouponUpdate,
    CouponValidateRequest,
    CreateOrderRequest,
    Order,
    PaymentVerificationRequest,
    Product,
    ProductUpdate,
    Review,
    ReviewCreate,
    ReviewUpdate,
    Settings,
    SettingsUpdate,
    StatusUpdateRequest,
    User,
    price_option_documents,
)
from store_settings import get_settings, update_settings

logging.basicConfig(
    level=get_config().log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if database.db is not None:
        try:
            database.db["coupon"].create_index("code", unique=True)
            database.db["review"].create_index([("product_id", 1), ("user_id", 1), ("order_id", 1)], unique=True)
        except Exception:
            logger.exception("Could not ensure indexes")
    yield


app = FastAPI(title="MS Foods Store API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(StoreError)
async def store_error_handler(request: Request, exc: StoreError) -> JSONResponse:
    """Map StoreError subclasses to their HTTP status."""
    if exc.status_code >= 500:
        logger.error("%s on %s %s: %s", type(exc).__name__, request.method, request.url.path, exc)
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": str(exc), "error_type": type(exc).__name__},
    )


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=400,
        content={"detail": _validation_message(exc), "error_type": "ValidationError"},
    )


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"detail": "Internal server error", "error_type": "InternalError"})


# -----------------
# Dependencies
# -----------------

def get_notifier(config: AppConfig = Depends(get_config)) -> Notifier:
    return Notifier(config)


def get_image_store(config: AppConfig = Depends(get_config)) -> ImageStore:
    return ImageStore(config)


def _order_owner(db: Database, order: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    oid = to_object_id(order.get("user_id")) if order.get("user_id") else None
    return db["user"].find_one({"_id": oid}) if oid else None


def _validation_message(exc) -> str:
    errors = exc.errors()
    if not errors:
        return "Invalid request"
    first = errors[0]
    where = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
    return f"{where}: {first.get('msg')}" if where else first.get("msg", "Invalid request")


@app.get("/")
def root():
    return {"name": "MS Foods Store API", "status": "ok"}


@app.get("/test")
def test_database(config: AppConfig = Depends(get_config)):
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": None,
        "database_name": None,
        "connection_status": "Not Connected",
        "collections": []
    }
    db = database.db
    if db is None:
        return response
    response["database_url"] = "✅ Set" if config.database_url else "❌ Not Set"
    response["database_name"] = db.name
    response["connection_status"] = "Connected"
    try:
        response["collections"] = db.list_collection_names()[:10]
        response["database"] = "✅ Connected & Working"
    except Exception as e:
        logger.warning("Database check failed: %s", e)
        response["database"] = f"⚠️  Connected but Error: {str(e)[:50]}"
    return response


# -----------------
# Catalog
# -----------------
@app.get("/products")
def list_products(
    q: Optional[str] = None,
    category: Optional[str] = None,
    limit: int = 60,
    skip: int = 0,
    db: Database = Depends(get_db),
):
    query: Dict[str, Any] = {}
    if q:
        query["name"] = {"$regex": q, "$options": "i"}
    if category:
        query["categories"] = category
    docs = get_documents(db, "product", query, limit=min(max(limit, 1), 200), skip=max(skip, 0))
    return [serialize_doc(priced_product_view(d)) for d in docs]


@app.get("/products/{product_id}")
def get_product(product_id: str, db: Database = Depends(get_db)):
    oid = to_object_id(product_id)
    doc = db["product"].find_one({"_id": oid}) if oid else None
    if not doc:
        raise ProductNotFoundError(product_id)
    return serialize_doc(priced_product_view(doc))


# -----------------
# Admin catalog
# -----------------
@app.post("/admin/products", status_code=201)
def admin_create_product(payload: Product, db: Database = Depends(get_db), admin=Depends(require_admin)):
    new_id = create_document(db, "product", payload.to_document())
    logger.info("Product %s created by %s", new_id, admin.get("email"))
    return serialize_doc(db["product"].find_one({"_id": to_object_id(new_id)}))


@app.patch("/admin/products/{product_id}")
def admin_update_product(
    product_id: str,
    payload: ProductUpdate,
    db: Database = Depends(get_db),
    admin=Depends(require_admin),
):
    updates = payload.model_dump(exclude_unset=True, exclude={"price_options"})
    if payload.price_options is not None:
        updates["price_options"] = price_option_documents(payload.price_options)
    updates["updated_at"] = utcnow()
    oid = to_object_id(product_id)
    result = db["product"].update_one({"_id": oid}, {"$set": updates}) if oid else None
    if result is None or result.matched_count == 0:
        raise ProductNotFoundError(product_id)
    return serialize_doc(priced_product_view(db["product"].find_one({"_id": oid})))


# -----------------
# Orders
# -----------------
def _form_json(value: Any, field: str) -> Any:
    if not isinstance(value, str):
        return value
    try:
        return json.loads(value)
    except json.JSONDecodeError:
        raise ValidationError(f"Invalid JSON in field {field}")


async def _read_order_request(request: Request):
    """JSON body, or multipart with `items`/`shippingAddress` as JSON strings and an optional proof file."""
    upload = None
    content_type = request.headers.get("content-type", "")
    if content_type.startswith("multipart/form-data") or content_type.startswith("application/x-www-form-urlencoded"):
        form = await request.form()
        payload: Dict[str, Any] = {}
        for key, value in form.multi_items():
            if isinstance(value, UploadFile):
                if key == "paymentScreenshot":
                    upload = value
                continue
            payload[key] = value
        for field in ("items", "shippingAddress", "shipping_address"):
            if field in payload:
                payload[field] = _form_json(payload[field], field)
    else:
        try:
            payload = await request.json()
        except json.JSONDecodeError:
            raise ValidationError("Request body must be JSON")
    if not isinstance(payload, dict):
        raise ValidationError("Request body must be an object")
    for key in ("couponCode", "coupon_code"):
        if payload.get(key) == "":
            payload.pop(key)
    try:
        return CreateOrderRequest.model_validate(payload), upload
    except PydanticValidationError as e:
        raise ValidationError(_validation_message(e))


@app.post("/orders", status_code=201)
async def create_order(
    request: Request,
    background_tasks: BackgroundTasks,
    db: Database = Depends(get_db),
    config: AppConfig = Depends(get_config),
    user: Optional[Dict[str, Any]] = Depends(optional_user),
    notifier: Notifier = Depends(get_notifier),
    images: ImageStore = Depends(get_image_store),
):
    order_request, upload = await _read_order_request(request)
    proof = None
    if upload is not None and order_request.payment_method == "BankTransfer":
        proof = await run_in_threadpool(images.save, upload.filename, upload.file, "payments")
    try:
        order = await run_in_threadpool(OrderService(db, config).create_order, order_request, user, proof)
    except Exception:
        if proof is not None:
            await run_in_threadpool(images.delete, proof)
        raise
    background_tasks.add_task(notifier.order_created, order, user)
    return serialize_doc(order)


@app.get("/orders/my-orders")
def my_orders(db: Database = Depends(get_db), config: AppConfig = Depends(get_config), user=Depends(require_user)):
    return serialize_doc(OrderService(db, config).list_user_orders(str(user["_id"])))


@app.get("/orders/sales")
def sales_stats(
    period: str = "all",
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    db: Database = Depends(get_db),
    config: AppConfig = Depends(get_config),
    admin=Depends(require_admin),
):
    return OrderService(db, config).sales_stats(period, start_date, end_date)


@app.get("/orders")
def list_orders(
    page: int = 1,
    limit: int = 20,
    status: Optional[str] = None,
    db: Database = Depends(get_db),
    config: AppConfig = Depends(get_config),
    admin=Depends(require_admin),
):
    result = OrderService(db, config).list_orders(page, limit, status)
    result["orders"] = serialize_doc(result["orders"])
    return result


@app.get("/orders/{order_id}")
def get_order(order_id: str, db: Database = Depends(get_db), config: AppConfig = Depends(get_config), user=Depends(require_user)):
    return serialize_doc(OrderService(db, config).get_order(order_id, user))


@app.put("/orders/{order_id}/status")
def update_order_status(
    order_id: str,
    payload: StatusUpdateRequest,
    background_tasks: BackgroundTasks,
    db: Database = Depends(get_db),
    config: AppConfig = Depends(get_config),
    notifier: Notifier = Depends(get_notifier),
    admin=Depends(require_admin),
):
    machine = OrderStatusMachine(db, config.mongo_transactions)
    change = machine.transition(order_id, payload.status, tracking_id=payload.tracking_id)
    if change.changed:
        background_tasks.add_task(notifier.status_changed, change.order, change.status, _order_owner(db, change.order))
    return serialize_doc(change.order)


@app.put("/orders/{order_id}/verify-payment")
def verify_payment(
    order_id: str,
    payload: PaymentVerificationRequest,
    background_tasks: BackgroundTasks,
    db: Database = Depends(get_db),
    config: AppConfig = Depends(get_config),
    notifier: Notifier = Depends(get_notifier),
    admin=Depends(require_admin),
):
    change = PaymentService(db, config).verify_payment(order_id, payload.payment_status)
    if change.changed:
        background_tasks.add_task(notifier.status_changed, change.order, change.status, _order_owner(db, change.order))
    return serialize_doc(change.order)


@app.post("/orders/notify")
async def payment_notification(
    request: Request,
    background_tasks: BackgroundTasks,
    db: Database = Depends(get_db),
    config: AppConfig = Depends(get_config),
    notifier: Notifier = Depends(get_notifier),
):
    form = await request.form()
    data = {key: value for key, value in form.items() if isinstance(value, str)}
    change = await run_in_threadpool(PaymentService(db, config).handle_notification, data)
    if change.changed:
        background_tasks.add_task(notifier.status_changed, change.order, change.status, _order_owner(db, change.order))
    return {"received": True, "status": change.status}


@app.get("/payfast/initiate/{order_id}", response_class=HTMLResponse)
def payfast_initiate(order_id: str, db: Database = Depends(get_db), config: AppConfig = Depends(get_config)):
    oid = to_object_id(order_id)
    order = db["order"].find_one({"_id": oid}) if oid else None
    if order is None:
        raise OrderNotFoundError(order_id)
    if order.get("payment_method") != "PayFast" or order.get("status") != "Pending":
        raise ValidationError("Order is not awaiting PayFast payment")
    try:
        action, fields = GoPayFastClient(config).checkout_form(order)
    except requests.RequestException as e:
        logger.error("PayFast token request failed for order %s: %s", order_id, e)
        raise ServiceUnavailableError("Payment gateway unavailable")
    inputs = "\n".join(
        f'<input type="hidden" name="{escape(k)}" value="{escape(str(v))}" />' for k, v in fields.items()
    )
    return f"""<!DOCTYPE html>
<html>
  <head><title>Redirecting to PayFast</title></head>
  <body onload="document.forms[0].submit()">
    <p>Redirecting to PayFast...</p>
    <form method="POST" action="{escape(action)}">
{inputs}
    </form>
  </body>
</html>"""


# -----------------
# Coupons
# -----------------
@app.get("/coupons")
def active_coupons(db: Database = Depends(get_db)):
    return serialize_doc(CouponService(db).list_active())


@app.get("/coupons/all")
def all_coupons(db: Database = Depends(get_db), admin=Depends(require_admin)):
    return serialize_doc(CouponService(db).list_all())


@app.post("/coupons", status_code=201)
def create_coupon(payload: Coupon, db: Database = Depends(get_db), admin=Depends(require_admin)):
    return serialize_doc(CouponService(db).create(payload))


@app.post("/coupons/validate")
def validate_coupon(
    payload: CouponValidateRequest,
    db: Database = Depends(get_db),
    config: AppConfig = Depends(get_config),
    user=Depends(require_user),
):
    lines = OrderService(db, config).price_cart(payload.items)
    subtotal = payload.cart_total or sum(line.line_total for line in lines)
    quote = CouponService(db).validate(payload.code, str(user["_id"]), lines, subtotal)
    return {
        "valid": True,
        "code": quote.code,
        "discount": quote.discount,
        "discount_type": quote.coupon.get("discount_type"),
        "discount_value": quote.coupon.get("discount_value"),
        "eligible_items": quote.eligible_items,
        "eligible_subtotal": quote.eligible_subtotal,
    }


@app.put("/coupons/{code}")
def update_coupon(code: str, payload: CouponUpdate, db: Database = Depends(get_db), admin=Depends(require_admin)):
    return serialize_doc(CouponService(db).update(code, payload))


@app.delete("/coupons/{code}")
def delete_coupon(code: str, db: Database = Depends(get_db), admin=Depends(require_admin)):
    CouponService(db).delete(code)
    return {"deleted": True}


# -----------------
# Reviews
# -----------------
@app.post("/reviews", status_code=201)
def create_review(payload: ReviewCreate, db: Database = Depends(get_db), user=Depends(require_user)):
    return serialize_doc(ReviewService(db).create(payload, user))


@app.get("/reviews/all")
def all_reviews(
    product_id: Optional[str] = None,
    user_id: Optional[str] = None,
    approved: Optional[bool] = None,
    db: Database = Depends(get_db),
    admin=Depends(require_admin),
):
    result = ReviewService(db).list_all(product_id, user_id, approved)
    result["reviews"] = serialize_doc(result["reviews"])
    return result


@app.get("/reviews/{product_id}")
def product_reviews(product_id: str, db: Database = Depends(get_db)):
    return serialize_doc(ReviewService(db).list_for_product(product_id))


@app.put("/reviews/{review_id}")
def update_review(review_id: str, payload: ReviewUpdate, db: Database = Depends(get_db), user=Depends(require_user)):
    return serialize_doc(ReviewService(db).update(review_id, payload, user))


@app.delete("/reviews/{review_id}")
def delete_review(review_id: str, db: Database = Depends(get_db), user=Depends(require_user)):
    ReviewService(db).delete(review_id, user)
    return {"deleted": True}


# -----------------
# Settings
# -----------------
@app.get("/settings")
def read_settings(db: Database = Depends(get_db)):
    return get_settings(db).model_dump()


@app.put("/settings")
def write_settings(payload: SettingsUpdate, db: Database = Depends(get_db), admin=Depends(require_admin)):
    return update_settings(db, payload).model_dump()


# -----------------
# Schema Explorer
# -----------------
@app.get("/schema")
def schema():
    return {
        "user": User.model_json_schema(),
        "product": Product.model_json_schema(),
        "coupon": Coupon.model_json_schema(),
        "order": Order.model_json_schema(),
        "review": Review.model_json_schema(),
        "settings": Settings.model_json_schema(),
    }


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
