"""
Order assembly

Checkout runs in a fixed order: address and payment-proof checks, server-side
pricing of every line, a stock check for all lines, shipping/COD fees,
coupon validation, then the writes (stock, coupon usage, order document) as
one unit. A failed write undoes the writes before it, so a rejected checkout
leaves no stock decrement, no coupon use and no order behind.
"""
import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

from bson import ObjectId
from pymongo.database import Database

from config import AppConfig
from coupons import CouponLine, CouponQuote, CouponService
from database import as_utc, create_document, to_object_id, transaction, utcnow
from errors import (
    AuthenticationError,
    MissingShippingFieldsError,
    OrderNotFoundError,
    PermissionDeniedError,
    ProductNotFoundError,
    ValidationError,
)
from payments import build_payfast_redirect
from pricing import ProductPricing, price_product, round_money
from schemas import (
    CartLine,
    CreateOrderRequest,
    Image,
    Order,
    OrderItem,
    OrderItemRequest,
    PriceOptionSnapshot,
    ShippingAddress,
)
from stock import StockLedger
from store_settings import get_settings

logger = logging.getLogger(__name__)

REQUIRED_ADDRESS_FIELDS = ("full_name", "address", "city", "country", "email", "phone")
EXCLUDED_FROM_SALES = ("Cancelled", "Returned")


def missing_address_fields(address: ShippingAddress) -> List[str]:
    return [f for f in REQUIRED_ADDRESS_FIELDS if not (getattr(address, f) or "").strip()]


def calculate_total(subtotal: float, discount: float, shipping_cost: float, cod_fee: float) -> float:
    return round_money(max(0, subtotal - discount + shipping_cost + cod_fee))


def calculate_shipping(subtotal: float, shipping_fee: float, free_shipping_threshold: float) -> float:
    return 0.0 if subtotal > free_shipping_threshold else round_money(shipping_fee)


def _naive_utc(value: datetime) -> datetime:
    return as_utc(value).replace(tzinfo=None)


class OrderService:
    def __init__(self, database: Database, config: AppConfig):
        self.database = database
        self.config = config
        self.orders = database["order"]
        self.products = database["product"]

    # -----------------
    # Pricing
    # -----------------
    def _load_product(self, product_id: str, cache: Dict[str, Any]) -> Tuple[Dict[str, Any], ProductPricing]:
        if product_id not in cache:
            oid = to_object_id(product_id)
            product = self.products.find_one({"_id": oid}) if oid else None
            if product is None:
                raise ProductNotFoundError(product_id)
            cache[product_id] = (product, price_product(product))
        return cache[product_id]

    def price_items(self, lines: List[OrderItemRequest]) -> List[OrderItem]:
        """Snapshot each requested line at its current effective price."""
        cache: Dict[str, Any] = {}
        items = []
        for line in lines:
            product, pricing = self._load_product(line.product_id, cache)
            option = pricing.find(line.price_option_id)
            if option is None:
                raise ValidationError("Invalid price option")
            if not option.valid:
                raise ValidationError(f"Price unavailable for {product.get('name')}")
            images = product.get("images") or []
            items.append(
                OrderItem(
                    product_id=str(product["_id"]),
                    name=product.get("name", ""),
                    price_option=PriceOptionSnapshot(
                        option_id=option.option_id,
                        type=option.type,
                        weight=option.weight or 0,
                        price=option.final_price,
                        original_price=option.original_price,
                        sale_price=option.sale_price,
                        global_sale_percentage=option.global_sale_percentage,
                    ),
                    quantity=line.quantity,
                    image=images[0].get("url") if images else None,
                )
            )
        return items

    def price_cart(self, lines: List[CartLine]) -> List[CouponLine]:
        """Cart lines for a coupon dry run; lines naming a price option are priced server-side."""
        cache: Dict[str, Any] = {}
        priced = []
        for line in lines:
            unit = line.price
            if line.price_option_id:
                _, pricing = self._load_product(line.product_id, cache)
                option: Optional[Any] = pricing.find(line.price_option_id)
                if option is None or not option.valid:
                    raise ValidationError("Invalid price option")
                unit = option.final_price
            priced.append(CouponLine(product_id=line.product_id, line_total=round_money((unit or 0) * line.quantity)))
        return priced

    # -----------------
    # Checkout
    # -----------------
    def create_order(
        self,
        request: CreateOrderRequest,
        user: Optional[Dict[str, Any]] = None,
        payment_proof: Optional[Image] = None,
    ) -> Dict[str, Any]:
        missing = missing_address_fields(request.shipping_address)
        if missing:
            raise MissingShippingFieldsError(missing)
        if request.payment_method == "BankTransfer" and payment_proof is None:
            raise ValidationError("Payment proof screenshot is required for bank transfer")

        settings = get_settings(self.database)
        items = self.price_items(request.items)
        StockLedger(self.database).check(items)

        subtotal = round_money(sum(item.line_total for item in items))
        shipping_cost = calculate_shipping(subtotal, settings.shipping_fee, settings.free_shipping_threshold)
        cod_fee = round_money(settings.cod_fee) if request.payment_method == "COD" else 0.0

        user_id = str(user["_id"]) if user else None
        quote: Optional[CouponQuote] = None
        if request.coupon_code:
            if user_id is None:
                raise AuthenticationError("Authentication required for coupon use")
            lines = [CouponLine(product_id=i.product_id, line_total=i.line_total) for i in items]
            quote = CouponService(self.database).validate(request.coupon_code, user_id, lines, subtotal)

        discount = quote.discount if quote else 0.0
        order_id = ObjectId()
        order = Order(
            user_id=user_id,
            items=items,
            subtotal=subtotal,
            shipping_cost=shipping_cost,
            discount=discount,
            cod_fee=cod_fee,
            total_amount=calculate_total(subtotal, discount, shipping_cost, cod_fee),
            shipping_address=request.shipping_address,
            payment_method=request.payment_method,
            payment_status="Confirmed" if request.payment_method == "COD" else "Pending",
            payment_proof=payment_proof,
            coupon_used=quote.coupon_id if quote else None,
            coupon_code=quote.code if quote else None,
            status="Pending" if request.payment_method == "PayFast" else "Processing",
        )
        if request.payment_method == "PayFast":
            order.payment_result = build_payfast_redirect(str(order_id), order.total_amount, self.config)

        self._commit(order_id, order, quote, user_id)
        logger.info("Order %s created: total Rs%.2f via %s", order_id, order.total_amount, order.payment_method)
        return self.orders.find_one({"_id": order_id})

    def _commit(self, order_id: ObjectId, order: Order, quote: Optional[CouponQuote], user_id: Optional[str]) -> None:
        undo: List[Callable[[], None]] = []
        with transaction(self.database, self.config.mongo_transactions) as session:
            ledger = StockLedger(self.database, session)
            coupons = CouponService(self.database, session)
            try:
                ledger.reserve(order.items)
                undo.append(lambda: ledger.restore([i.model_dump() for i in order.items]))
                if quote is not None:
                    coupons.redeem(quote, user_id)
                    undo.append(lambda: coupons.release(quote, user_id))
                create_document(self.database, "order", {"_id": order_id, **order.model_dump()}, session=session)
            except Exception:
                for step in reversed(undo):
                    try:
                        step()
                    except Exception:
                        logger.exception("Failed to undo checkout step for order %s", order_id)
                raise

    # -----------------
    # Reads
    # -----------------
    def get_order(self, order_id: str, user: Dict[str, Any]) -> Dict[str, Any]:
        oid = to_object_id(order_id)
        order = self.orders.find_one({"_id": oid}) if oid else None
        if order is None:
            raise OrderNotFoundError(order_id)
        if user.get("role") != "admin" and order.get("user_id") != str(user["_id"]):
            raise PermissionDeniedError()
        return order

    def list_user_orders(self, user_id: str) -> List[Dict[str, Any]]:
        return list(self.orders.find({"user_id": str(user_id)}).sort("created_at", -1))

    def list_orders(self, page: int = 1, limit: int = 20, status: Optional[str] = None) -> Dict[str, Any]:
        page, limit = max(page, 1), max(limit, 1)
        query = {"status": status} if status else {}
        total = self.orders.count_documents(query)
        orders = list(self.orders.find(query).sort("created_at", -1).skip((page - 1) * limit).limit(limit))
        return {"orders": orders, "total_pages": -(-total // limit), "current_page": page}

    def sales_stats(
        self,
        period: str = "all",
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        now = utcnow()
        if start and end:
            since, until = start, end
        else:
            days = {"week": 7, "month": 30, "year": 365}.get((period or "").lower())
            since = now - timedelta(days=days) if days else datetime(1970, 1, 1)
            until = now
        query = {
            "status": {"$nin": list(EXCLUDED_FROM_SALES)},
            "created_at": {"$gte": _naive_utc(since), "$lte": _naive_utc(until)},
        }
        stats = {
            "total_orders": 0,
            "total_revenue": 0.0,
            "total_sales": 0.0,
            "total_shipping": 0.0,
            "total_coupon_discounts": 0.0,
            "total_sale_discounts": 0.0,
            "total_cod_fee": 0.0,
            "coupons_used": 0,
        }
        for order in self.orders.find(query):
            stats["total_orders"] += 1
            stats["total_revenue"] += order.get("total_amount") or 0
            stats["total_sales"] += order.get("subtotal") or 0
            stats["total_shipping"] += order.get("shipping_cost") or 0
            stats["total_coupon_discounts"] += order.get("discount") or 0
            stats["total_cod_fee"] += order.get("cod_fee") or 0
            if order.get("coupon_used"):
                stats["coupons_used"] += 1
            for item in order.get("items") or []:
                option = item.get("price_option") or {}
                original, charged = option.get("original_price"), option.get("price")
                if original is not None and charged is not None and original > charged:
                    stats["total_sale_discounts"] += (original - charged) * item.get("quantity", 0)
        for key in stats:
            if isinstance(stats[key], float):
                stats[key] = round_money(stats[key])
        stats["total_discount"] = round_money(stats["total_coupon_discounts"] + stats["total_sale_discounts"])
        return stats
