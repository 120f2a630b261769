"""
Coupon services

Validation runs a fixed chain of rules and stops at the first failure, each
with its own message. Discounts only ever apply to the eligible subtotal: the
lines whose product is on the coupon's allowlist, or every line when the
allowlist is empty.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from pymongo import ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from database import as_utc, create_document, utcnow
from errors import (
    CouponLimitError,
    CouponNotFoundError,
    CouponRejectedError,
    DuplicateCouponError,
    ValidationError,
)
from pricing import round_money
from schemas import Coupon, CouponUpdate

logger = logging.getLogger(__name__)

DEFAULT_MAX_USES_PER_USER = 1


@dataclass
class CouponLine:
    """A priced cart/order line as seen by the validator."""

    product_id: str
    line_total: float


@dataclass
class CouponQuote:
    coupon: Dict[str, Any]
    eligible_items: List[str] = field(default_factory=list)
    eligible_subtotal: float = 0.0
    discount: float = 0.0

    @property
    def coupon_id(self) -> str:
        return str(self.coupon["_id"])

    @property
    def code(self) -> str:
        return self.coupon["code"]


def normalize_code(code: str) -> str:
    return (code or "").strip().upper()


def compute_discount(coupon: Dict[str, Any], eligible_subtotal: float) -> float:
    """Discount bounded by the eligible subtotal, never the full order."""
    value = float(coupon.get("discount_value") or 0)
    if coupon.get("discount_type") == "percentage":
        discount = min(eligible_subtotal * value / 100, eligible_subtotal)
    else:
        discount = min(value, eligible_subtotal)
    return round_money(max(discount, 0))


def _times_used(coupon: Dict[str, Any], user_id: Optional[str]) -> int:
    if not user_id:
        return 0
    return int((coupon.get("used_by") or {}).get(str(user_id), 0))


class CouponService:
    def __init__(self, database: Database, session=None):
        self.coupons = database["coupon"]
        self.database = database
        self.session = session

    def get_by_code(self, code: str) -> Optional[Dict[str, Any]]:
        return self.coupons.find_one({"code": normalize_code(code)}, session=self.session)

    # -----------------
    # Validation
    # -----------------
    def validate(
        self,
        code: str,
        user_id: Optional[str],
        items: Iterable[CouponLine],
        subtotal: float,
        now: Optional[datetime] = None,
    ) -> CouponQuote:
        """Run every eligibility rule in order; raise on the first failure."""
        coupon = self.get_by_code(code)
        if coupon is None:
            raise CouponNotFoundError(code)

        now = now or utcnow()
        items = list(items)
        eligible_products = {str(p) for p in coupon.get("eligible_products") or []}
        eligible_users = {str(u) for u in coupon.get("eligible_users") or []}

        if eligible_products:
            eligible = [i for i in items if str(i.product_id) in eligible_products]
            eligible_subtotal = round_money(sum(i.line_total for i in eligible))
        else:
            eligible = items
            eligible_subtotal = round_money(subtotal)

        min_purchase = float(coupon.get("min_purchase") or 0)
        max_purchase = coupon.get("max_purchase")
        max_per_user = coupon.get("max_uses_per_user") or DEFAULT_MAX_USES_PER_USER
        start_at = as_utc(coupon.get("start_at"))
        expires_at = as_utc(coupon.get("expires_at"))

        rules = [
            (coupon.get("is_active", True), "inactive", "Coupon is not active"),
            (start_at is None or start_at <= now, "not_started", "Coupon has not started yet"),
            (expires_at is None or now < expires_at, "expired", "Coupon has expired"),
            (
                int(coupon.get("used_coupons") or 0) < int(coupon.get("total_coupons") or 0),
                "usage_limit",
                "Coupon usage limit reached",
            ),
            (
                eligible_subtotal >= min_purchase,
                "min_purchase",
                f"Eligible products subtotal must be at least Rs{min_purchase:g}",
            ),
            (
                not max_purchase or eligible_subtotal <= max_purchase,
                "max_purchase",
                f"Eligible products subtotal must be less than Rs{max_purchase or 0:g}",
            ),
            (
                not eligible_users or (user_id is not None and str(user_id) in eligible_users),
                "user_not_eligible",
                "Coupon not valid for this user",
            ),
            (
                not eligible_products or bool(eligible),
                "products_not_eligible",
                "Coupon not valid for these products",
            ),
            (
                _times_used(coupon, user_id) < max_per_user,
                "user_limit",
                f"Maximum uses per user reached ({max_per_user})",
            ),
        ]
        for passed, reason, message in rules:
            if not passed:
                logger.info("Coupon %s rejected for user %s: %s", coupon["code"], user_id, reason)
                raise CouponRejectedError(reason, message)

        return CouponQuote(
            coupon=coupon,
            eligible_items=[str(i.product_id) for i in eligible],
            eligible_subtotal=eligible_subtotal,
            discount=compute_discount(coupon, eligible_subtotal),
        )

    # -----------------
    # Usage ledger
    # -----------------
    def redeem(self, quote: CouponQuote, user_id: str) -> None:
        """Count one use for the coupon and the user, atomically against both caps."""
        coupon = quote.coupon
        user_key = f"used_by.{user_id}"
        cap = coupon.get("max_uses_per_user") or DEFAULT_MAX_USES_PER_USER
        result = self.coupons.update_one(
            {
                "_id": coupon["_id"],
                "used_coupons": {"$lt": int(coupon.get("total_coupons") or 0)},
                "$or": [{user_key: {"$exists": False}}, {user_key: {"$lt": cap}}],
            },
            {"$inc": {"used_coupons": 1, user_key: 1}, "$set": {"updated_at": utcnow()}},
            session=self.session,
        )
        if result.modified_count != 1:
            raise CouponLimitError()
        logger.info("Coupon %s redeemed by user %s", coupon["code"], user_id)

    def release(self, quote: CouponQuote, user_id: str) -> None:
        """Undo one redemption."""
        self.coupons.update_one(
            {"_id": quote.coupon["_id"]},
            {"$inc": {"used_coupons": -1, f"used_by.{user_id}": -1}},
            session=self.session,
        )

    # -----------------
    # Admin
    # -----------------
    def create(self, payload: Coupon) -> Dict[str, Any]:
        if self.get_by_code(payload.code):
            raise DuplicateCouponError(payload.code)
        data = payload.model_dump()
        data.update(used_coupons=0, used_by={}, start_at=payload.start_at or utcnow())
        try:
            coupon_id = create_document(self.database, "coupon", data)
        except DuplicateKeyError:
            raise DuplicateCouponError(payload.code)
        logger.info("Coupon %s created", payload.code)
        return self.coupons.find_one({"code": payload.code}) or {"_id": coupon_id}

    def list_all(self) -> List[Dict[str, Any]]:
        return list(self.coupons.find().sort("created_at", -1))

    def list_active(self, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
        now = now or utcnow()
        docs = self.coupons.find({"is_active": True}, {"used_by": 0, "is_active": 0})
        active = []
        for d in docs:
            expires_at = as_utc(d.get("expires_at"))
            if expires_at is not None and expires_at <= now:
                continue
            if int(d.get("used_coupons") or 0) < int(d.get("total_coupons") or 0):
                active.append(d)
        return active

    def update(self, code: str, payload: CouponUpdate) -> Dict[str, Any]:
        coupon = self.get_by_code(code)
        if coupon is None:
            raise CouponNotFoundError(code)
        updates = payload.model_dump(exclude_unset=True)
        new_code = updates.pop("code", None)
        if new_code and normalize_code(new_code) != coupon["code"]:
            raise ValidationError("Coupon code cannot be changed")
        if (
            coupon.get("discount_type") == "percentage"
            and updates.get("discount_value") is not None
            and updates["discount_value"] > 100
        ):
            raise ValidationError("Percentage discount cannot exceed 100%")
        updates["updated_at"] = utcnow()
        return self.coupons.find_one_and_update(
            {"_id": coupon["_id"]}, {"$set": updates}, return_document=ReturnDocument.AFTER
        )

    def delete(self, code: str) -> None:
        result = self.coupons.delete_one({"code": normalize_code(code)})
        if result.deleted_count == 0:
            raise CouponNotFoundError(code)
        logger.info("Coupon %s deleted", normalize_code(code))
