"""
Product reviews

Only buyers can review: the order must belong to the reviewer, be Delivered
and contain the product. One review per (product, user, order). Reviews start
unapproved; a product's `ratings` / `num_of_reviews` count approved reviews
only and are recomputed after every write.
"""
import logging
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, List, Optional

from pymongo import ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from database import create_document, to_object_id, utcnow
from errors import DuplicateReviewError, PermissionDeniedError, ProductNotFoundError, ReviewNotFoundError
from schemas import Review, ReviewCreate, ReviewUpdate

logger = logging.getLogger(__name__)

OWNER_FIELDS = {"rating", "comment", "images"}


def _one_decimal(value: float) -> float:
    return float(Decimal(str(value)).quantize(Decimal("0.1"), rounding=ROUND_HALF_UP))


class ReviewService:
    def __init__(self, database: Database):
        self.reviews = database["review"]
        self.products = database["product"]
        self.orders = database["order"]
        self.users = database["user"]

    def create(self, payload: ReviewCreate, user: Dict[str, Any]) -> Dict[str, Any]:
        user_id = str(user["_id"])
        product_oid = to_object_id(payload.product_id)
        if product_oid is None or self.products.find_one({"_id": product_oid}, {"_id": 1}) is None:
            raise ProductNotFoundError(payload.product_id)
        order_oid = to_object_id(payload.order_id)
        order = None
        if order_oid is not None:
            order = self.orders.find_one(
                {
                    "_id": order_oid,
                    "user_id": user_id,
                    "status": "Delivered",
                    "items.product_id": payload.product_id,
                }
            )
        if order is None:
            raise PermissionDeniedError("Invalid order or product not found in delivered orders")

        key = {"product_id": payload.product_id, "user_id": user_id, "order_id": payload.order_id}
        if self.reviews.find_one(key, {"_id": 1}) is not None:
            raise DuplicateReviewError()
        review = Review(**key, rating=payload.rating, comment=payload.comment, images=payload.images)
        try:
            review_id = create_document(self.reviews.database, "review", review)
        except DuplicateKeyError:
            raise DuplicateReviewError()
        self.refresh_product_ratings(payload.product_id)
        logger.info("Review %s submitted for product %s", review_id, payload.product_id)
        return self.reviews.find_one({"_id": to_object_id(review_id)})

    def list_for_product(self, product_id: str) -> List[Dict[str, Any]]:
        """Approved reviews, newest first, with the reviewer's name."""
        reviews = list(
            self.reviews.find({"product_id": product_id, "is_approved": True}).sort("created_at", -1)
        )
        user_ids = {to_object_id(r["user_id"]) for r in reviews}
        names = {
            str(u["_id"]): u.get("name")
            for u in self.users.find({"_id": {"$in": [oid for oid in user_ids if oid]}}, {"name": 1})
        }
        for review in reviews:
            review["user_name"] = names.get(review["user_id"])
        return reviews

    def list_all(
        self,
        product_id: Optional[str] = None,
        user_id: Optional[str] = None,
        approved: Optional[bool] = None,
    ) -> Dict[str, Any]:
        query: Dict[str, Any] = {}
        if product_id:
            query["product_id"] = product_id
        if user_id:
            query["user_id"] = user_id
        if approved is not None:
            query["is_approved"] = approved
        reviews = list(self.reviews.find(query).sort("created_at", -1))
        return {"reviews": reviews, "total": len(reviews)}

    def _get(self, review_id: str) -> Dict[str, Any]:
        oid = to_object_id(review_id)
        review = self.reviews.find_one({"_id": oid}) if oid else None
        if review is None:
            raise ReviewNotFoundError(review_id)
        return review

    def update(self, review_id: str, payload: ReviewUpdate, user: Dict[str, Any]) -> Dict[str, Any]:
        review = self._get(review_id)
        is_admin = user.get("role") == "admin"
        if not is_admin and review["user_id"] != str(user["_id"]):
            raise PermissionDeniedError("You are not authorized to update this review")
        allowed = OWNER_FIELDS | {"is_approved"} if is_admin else OWNER_FIELDS
        updates = {k: v for k, v in payload.model_dump(exclude_unset=True).items() if k in allowed and v is not None}
        updates["updated_at"] = utcnow()
        updated = self.reviews.find_one_and_update(
            {"_id": review["_id"]}, {"$set": updates}, return_document=ReturnDocument.AFTER
        )
        self.refresh_product_ratings(review["product_id"])
        return updated

    def delete(self, review_id: str, user: Dict[str, Any]) -> None:
        review = self._get(review_id)
        if user.get("role") != "admin" and review["user_id"] != str(user["_id"]):
            raise ReviewNotFoundError(review_id)
        self.reviews.delete_one({"_id": review["_id"]})
        self.refresh_product_ratings(review["product_id"])
        logger.info("Review %s deleted", review_id)

    def refresh_product_ratings(self, product_id: str) -> None:
        stats = list(
            self.reviews.aggregate(
                [
                    {"$match": {"product_id": product_id, "is_approved": True}},
                    {"$group": {"_id": "$product_id", "count": {"$sum": 1}, "average": {"$avg": "$rating"}}},
                ]
            )
        )
        if stats:
            ratings, count = _one_decimal(stats[0]["average"]), stats[0]["count"]
        else:
            ratings, count = 0.0, 0
        oid = to_object_id(product_id)
        if oid is not None:
            self.products.update_one({"_id": oid}, {"$set": {"ratings": ratings, "num_of_reviews": count}})
