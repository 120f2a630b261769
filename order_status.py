"""
Order status state machine

    Pending -> Processing -> Shipped -> Delivered
    any non-terminal state -> Cancelled | Returned

Each transition is a compare-and-set on the current status, so two admins (or
a retried gateway callback) cannot apply the same transition twice. Moving to
Cancelled or Returned restores stock in the same unit of work, exactly once.
"""
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from pymongo import ReturnDocument
from pymongo.database import Database

from database import to_object_id, transaction, utcnow
from errors import ConcurrentUpdateError, InvalidTransitionError, OrderNotFoundError, ValidationError
from schemas import ORDER_STATUSES
from stock import StockLedger

logger = logging.getLogger(__name__)

TRANSITIONS = {
    "Pending": ("Processing", "Cancelled", "Returned"),
    "Processing": ("Shipped", "Cancelled", "Returned"),
    "Shipped": ("Delivered", "Cancelled", "Returned"),
    "Delivered": (),
    "Cancelled": (),
    "Returned": (),
}
RESTOCK_STATUSES = ("Cancelled", "Returned")


def normalize_status(value: Any) -> str:
    if not isinstance(value, str):
        raise ValidationError("Status is required and must be a string")
    formatted = value.strip().capitalize()
    if formatted not in ORDER_STATUSES:
        raise ValidationError("Invalid status value")
    return formatted


@dataclass
class StatusChange:
    order: Dict[str, Any]
    previous: str
    status: str
    changed: bool


class OrderStatusMachine:
    def __init__(self, database: Database, use_transactions: bool = False):
        self.database = database
        self.orders = database["order"]
        self.use_transactions = use_transactions

    def transition(
        self,
        order_id: str,
        status: Any,
        tracking_id: Optional[str] = None,
        extra: Optional[Dict[str, Any]] = None,
    ) -> StatusChange:
        target = normalize_status(status)
        oid = to_object_id(order_id)
        order = self.orders.find_one({"_id": oid}) if oid else None
        if order is None:
            raise OrderNotFoundError(order_id)
        current = order.get("status", "Processing")

        updates: Dict[str, Any] = dict(extra or {})
        updates["updated_at"] = utcnow()
        if isinstance(tracking_id, str) and tracking_id.strip():
            updates["tracking_id"] = tracking_id.strip()

        if target == current:
            # nothing to transition; still record payment data / tracking id
            updated = self.orders.find_one_and_update(
                {"_id": oid}, {"$set": updates}, return_document=ReturnDocument.AFTER
            )
            return StatusChange(order=updated, previous=current, status=target, changed=False)

        if target not in TRANSITIONS.get(current, ()):
            raise InvalidTransitionError(current, target)
        if target == "Shipped" and not (isinstance(tracking_id, str) and tracking_id.strip()):
            raise ValidationError("Tracking ID is required for shipped orders")

        updates["status"] = target
        guard: Dict[str, Any] = {"_id": oid, "status": current}
        restock = target in RESTOCK_STATUSES
        if restock:
            guard["stock_restored"] = {"$ne": True}
            updates["stock_restored"] = True
        if target == "Delivered":
            updates["delivered_at"] = utcnow()

        with transaction(self.database, self.use_transactions) as session:
            updated = self.orders.find_one_and_update(
                guard, {"$set": updates}, return_document=ReturnDocument.AFTER, session=session
            )
            if updated is None:
                raise ConcurrentUpdateError()
            if restock:
                try:
                    StockLedger(self.database, session).restore(order.get("items") or [])
                except Exception:
                    self.orders.update_one(
                        {"_id": oid},
                        {"$set": {"status": current, "stock_restored": False}},
                        session=session,
                    )
                    raise

        logger.info("Order %s status %s -> %s", order_id, current, target)
        return StatusChange(order=updated, previous=current, status=target, changed=True)
