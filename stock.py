"""
Stock ledger

Reserves and restores product inventory. A reservation is all-or-nothing:
every line is checked before any write, each decrement is a single guarded
update (`stock >= qty`), and decrements already applied are put back if a
later line loses a race.
"""
import logging
from collections import OrderedDict
from typing import Dict, Iterable, List, Tuple

from bson import ObjectId
from pymongo.database import Database

from database import to_object_id
from errors import InsufficientStockError, ProductNotFoundError
from schemas import OrderItem

logger = logging.getLogger(__name__)


def _aggregate(items: Iterable[OrderItem]) -> "OrderedDict[str, Tuple[str, int]]":
    """product id -> (name, total quantity); one product may appear on several lines."""
    totals: "OrderedDict[str, Tuple[str, int]]" = OrderedDict()
    for item in items:
        name, qty = totals.get(item.product_id, (item.name, 0))
        totals[item.product_id] = (name, qty + item.quantity)
    return totals


class StockLedger:
    def __init__(self, database: Database, session=None):
        self.products = database["product"]
        self.session = session

    def available(self, product_id: str) -> int:
        doc = self.products.find_one({"_id": to_object_id(product_id)}, {"stock": 1}, session=self.session)
        if doc is None:
            raise ProductNotFoundError(product_id)
        return int(doc.get("stock") or 0)

    def check(self, items: Iterable[OrderItem]) -> None:
        """Raise InsufficientStockError if any product cannot cover its lines."""
        for product_id, (name, qty) in _aggregate(items).items():
            stock = self.available(product_id)
            if stock < qty:
                raise InsufficientStockError(name, stock)

    def reserve(self, items: List[OrderItem]) -> List[OrderItem]:
        self.check(items)
        applied: List[Tuple[ObjectId, int]] = []
        try:
            for product_id, (name, qty) in _aggregate(items).items():
                oid = to_object_id(product_id)
                result = self.products.update_one(
                    {"_id": oid, "stock": {"$gte": qty}},
                    {"$inc": {"stock": -qty}},
                    session=self.session,
                )
                if result.modified_count != 1:
                    raise InsufficientStockError(name, self.available(product_id))
                applied.append((oid, qty))
        except Exception:
            self._put_back(applied)
            raise
        logger.debug("Reserved stock for %d product(s)", len(applied))
        return items

    def restore(self, items: Iterable[Dict]) -> None:
        """Return each line's quantity to stock. Callers guarantee once per order."""
        for item in items:
            self.products.update_one(
                {"_id": to_object_id(item["product_id"])},
                {"$inc": {"stock": int(item["quantity"])}},
                session=self.session,
            )

    def _put_back(self, applied: List[Tuple[ObjectId, int]]) -> None:
        if not applied:
            return
        logger.info("Rolling back %d stock decrement(s)", len(applied))
        for oid, qty in applied:
            self.products.update_one({"_id": oid}, {"$inc": {"stock": qty}}, session=self.session)
