"""
Pricing engine

Derives the unit price charged for a product price option. An explicit
per-option sale price wins over the product's store-wide sale percentage; a
percentage that rounds to less than a 1% discount is treated as no sale.
"""
import logging
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from numbers import Number
from typing import Any, Dict, List, Optional

from database import serialize_doc

logger = logging.getLogger(__name__)

MIN_DISCOUNT_RATIO = Decimal("0.01")
CENT = Decimal("0.01")


def round_money(value: Any) -> float:
    """Round half-up to two decimals."""
    return float(Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP))


def _is_price(value: Any) -> bool:
    return isinstance(value, Number) and not isinstance(value, bool) and value >= 0


def is_meaningful_discount(base: float, price: float) -> bool:
    """True when `price` is at least 1% below `base`."""
    if not base or price >= base:
        return False
    return (Decimal(str(base)) - Decimal(str(price))) / Decimal(str(base)) >= MIN_DISCOUNT_RATIO


@dataclass
class PricedOption:
    option_id: Optional[str]
    type: Optional[str]
    weight: Any
    original_price: Any
    final_price: Any
    sale_price: Optional[float] = None
    global_sale_percentage: Optional[float] = None
    valid: bool = True

    @property
    def has_discount(self) -> bool:
        return self.valid and is_meaningful_discount(self.original_price, self.final_price)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "id": self.option_id,
            "type": self.type,
            "weight": self.weight,
            "price": self.original_price,
            "original_price": self.original_price,
            "sale_price": self.sale_price,
            "calculated_sale_price": self.final_price if self.has_discount else None,
            "final_price": self.final_price,
            "global_sale_percentage": self.global_sale_percentage,
        }


def price_option(option: Dict[str, Any], sale_percentage: Any = None, product_id: Any = None) -> PricedOption:
    """Effective unit price for one price option.

    Never raises: a missing or negative base price is logged and the option is
    returned unmodified with ``valid=False`` so callers can refuse to sell it.
    """
    option_id = option.get("_id", option.get("id"))
    base = option.get("price")
    priced = PricedOption(
        option_id=str(option_id) if option_id is not None else None,
        type=option.get("type"),
        weight=option.get("weight"),
        original_price=base,
        final_price=base,
    )

    if not _is_price(base):
        logger.warning("Invalid base price %r for product %s option %s", base, product_id, option_id)
        priced.valid = False
        return priced

    explicit = option.get("sale_price")
    if _is_price(explicit) and 0 < explicit < base:
        priced.final_price = round_money(explicit)
        priced.sale_price = priced.final_price
        return priced

    if _is_price(sale_percentage) and 0 < sale_percentage <= 100:
        candidate = round_money(Decimal(str(base)) * (Decimal(100) - Decimal(str(sale_percentage))) / Decimal(100))
        if 0 <= candidate < base and is_meaningful_discount(base, candidate):
            priced.final_price = candidate
            priced.global_sale_percentage = sale_percentage

    return priced


@dataclass
class ProductPricing:
    options: List[PricedOption] = field(default_factory=list)

    @property
    def lowest_price(self) -> Optional[float]:
        prices = [o.final_price for o in self.options if o.valid]
        return min(prices) if prices else None

    @property
    def has_active_sales(self) -> bool:
        return any(o.has_discount for o in self.options)

    def find(self, option_id: str) -> Optional[PricedOption]:
        for option in self.options:
            if option.option_id == str(option_id):
                return option
        return None


def price_product(product: Dict[str, Any]) -> ProductPricing:
    sale = product.get("sale")
    return ProductPricing(
        options=[price_option(opt, sale, product.get("_id")) for opt in product.get("price_options") or []]
    )


def priced_product_view(product: Dict[str, Any]) -> Dict[str, Any]:
    """Serialized product with calculated sale prices for catalog responses."""
    view = serialize_doc(product)
    try:
        pricing = price_product(product)
    except Exception:
        # fall back to the stored, unpriced document
        logger.exception("Error pricing product %s", product.get("_id"))
        return view
    view["calculated_price_options"] = [o.as_dict() for o in pricing.options]
    view["lowest_price"] = pricing.lowest_price
    view["has_active_sales"] = pricing.has_active_sales
    return view
