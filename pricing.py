"""
Pricing helpers shared by the cart and checkout endpoints.

Everything in here is pure: no database access, no request state.
"""
import random
import re
import string
import time
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, List

FREE_SHIPPING_THRESHOLD = 100

SHIPPING_RATES: Dict[str, float] = {
    "US": 10,
    "CA": 15,
    "UK": 12,
    "AU": 18,
    "DE": 14,
    "FR": 14,
}
DEFAULT_SHIPPING_RATE = 20

TAX_RATES: Dict[str, float] = {
    "US": 0.08,
    "CA": 0.13,
    "UK": 0.20,
    "AU": 0.10,
    "DE": 0.19,
    "FR": 0.20,
}
DEFAULT_TAX_RATE = 0.05

BASE36_ALPHABET = string.digits + string.ascii_lowercase


def _round_half_up(value: float, places: str) -> float:
    return float(Decimal(str(value)).quantize(Decimal(places), rounding=ROUND_HALF_UP))


def round2(value: float) -> float:
    """Round to cents, halves away from zero."""
    return _round_half_up(value, "0.01")


def round1(value: float) -> float:
    return _round_half_up(value, "0.1")


def calculate_shipping(subtotal: float, country: str) -> float:
    if subtotal >= FREE_SHIPPING_THRESHOLD:
        return 0
    return SHIPPING_RATES.get(country, DEFAULT_SHIPPING_RATE)


def calculate_tax(subtotal: float, country: str) -> float:
    return subtotal * TAX_RATES.get(country, DEFAULT_TAX_RATE)


def calculate_order_totals(subtotal: float, country: str) -> Dict[str, float]:
    """Shipping, tax and grand total for a subtotal billed to `country`.

    Each figure is rounded to cents on its own, so `total` is not always
    the sum of the rounded parts.
    """
    shipping = calculate_shipping(subtotal, country)
    tax = calculate_tax(subtotal, country)
    total = subtotal + shipping + tax
    return {
        "subtotal": round2(subtotal),
        "shipping": round2(shipping),
        "tax": round2(tax),
        "total": round2(total),
    }


def calculate_cart_totals(items: List[dict]) -> dict:
    """Derived cart fields for the given line items.

    Uses the snapshot `price` stored on each line, never the live product price.
    """
    total_amount = sum(item["price"] * item["quantity"] for item in items)
    item_count = sum(item["quantity"] for item in items)
    return {
        "items": items,
        "total_amount": round2(total_amount),
        "item_count": item_count,
        "updated_at": datetime.now(timezone.utc),
    }


def to_base36(number: int) -> str:
    if number < 0:
        raise ValueError("number must be non-negative")
    if number == 0:
        return "0"
    digits = []
    while number:
        number, remainder = divmod(number, 36)
        digits.append(BASE36_ALPHABET[remainder])
    return "".join(reversed(digits))


def generate_order_id() -> str:
    """Human readable order number, e.g. ORD-LZ4K2M1A-9F3QX0.

    Not guaranteed unique: two calls in the same millisecond can collide
    on the random suffix, and nothing downstream checks for that.
    """
    timestamp = to_base36(int(time.time() * 1000))
    suffix = "".join(random.choices(BASE36_ALPHABET, k=6))
    return f"ORD-{timestamp}-{suffix}".upper()


def create_slug(name: str) -> str:
    slug = name.lower().strip()
    slug = re.sub(r"[^a-z0-9\s-]", "", slug)
    slug = re.sub(r"\s+", "-", slug)
    slug = re.sub(r"-+", "-", slug)
    return slug.strip("-")
