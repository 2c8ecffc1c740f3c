"""
Stock lookups for POS terminals.

WHY: Terminals validate quantities against a snapshot of available units
while building a cart. The order commit re-checks under lock, so these
reads are advisory only.
"""

from __future__ import annotations

import re

from ..extensions import db
from ..models import Product


class StockError(Exception):
    """Raised for stock lookup errors."""
    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.details = details or {}


# Scanner input: digits, capitals and a few separators, 6 to 20 chars
UPC_PATTERN = re.compile(r"^[0-9A-Z\-. ]{6,20}$")
SEARCH_LIMIT = 15


def query_stock(sku: str, pharmacy_id: int) -> Product:
    """Return the product for sku in a pharmacy (units_available + price_cents)."""
    product = db.session.query(Product).filter_by(pharmacy_id=pharmacy_id, sku=sku).first()
    if not product:
        raise StockError(f"Unknown sku {sku!r}", details={"sku": sku})
    return product


def find_by_name(name: str, pharmacy_id: int) -> Product | None:
    """
    Resolve a prescribed item name to a stocked product.

    Names must match exactly, ignoring case and surrounding whitespace.
    """
    needle = (name or "").strip()
    if not needle:
        return None

    return (
        db.session.query(Product)
        .filter(Product.pharmacy_id == pharmacy_id)
        .filter(db.func.lower(Product.name) == needle.lower())
        .order_by(Product.id)
        .first()
    )


def looks_like_upc(query: str) -> bool:
    return bool(UPC_PATTERN.match(query))


def search_products(pharmacy_id: int, query: str) -> list[Product]:
    """
    Product search for the till.

    Scanner-shaped input matches the sku exactly (one result); anything else
    is a name substring search capped at SEARCH_LIMIT.
    """
    q = (query or "").strip()
    if not q:
        return []

    base = db.session.query(Product).filter(Product.pharmacy_id == pharmacy_id)
    if looks_like_upc(q):
        return base.filter(Product.sku == q).order_by(Product.id).limit(1).all()

    return base.filter(Product.name.ilike(f"%{q}%")).order_by(Product.name).limit(SEARCH_LIMIT).all()
