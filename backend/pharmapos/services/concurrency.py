# Overview: Row locks and retry for store transactions that several tills race on.

from __future__ import annotations

import logging
import time

from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db
from ..models import Product

logger = logging.getLogger(__name__)


def lock_for_update(query):
    """
    SELECT ... FOR UPDATE on the rows a sale, settlement or close touches.

    NOTE: SQLite ignores FOR UPDATE; the version_id columns still catch
    lost updates there.
    """
    return query.with_for_update()


def lock_products(pharmacy_id: int, skus) -> dict[str, Product]:
    """
    Lock a pharmacy's products by sku, always in sku order.

    Two tills committing overlapping carts then acquire rows in the same
    order and cannot deadlock each other.
    """
    rows = lock_for_update(
        db.session.query(Product)
        .filter(Product.pharmacy_id == pharmacy_id, Product.sku.in_(sorted(set(skus))))
        .order_by(Product.sku)
    ).all()
    return {p.sku: p for p in rows}


def run_with_retry(func, *, attempts: int = 3, backoff_base: float = 0.1, label: str = "store transaction"):
    """
    Run func, retrying lock timeouts and stale version_id conflicts.

    func must roll back completely when it fails. Anything that creates a
    provider-side payment runs with attempts=1.
    """
    for attempt in range(1, attempts + 1):
        try:
            return func()
        except (OperationalError, StaleDataError) as exc:
            db.session.rollback()
            if attempt >= attempts:
                logger.error("%s failed after %s attempt(s): %s", label, attempt, exc)
                raise
            logger.warning("%s conflicted (attempt %s/%s), retrying", label, attempt, attempts)
            time.sleep(backoff_base * (2 ** (attempt - 1)))
