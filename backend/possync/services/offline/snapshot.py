"""Download side of sync: the catalog and stock levels a terminal caches
so it can keep selling while disconnected."""

import logging
from datetime import datetime
from typing import Any, Callable

from sqlalchemy import select
from sqlalchemy.orm import Session

from possync.db.base import utcnow
from possync.models.ledger import Product

logger = logging.getLogger(__name__)


def inventory_snapshot(db: Session, clock: Callable[[], datetime] = utcnow) -> dict[str, Any]:
    """Active products with their current stock, ordered by SKU.

    ``snapshot_time`` is taken before the read; stock moved by syncs that
    commit afterwards shows up in the next snapshot.
    """
    taken_at = clock()
    products = list(db.scalars(select(Product).where(Product.active.is_(True)).order_by(Product.sku)))
    logger.debug(f"Inventory snapshot with {len(products)} product(s)")
    return {
        "products": products,
        "product_count": len(products),
        "snapshot_time": taken_at,
    }
