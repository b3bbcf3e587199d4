"""
Stock checks and stock movements for checkout.

``check_availability`` is a read-only pass that rejects a checkout before
anything is written. ``reserve_stock`` then applies one conditional
decrement per product (``stock >= quantity`` is part of the filter), so two
checkouts racing for the last units cannot both succeed. When a later line
fails, the lines already decremented are put back before the error leaves.
"""

from collections import OrderedDict
from typing import Dict, Iterable, List, Tuple

import structlog
from pymongo import ReturnDocument

from database import oid, utcnow
from errors import InsufficientStock, InvalidOrderRequest, ProductNotFound
from schemas import ProductStatus

logger = structlog.get_logger(__name__)

Line = Tuple[str, int]


def combine_lines(lines: Iterable[Line]) -> List[Line]:
    """Sum quantities of repeated product ids, keeping first-seen order."""
    combined: Dict[str, int] = OrderedDict()
    for product_id, quantity in lines:
        combined[product_id] = combined.get(product_id, 0) + quantity
    return list(combined.items())


def _unavailable(product, product_id: str, quantity: int):
    if product is None or product.get("status") == ProductStatus.REMOVED.value:
        return ProductNotFound(f"Product {product_id} not found")
    if product.get("status", ProductStatus.ACTIVE.value) != ProductStatus.ACTIVE.value:
        return InvalidOrderRequest(f"Product {product_id} is not available")
    available = product.get("stock", 0)
    if available < quantity:
        return InsufficientStock(product_id, quantity, available)
    return None


def check_availability(store, lines: Iterable[Line]) -> Dict[str, dict]:
    """Validate every line against current stock. Returns products by id."""
    products = {}
    for product_id, quantity in combine_lines(lines):
        product = store.products.find_one({"_id": oid(product_id)})
        error = _unavailable(product, product_id, quantity)
        if error is not None:
            logger.info("Checkout rejected", product_id=product_id, reason=error.detail)
            raise error
        products[product_id] = product
    return products


def reserve_stock(store, lines: Iterable[Line]) -> Dict[str, dict]:
    """Decrement stock for every line, all or nothing.

    Returns the product documents as they are after the decrement, keyed by
    product id, for snapshotting into the order.
    """
    applied: List[Line] = []
    products = {}
    try:
        for product_id, quantity in combine_lines(lines):
            product_oid = oid(product_id)
            product = store.products.find_one_and_update(
                {
                    "_id": product_oid,
                    "status": ProductStatus.ACTIVE.value,
                    "stock": {"$gte": quantity},
                },
                {
                    "$inc": {"stock": -quantity, "sold": quantity},
                    "$set": {"updated_at": utcnow()},
                },
                return_document=ReturnDocument.AFTER,
            )
            if product is None:
                current = store.products.find_one({"_id": product_oid})
                # stock may have been restored between the two reads
                raise _unavailable(current, product_id, quantity) or InsufficientStock(
                    product_id, quantity, (current or {}).get("stock", 0)
                )
            applied.append((product_id, quantity))
            products[product_id] = product
    except Exception:
        if applied:
            logger.warning("Rolling back stock reservation", lines=len(applied))
            release_stock(store, applied)
        raise
    return products


def release_stock(store, lines: Iterable[Line]):
    """Put quantities back on the shelf (rollback or cancellation)."""
    now = utcnow()
    for product_id, quantity in lines:
        store.products.update_one(
            {"_id": oid(product_id)},
            {"$inc": {"stock": quantity, "sold": -quantity}, "$set": {"updated_at": now}},
        )
