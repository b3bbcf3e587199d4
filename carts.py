"""
Shopping carts, one per user email.

Every write is a single atomic update on the cart document so concurrent
adds of the same product increment one line instead of appending two.
"""

from typing import Iterable, List

import structlog
from pymongo.errors import DuplicateKeyError

from database import oid, utcnow
from errors import CartNotFound, Conflict, ProductNotFound, ValidationError
from schemas import CartItem, ProductStatus

logger = structlog.get_logger(__name__)

MAX_MERGE_ATTEMPTS = 5


def _ensure_cart(store, user_email: str, now):
    try:
        store.carts.update_one(
            {"user_email": user_email},
            {"$setOnInsert": {"items": [], "created_at": now, "updated_at": now}},
            upsert=True,
        )
    except DuplicateKeyError:
        # a concurrent request created it first
        pass


def _merge_line(store, user_email: str, line: dict, now):
    product_id = line["product_id"]
    for _ in range(MAX_MERGE_ATTEMPTS):
        result = store.carts.update_one(
            {"user_email": user_email, "items.product_id": product_id},
            {"$inc": {"items.$.quantity": line["quantity"]}, "$set": {"updated_at": now}},
        )
        if result.matched_count:
            return
        result = store.carts.update_one(
            {"user_email": user_email, "items.product_id": {"$ne": product_id}},
            {"$push": {"items": line}, "$set": {"updated_at": now}},
        )
        if result.matched_count:
            return
        # the line appeared between the two updates; increment it instead
    raise Conflict(f"Could not merge product {product_id} into cart")


def merge_items(store, user_email: str, items: Iterable[dict]) -> dict:
    """Merge incoming line items into the user's cart, creating it if needed.

    Lines are matched by product id. A match gets its quantity increased by
    the incoming quantity, anything else is appended.
    """
    now = utcnow()
    _ensure_cart(store, user_email, now)
    for item in items:
        line = CartItem(**item).model_dump()
        _merge_line(store, user_email, line, now)
    return get_cart(store, user_email)


def add_to_cart(store, user_email: str, product_id: str, quantity: int = 1) -> dict:
    product = store.products.find_one({"_id": oid(product_id)})
    if not product or product.get("status") == ProductStatus.REMOVED.value:
        raise ProductNotFound()
    if product.get("status", ProductStatus.ACTIVE.value) != ProductStatus.ACTIVE.value:
        raise ValidationError("Product is not available")
    images = product.get("images") or []
    item = {
        "product_id": str(product["_id"]),
        "name": product["name"],
        "price": product["price"],
        "image": images[0] if images else None,
        "quantity": quantity,
    }
    logger.info("Adding to cart", user_email=user_email, product_id=product_id, quantity=quantity)
    return merge_items(store, user_email, [item])


def update_quantity(store, user_email: str, product_id: str, quantity: int) -> dict:
    if quantity < 1:
        raise ValidationError("Quantity must be at least 1")
    result = store.carts.update_one(
        {"user_email": user_email, "items.product_id": product_id},
        {"$set": {"items.$.quantity": quantity, "updated_at": utcnow()}},
    )
    if result.matched_count == 0:
        raise CartNotFound("Item not in cart")
    return get_cart(store, user_email)


def remove_item(store, user_email: str, product_id: str) -> dict:
    result = store.carts.update_one(
        {"user_email": user_email},
        {"$pull": {"items": {"product_id": product_id}}, "$set": {"updated_at": utcnow()}},
    )
    if result.matched_count == 0:
        raise CartNotFound()
    return get_cart(store, user_email)


def clear_cart(store, user_email: str):
    store.carts.delete_one({"user_email": user_email})
    logger.info("Cart cleared", user_email=user_email)


def get_cart(store, user_email: str) -> dict:
    cart = store.carts.find_one({"user_email": user_email})
    if not cart:
        return {"user_email": user_email, "items": [], "total": 0}
    items: List[dict] = cart.get("items", [])
    total = sum(item["price"] * item["quantity"] for item in items)
    return {
        "user_email": user_email,
        "items": items,
        "total": round(total, 2),
        "updated_at": cart.get("updated_at"),
    }
