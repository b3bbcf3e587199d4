"""
Order placement and the order lifecycle.

Placing an order validates stock, builds the order document, reserves the
stock and writes the order as one all-or-nothing sequence: nothing is
reserved until the order is built, and if the insert fails the reserved stock
is released again. Line items are frozen snapshots of the products at
checkout time and never change afterwards.
"""

from datetime import timedelta
from typing import List, Optional

import structlog
from pydantic import ValidationError as PydanticValidationError
from pymongo import DESCENDING
from pymongo.errors import PyMongoError

import settings
from carts import merge_items
from database import as_utc, oid, serialize, utcnow
from errors import (
    CancellationWindowExpired,
    Forbidden,
    InvalidOrderRequest,
    InvalidStatusTransition,
    OrderNotFound,
)
from inventory import check_availability, combine_lines, release_stock, reserve_stock
from schemas import PAY_ON_DELIVERY, CheckoutRequest, Order, OrderItem, OrderStatus, Role

logger = structlog.get_logger(__name__)

CANCELLABLE = (OrderStatus.PENDING.value, OrderStatus.AWAITING_PAYMENT.value)

# Staff-driven moves. "paid" is only reached through payments.record_payment
TRANSITIONS = {
    OrderStatus.PENDING: {OrderStatus.SHIPPED, OrderStatus.CANCELLED},
    OrderStatus.AWAITING_PAYMENT: {OrderStatus.CANCELLED},
    OrderStatus.PAID: {OrderStatus.SHIPPED, OrderStatus.CANCELLED},
    OrderStatus.SHIPPED: {OrderStatus.DELIVERED},
    OrderStatus.DELIVERED: set(),
    OrderStatus.CANCELLED: set(),
}


def is_fast_lane(city: str) -> bool:
    return city.strip().lower() == settings.FAST_LANE_CITY.lower()


def delivery_horizon(city: str) -> int:
    """Estimated delivery time in days for a shipping destination."""
    if is_fast_lane(city):
        return settings.FAST_LANE_DELIVERY_DAYS
    return settings.STANDARD_DELIVERY_DAYS


def shipping_cost(city: str) -> float:
    if is_fast_lane(city):
        return settings.FAST_LANE_SHIPPING_COST
    return settings.STANDARD_SHIPPING_COST


def initial_status(payment_method: str) -> OrderStatus:
    # Prepaid orders wait for the gateway to confirm before becoming "paid"
    if payment_method.strip().lower() == PAY_ON_DELIVERY:
        return OrderStatus.PENDING
    return OrderStatus.AWAITING_PAYMENT


def _snapshot(product: dict, quantity: int) -> OrderItem:
    images = product.get("images") or []
    return OrderItem(
        product_id=str(product["_id"]),
        name=product["name"],
        price=float(product["price"]),
        quantity=quantity,
        image=images[0] if images else None,
        seller_email=product.get("seller_email"),
        discount=float(product.get("discount") or 0),
    )


def assemble_order(user_email: str, request: CheckoutRequest, products: dict, now=None) -> Order:
    """Build the order document from the checked products."""
    now = now or utcnow()
    quantities = {}
    for item in request.items:
        quantities[item.product_id] = quantities.get(item.product_id, 0) + item.quantity

    items = [_snapshot(products[product_id], quantity) for product_id, quantity in quantities.items()]
    subtotal = round(sum(i.price * i.quantity for i in items), 2)
    discount = round(sum(i.price * i.quantity * i.discount / 100 for i in items), 2)
    city = request.shipping_address.city
    shipping = shipping_cost(city)
    days = delivery_horizon(city)

    return Order(
        user_email=user_email,
        items=items,
        shipping_address=request.shipping_address,
        payment_method=request.payment_method.strip().lower(),
        subtotal=subtotal,
        shipping_cost=shipping,
        discount=discount,
        total=round(subtotal - discount + shipping, 2),
        status=initial_status(request.payment_method),
        estimated_delivery_days=days,
        estimated_delivery=now + timedelta(days=days),
        created_at=now,
    )


def place_order(store, user_email: Optional[str], request: CheckoutRequest, now=None) -> dict:
    if not user_email:
        raise InvalidOrderRequest("User identity is required")
    if not request.items:
        raise InvalidOrderRequest("Order must contain at least one item")

    lines = [(item.product_id, item.quantity) for item in request.items]
    products = check_availability(store, lines)
    # built before any stock moves so a malformed order never holds stock
    try:
        order = assemble_order(user_email, request, products, now=now)
    except (PydanticValidationError, KeyError) as exc:
        logger.info("Checkout rejected", user_email=user_email, error=str(exc))
        raise InvalidOrderRequest("Order could not be built from the request")

    reserved = reserve_stock(store, lines)
    try:
        order_id = store.create_document("order", order)
    except Exception:
        logger.exception("Order insert failed, releasing stock", user_email=user_email)
        release_stock(store, combine_lines(lines))
        raise

    logger.info(
        "Order placed",
        order_id=order_id,
        user_email=user_email,
        total=order.total,
        status=order.status,
    )
    _drop_purchased_from_cart(store, user_email, list(reserved))
    return get_order(store, order_id)


def _drop_purchased_from_cart(store, user_email: str, product_ids: List[str]):
    try:
        store.carts.update_one(
            {"user_email": user_email},
            {"$pull": {"items": {"product_id": {"$in": product_ids}}}, "$set": {"updated_at": utcnow()}},
        )
    except PyMongoError as exc:
        # the order is committed; a stale cart line is harmless
        logger.warning("Could not prune cart after checkout", user_email=user_email, error=str(exc))


def _load(store, order_id: str) -> dict:
    order = store.orders.find_one({"_id": oid(order_id)})
    if not order:
        raise OrderNotFound()
    return order


def get_order(store, order_id: str) -> dict:
    return serialize(_load(store, order_id))


def get_order_for(store, order_id: str, principal) -> dict:
    order = _load(store, order_id)
    check_owner(order, principal)
    return serialize(order)


def check_owner(order: dict, principal):
    if principal.role != Role.ADMIN.value and order["user_email"] != principal.email:
        raise Forbidden("Order belongs to another user")


def list_orders(store, user_email: str, status: Optional[str] = None) -> List[dict]:
    query = {"user_email": user_email}
    if status:
        query["status"] = status
    return [serialize(o) for o in store.orders.find(query).sort("created_at", DESCENDING)]


def cancel_order(store, order_id: str, principal, now=None) -> dict:
    now = now or utcnow()
    order = _load(store, order_id)
    check_owner(order, principal)

    if order["status"] not in CANCELLABLE:
        raise InvalidStatusTransition(order["status"], OrderStatus.CANCELLED.value)
    window = timedelta(minutes=settings.CANCELLATION_WINDOW_MINUTES)
    if now - as_utc(order["created_at"]) > window:
        raise CancellationWindowExpired(
            f"Orders can only be cancelled within {settings.CANCELLATION_WINDOW_MINUTES} minutes"
        )

    result = store.orders.update_one(
        {"_id": order["_id"], "status": {"$in": list(CANCELLABLE)}},
        {"$set": {"status": OrderStatus.CANCELLED.value, "cancelled_at": now, "updated_at": now}},
    )
    if result.modified_count == 0:
        current = _load(store, order_id)
        raise InvalidStatusTransition(current["status"], OrderStatus.CANCELLED.value)

    release_stock(store, [(i["product_id"], i["quantity"]) for i in order["items"]])
    logger.info("Order cancelled", order_id=order_id, user_email=order["user_email"])
    return get_order(store, order_id)


def update_order_status(store, order_id: str, target: OrderStatus, now=None) -> dict:
    """Fulfillment progress driven by staff (ship, deliver, cancel)."""
    now = now or utcnow()
    target = OrderStatus(target)
    order = _load(store, order_id)
    current = order["status"]
    try:
        allowed = TRANSITIONS[OrderStatus(current)]
    except ValueError:
        allowed = set()
    if target not in allowed:
        raise InvalidStatusTransition(current, target.value)

    update = {"status": target.value, "updated_at": now, f"{target.value}_at": now}
    result = store.orders.update_one({"_id": order["_id"], "status": current}, {"$set": update})
    if result.modified_count == 0:
        raise InvalidStatusTransition(_load(store, order_id)["status"], target.value)
    if target == OrderStatus.CANCELLED:
        release_stock(store, [(i["product_id"], i["quantity"]) for i in order["items"]])

    logger.info("Order status changed", order_id=order_id, previous=current, status=target.value)
    return get_order(store, order_id)


def reorder(store, order_id: str, principal) -> dict:
    order = _load(store, order_id)
    if order["user_email"] != principal.email:
        raise Forbidden("Only the buyer can reorder")
    items = [
        {
            "product_id": i["product_id"],
            "name": i["name"],
            "price": i["price"],
            "image": i.get("image"),
            "quantity": i["quantity"],
        }
        for i in order["items"]
    ]
    logger.info("Reordering", order_id=order_id, user_email=principal.email, lines=len(items))
    return merge_items(store, principal.email, items)
