"""
Seller withdrawals against revenue from delivered orders.

The balance is derived on every request from the order and payout
collections; nothing stores it.
"""

from typing import List

import structlog
from pymongo import DESCENDING

from database import oid, serialize, utcnow
from errors import InsufficientBalance, InvalidStatusTransition, PayoutNotFound
from schemas import OrderStatus, Payout, PayoutRequest, PayoutStatus

logger = structlog.get_logger(__name__)

# Payouts that still count against the balance
COMMITTED = (PayoutStatus.PENDING.value, PayoutStatus.APPROVED.value, PayoutStatus.PAID.value)

PAYOUT_TRANSITIONS = {
    PayoutStatus.PENDING: {PayoutStatus.APPROVED, PayoutStatus.REJECTED},
    PayoutStatus.APPROVED: {PayoutStatus.PAID},
    PayoutStatus.REJECTED: set(),
    PayoutStatus.PAID: set(),
}


def seller_revenue(store, seller_email: str) -> float:
    revenue = 0.0
    query = {"status": OrderStatus.DELIVERED.value, "items.seller_email": seller_email}
    for order in store.orders.find(query, {"items": 1}):
        for item in order["items"]:
            if item.get("seller_email") != seller_email:
                continue
            gross = item["price"] * item["quantity"]
            revenue += gross - gross * item.get("discount", 0) / 100
    return round(revenue, 2)


def seller_balance(store, seller_email: str) -> dict:
    revenue = seller_revenue(store, seller_email)
    withdrawn = sum(
        p["amount"] for p in store.payouts.find({"seller_email": seller_email, "status": {"$in": list(COMMITTED)}})
    )
    withdrawn = round(withdrawn, 2)
    return {"revenue": revenue, "withdrawn": withdrawn, "available": round(revenue - withdrawn, 2)}


def request_payout(store, seller_email: str, request: PayoutRequest) -> dict:
    balance = seller_balance(store, seller_email)
    if request.amount > balance["available"]:
        raise InsufficientBalance(
            f"Requested {request.amount} but only {balance['available']} is available"
        )
    payout = Payout(
        seller_email=seller_email,
        amount=round(request.amount, 2),
        method=request.method,
        account=request.account,
    )
    payout_id = store.create_document("payout", payout)
    # a concurrent request may have passed the same check
    if seller_balance(store, seller_email)["available"] < 0:
        store.payouts.delete_one({"_id": oid(payout_id)})
        logger.warning("Payout withdrawn after concurrent request", seller_email=seller_email, amount=payout.amount)
        raise InsufficientBalance("Balance changed while the payout was being requested")
    logger.info("Payout requested", payout_id=payout_id, seller_email=seller_email, amount=payout.amount)
    return serialize(store.payouts.find_one({"_id": oid(payout_id)}))


def list_payouts(store, seller_email: str = None, status: str = None) -> List[dict]:
    query = {}
    if seller_email:
        query["seller_email"] = seller_email
    if status:
        query["status"] = status
    return [serialize(p) for p in store.payouts.find(query).sort("created_at", DESCENDING)]


def update_payout_status(store, payout_id: str, target: PayoutStatus) -> dict:
    target = PayoutStatus(target)
    payout = store.payouts.find_one({"_id": oid(payout_id)})
    if not payout:
        raise PayoutNotFound()
    current = payout["status"]
    if target not in PAYOUT_TRANSITIONS[PayoutStatus(current)]:
        raise InvalidStatusTransition(current, target.value)

    result = store.payouts.update_one(
        {"_id": payout["_id"], "status": current},
        {"$set": {"status": target.value, "updated_at": utcnow()}},
    )
    if result.modified_count == 0:
        raise InvalidStatusTransition(current, target.value)
    logger.info("Payout status changed", payout_id=payout_id, previous=current, status=target.value)
    return serialize(store.payouts.find_one({"_id": payout["_id"]}))
