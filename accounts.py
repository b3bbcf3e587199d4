"""
Users, seller onboarding, testimonials, newsletter and the admin dashboard numbers.
"""

import structlog
from pymongo import DESCENDING
from pymongo.errors import DuplicateKeyError

from database import oid, serialize, utcnow
from errors import Conflict, InvalidStatusTransition, NotFound
from schemas import (
    OrderStatus,
    ProductStatus,
    Role,
    SellerApplication,
    SellerRequest,
    SellerRequestStatus,
    User,
    UserCreate,
)

logger = structlog.get_logger(__name__)


def register_user(store, email: str, payload: UserCreate) -> dict:
    if store.users.find_one({"email": email}):
        return {"inserted": False}
    user = User(email=email, name=payload.name, photo=payload.photo)
    try:
        user_id = store.create_document("user", user)
    except DuplicateKeyError:
        return {"inserted": False}
    logger.info("User registered", email=email)
    return {"inserted": True, "id": user_id}


def get_user(store, email: str) -> dict:
    user = store.users.find_one({"email": email})
    if not user:
        raise NotFound("User not found")
    return serialize(user)


def get_role(store, email: str) -> str:
    user = store.users.find_one({"email": email}, {"role": 1})
    return (user or {}).get("role") or Role.CUSTOMER.value


def apply_as_seller(store, email: str, payload: SellerApplication) -> str:
    request = SellerRequest(email=email, **payload.model_dump())
    try:
        request_id = store.create_document("seller", request)
    except DuplicateKeyError:
        raise Conflict("Already applied")
    logger.info("Seller application received", email=email, shop_name=payload.shop_name)
    return request_id


def list_seller_requests(store, status=None):
    query = {"status": status} if status else {}
    return [serialize(s) for s in store.sellers.find(query).sort("created_at", DESCENDING)]


def decide_seller_request(store, request_id: str, status: SellerRequestStatus) -> dict:
    status = SellerRequestStatus(status)
    if status == SellerRequestStatus.PENDING:
        raise InvalidStatusTransition(SellerRequestStatus.PENDING.value, status.value)
    request = store.sellers.find_one({"_id": oid(request_id)})
    if not request:
        raise NotFound("Seller request not found")
    result = store.sellers.update_one(
        {"_id": request["_id"], "status": SellerRequestStatus.PENDING.value},
        {"$set": {"status": status.value, "updated_at": utcnow()}},
    )
    if result.modified_count == 0:
        raise InvalidStatusTransition(request["status"], status.value)

    if status == SellerRequestStatus.APPROVED:
        store.users.update_one(
            {"email": request["email"]},
            {"$set": {"role": Role.SELLER.value, "updated_at": utcnow()}, "$setOnInsert": {"created_at": utcnow()}},
            upsert=True,
        )
    logger.info("Seller request decided", request_id=request_id, email=request["email"], status=status.value)
    return serialize(store.sellers.find_one({"_id": request["_id"]}))


def top_sellers(store, limit: int = 8):
    """Approved sellers ranked by how many active products they list."""
    sellers = []
    for seller in store.sellers.find({"status": SellerRequestStatus.APPROVED.value}):
        seller = serialize(seller)
        seller["product_count"] = store.products.count_documents(
            {"seller_email": seller["email"], "status": ProductStatus.ACTIVE.value}
        )
        sellers.append(seller)
    sellers.sort(key=lambda s: s["product_count"], reverse=True)
    return sellers[:limit]


def list_testimonials(store) -> list:
    return [serialize(t) for t in store.testimonials.find().sort("created_at", DESCENDING)]


def subscribe(store, email: str) -> str:
    try:
        subscription_id = store.create_document("newsletter", {"email": email})
    except DuplicateKeyError:
        raise Conflict("Already subscribed")
    logger.info("Newsletter subscription", email=email)
    return subscription_id


def dashboard_stats(store) -> dict:
    orders_by_status = {s.value: store.orders.count_documents({"status": s.value}) for s in OrderStatus}
    revenue = sum(p["amount"] for p in store.payments.find({}, {"amount": 1}))
    return {
        "users": store.users.count_documents({}),
        "sellers": store.users.count_documents({"role": Role.SELLER.value}),
        "products": store.products.count_documents({"status": {"$ne": ProductStatus.REMOVED.value}}),
        "orders": orders_by_status,
        "revenue": round(revenue, 2),
    }
