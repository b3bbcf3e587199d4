"""
Product catalog: listing, seller product management and reviews.
"""

import math
import re
from typing import Optional

import structlog
from pymongo import DESCENDING
from pymongo.errors import DuplicateKeyError

from database import oid, serialize, utcnow
from errors import Conflict, Forbidden, ProductNotFound, ValidationError
from schemas import Product, ProductCreate, ProductStatus, ProductUpdate, Review, ReviewRequest

logger = structlog.get_logger(__name__)

SORTS = {
    "price_asc": [("price", 1)],
    "price_desc": [("price", -1)],
    "rating_desc": [("rating", -1)],
    "newest": [("created_at", -1)],
    "sold_desc": [("sold", -1)],
}

VISIBLE = {"status": ProductStatus.ACTIVE.value}


def create_product(store, seller, payload: ProductCreate) -> str:
    product = Product(
        **payload.model_dump(exclude={"category"}),
        category=payload.category.strip().lower(),
        seller_email=seller.email,
    )
    product_id = store.create_document("product", product)
    logger.info("Product added", product_id=product_id, seller_email=seller.email, category=product.category)
    return product_id


def list_products(
    store,
    category: Optional[str] = None,
    search: Optional[str] = None,
    price_min: Optional[float] = None,
    price_max: Optional[float] = None,
    rating_gte: Optional[float] = None,
    seller: Optional[str] = None,
    flash: bool = False,
    sort: Optional[str] = None,
    page: int = 1,
    limit: int = 12,
) -> dict:
    query = dict(VISIBLE)
    if category:
        query["category"] = category.lower()
    if search:
        pattern = re.escape(search)
        query["$or"] = [
            {"name": {"$regex": pattern, "$options": "i"}},
            {"brand": {"$regex": pattern, "$options": "i"}},
        ]
    if price_min is not None or price_max is not None:
        query["price"] = {}
        if price_min is not None:
            query["price"]["$gte"] = price_min
        if price_max is not None:
            query["price"]["$lte"] = price_max
    if rating_gte is not None:
        query["rating"] = {"$gte": rating_gte}
    if flash:
        query["discount"] = {"$gt": 0}
    if seller:
        query["seller_email"] = seller

    skip = (page - 1) * limit
    cursor = store.products.find(query).sort(SORTS.get(sort, SORTS["newest"])).skip(skip).limit(limit)
    products = [serialize(p) for p in cursor]
    total = store.products.count_documents(query)
    return {"products": products, "total": total, "page": page, "total_pages": math.ceil(total / limit)}


def featured(store, limit: int = 12):
    cursor = store.products.find(VISIBLE).sort([("rating", DESCENDING), ("created_at", DESCENDING)]).limit(limit)
    return [serialize(p) for p in cursor]


def flash_sale(store, limit: int = 12):
    query = dict(VISIBLE, discount={"$gt": 0})
    return [serialize(p) for p in store.products.find(query).sort("created_at", DESCENDING).limit(limit)]


def categories(store):
    return sorted(store.products.distinct("category", VISIBLE))


def get_product(store, product_id: str) -> dict:
    product = store.products.find_one({"_id": oid(product_id)})
    if not product or product.get("status") == ProductStatus.REMOVED.value:
        raise ProductNotFound()
    return serialize(product)


def related(store, product_id: str, limit: int = 8):
    product = store.products.find_one({"_id": oid(product_id)})
    if not product:
        return []
    query = dict(VISIBLE, category=product["category"], _id={"$ne": product["_id"]})
    return [serialize(p) for p in store.products.find(query).limit(limit)]


def seller_products(store, seller_email: str, page: int = 1, limit: int = 10) -> dict:
    query = {"seller_email": seller_email, "status": {"$ne": ProductStatus.REMOVED.value}}
    total = store.products.count_documents(query)
    cursor = store.products.find(query).sort("created_at", DESCENDING).skip((page - 1) * limit).limit(limit)
    return {
        "products": [serialize(p) for p in cursor],
        "total": total,
        "total_pages": math.ceil(total / limit),
        "current_page": page,
    }


def _owned(store, product_id: str, principal) -> dict:
    product = store.products.find_one({"_id": oid(product_id)})
    if not product or product.get("status") == ProductStatus.REMOVED.value:
        raise ProductNotFound()
    if product["seller_email"] != principal.email and not principal.is_admin:
        raise Forbidden("Product belongs to another seller")
    return product


def update_product(store, product_id: str, principal, payload: ProductUpdate) -> dict:
    product = _owned(store, product_id, principal)
    changes = payload.model_dump(exclude_none=True)
    if not changes:
        raise ValidationError("No changes detected")
    if "category" in changes:
        changes["category"] = changes["category"].strip().lower()
    changes["updated_at"] = utcnow()
    store.products.update_one({"_id": product["_id"]}, {"$set": changes})
    logger.info("Product updated", product_id=product_id, fields=sorted(changes))
    return get_product(store, product_id)


def set_status(store, product_id: str, principal, status: ProductStatus) -> dict:
    product = _owned(store, product_id, principal)
    status = ProductStatus(status)
    store.products.update_one({"_id": product["_id"]}, {"$set": {"status": status.value, "updated_at": utcnow()}})
    logger.info("Product status changed", product_id=product_id, status=status.value)
    return serialize(store.products.find_one({"_id": product["_id"]}))


def remove_product(store, product_id: str, principal):
    # orders keep referencing the product, so it is only hidden
    set_status(store, product_id, principal, ProductStatus.REMOVED)


def list_reviews(store, product_id: str):
    cursor = store.reviews.find({"product_id": product_id}).sort("created_at", DESCENDING)
    return [serialize(r) for r in cursor]


def add_review(store, product_id: str, principal, payload: ReviewRequest) -> dict:
    product = store.products.find_one({"_id": oid(product_id)})
    if not product:
        raise ProductNotFound()
    review = Review(
        product_id=product_id,
        user_email=principal.email,
        user_name=payload.user_name,
        rating=payload.rating,
        comment=payload.comment,
    )
    try:
        store.create_document("review", review)
    except DuplicateKeyError:
        raise Conflict("Already reviewed")

    ratings = [r["rating"] for r in store.reviews.find({"product_id": product_id}, {"rating": 1})]
    rating = round(sum(ratings) / len(ratings), 1)
    store.products.update_one(
        {"_id": product["_id"]},
        {"$set": {"rating": rating, "review_count": len(ratings)}},
    )
    logger.info("Review added", product_id=product_id, user_email=principal.email, rating=rating)
    return {"rating": rating, "review_count": len(ratings)}
