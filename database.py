"""
MongoDB access.

One ``MongoClient`` (and its connection pool) lives for the whole process.
Handlers get a ``Store`` per request through the ``get_store`` dependency and
reach collections through it instead of module-level handles.
"""

from datetime import datetime, timezone
from functools import lru_cache

import structlog
from bson.objectid import ObjectId
from bson.errors import InvalidId
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, MongoClient

import settings
from errors import InternalError, ValidationError

logger = structlog.get_logger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    # pymongo hands back naive datetimes unless the client is tz_aware
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def oid(id_str: str) -> ObjectId:
    try:
        return ObjectId(id_str)
    except (InvalidId, TypeError):
        raise ValidationError("Invalid id")


def serialize(doc):
    if not doc:
        return None
    doc["id"] = str(doc.pop("_id"))
    return doc


class Store:
    """Repository over the marketplace collections of one database."""

    def __init__(self, database):
        self.db = database

    @property
    def products(self):
        return self.db["product"]

    @property
    def carts(self):
        return self.db["cart"]

    @property
    def orders(self):
        return self.db["order"]

    @property
    def payments(self):
        return self.db["payment"]

    @property
    def payouts(self):
        return self.db["payout"]

    @property
    def users(self):
        return self.db["user"]

    @property
    def sellers(self):
        return self.db["seller"]

    @property
    def reviews(self):
        return self.db["review"]

    @property
    def newsletter(self):
        return self.db["newsletter"]

    @property
    def testimonials(self):
        return self.db["testimonial"]

    def ensure_indexes(self):
        self.carts.create_index("user_email", unique=True)
        self.payments.create_index("order_id", unique=True)
        self.users.create_index("email", unique=True)
        self.sellers.create_index("email", unique=True)
        self.newsletter.create_index("email", unique=True)
        self.reviews.create_index([("product_id", ASCENDING), ("user_email", ASCENDING)], unique=True)
        self.orders.create_index([("user_email", ASCENDING), ("created_at", DESCENDING)])
        self.products.create_index("category")
        self.products.create_index("seller_email")

    def create_document(self, collection_name: str, data) -> str:
        if isinstance(data, BaseModel):
            data_dict = data.model_dump(mode="python")
        else:
            data_dict = dict(data)
        now = utcnow()
        data_dict.setdefault("created_at", now)
        data_dict["updated_at"] = now
        result = self.db[collection_name].insert_one(data_dict)
        return str(result.inserted_id)


@lru_cache(maxsize=1)
def get_client() -> MongoClient:
    if not settings.DATABASE_URL or not settings.DATABASE_NAME:
        raise InternalError("Database not configured")
    logger.info("Connecting to MongoDB", database=settings.DATABASE_NAME)
    return MongoClient(settings.DATABASE_URL)


def get_store() -> Store:
    return Store(get_client()[settings.DATABASE_NAME])


def close_client():
    if get_client.cache_info().currsize:
        get_client().close()
        get_client.cache_clear()
