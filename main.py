import logging
import os
from contextlib import asynccontextmanager
from typing import List, Optional

import structlog
from fastapi import BackgroundTasks, Depends, FastAPI, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pymongo.errors import PyMongoError

import accounts
import carts
import catalog
import orders
import payouts
import settings
from auth import Principal, ensure_self_or_admin, get_principal, require_role
from database import Store, close_client, get_store
from errors import InvalidStatusTransition, ShopError
from notifications import Mailer, get_mailer
from payments import PAYABLE, PaymentGateway, get_gateway, record_payment
from schemas import (
    AddToCartRequest,
    CheckoutRequest,
    NewsletterRequest,
    OrderStatusUpdate,
    PaymentIntentRequest,
    PaymentRequest,
    PayoutRequest,
    PayoutStatusUpdate,
    ProductCreate,
    ProductStatusUpdate,
    ProductUpdate,
    RemoveCartItemRequest,
    ReviewRequest,
    Role,
    SellerApplication,
    SellerDecision,
    SellerRequestStatus,
    UpdateCartQuantityRequest,
    UserCreate,
)

structlog.configure(
    wrapper_class=structlog.make_filtering_bound_logger(getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO)),
)
logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if settings.DATABASE_URL and settings.DATABASE_NAME:
        get_store().ensure_indexes()
    else:
        logger.warning("DATABASE_URL / DATABASE_NAME not set, database calls will fail")
    yield
    close_client()


app = FastAPI(title="VenderSphere Marketplace API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

seller_only = require_role(Role.SELLER)
admin_only = require_role(Role.ADMIN)


# Error handling

@app.exception_handler(ShopError)
async def shop_error_handler(request: Request, exc: ShopError):
    if exc.status_code >= 500:
        logger.error("Request failed", path=request.url.path, detail=exc.detail)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})


@app.exception_handler(PyMongoError)
async def database_error_handler(request: Request, exc: PyMongoError):
    logger.exception("Database error", path=request.url.path, exc_info=exc)
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


# Routes
@app.get("/")
def root():
    return {"message": "VenderSphere Backend Running"}


@app.get("/test")
def test_database(store: Store = Depends(get_store)):
    resp = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set",
        "database_name": "✅ Set" if os.getenv("DATABASE_NAME") else "❌ Not Set",
        "connection_status": "Not Connected",
        "collections": [],
    }
    try:
        resp["collections"] = store.db.list_collection_names()[:10]
        resp["database"] = "✅ Connected & Working"
        resp["connection_status"] = "Connected"
    except PyMongoError as e:
        resp["database"] = f"⚠️ Connected but error: {str(e)[:80]}"
    return resp


# Users

@app.post("/users")
def register_user(payload: UserCreate, principal: Principal = Depends(get_principal), store: Store = Depends(get_store)):
    return accounts.register_user(store, principal.email, payload)


@app.get("/users/{email}")
def get_user(email: str, principal: Principal = Depends(get_principal), store: Store = Depends(get_store)):
    ensure_self_or_admin(principal, email)
    return accounts.get_user(store, email)


@app.get("/users/{email}/role")
def get_user_role(email: str, store: Store = Depends(get_store)):
    return {"role": accounts.get_role(store, email)}


# Sellers

@app.post("/seller-request", status_code=201)
def seller_request(
    payload: SellerApplication, principal: Principal = Depends(get_principal), store: Store = Depends(get_store)
):
    return {"id": accounts.apply_as_seller(store, principal.email, payload)}


@app.get("/sellers/top")
def top_sellers(store: Store = Depends(get_store)):
    return accounts.top_sellers(store)


@app.get("/testimonials")
def testimonials(store: Store = Depends(get_store)):
    return accounts.list_testimonials(store)


@app.get("/admin/seller-requests")
def seller_requests(
    status: Optional[SellerRequestStatus] = None,
    principal: Principal = Depends(admin_only),
    store: Store = Depends(get_store),
):
    return accounts.list_seller_requests(store, status.value if status else None)


@app.patch("/admin/seller-requests/{request_id}")
def decide_seller_request(
    request_id: str,
    payload: SellerDecision,
    background_tasks: BackgroundTasks,
    principal: Principal = Depends(admin_only),
    store: Store = Depends(get_store),
    mailer: Mailer = Depends(get_mailer),
):
    request = accounts.decide_seller_request(store, request_id, payload.status)
    background_tasks.add_task(
        mailer.send,
        request["email"],
        f"Your seller application was {request['status']}",
        f"Hi, your application for '{request['shop_name']}' has been {request['status']}.",
    )
    return request


# Products

@app.post("/products", status_code=201)
def create_product(payload: ProductCreate, principal: Principal = Depends(seller_only), store: Store = Depends(get_store)):
    return {"id": catalog.create_product(store, principal, payload)}


@app.get("/products")
def list_products(
    category: Optional[str] = None,
    search: Optional[str] = None,
    price_min: Optional[float] = None,
    price_max: Optional[float] = None,
    rating_gte: Optional[float] = None,
    seller: Optional[str] = None,
    flash: bool = False,
    sort: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(12, ge=1, le=100),
    store: Store = Depends(get_store),
):
    return catalog.list_products(
        store,
        category=category,
        search=search,
        price_min=price_min,
        price_max=price_max,
        rating_gte=rating_gte,
        seller=seller,
        flash=flash,
        sort=sort,
        page=page,
        limit=limit,
    )


@app.get("/products/featured")
def featured_products(store: Store = Depends(get_store)):
    return catalog.featured(store)


@app.get("/products/flash-sale")
def flash_sale_products(store: Store = Depends(get_store)):
    return catalog.flash_sale(store)


@app.get("/products/related/{product_id}")
def related_products(product_id: str, store: Store = Depends(get_store)):
    return catalog.related(store, product_id)


@app.get("/products/{product_id}")
def get_product(product_id: str, store: Store = Depends(get_store)):
    return catalog.get_product(store, product_id)


@app.patch("/products/{product_id}")
def update_product(
    product_id: str, payload: ProductUpdate, principal: Principal = Depends(seller_only), store: Store = Depends(get_store)
):
    return catalog.update_product(store, product_id, principal, payload)


@app.patch("/products/{product_id}/status")
def update_product_status(
    product_id: str,
    payload: ProductStatusUpdate,
    principal: Principal = Depends(seller_only),
    store: Store = Depends(get_store),
):
    return catalog.set_status(store, product_id, principal, payload.status)


@app.delete("/products/{product_id}")
def delete_product(product_id: str, principal: Principal = Depends(seller_only), store: Store = Depends(get_store)):
    catalog.remove_product(store, product_id, principal)
    return {"success": True}


@app.get("/products/{product_id}/reviews")
def product_reviews(product_id: str, store: Store = Depends(get_store)):
    return catalog.list_reviews(store, product_id)


@app.post("/products/{product_id}/reviews", status_code=201)
def add_review(
    product_id: str, payload: ReviewRequest, principal: Principal = Depends(get_principal), store: Store = Depends(get_store)
):
    return catalog.add_review(store, product_id, principal, payload)


@app.get("/categories")
def list_categories(store: Store = Depends(get_store)) -> List[str]:
    return catalog.categories(store)


@app.get("/seller/products")
def seller_products(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    principal: Principal = Depends(seller_only),
    store: Store = Depends(get_store),
):
    return catalog.seller_products(store, principal.email, page=page, limit=limit)


# Newsletter

@app.post("/newsletter", status_code=201)
def subscribe(
    payload: NewsletterRequest,
    background_tasks: BackgroundTasks,
    store: Store = Depends(get_store),
    mailer: Mailer = Depends(get_mailer),
):
    subscription_id = accounts.subscribe(store, payload.email)
    background_tasks.add_task(
        mailer.send, payload.email, "Welcome to VenderSphere", "Thanks for subscribing to our newsletter!"
    )
    return {"id": subscription_id}


# Cart

@app.get("/cart/{email}")
def get_cart(email: str, principal: Principal = Depends(get_principal), store: Store = Depends(get_store)):
    ensure_self_or_admin(principal, email)
    return carts.get_cart(store, email)


@app.post("/cart")
def add_to_cart(payload: AddToCartRequest, principal: Principal = Depends(get_principal), store: Store = Depends(get_store)):
    return carts.add_to_cart(store, principal.email, payload.product_id, payload.quantity)


@app.patch("/cart/quantity")
def update_cart_quantity(
    payload: UpdateCartQuantityRequest, principal: Principal = Depends(get_principal), store: Store = Depends(get_store)
):
    return carts.update_quantity(store, principal.email, payload.product_id, payload.quantity)


@app.delete("/cart/item")
def remove_cart_item(
    payload: RemoveCartItemRequest, principal: Principal = Depends(get_principal), store: Store = Depends(get_store)
):
    return carts.remove_item(store, principal.email, payload.product_id)


@app.delete("/cart/{email}")
def clear_cart(email: str, principal: Principal = Depends(get_principal), store: Store = Depends(get_store)):
    ensure_self_or_admin(principal, email)
    carts.clear_cart(store, email)
    return {"success": True}


# Orders

@app.post("/orders", status_code=201)
def checkout(payload: CheckoutRequest, principal: Principal = Depends(get_principal), store: Store = Depends(get_store)):
    return orders.place_order(store, principal.email, payload)


@app.get("/orders")
def my_orders(
    status: Optional[str] = None, principal: Principal = Depends(get_principal), store: Store = Depends(get_store)
):
    return orders.list_orders(store, principal.email, status)


@app.get("/orders/{order_id}")
def get_order(order_id: str, principal: Principal = Depends(get_principal), store: Store = Depends(get_store)):
    return orders.get_order_for(store, order_id, principal)


@app.post("/orders/{order_id}/cancel")
def cancel_order(order_id: str, principal: Principal = Depends(get_principal), store: Store = Depends(get_store)):
    return orders.cancel_order(store, order_id, principal)


@app.patch("/orders/{order_id}/status")
def update_order_status(
    order_id: str, payload: OrderStatusUpdate, principal: Principal = Depends(admin_only), store: Store = Depends(get_store)
):
    return orders.update_order_status(store, order_id, payload.status)


@app.post("/orders/{order_id}/reorder")
def reorder(order_id: str, principal: Principal = Depends(get_principal), store: Store = Depends(get_store)):
    return orders.reorder(store, order_id, principal)


# Payments

@app.post("/orders/{order_id}/payments")
def pay_order(
    order_id: str, payload: PaymentRequest, principal: Principal = Depends(get_principal), store: Store = Depends(get_store)
):
    order = orders.get_order_for(store, order_id, principal)
    return record_payment(store, order_id, payload, payer_email=order["user_email"])


@app.post("/payments/intent")
def create_payment_intent(
    payload: PaymentIntentRequest,
    principal: Principal = Depends(get_principal),
    store: Store = Depends(get_store),
    gateway: PaymentGateway = Depends(get_gateway),
):
    order = orders.get_order_for(store, payload.order_id, principal)
    if order["status"] not in PAYABLE:
        raise InvalidStatusTransition(order["status"], "paid")
    return gateway.create_intent(order["id"], order["total"])


@app.post("/payments/webhook")
async def payment_webhook(
    request: Request, store: Store = Depends(get_store), gateway: PaymentGateway = Depends(get_gateway)
):
    payload = await request.body()
    settled = gateway.parse_event(payload, request.headers.get("stripe-signature"))
    if settled is None:
        return {"received": True}
    order_id, details = settled
    payment = record_payment(store, order_id, details)
    return {"received": True, "payment_id": payment["id"]}


# Payouts

@app.get("/seller/balance")
def seller_balance(principal: Principal = Depends(seller_only), store: Store = Depends(get_store)):
    return payouts.seller_balance(store, principal.email)


@app.post("/seller/payouts", status_code=201)
def request_payout(payload: PayoutRequest, principal: Principal = Depends(seller_only), store: Store = Depends(get_store)):
    return payouts.request_payout(store, principal.email, payload)


@app.get("/seller/payouts")
def my_payouts(principal: Principal = Depends(seller_only), store: Store = Depends(get_store)):
    return payouts.list_payouts(store, seller_email=principal.email)


@app.get("/admin/payouts")
def all_payouts(status: Optional[str] = None, principal: Principal = Depends(admin_only), store: Store = Depends(get_store)):
    return payouts.list_payouts(store, status=status)


@app.patch("/admin/payouts/{payout_id}")
def update_payout(
    payout_id: str, payload: PayoutStatusUpdate, principal: Principal = Depends(admin_only), store: Store = Depends(get_store)
):
    return payouts.update_payout_status(store, payout_id, payload.status)


# Admin

@app.get("/admin/stats")
def admin_stats(principal: Principal = Depends(admin_only), store: Store = Depends(get_store)):
    return accounts.dashboard_stats(store)


if __name__ == "__main__":
    import uvicorn

    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
