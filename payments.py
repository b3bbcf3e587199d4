"""
Payment recording and the card payment gateway.

``record_payment`` is safe to call repeatedly for the same settlement: the
``payment`` collection holds at most one record per order (unique index on
``order_id``), and a retry carrying the same transaction id gets the
existing record back instead of a second one.
"""

from typing import Optional

import stripe
import structlog
from pymongo.errors import DuplicateKeyError

import settings
from database import oid, serialize, utcnow
from errors import AlreadyPaid, InternalError, InvalidStatusTransition, OrderNotFound, ValidationError
from schemas import OrderStatus, Payment, PaymentRequest

logger = structlog.get_logger(__name__)

PAYABLE = (OrderStatus.PENDING.value, OrderStatus.AWAITING_PAYMENT.value)


def _existing_payment(store, order_id: str, transaction_id: str) -> dict:
    payment = store.payments.find_one({"order_id": order_id})
    if payment and payment["transaction_id"] == transaction_id:
        logger.info("Duplicate payment notification ignored", order_id=order_id, transaction_id=transaction_id)
        return serialize(payment)
    raise AlreadyPaid()


def record_payment(store, order_id: str, details: PaymentRequest, payer_email: Optional[str] = None) -> dict:
    """Mark the order paid and store its payment record."""
    order = store.orders.find_one({"_id": oid(order_id)})
    if not order:
        raise OrderNotFound()

    if order["status"] == OrderStatus.PAID.value:
        return _existing_payment(store, order_id, details.transaction_id)
    if order["status"] not in PAYABLE:
        raise InvalidStatusTransition(order["status"], OrderStatus.PAID.value)
    if round(details.amount, 2) != round(order["total"], 2):
        raise ValidationError(f"Payment amount {details.amount} does not match order total {order['total']}")

    payment = Payment(
        order_id=order_id,
        payer_email=payer_email or order["user_email"],
        amount=round(details.amount, 2),
        method=details.method,
        transaction_id=details.transaction_id,
    )
    try:
        payment_id = store.create_document("payment", payment)
    except DuplicateKeyError:
        return _existing_payment(store, order_id, details.transaction_id)

    now = utcnow()
    result = store.orders.update_one(
        {"_id": order["_id"], "status": {"$in": list(PAYABLE)}},
        {"$set": {"status": OrderStatus.PAID.value, "payment_id": payment_id, "paid_at": now, "updated_at": now}},
    )
    if result.modified_count == 0:
        # order was cancelled or moved on while we were recording
        store.payments.delete_one({"_id": oid(payment_id)})
        current = store.orders.find_one({"_id": order["_id"]})
        raise InvalidStatusTransition(current["status"], OrderStatus.PAID.value)

    logger.info(
        "Payment recorded",
        order_id=order_id,
        payment_id=payment_id,
        amount=payment.amount,
        transaction_id=payment.transaction_id,
    )
    return serialize(store.payments.find_one({"_id": oid(payment_id)}))


class PaymentGateway:
    """Stripe PaymentIntents: creates client handles and verifies webhooks."""

    def __init__(self, api_key: Optional[str] = None, webhook_secret: Optional[str] = None, currency: str = "usd"):
        self.api_key = api_key
        self.webhook_secret = webhook_secret
        self.currency = currency

    def create_intent(self, order_id: str, amount: float, currency: Optional[str] = None) -> dict:
        if not self.api_key:
            raise InternalError("Stripe not configured. Set STRIPE_SECRET_KEY.")
        try:
            intent = stripe.PaymentIntent.create(
                api_key=self.api_key,
                amount=int(round(amount * 100)),
                currency=currency or self.currency,
                metadata={"order_id": order_id},
            )
        except stripe.StripeError as e:
            logger.error("Stripe rejected payment intent", order_id=order_id, error=str(e))
            raise ValidationError(str(e))
        return {"client_secret": intent.client_secret, "intent_id": intent.id}

    def parse_event(self, payload: bytes, signature: Optional[str]):
        """Verify a webhook delivery and return the settled payment, if any.

        Returns ``(order_id, PaymentRequest)`` for a succeeded intent and
        ``None`` for events that do not settle a payment.
        """
        if not self.webhook_secret:
            raise InternalError("Stripe webhook secret not configured")
        try:
            event = stripe.Webhook.construct_event(payload=payload, sig_header=signature, secret=self.webhook_secret)
        except (ValueError, stripe.SignatureVerificationError) as e:
            raise ValidationError(f"Webhook error: {e}")

        if event["type"] != "payment_intent.succeeded":
            logger.debug("Ignoring webhook event", event_type=event["type"])
            return None
        intent = event["data"]["object"]
        order_id = (intent.get("metadata") or {}).get("order_id")
        if not order_id:
            raise ValidationError("Payment intent has no order reference")
        details = PaymentRequest(
            amount=intent["amount_received"] / 100,
            method="card",
            transaction_id=intent["id"],
        )
        return order_id, details


def get_gateway() -> PaymentGateway:
    return PaymentGateway(
        api_key=settings.STRIPE_SECRET_KEY,
        webhook_secret=settings.STRIPE_WEBHOOK_SECRET,
        currency=settings.CURRENCY,
    )
