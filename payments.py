"""
Payment bridge

Creates Stripe PaymentIntents for the storefront and settles orders once
the processor reports the charge as succeeded. Marking an order paid always
goes through ledger.mark_paid.
"""

import logging
from typing import Optional

import stripe

from config import Config
from errors import AuthorizationError, ConflictError, PaymentProviderError, ValidationError
from ledger import load_order, mark_paid, populate

logger = logging.getLogger(__name__)


class StripeGateway:
    """Thin wrapper over the Stripe PaymentIntent API."""

    def __init__(self, api_key: Optional[str]):
        self.api_key = api_key

    def create_intent(self, amount: int, currency: str, metadata: Optional[dict] = None) -> dict:
        if not self.api_key:
            raise PaymentProviderError("Payment provider is not configured")
        try:
            intent = stripe.PaymentIntent.create(
                amount=amount,
                currency=currency,
                automatic_payment_methods={"enabled": True},
                metadata=metadata or {},
                api_key=self.api_key,
            )
        except stripe.StripeError as e:
            logger.error("Stripe rejected PaymentIntent create: %s", e)
            raise PaymentProviderError("Payment provider error")
        return {"id": intent.id, "client_secret": intent.client_secret}

    def retrieve_intent(self, intent_id: str) -> dict:
        if not self.api_key:
            raise PaymentProviderError("Payment provider is not configured")
        try:
            intent = stripe.PaymentIntent.retrieve(intent_id, api_key=self.api_key)
        except stripe.InvalidRequestError as e:
            logger.warning("Unknown PaymentIntent %s: %s", intent_id, e)
            raise ValidationError("paymentIntentId: unknown payment intent")
        except stripe.StripeError as e:
            logger.error("Stripe rejected PaymentIntent retrieve: %s", e)
            raise PaymentProviderError("Payment provider error")
        return {
            "id": intent.id,
            "status": intent.status,
            "amount": intent.amount,
            "currency": intent.currency,
            "metadata": dict(intent.metadata or {}),
        }


_gateway = None


def init_gateway(api_key: Optional[str] = None) -> StripeGateway:
    global _gateway
    _gateway = StripeGateway(api_key if api_key is not None else Config.STRIPE_SECRET_KEY)
    if not _gateway.api_key:
        logger.warning("STRIPE_SECRET_KEY not set, payment endpoints will fail")
    return _gateway


def get_payment_gateway() -> StripeGateway:
    if _gateway is None:
        return init_gateway()
    return _gateway


def to_minor_units(price: float) -> int:
    return int(round(price * 100))


def create_payment_intent(database, gateway, amount: int, user: dict, currency: Optional[str] = None,
                          order_id: Optional[str] = None) -> dict:
    # Re-checked here so no caller can reach the processor with a bad amount
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise ValidationError("amount: must be a positive integer")
    metadata = {"email": user["email"]}
    if order_id:
        order = load_order(database, order_id)
        if order.get("email") != user["email"]:
            raise AuthorizationError("Cannot pay for another user's order")
        metadata["orderId"] = str(order["_id"])
    intent = gateway.create_intent(amount, (currency or Config.PAYMENT_CURRENCY).lower(), metadata)
    logger.info("PaymentIntent %s created for %s (%d)", intent["id"], user["email"], amount)
    return {"clientSecret": intent["client_secret"]}


def confirm_order_payment(database, gateway, order_id: str, intent_id: str, user: dict) -> dict:
    order = load_order(database, order_id)
    if order.get("email") != user["email"]:
        raise AuthorizationError("Cannot confirm payment for another user's order")
    canonical_id = str(order["_id"])

    intent = gateway.retrieve_intent(intent_id)
    if intent["status"] != "succeeded":
        raise ConflictError(f"Payment not completed (status {intent['status']})")
    # One charge settles exactly the order it was created for
    if intent["metadata"].get("orderId") != canonical_id:
        raise ValidationError("paymentIntentId: payment is not bound to this order")
    if (intent.get("currency") or "").lower() != Config.PAYMENT_CURRENCY.lower():
        raise ValidationError("paymentIntentId: payment currency does not match")
    if intent["amount"] < to_minor_units(order.get("price", 0)):
        raise ValidationError("paymentIntentId: amount paid is less than the order price")
    used = database["order"].find_one({"transactionId": intent["id"], "_id": {"$ne": order["_id"]}})
    if used is not None:
        raise ConflictError("Payment already settled another order")

    paid = mark_paid(database, canonical_id, transaction_id=intent["id"])
    return populate(database, [paid])[0]
