"""Credit top-ups through Stripe Checkout.

``create_checkout_session`` starts a payment for a number of credits;
``handle_webhook`` receives Stripe's confirmation and credits the ledger.
Stripe retries webhooks, so crediting is keyed by the checkout session id
and a redelivery is acknowledged without crediting twice.
"""

import json
import logging
import os
from typing import Optional

import stripe

from engine.credits import CreditGate
from engine.errors import CleanLeadsError
from engine.models import Identity

logger = logging.getLogger("cleanleads.payments")

STRIPE_SECRET_KEY = os.environ.get("STRIPE_SECRET_KEY", "")
STRIPE_WEBHOOK_SECRET = os.environ.get("STRIPE_WEBHOOK_SECRET", "")
PRICE_PER_CREDIT = float(os.environ.get("CLEANLEADS_PRICE_PER_CREDIT", "0.012"))
MIN_PURCHASE_CREDITS = 100
MAX_PURCHASE_CREDITS = 100_000
CHECKOUT_COMPLETED = "checkout.session.completed"


class PaymentError(CleanLeadsError):
    code = "payment_error"


class WebhookSignatureError(PaymentError):
    code = "webhook_signature"


class MissingUserId(PaymentError):
    code = "missing_user_id"

    def __init__(self, message: str = "User ID is required"):
        super().__init__(message)


class PriceMismatch(PaymentError):
    """The client quoted a unit price other than the one we charge."""

    code = "price_mismatch"


class MalformedEvent(PaymentError):
    """A correctly signed webhook event that lacks what we need to credit it."""

    code = "malformed_event"


def clamp_credits(credits: int) -> int:
    return min(MAX_PURCHASE_CREDITS, max(MIN_PURCHASE_CREDITS, int(credits)))


def amount_cents(credits: int, price_per_credit: float) -> int:
    return round(credits * price_per_credit * 100)


def create_checkout_session(
    *,
    credits: int,
    user_id: str,
    origin: str,
    referer: Optional[str] = None,
    price_per_credit: float = PRICE_PER_CREDIT,
    quoted_price: Optional[float] = None,
    api_key: str = STRIPE_SECRET_KEY,
) -> str:
    """Create a Stripe Checkout Session and return its id.

    ``price_per_credit`` is what we charge. ``quoted_price`` is the price the
    client displayed, if it sent one; it must match.
    """
    if not user_id:
        raise MissingUserId()
    if quoted_price is not None and round(quoted_price * 1_000_000) != round(price_per_credit * 1_000_000):
        raise PriceMismatch(f"Price per credit is {price_per_credit}, not {quoted_price}")
    if not api_key:
        raise PaymentError("Stripe is not configured")

    credits = clamp_credits(credits)
    try:
        session = stripe.checkout.Session.create(
            api_key=api_key,
            payment_method_types=["card"],
            line_items=[
                {
                    "price_data": {
                        "currency": "usd",
                        "product_data": {
                            "name": "Email Verification Credits",
                            "description": f"{credits:,} email verification credits",
                        },
                        "unit_amount": amount_cents(credits, price_per_credit),
                    },
                    "quantity": 1,
                }
            ],
            mode="payment",
            success_url=f"{origin}/success",
            cancel_url=origin,
            metadata={
                "credits": str(credits),
                "userId": user_id,
                "returnUrl": referer or "/",
            },
        )
    except stripe.StripeError as e:
        logger.error("Error creating checkout session for %s: %s", user_id, e)
        raise PaymentError("Error creating checkout session") from e

    logger.info("Created checkout session %s for %s (%d credits)", session.id, user_id, credits)
    return session.id


def handle_webhook(
    payload: bytes,
    signature: Optional[str],
    gate: CreditGate,
    *,
    secret: str = STRIPE_WEBHOOK_SECRET,
) -> dict:
    """Verify a Stripe webhook and apply completed checkouts to the ledger.

    Raises:
        WebhookSignatureError: missing or invalid signature.
        MalformedEvent: a completed checkout missing what is needed to
            credit it.
    """
    if not signature or not secret:
        raise WebhookSignatureError("Missing stripe signature or endpoint secret")
    try:
        stripe.Webhook.construct_event(payload, signature, secret)
    except (ValueError, stripe.SignatureVerificationError) as e:
        logger.error("Webhook signature verification failed: %s", e)
        raise WebhookSignatureError(f"Webhook Error: {e}") from e

    event = json.loads(payload)
    if event.get("type") != CHECKOUT_COMPLETED:
        return {"received": True}

    checkout = event.get("data", {}).get("object", {})
    metadata = checkout.get("metadata") or {}
    user_id = metadata.get("userId")
    if not user_id:
        raise MalformedEvent("No user ID in session metadata")
    try:
        credits = int(metadata.get("credits") or 0)
    except ValueError as e:
        raise MalformedEvent(f"Invalid credits in session metadata: {metadata.get('credits')!r}") from e

    if credits <= 0:
        logger.warning("Checkout %s completed with no credits", checkout.get("id"))
        return {"received": True, "credited": 0}

    checkout_id = checkout.get("id")
    if not checkout_id:
        raise MalformedEvent("No checkout session id in event")

    applied = gate.add_credits(Identity.account(user_id), credits, payment_id=checkout_id)
    return {"received": True, "credited": credits if applied else 0, "duplicate": not applied}
