"""
Stripe client wrapper: checkout, billing portal, webhook verification and
remote cancellation.
"""
import logging
from typing import Optional

import stripe
from fintrack.core.config import (
    FRONTEND_URL,
    STRIPE_SECRET_KEY,
    STRIPE_PRICE_ID,
    STRIPE_WEBHOOK_SECRET,
    PAYMENT_PROVIDER_TIMEOUT_SECONDS,
)

logger = logging.getLogger(__name__)

PROVIDER_NAME = "stripe"

if not STRIPE_SECRET_KEY:
    logger.warning("STRIPE_SECRET_KEY not configured - Stripe features disabled")


class StripeNotConfiguredError(RuntimeError):
    """A Stripe secret required for this call is missing."""


def _client(timeout: float) -> stripe.StripeClient:
    if not STRIPE_SECRET_KEY:
        raise StripeNotConfiguredError("STRIPE_SECRET_KEY not configured")
    return stripe.StripeClient(
        STRIPE_SECRET_KEY,
        http_client=stripe.RequestsClient(timeout=timeout),
        max_network_retries=0,
    )


def get_checkout_settings(user_id: int, user_email: str) -> dict:
    """
    Settings the client needs to open checkout for the monthly plan.

    The user id travels as custom data so the resulting subscription's
    webhooks can be matched back to the account.

    Raises:
        StripeNotConfiguredError: STRIPE_SECRET_KEY or STRIPE_PRICE_ID is not set
    """
    if not STRIPE_SECRET_KEY or not STRIPE_PRICE_ID:
        raise StripeNotConfiguredError("STRIPE_SECRET_KEY and STRIPE_PRICE_ID required")

    return {
        "priceId": STRIPE_PRICE_ID,
        "customData": {"user_id": str(user_id)},
        "customerEmail": user_email,
    }


def create_checkout_session(
    user_id: int,
    user_email: str,
    success_url: Optional[str] = None,
    cancel_url: Optional[str] = None,
) -> dict:
    """
    Create a Stripe Checkout session that upgrades the user to the paid plan.

    Args:
        user_id: User ID from database
        user_email: User email address
        success_url: Redirect after payment (defaults to FRONTEND_URL/dashboard?upgraded=1)
        cancel_url: Redirect if the user backs out (defaults to FRONTEND_URL/pricing?cancelled=1)

    Returns:
        Dictionary with 'url' and 'sessionId'

    Raises:
        StripeNotConfiguredError: STRIPE_SECRET_KEY or STRIPE_PRICE_ID is not set
        ValueError: Stripe rejected the call or was unreachable
    """
    settings = get_checkout_settings(user_id, user_email)

    if not success_url:
        success_url = f"{FRONTEND_URL}/dashboard?upgraded=1"
    if not cancel_url:
        cancel_url = f"{FRONTEND_URL}/pricing?cancelled=1"

    try:
        session = _client(PAYMENT_PROVIDER_TIMEOUT_SECONDS).checkout.sessions.create(params={
            "mode": "subscription",
            "customer_email": user_email,
            "line_items": [{"price": settings["priceId"], "quantity": 1}],
            "success_url": success_url,
            "cancel_url": cancel_url,
            "metadata": settings["customData"],
            # Copied onto the subscription, so invoices carry it too
            "subscription_data": {"metadata": settings["customData"]},
        })
    except stripe.StripeError as e:
        logger.error(f"Stripe error creating checkout session: {e}")
        raise ValueError(f"Failed to create checkout session: {e}")

    logger.info(f"Created checkout session for user_id={user_id}, session_id={session.id}")
    return {"url": session.url, "sessionId": session.id}


def create_billing_portal_session(customer_id: str, return_url: Optional[str] = None) -> dict:
    """
    Create a Stripe Billing Portal session for updating payment details.

    Returns:
        Dictionary with 'url' key containing portal session URL

    Raises:
        StripeNotConfiguredError: STRIPE_SECRET_KEY is not set
        ValueError: Stripe rejected the call or was unreachable
    """
    if not return_url:
        return_url = f"{FRONTEND_URL}/settings/billing"

    try:
        session = _client(PAYMENT_PROVIDER_TIMEOUT_SECONDS).billing_portal.sessions.create(params={
            "customer": customer_id,
            "return_url": return_url,
        })
    except stripe.StripeError as e:
        logger.error(f"Stripe error creating portal session: {e}")
        raise ValueError(f"Failed to create portal session: {e}")

    logger.info(f"Created billing portal session for customer_id={customer_id}")
    return {"url": session.url}


def verify_webhook(request_body: bytes, signature: str) -> dict:
    """
    Verify and parse a Stripe webhook event.

    Args:
        request_body: Raw request body bytes
        signature: Stripe-Signature header value

    Returns:
        Parsed event

    Raises:
        StripeNotConfiguredError: STRIPE_WEBHOOK_SECRET is not set
        ValueError: Payload or signature is invalid
    """
    if not STRIPE_WEBHOOK_SECRET:
        raise StripeNotConfiguredError("STRIPE_WEBHOOK_SECRET not configured")

    try:
        event = stripe.Webhook.construct_event(
            request_body, signature, STRIPE_WEBHOOK_SECRET
        )
        logger.info(f"Verified webhook event: {event['type']}, id={event['id']}")
        return event
    except ValueError as e:
        logger.error(f"Invalid webhook payload: {e}")
        raise ValueError(f"Invalid webhook payload: {e}")
    except stripe.SignatureVerificationError as e:
        logger.error(f"Webhook signature verification failed: {e}")
        raise ValueError(f"Invalid signature: {e}")


def cancel_remote_subscription(provider_id: str, timeout: float = PAYMENT_PROVIDER_TIMEOUT_SECONDS) -> None:
    """
    Cancel a subscription at Stripe immediately.

    The HTTP call is bounded by `timeout` seconds and is not retried.

    Raises:
        StripeNotConfiguredError: STRIPE_SECRET_KEY is not set
        stripe.StripeError: Stripe rejected the call or was unreachable
    """
    _client(timeout).subscriptions.cancel(provider_id)
    logger.info(f"Canceled Stripe subscription: subscription_id={provider_id}")
