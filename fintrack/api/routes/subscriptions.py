import logging
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from fintrack.core.auth_dependency import get_db, get_current_user_obj
from fintrack.core.config import SUBSCRIPTION_CURRENCY, SUBSCRIPTION_PRICE_CENTS, TRIAL_DURATION_DAYS
from fintrack.db.models.subscription import SubscriptionStatus
from fintrack.db.models.user import User
from fintrack.schemas.subscription import CheckoutSessionResponse, PortalSessionResponse, SubscriptionResponse
from fintrack.services import stripe_service
from fintrack.services.subscription_service import (
    SubscriptionNotFoundError,
    cancel_subscription,
    evaluate_subscription,
    get_subscription,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/subscriptions", tags=["Subscriptions"])

# Already paying; payment details are changed through the billing portal
PAID_STATUSES = (SubscriptionStatus.ACTIVE, SubscriptionStatus.PAST_DUE)


def _checkout_settings(user: User):
    try:
        return stripe_service.get_checkout_settings(user.id, user.email)
    except stripe_service.StripeNotConfiguredError:
        return None


def _subscription_payload(db: Session, user: User) -> dict:
    subscription = get_subscription(db, user.id)
    state = evaluate_subscription(subscription)

    return {
        "subscription": {
            **state.to_dict(),
            "paymentCustomerId": subscription.payment_customer_id if subscription else None,
            "paymentSubscriptionId": subscription.payment_provider_id if subscription else None,
        },
        "pricing": {
            "monthlyPriceCents": SUBSCRIPTION_PRICE_CENTS,
            "trialDays": TRIAL_DURATION_DAYS,
            "currency": SUBSCRIPTION_CURRENCY,
        },
        "checkout": _checkout_settings(user),
    }


@router.get("", response_model=SubscriptionResponse)
def get_my_subscription(
    user: User = Depends(get_current_user_obj),
    db: Session = Depends(get_db),
):
    """Current subscription state, pricing and checkout settings for the paywall and settings screens."""
    return _subscription_payload(db, user)


@router.post("/cancel", response_model=SubscriptionResponse)
def cancel_my_subscription(
    user: User = Depends(get_current_user_obj),
    db: Session = Depends(get_db),
):
    """
    Cancel at period end. Access continues until current_period_end.
    """
    try:
        cancel_subscription(db, user.id)
    except SubscriptionNotFoundError:
        raise HTTPException(status_code=404, detail="No subscription to cancel")

    return _subscription_payload(db, user)


# ✅ UPGRADE: trial (or lapsed) user starts a paid subscription
@router.post("/checkout", response_model=CheckoutSessionResponse)
def start_checkout(
    user: User = Depends(get_current_user_obj),
    db: Session = Depends(get_db),
):
    subscription = get_subscription(db, user.id)
    if subscription is not None and subscription.status in PAID_STATUSES:
        raise HTTPException(status_code=409, detail="Subscription already active; use the billing portal")

    try:
        return stripe_service.create_checkout_session(user.id, user.email)
    except stripe_service.StripeNotConfiguredError:
        raise HTTPException(status_code=503, detail="Payments are not configured")
    except ValueError as e:
        raise HTTPException(status_code=502, detail=str(e))


# ✅ BILLING PORTAL: update card, view invoices
@router.post("/portal", response_model=PortalSessionResponse)
def open_billing_portal(
    user: User = Depends(get_current_user_obj),
    db: Session = Depends(get_db),
):
    subscription = get_subscription(db, user.id)
    if subscription is None or not subscription.payment_customer_id:
        raise HTTPException(status_code=404, detail="No billing account")

    try:
        return stripe_service.create_billing_portal_session(subscription.payment_customer_id)
    except stripe_service.StripeNotConfiguredError:
        raise HTTPException(status_code=503, detail="Payments are not configured")
    except ValueError as e:
        raise HTTPException(status_code=502, detail=str(e))
