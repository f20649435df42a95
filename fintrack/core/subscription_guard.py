"""
Paid-feature gating.

FastAPI dependencies that evaluate the caller's subscription on every request
and reject with 403 when the entitlement check fails.
"""
import logging
from fastapi import Depends, HTTPException, status
from sqlalchemy.orm import Session

from fintrack.core.auth_dependency import get_db, get_current_user_obj
from fintrack.core.config import FRONTEND_URL
from fintrack.db.models.user import User
from fintrack.services.subscription_service import SubscriptionState, get_subscription_state

logger = logging.getLogger(__name__)


def _subscription_required(user: User, state: SubscriptionState, reason: str) -> HTTPException:
    subscription_status = getattr(state.status, "value", state.status)
    logger.warning(f"Subscription gate denied: user_id={user.id}, status={subscription_status}, reason={reason}")
    return HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail={
            "detail": "An active subscription is required. Subscribe to continue.",
            "code": "SUBSCRIPTION_REQUIRED",
            "status": subscription_status,
            "upgrade_url": f"{FRONTEND_URL}/pricing",
        },
    )


def require_app_access(
    user: User = Depends(get_current_user_obj),
    db: Session = Depends(get_db),
) -> User:
    """
    Allow trial, paid, past-due (grace) and canceled-but-paid-through users.
    """
    state = get_subscription_state(db, user.id)
    if not state.can_access_app:
        raise _subscription_required(user, state, "no_app_access")
    return user


def require_active_subscription(
    user: User = Depends(get_current_user_obj),
    db: Session = Depends(get_db),
) -> User:
    """Allow only a running trial or a paid, unexpired period."""
    state = get_subscription_state(db, user.id)
    if not state.is_active:
        raise _subscription_required(user, state, "not_active")
    return user
