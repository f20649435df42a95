"""
Account deletion.

The user row is anonymized locally first. Cancelling the remote Stripe
subscription is best-effort: any provider failure is logged and the deletion
still succeeds.
"""
import logging
import uuid
from typing import Optional

from sqlalchemy.orm import Session

from fintrack.core.config import PAYMENT_PROVIDER_TIMEOUT_SECONDS
from fintrack.db.models.user import User
from fintrack.services import stripe_service
from fintrack.services.subscription_service import get_subscription, utcnow

logger = logging.getLogger(__name__)

ANONYMIZED_NAME = "Deleted User"
ANONYMIZED_EMAIL_DOMAIN = "deleted.local"


class AccountDeletionError(ValueError):
    """The account cannot be deleted as requested."""


def emails_match(account_email: Optional[str], confirm_email: Optional[str]) -> bool:
    """Case-insensitive comparison of the typed confirmation with the account email."""
    if not account_email or not confirm_email:
        return False
    return account_email.strip().lower() == confirm_email.strip().lower()


def delete_account(db: Session, user: User, confirm_email: str) -> None:
    """
    Soft-delete and anonymize a user, then cancel their remote subscription.

    The local subscription row is left alone; it lapses through the normal
    expiry sweep.

    Raises:
        AccountDeletionError: confirm_email does not match the account
    """
    if not emails_match(user.email, confirm_email):
        raise AccountDeletionError("Email confirmation does not match your account email")

    user_id = user.id
    subscription = get_subscription(db, user_id)
    provider_id = subscription.payment_provider_id if subscription else None

    user.email = f"deleted-{uuid.uuid4()}@{ANONYMIZED_EMAIL_DOMAIN}"
    user.full_name = ANONYMIZED_NAME
    user.password_hash = ""
    user.deleted_at = utcnow()
    db.commit()

    logger.info(f"User account deleted: user_id={user_id}")

    if provider_id:
        cancel_remote_subscription_best_effort(user_id, provider_id)


def cancel_remote_subscription_best_effort(user_id: int, provider_id: str) -> bool:
    """Returns True if the provider confirmed the cancellation."""
    try:
        stripe_service.cancel_remote_subscription(provider_id, timeout=PAYMENT_PROVIDER_TIMEOUT_SECONDS)
    except Exception as e:
        logger.error(
            f"Failed to cancel remote subscription during account deletion: "
            f"user_id={user_id}, subscription_id={provider_id}, error={e}"
        )
        return False

    logger.info(f"Remote subscription canceled for deleted account: user_id={user_id}, subscription_id={provider_id}")
    return True
