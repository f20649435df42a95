"""
Subscription lifecycle and access entitlement.

Three parts share the `subscriptions` table:

- State transition commands: the only legal way to change a subscription's
  status (create trial, activate, mark past due, cancel, expire). Each one is
  a single-row statement that writes an absolute target state, so webhook
  redelivery and concurrent callers converge on the same row.
- Entitlement evaluation: a pure function of the stored row and the current
  time, answering whether the user may use the paid product right now.
- Expiry sweep: a periodic job that moves rows whose trial or billing period
  has lapsed into the terminal EXPIRED state.

All datetimes are naive UTC. Every time-dependent function takes an optional
`now` so callers (and tests) can pin the clock.
"""
import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import and_, func, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from fintrack.core.config import TRIAL_DURATION_DAYS
from fintrack.db.models.subscription import Subscription, SubscriptionStatus

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 24 * 60 * 60

# Statuses whose access is bounded by current_period_end
PERIOD_BOUND_STATUSES = (SubscriptionStatus.ACTIVE, SubscriptionStatus.CANCELED)

# Source states each command may leave. EXPIRED is terminal for all of them.
PAST_DUE_FROM = (SubscriptionStatus.ACTIVE, SubscriptionStatus.PAST_DUE)
CANCEL_FROM = (
    SubscriptionStatus.TRIALING,
    SubscriptionStatus.ACTIVE,
    SubscriptionStatus.PAST_DUE,
    SubscriptionStatus.CANCELED,
)
EXPIRE_FROM = (
    SubscriptionStatus.TRIALING,
    SubscriptionStatus.ACTIVE,
    SubscriptionStatus.PAST_DUE,
    SubscriptionStatus.CANCELED,
)


class SubscriptionError(ValueError):
    """Base class for subscription command failures."""


class SubscriptionNotFoundError(SubscriptionError):
    """The user has no subscription row to act on."""

    def __init__(self, user_id: int):
        super().__init__(f"Subscription not found for user_id={user_id}")
        self.user_id = user_id


class SubscriptionAlreadyExistsError(SubscriptionError):
    """A trial was requested for a user who already has a subscription."""

    def __init__(self, user_id: int):
        super().__init__(f"Subscription already exists for user_id={user_id}")
        self.user_id = user_id


def utcnow() -> datetime:
    """Current time as naive UTC, the representation stored in the database."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalize an aware datetime to naive UTC; naive values are assumed UTC."""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _resolve_now(now: Optional[datetime]) -> datetime:
    return to_naive_utc(now) if now is not None else utcnow()


# ============================================
# Lookups
# ============================================

def get_subscription(db: Session, user_id: int) -> Optional[Subscription]:
    """Fetch the subscription row for a user, or None."""
    return db.query(Subscription).filter(Subscription.user_id == user_id).first()


def find_subscription_by_provider_id(db: Session, provider_id: str) -> Optional[Subscription]:
    """Fetch a subscription by its payment provider subscription id."""
    if not provider_id:
        return None
    return db.query(Subscription).filter(Subscription.payment_provider_id == provider_id).first()


def _update_existing(
    db: Session,
    user_id: int,
    values: Dict[Any, Any],
    allowed_from: Optional[Tuple[SubscriptionStatus, ...]] = None,
) -> bool:
    """
    Apply a single-row UPDATE keyed by user_id.

    With `allowed_from`, only a row currently in one of those statuses is
    updated; a row in any other status is left alone and False is returned.

    Raises:
        SubscriptionNotFoundError: The user has no subscription row
    """
    query = db.query(Subscription).filter(Subscription.user_id == user_id)
    if allowed_from is not None:
        query = query.filter(Subscription.status.in_(allowed_from))

    matched = query.update(values, synchronize_session=False)

    if matched:
        db.commit()
        return True

    db.rollback()
    current = db.query(Subscription.status).filter(Subscription.user_id == user_id).first()
    if current is None:
        raise SubscriptionNotFoundError(user_id)

    logger.warning(f"Subscription transition skipped: user_id={user_id}, status={current.status.value}")
    return False


# ============================================
# State transition commands
# ============================================

def create_trial_subscription(db: Session, user_id: int, now: Optional[datetime] = None) -> Subscription:
    """
    Start a free trial for a user.

    The trial ends TRIAL_DURATION_DAYS after `now`. An existing subscription is
    never overwritten, so a paying user's trial clock cannot be reset.

    Raises:
        SubscriptionAlreadyExistsError: The user already has a subscription
    """
    now = _resolve_now(now)

    if db.query(Subscription.id).filter(Subscription.user_id == user_id).first():
        raise SubscriptionAlreadyExistsError(user_id)

    subscription = Subscription(
        user_id=user_id,
        status=SubscriptionStatus.TRIALING,
        trial_ends_at=now + timedelta(days=TRIAL_DURATION_DAYS),
    )
    db.add(subscription)

    try:
        db.commit()
    except IntegrityError as e:
        # Lost a race with a concurrent insert for the same user
        db.rollback()
        raise SubscriptionAlreadyExistsError(user_id) from e

    db.refresh(subscription)
    logger.info(f"Trial started: user_id={user_id}, trial_ends_at={subscription.trial_ends_at.isoformat()}")
    return subscription


def activate_subscription(
    db: Session,
    user_id: int,
    period_start: datetime,
    period_end: datetime,
    now: Optional[datetime] = None,
) -> Subscription:
    """
    Mark a subscription as paid for the given billing period.

    Upsert keyed by user_id: an existing row moves to ACTIVE with the new
    period and a cleared canceled_at; a missing row (direct signup without a
    trial) is created ACTIVE, with trial_ends_at recording the conversion time.
    Used both for first payment and for recovery from PAST_DUE.

    Raises:
        ValueError: period_end is not after period_start
    """
    now = _resolve_now(now)
    period_start = to_naive_utc(period_start)
    period_end = to_naive_utc(period_end)

    if period_start is None or period_end is None:
        raise ValueError("Billing period start and end are required")
    if period_end <= period_start:
        raise ValueError(
            f"Invalid billing period: end {period_end.isoformat()} is not after start {period_start.isoformat()}"
        )

    values = {
        Subscription.status: SubscriptionStatus.ACTIVE,
        Subscription.current_period_start: period_start,
        Subscription.current_period_end: period_end,
        Subscription.canceled_at: None,
    }

    matched = db.query(Subscription).filter(
        Subscription.user_id == user_id
    ).update(values, synchronize_session=False)

    if matched:
        db.commit()
    else:
        db.add(Subscription(
            user_id=user_id,
            status=SubscriptionStatus.ACTIVE,
            trial_ends_at=now,
            current_period_start=period_start,
            current_period_end=period_end,
        ))
        try:
            db.commit()
        except IntegrityError:
            # Row appeared concurrently; fall back to the update path
            db.rollback()
            _update_existing(db, user_id, values)

    logger.info(
        f"Subscription activated: user_id={user_id}, "
        f"period_start={period_start.isoformat()}, period_end={period_end.isoformat()}"
    )
    return get_subscription(db, user_id)


def mark_subscription_past_due(db: Session, user_id: int) -> bool:
    """
    Payment failed: move an ACTIVE subscription to PAST_DUE.

    Trial and period fields are untouched. Any other status (a late failure
    for a row the sweep already expired, say) is left as it is.

    Returns:
        True if the row is now PAST_DUE
    """
    if not _update_existing(
        db, user_id, {Subscription.status: SubscriptionStatus.PAST_DUE}, allowed_from=PAST_DUE_FROM
    ):
        return False
    logger.warning(f"Subscription past due: user_id={user_id}")
    return True


def cancel_subscription(db: Session, user_id: int, now: Optional[datetime] = None) -> bool:
    """
    Cancel a subscription.

    current_period_end is kept so access continues through the paid period.
    canceled_at is only stamped the first time; cancelling again leaves the
    row exactly as it was. An EXPIRED row stays EXPIRED.

    Returns:
        True if the row is now CANCELED
    """
    now = _resolve_now(now)
    if not _update_existing(db, user_id, {
        Subscription.status: SubscriptionStatus.CANCELED,
        Subscription.canceled_at: func.coalesce(Subscription.canceled_at, now),
    }, allowed_from=CANCEL_FROM):
        return False
    logger.info(f"Subscription canceled: user_id={user_id}")
    return True


def expire_subscription(db: Session, user_id: int) -> bool:
    """Move a subscription to the terminal EXPIRED state. No-op if already EXPIRED."""
    if not _update_existing(
        db, user_id, {Subscription.status: SubscriptionStatus.EXPIRED}, allowed_from=EXPIRE_FROM
    ):
        return False
    logger.info(f"Subscription expired: user_id={user_id}")
    return True


def link_payment_provider(
    db: Session,
    user_id: int,
    provider: str,
    provider_id: str,
    customer_id: Optional[str] = None,
) -> None:
    """Record the payment provider's ids on the user's subscription. Status is untouched."""
    values = {
        Subscription.payment_provider: provider,
        Subscription.payment_provider_id: provider_id,
    }
    if customer_id:
        values[Subscription.payment_customer_id] = customer_id

    _update_existing(db, user_id, values)
    logger.info(f"Payment provider linked: user_id={user_id}, provider={provider}, provider_id={provider_id}")


def update_subscription_period(db: Session, user_id: int, period_start: datetime, period_end: datetime) -> None:
    """Replace the billing window without changing status."""
    period_start = to_naive_utc(period_start)
    period_end = to_naive_utc(period_end)
    if period_end <= period_start:
        raise ValueError(
            f"Invalid billing period: end {period_end.isoformat()} is not after start {period_start.isoformat()}"
        )

    _update_existing(db, user_id, {
        Subscription.current_period_start: period_start,
        Subscription.current_period_end: period_end,
    })
    logger.info(f"Subscription period updated: user_id={user_id}, period_end={period_end.isoformat()}")


# ============================================
# Entitlement evaluation
# ============================================

@dataclass(frozen=True)
class SubscriptionState:
    """Point-in-time entitlement answer for one user."""
    status: SubscriptionStatus
    is_active: bool
    can_access_app: bool
    trial_ends_at: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    days_remaining: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        status = self.status.value if isinstance(self.status, SubscriptionStatus) else str(self.status)
        return {
            "status": status,
            "isActive": self.is_active,
            "canAccessApp": self.can_access_app,
            "trialEndsAt": self.trial_ends_at.isoformat() if self.trial_ends_at else None,
            "currentPeriodEnd": self.current_period_end.isoformat() if self.current_period_end else None,
            "daysRemaining": self.days_remaining,
        }


NO_SUBSCRIPTION_STATE = SubscriptionState(
    status=SubscriptionStatus.EXPIRED,
    is_active=False,
    can_access_app=False,
)


def compute_days_remaining(deadline: datetime, now: datetime) -> int:
    """Whole days until `deadline`, rounded to nearest with halves rounding up."""
    remaining_days = (deadline - now).total_seconds() / SECONDS_PER_DAY
    return int(math.floor(remaining_days + 0.5))


def _before(deadline: Optional[datetime], now: datetime) -> bool:
    # A deadline equal to now has lapsed
    return deadline is not None and now < deadline


def evaluate_subscription(subscription: Optional[Subscription], now: Optional[datetime] = None) -> SubscriptionState:
    """
    Map a stored subscription row to its entitlement at `now`.

    | status    | is_active              | can_access_app          |
    |-----------|------------------------|-------------------------|
    | (no row)  | False                  | False                   |
    | TRIALING  | now < trial_ends_at    | same as is_active       |
    | ACTIVE    | now < current_period_end | same as is_active     |
    | PAST_DUE  | False                  | True (billing grace)    |
    | CANCELED  | False                  | now < current_period_end |
    | EXPIRED   | False                  | False                   |

    days_remaining is only reported while is_active. Unknown statuses are
    denied and logged as errors.
    """
    if subscription is None:
        return NO_SUBSCRIPTION_STATE

    now = _resolve_now(now)
    status = subscription.status
    trial_ends_at = subscription.trial_ends_at
    current_period_end = subscription.current_period_end

    deadline = None
    if status == SubscriptionStatus.TRIALING:
        is_active = _before(trial_ends_at, now)
        can_access_app = is_active
        deadline = trial_ends_at
    elif status == SubscriptionStatus.ACTIVE:
        is_active = _before(current_period_end, now)
        can_access_app = is_active
        deadline = current_period_end
    elif status == SubscriptionStatus.PAST_DUE:
        is_active = False
        can_access_app = True
    elif status == SubscriptionStatus.CANCELED:
        is_active = False
        can_access_app = _before(current_period_end, now)
    elif status == SubscriptionStatus.EXPIRED:
        is_active = False
        can_access_app = False
    else:
        logger.error(
            f"Unknown subscription status {status!r} for user_id={subscription.user_id}; denying access"
        )
        is_active = False
        can_access_app = False

    days_remaining = compute_days_remaining(deadline, now) if is_active else None

    return SubscriptionState(
        status=status,
        is_active=is_active,
        can_access_app=can_access_app,
        trial_ends_at=trial_ends_at,
        current_period_end=current_period_end,
        days_remaining=days_remaining,
    )


def get_subscription_state(db: Session, user_id: int, now: Optional[datetime] = None) -> SubscriptionState:
    """Evaluate a user's entitlement against the current time. Never cached."""
    return evaluate_subscription(get_subscription(db, user_id), now)


def has_active_subscription(db: Session, user_id: int, now: Optional[datetime] = None) -> bool:
    """
    True only for a running trial or a paid, unexpired period.

    Narrower than can_access_app: PAST_DUE grace and the remaining paid days of
    a CANCELED subscription do not count.
    """
    return get_subscription_state(db, user_id, now).is_active


# ============================================
# Expiry sweep
# ============================================

def _lapsed_trial(now: datetime):
    return and_(
        Subscription.status == SubscriptionStatus.TRIALING,
        Subscription.trial_ends_at < now,
    )


def _lapsed_period(now: datetime):
    return and_(
        Subscription.status.in_(PERIOD_BOUND_STATUSES),
        Subscription.current_period_end < now,
    )


def get_expired_subscriptions(db: Session, now: Optional[datetime] = None) -> List[int]:
    """
    User ids whose trial or billing period has lapsed but are not yet EXPIRED.

    PAST_DUE rows are never included.
    """
    now = _resolve_now(now)

    expired_trials = db.query(Subscription.user_id).filter(_lapsed_trial(now)).all()
    expired_periods = db.query(Subscription.user_id).filter(_lapsed_period(now)).all()

    # Order-preserving de-duplication
    return list(dict.fromkeys(row.user_id for row in expired_trials + expired_periods))


def process_expired_subscriptions(db: Session, now: Optional[datetime] = None) -> int:
    """
    Move every lapsed subscription to EXPIRED in one bulk update.

    The update re-checks the lapse predicate, so rows that were expired or
    re-activated by another worker in the meantime are left alone. Safe to
    run repeatedly or concurrently; a second run finds nothing.

    Returns:
        Number of rows moved to EXPIRED
    """
    now = _resolve_now(now)
    user_ids = get_expired_subscriptions(db, now)

    if not user_ids:
        logger.info("Expiry sweep: no subscriptions to expire")
        return 0

    expired_count = db.query(Subscription).filter(
        Subscription.user_id.in_(user_ids),
        or_(_lapsed_trial(now), _lapsed_period(now)),
    ).update({Subscription.status: SubscriptionStatus.EXPIRED}, synchronize_session=False)
    db.commit()

    logger.info(f"Expiry sweep: expired {expired_count} subscription(s)")
    return expired_count
