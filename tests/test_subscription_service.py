"""
Unit tests for subscription state transitions and entitlement evaluation.
"""
import pytest
from datetime import datetime, timedelta, timezone
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from fintrack.db.base import Base
from fintrack.db.models.user import User
from fintrack.db.models.subscription import Subscription, SubscriptionStatus
from fintrack.services.subscription_service import (
    SubscriptionAlreadyExistsError,
    SubscriptionNotFoundError,
    activate_subscription,
    cancel_subscription,
    compute_days_remaining,
    create_trial_subscription,
    evaluate_subscription,
    expire_subscription,
    get_subscription,
    get_subscription_state,
    has_active_subscription,
    link_payment_provider,
    mark_subscription_past_due,
    update_subscription_period,
)


# Setup in-memory SQLite database for testing
TEST_DATABASE_URL = "sqlite:///:memory:"
test_engine = create_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=test_engine)

NOW = datetime(2026, 3, 1, 12, 0, 0)


@pytest.fixture(scope="function")
def db():
    """Create a fresh database for each test."""
    Base.metadata.create_all(bind=test_engine)
    db = TestSessionLocal()
    try:
        yield db
    finally:
        db.close()
        Base.metadata.drop_all(bind=test_engine)


@pytest.fixture
def user(db):
    user = User(full_name="Test User", email="test@example.com", password_hash="x")
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


def _row(status, trial_ends_at=None, current_period_end=None):
    """Unsaved subscription row for evaluator tests."""
    return Subscription(
        user_id=1,
        status=status,
        trial_ends_at=trial_ends_at,
        current_period_end=current_period_end,
    )


# ============================================
# create_trial_subscription
# ============================================

def test_create_trial_sets_fourteen_day_window(db, user):
    sub = create_trial_subscription(db, user.id, now=NOW)

    assert sub.status == SubscriptionStatus.TRIALING
    assert sub.trial_ends_at == NOW + timedelta(days=14)
    assert sub.current_period_end is None
    assert sub.canceled_at is None


def test_create_trial_grants_access(db, user):
    create_trial_subscription(db, user.id, now=NOW)

    state = get_subscription_state(db, user.id, now=NOW)
    assert state.status == SubscriptionStatus.TRIALING
    assert state.is_active is True
    assert state.can_access_app is True
    assert state.days_remaining == 14


def test_create_trial_with_real_clock(db, user):
    before = datetime.utcnow()
    sub = create_trial_subscription(db, user.id)
    after = datetime.utcnow()

    assert before + timedelta(days=14) <= sub.trial_ends_at <= after + timedelta(days=14)


def test_create_trial_rejects_existing_subscription(db, user):
    activate_subscription(db, user.id, NOW, NOW + timedelta(days=30), now=NOW)

    with pytest.raises(SubscriptionAlreadyExistsError):
        create_trial_subscription(db, user.id, now=NOW)

    sub = get_subscription(db, user.id)
    assert sub.status == SubscriptionStatus.ACTIVE
    assert sub.current_period_end == NOW + timedelta(days=30)


def test_create_trial_twice_keeps_original_clock(db, user):
    create_trial_subscription(db, user.id, now=NOW)

    with pytest.raises(SubscriptionAlreadyExistsError):
        create_trial_subscription(db, user.id, now=NOW + timedelta(days=10))

    assert get_subscription(db, user.id).trial_ends_at == NOW + timedelta(days=14)


# ============================================
# activate_subscription
# ============================================

def test_activate_creates_row_for_direct_signup(db, user):
    sub = activate_subscription(db, user.id, NOW, NOW + timedelta(days=15), now=NOW)

    assert sub.status == SubscriptionStatus.ACTIVE
    assert sub.current_period_start == NOW
    assert sub.current_period_end == NOW + timedelta(days=15)

    state = get_subscription_state(db, user.id, now=NOW)
    assert state.is_active is True
    assert state.can_access_app is True
    assert state.days_remaining == 15


def test_activate_converts_trial(db, user):
    create_trial_subscription(db, user.id, now=NOW)
    activate_subscription(db, user.id, NOW, NOW + timedelta(days=30), now=NOW)

    sub = get_subscription(db, user.id)
    assert sub.status == SubscriptionStatus.ACTIVE
    assert sub.current_period_end == NOW + timedelta(days=30)
    assert db.query(Subscription).filter(Subscription.user_id == user.id).count() == 1


def test_activate_recovers_past_due(db, user):
    activate_subscription(db, user.id, NOW, NOW + timedelta(days=30), now=NOW)
    mark_subscription_past_due(db, user.id)

    new_start = NOW + timedelta(days=30)
    activate_subscription(db, user.id, new_start, new_start + timedelta(days=30), now=new_start)

    sub = get_subscription(db, user.id)
    assert sub.status == SubscriptionStatus.ACTIVE
    assert sub.current_period_start == new_start


def test_activate_clears_canceled_at(db, user):
    activate_subscription(db, user.id, NOW, NOW + timedelta(days=30), now=NOW)
    cancel_subscription(db, user.id, now=NOW + timedelta(days=1))
    assert get_subscription(db, user.id).canceled_at is not None

    activate_subscription(db, user.id, NOW, NOW + timedelta(days=60), now=NOW)

    sub = get_subscription(db, user.id)
    assert sub.status == SubscriptionStatus.ACTIVE
    assert sub.canceled_at is None


def test_activate_twice_is_idempotent(db, user):
    end = NOW + timedelta(days=30)
    first = activate_subscription(db, user.id, NOW, end, now=NOW)
    first_values = (first.status, first.current_period_start, first.current_period_end, first.canceled_at)

    second = activate_subscription(db, user.id, NOW, end, now=NOW)

    assert (second.status, second.current_period_start, second.current_period_end, second.canceled_at) == first_values
    assert db.query(Subscription).count() == 1


def test_activate_rejects_inverted_period(db, user):
    with pytest.raises(ValueError):
        activate_subscription(db, user.id, NOW, NOW - timedelta(days=1), now=NOW)

    assert get_subscription(db, user.id) is None


# ============================================
# mark_subscription_past_due / cancel / expire
# ============================================

def test_past_due_keeps_access_regardless_of_dates(db, user):
    activate_subscription(db, user.id, NOW - timedelta(days=60), NOW - timedelta(days=30), now=NOW)
    mark_subscription_past_due(db, user.id)

    sub = get_subscription(db, user.id)
    assert sub.current_period_end == NOW - timedelta(days=30)

    state = get_subscription_state(db, user.id, now=NOW)
    assert state.status == SubscriptionStatus.PAST_DUE
    assert state.is_active is False
    assert state.can_access_app is True
    assert state.days_remaining is None


def test_past_due_without_row_is_not_found(db, user):
    with pytest.raises(SubscriptionNotFoundError):
        mark_subscription_past_due(db, user.id)


def test_cancel_keeps_access_through_paid_period(db, user):
    activate_subscription(db, user.id, NOW - timedelta(days=20), NOW + timedelta(days=10), now=NOW)
    cancel_subscription(db, user.id, now=NOW)

    sub = get_subscription(db, user.id)
    assert sub.status == SubscriptionStatus.CANCELED
    assert sub.canceled_at == NOW
    assert sub.current_period_end == NOW + timedelta(days=10)

    state = get_subscription_state(db, user.id, now=NOW)
    assert state.is_active is False
    assert state.can_access_app is True
    assert state.days_remaining is None


def test_cancel_after_period_end_denies_access(db, user):
    activate_subscription(db, user.id, NOW - timedelta(days=40), NOW - timedelta(days=10), now=NOW)
    cancel_subscription(db, user.id, now=NOW)

    assert get_subscription_state(db, user.id, now=NOW).can_access_app is False


def test_cancel_trial_without_period_denies_access(db, user):
    create_trial_subscription(db, user.id, now=NOW)
    cancel_subscription(db, user.id, now=NOW)

    state = get_subscription_state(db, user.id, now=NOW)
    assert state.status == SubscriptionStatus.CANCELED
    assert state.can_access_app is False


def test_cancel_twice_is_idempotent(db, user):
    activate_subscription(db, user.id, NOW, NOW + timedelta(days=30), now=NOW)
    cancel_subscription(db, user.id, now=NOW)
    cancel_subscription(db, user.id, now=NOW + timedelta(hours=1))

    sub = get_subscription(db, user.id)
    assert sub.status == SubscriptionStatus.CANCELED
    assert sub.canceled_at == NOW


def test_cancel_without_row_does_not_create_one(db, user):
    with pytest.raises(SubscriptionNotFoundError):
        cancel_subscription(db, user.id, now=NOW)

    assert get_subscription(db, user.id) is None


def test_expire_is_terminal_and_idempotent(db, user):
    create_trial_subscription(db, user.id, now=NOW)
    expire_subscription(db, user.id)
    expire_subscription(db, user.id)

    state = get_subscription_state(db, user.id, now=NOW)
    assert state.status == SubscriptionStatus.EXPIRED
    assert state.can_access_app is False


def test_expire_without_row_is_not_found(db, user):
    with pytest.raises(SubscriptionNotFoundError):
        expire_subscription(db, user.id)


def test_past_due_after_expiry_stays_expired(db, user):
    activate_subscription(db, user.id, NOW - timedelta(days=60), NOW - timedelta(days=30), now=NOW)
    expire_subscription(db, user.id)

    assert mark_subscription_past_due(db, user.id) is False

    sub = get_subscription(db, user.id)
    assert sub.status == SubscriptionStatus.EXPIRED
    state = get_subscription_state(db, user.id, now=NOW + timedelta(days=365))
    assert state.can_access_app is False


def test_past_due_from_trial_is_ignored(db, user):
    create_trial_subscription(db, user.id, now=NOW)

    assert mark_subscription_past_due(db, user.id) is False
    assert get_subscription(db, user.id).status == SubscriptionStatus.TRIALING


def test_past_due_twice_is_idempotent(db, user):
    activate_subscription(db, user.id, NOW, NOW + timedelta(days=30), now=NOW)

    assert mark_subscription_past_due(db, user.id) is True
    assert mark_subscription_past_due(db, user.id) is True
    assert get_subscription(db, user.id).status == SubscriptionStatus.PAST_DUE


def test_cancel_after_expiry_stays_expired(db, user):
    activate_subscription(db, user.id, NOW - timedelta(days=60), NOW - timedelta(days=30), now=NOW)
    expire_subscription(db, user.id)

    assert cancel_subscription(db, user.id, now=NOW) is False

    sub = get_subscription(db, user.id)
    assert sub.status == SubscriptionStatus.EXPIRED
    assert sub.canceled_at is None


def test_expire_twice_reports_no_change(db, user):
    create_trial_subscription(db, user.id, now=NOW)

    assert expire_subscription(db, user.id) is True
    assert expire_subscription(db, user.id) is False


def test_activate_after_expiry_restores_access(db, user):
    create_trial_subscription(db, user.id, now=NOW - timedelta(days=30))
    expire_subscription(db, user.id)

    activate_subscription(db, user.id, NOW, NOW + timedelta(days=30), now=NOW)

    state = get_subscription_state(db, user.id, now=NOW)
    assert state.status == SubscriptionStatus.ACTIVE
    assert state.can_access_app is True


def test_link_payment_provider_leaves_status(db, user):
    create_trial_subscription(db, user.id, now=NOW)
    link_payment_provider(db, user.id, "stripe", "sub_123", customer_id="cus_123")

    sub = get_subscription(db, user.id)
    assert sub.status == SubscriptionStatus.TRIALING
    assert sub.payment_provider == "stripe"
    assert sub.payment_provider_id == "sub_123"
    assert sub.payment_customer_id == "cus_123"


def test_update_period_leaves_status(db, user):
    activate_subscription(db, user.id, NOW, NOW + timedelta(days=30), now=NOW)
    mark_subscription_past_due(db, user.id)
    update_subscription_period(db, user.id, NOW + timedelta(days=30), NOW + timedelta(days=60))

    sub = get_subscription(db, user.id)
    assert sub.status == SubscriptionStatus.PAST_DUE
    assert sub.current_period_end == NOW + timedelta(days=60)


# ============================================
# Entitlement evaluation
# ============================================

def test_no_row_is_expired_without_access(db, user):
    state = get_subscription_state(db, user.id, now=NOW)

    assert state.status == SubscriptionStatus.EXPIRED
    assert state.is_active is False
    assert state.can_access_app is False
    assert state.days_remaining is None


def test_trial_with_seven_days_left():
    state = evaluate_subscription(_row(SubscriptionStatus.TRIALING, trial_ends_at=NOW + timedelta(days=7)), NOW)
    assert state.days_remaining == 7


def test_trial_lapsed_by_one_millisecond():
    sub = _row(SubscriptionStatus.TRIALING, trial_ends_at=NOW - timedelta(milliseconds=1))
    state = evaluate_subscription(sub, NOW)

    assert state.status == SubscriptionStatus.TRIALING
    assert state.is_active is False
    assert state.can_access_app is False
    assert state.days_remaining is None


def test_trial_ending_exactly_now_has_lapsed():
    state = evaluate_subscription(_row(SubscriptionStatus.TRIALING, trial_ends_at=NOW), NOW)
    assert state.is_active is False
    assert state.can_access_app is False


def test_trial_without_end_date_denies_access():
    state = evaluate_subscription(_row(SubscriptionStatus.TRIALING), NOW)
    assert state.can_access_app is False


def test_active_without_period_end_denies_access():
    state = evaluate_subscription(_row(SubscriptionStatus.ACTIVE), NOW)
    assert state.is_active is False
    assert state.can_access_app is False


def test_active_period_ending_exactly_now_has_lapsed():
    state = evaluate_subscription(_row(SubscriptionStatus.ACTIVE, current_period_end=NOW), NOW)
    assert state.is_active is False


def test_canceled_with_null_period_denies_access():
    state = evaluate_subscription(_row(SubscriptionStatus.CANCELED), NOW)
    assert state.can_access_app is False


def test_expired_denies_access_even_with_future_dates():
    sub = _row(
        SubscriptionStatus.EXPIRED,
        trial_ends_at=NOW + timedelta(days=5),
        current_period_end=NOW + timedelta(days=5),
    )
    state = evaluate_subscription(sub, NOW)
    assert state.is_active is False
    assert state.can_access_app is False


def test_unknown_status_is_denied(caplog):
    sub = _row("LIFETIME", current_period_end=NOW + timedelta(days=5))

    with caplog.at_level("ERROR"):
        state = evaluate_subscription(sub, NOW)

    assert state.is_active is False
    assert state.can_access_app is False
    assert "Unknown subscription status" in caplog.text


def test_state_to_dict_uses_client_keys():
    end = NOW + timedelta(days=3)
    state = evaluate_subscription(_row(SubscriptionStatus.ACTIVE, current_period_end=end), NOW)

    assert state.to_dict() == {
        "status": "ACTIVE",
        "isActive": True,
        "canAccessApp": True,
        "trialEndsAt": None,
        "currentPeriodEnd": end.isoformat(),
        "daysRemaining": 3,
    }


def test_days_remaining_rounding():
    assert compute_days_remaining(NOW + timedelta(days=1), NOW) == 1
    assert compute_days_remaining(NOW + timedelta(days=1.5), NOW) == 2
    assert compute_days_remaining(NOW + timedelta(days=1, hours=11), NOW) == 1
    assert compute_days_remaining(NOW + timedelta(hours=1), NOW) == 0


def test_aware_now_is_normalized_to_utc(db, user):
    create_trial_subscription(db, user.id, now=NOW)
    aware_now = (NOW + timedelta(days=7)).replace(tzinfo=timezone.utc)

    state = get_subscription_state(db, user.id, now=aware_now)

    assert state.is_active is True
    assert state.days_remaining == 7


def test_aware_now_in_other_offset_is_normalized():
    sub = _row(SubscriptionStatus.ACTIVE, current_period_end=NOW + timedelta(hours=1))
    # 12:30 UTC written as 14:30+02:00
    aware_now = datetime(2026, 3, 1, 14, 30, tzinfo=timezone(timedelta(hours=2)))

    assert evaluate_subscription(sub, aware_now).is_active is True
    assert evaluate_subscription(sub, aware_now + timedelta(hours=1)).is_active is False


# ============================================
# has_active_subscription
# ============================================

def test_has_active_subscription_for_trial(db, user):
    create_trial_subscription(db, user.id, now=NOW)
    assert has_active_subscription(db, user.id, now=NOW) is True


def test_has_active_subscription_for_paid_period(db, user):
    activate_subscription(db, user.id, NOW, NOW + timedelta(days=30), now=NOW)
    assert has_active_subscription(db, user.id, now=NOW) is True
    assert has_active_subscription(db, user.id, now=NOW + timedelta(days=30)) is False


def test_has_active_subscription_missing_row(db, user):
    assert has_active_subscription(db, user.id, now=NOW) is False


def test_has_active_subscription_expired(db, user):
    create_trial_subscription(db, user.id, now=NOW)
    expire_subscription(db, user.id)
    assert has_active_subscription(db, user.id, now=NOW) is False


def test_has_active_subscription_excludes_grace_states(db, user):
    activate_subscription(db, user.id, NOW, NOW + timedelta(days=30), now=NOW)
    mark_subscription_past_due(db, user.id)
    assert has_active_subscription(db, user.id, now=NOW) is False

    cancel_subscription(db, user.id, now=NOW)
    assert get_subscription_state(db, user.id, now=NOW).can_access_app is True
    assert has_active_subscription(db, user.id, now=NOW) is False
