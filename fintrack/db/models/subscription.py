"""
Subscription model and lifecycle status.
"""
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Enum, Index
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship
import enum
from fintrack.db.base import Base


class SubscriptionStatus(str, enum.Enum):
    """Lifecycle states of a paid subscription. EXPIRED is terminal."""
    TRIALING = "TRIALING"
    ACTIVE = "ACTIVE"
    PAST_DUE = "PAST_DUE"
    CANCELED = "CANCELED"
    EXPIRED = "EXPIRED"


class Subscription(Base):
    """
    One subscription row per user.

    Status changes go through the commands in
    fintrack.services.subscription_service, never through direct writes.
    All datetimes are naive UTC.
    """
    __tablename__ = "subscriptions"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), unique=True, nullable=False, index=True)

    status = Column(Enum(SubscriptionStatus), nullable=False, default=SubscriptionStatus.TRIALING)

    trial_ends_at = Column(DateTime, nullable=True)
    current_period_start = Column(DateTime, nullable=True)
    current_period_end = Column(DateTime, nullable=True)
    canceled_at = Column(DateTime, nullable=True)

    # External billing references, opaque to the lifecycle engine
    payment_provider = Column(String, nullable=True)  # stripe
    payment_provider_id = Column(String, nullable=True, index=True)
    payment_customer_id = Column(String, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    user = relationship("User", back_populates="subscription")

    __table_args__ = (
        Index("idx_subscriptions_status_trial_end", "status", "trial_ends_at"),
        Index("idx_subscriptions_status_period_end", "status", "current_period_end"),
    )
