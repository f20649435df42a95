"""
Database models module.

This module imports all database models to ensure they are registered with SQLAlchemy's Base.metadata
before table creation.

All models must be imported here to be included in database migrations and table creation.
"""
from fintrack.db.models.user import User
from fintrack.db.models.subscription import Subscription, SubscriptionStatus

__all__ = [
    "User",
    "Subscription",
    "SubscriptionStatus",
]
