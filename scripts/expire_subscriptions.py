"""
Expire lapsed trials and billing periods.

For cron-style schedulers that run a command instead of calling
GET /api/cron/subscriptions. Safe to run repeatedly.

Run: python -m scripts.expire_subscriptions
"""
import sys
import os

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import logging

from sqlalchemy.exc import SQLAlchemyError

from fintrack.core.config import LOG_LEVEL
from fintrack.db.session import SessionLocal
from fintrack.services.subscription_service import process_expired_subscriptions

logging.basicConfig(level=getattr(logging, LOG_LEVEL.upper(), logging.INFO))
logger = logging.getLogger(__name__)


def run() -> int:
    """Run one sweep; returns the number of subscriptions expired."""
    db = SessionLocal()
    try:
        return process_expired_subscriptions(db)
    except SQLAlchemyError:
        db.rollback()
        raise
    finally:
        db.close()


if __name__ == "__main__":
    try:
        expired_count = run()
    except SQLAlchemyError as e:
        logger.error(f"Subscription expiry sweep failed: {e}", exc_info=True)
        sys.exit(1)

    logger.info(f"Subscription expiry sweep done: expired {expired_count} subscription(s)")
