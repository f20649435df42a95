"""
Scheduler endpoints, authorized with the shared CRON_SECRET bearer token.
"""
import logging
import secrets
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, Header
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from fintrack.core import config
from fintrack.core.auth_dependency import get_db
from fintrack.schemas.subscription import ExpirySweepResponse
from fintrack.services.subscription_service import process_expired_subscriptions

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/cron", tags=["Cron"])


def _authorized(authorization: Optional[str], cron_secret: str) -> bool:
    if not authorization:
        return False
    return secrets.compare_digest(authorization, f"Bearer {cron_secret}")


@router.get("/subscriptions", response_model=ExpirySweepResponse)
def expire_subscriptions(
    authorization: Optional[str] = Header(None),
    db: Session = Depends(get_db),
):
    """Move lapsed trials and billing periods to EXPIRED. Meant to run hourly."""
    cron_secret = config.CRON_SECRET
    if not cron_secret:
        logger.error("Cron subscription expiration: CRON_SECRET not configured")
        return JSONResponse(status_code=500, content={"error": "Server configuration error"})

    if not _authorized(authorization, cron_secret):
        logger.warning("Cron subscription expiration: unauthorized access attempt")
        return JSONResponse(status_code=401, content={"error": "Unauthorized"})

    try:
        expired_count = process_expired_subscriptions(db)
    except Exception:
        db.rollback()
        logger.exception("Cron subscription expiration failed")
        return JSONResponse(
            status_code=500,
            content={"success": False, "error": "Failed to process expired subscriptions"},
        )

    logger.info(f"Cron subscription expiration completed: expired_count={expired_count}")
    return {
        "success": True,
        "expiredCount": expired_count,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
