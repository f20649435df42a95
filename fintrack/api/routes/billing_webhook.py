import logging
from fastapi import APIRouter, Depends, Header, HTTPException, Request
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from fintrack.core.auth_dependency import get_db
from fintrack.services import billing_service, stripe_service
from fintrack.services.subscription_service import SubscriptionNotFoundError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/billing", tags=["Billing Webhook"])


@router.post("/webhook")
async def stripe_webhook(
    request: Request,
    stripe_signature: str = Header(None),
    db: Session = Depends(get_db),
):
    payload = await request.body()

    try:
        event = stripe_service.verify_webhook(payload, stripe_signature)
    except stripe_service.StripeNotConfiguredError as e:
        logger.error(f"Webhook rejected: {e}")
        raise HTTPException(status_code=500, detail="Webhook not configured")
    except ValueError as e:
        raise HTTPException(status_code=400, detail=f"Webhook verification failed: {e}")

    try:
        return billing_service.process_webhook_event(event, db)
    except SQLAlchemyError:
        # Transient: a non-2xx makes Stripe redeliver
        db.rollback()
        logger.exception(f"Webhook processing failed: id={event.get('id')}, type={event.get('type')}")
        raise HTTPException(status_code=500, detail="Webhook processing failed")
    except (billing_service.UnresolvableEventError, SubscriptionNotFoundError, ValueError) as e:
        # Permanent: acknowledge so Stripe stops retrying
        logger.warning(f"Webhook event not applied: id={event.get('id')}, type={event.get('type')}, reason={e}")
        return {"status": "error", "error": str(e)}
