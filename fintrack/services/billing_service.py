"""
Billing service: Stripe webhook events mapped onto subscription commands.

Each handler resolves the local user, then calls exactly one state
transition command. Commands write absolute target states, so a redelivered
event re-applies the same result.
"""
import logging
import threading
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional, Tuple

from sqlalchemy.orm import Session

from fintrack.services import subscription_service
from fintrack.services.stripe_service import PROVIDER_NAME

logger = logging.getLogger(__name__)

PROCESSED_EVENT_TTL = timedelta(hours=24)


class UnresolvableEventError(ValueError):
    """The event cannot be mapped to a local user. Retrying will not help."""


# ============================================
# Duplicate delivery guard
# ============================================

_processed_events: Dict[str, datetime] = {}
_processed_events_lock = threading.Lock()


def _prune_processed_events(now: datetime) -> None:
    cutoff = now - PROCESSED_EVENT_TTL
    for event_id in [k for k, seen_at in _processed_events.items() if seen_at < cutoff]:
        del _processed_events[event_id]


def is_duplicate_event(event_id: Optional[str], now: Optional[datetime] = None) -> bool:
    """True if this event id was processed successfully within the last 24 hours."""
    if not event_id:
        return False
    now = now or subscription_service.utcnow()
    with _processed_events_lock:
        _prune_processed_events(now)
        return event_id in _processed_events


def mark_event_processed(event_id: Optional[str], now: Optional[datetime] = None) -> None:
    if not event_id:
        return
    with _processed_events_lock:
        _processed_events[event_id] = now or subscription_service.utcnow()


def reset_processed_events() -> None:
    with _processed_events_lock:
        _processed_events.clear()


# ============================================
# Payload helpers
# ============================================

def _from_timestamp(value: Optional[int]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc).replace(tzinfo=None)


def _invoice_subscription_id(invoice: Dict[str, Any]) -> Optional[str]:
    # Older API versions put the id at the top level; newer ones nest it under parent
    subscription_id = invoice.get("subscription")
    if subscription_id:
        return subscription_id
    details = (invoice.get("parent") or {}).get("subscription_details") or {}
    return details.get("subscription")


def _invoice_metadata(invoice: Dict[str, Any]) -> Dict[str, Any]:
    metadata = invoice.get("subscription_details") or (invoice.get("parent") or {}).get("subscription_details") or {}
    return metadata.get("metadata") or invoice.get("metadata") or {}


def _invoice_period(invoice: Dict[str, Any]) -> Tuple[Optional[datetime], Optional[datetime]]:
    lines = (invoice.get("lines") or {}).get("data") or []
    period = lines[0].get("period", {}) if lines else {}
    return _from_timestamp(period.get("start")), _from_timestamp(period.get("end"))


def _subscription_period(stripe_sub: Dict[str, Any]) -> Tuple[Optional[datetime], Optional[datetime]]:
    start = stripe_sub.get("current_period_start")
    end = stripe_sub.get("current_period_end")
    if start is None or end is None:
        # Newer API versions keep the period on each subscription item
        items = (stripe_sub.get("items") or {}).get("data") or []
        if items:
            start = items[0].get("current_period_start")
            end = items[0].get("current_period_end")
    return _from_timestamp(start), _from_timestamp(end)


def resolve_user_id(db: Session, metadata: Dict[str, Any], provider_id: Optional[str]) -> int:
    """
    Find the local user for an event: metadata.user_id first, then the
    subscription already linked to the provider id.

    Raises:
        UnresolvableEventError: Neither lookup identifies a user
    """
    user_id_str = (metadata or {}).get("user_id")
    if user_id_str:
        try:
            return int(user_id_str)
        except (TypeError, ValueError):
            logger.warning(f"Ignoring non-numeric metadata.user_id={user_id_str!r}")

    subscription = subscription_service.find_subscription_by_provider_id(db, provider_id)
    if subscription:
        return subscription.user_id

    raise UnresolvableEventError(f"Cannot identify user for provider subscription_id={provider_id}")


# ============================================
# Event handlers
# ============================================

def handle_subscription_created(event_data: Dict, db: Session) -> int:
    """customer.subscription.created: remember Stripe's ids on the local row."""
    stripe_sub = event_data.get("object", {})
    provider_id = stripe_sub.get("id")
    user_id = resolve_user_id(db, stripe_sub.get("metadata"), provider_id)

    subscription_service.link_payment_provider(
        db,
        user_id,
        provider=PROVIDER_NAME,
        provider_id=provider_id,
        customer_id=stripe_sub.get("customer"),
    )
    return user_id


def handle_subscription_updated(event_data: Dict, db: Session) -> int:
    """customer.subscription.updated: refresh the billing window, status untouched."""
    stripe_sub = event_data.get("object", {})
    provider_id = stripe_sub.get("id")
    user_id = resolve_user_id(db, stripe_sub.get("metadata"), provider_id)

    period_start, period_end = _subscription_period(stripe_sub)
    if period_start is None or period_end is None:
        logger.warning(f"customer.subscription.updated without a period: subscription_id={provider_id}")
        return user_id

    subscription_service.update_subscription_period(db, user_id, period_start, period_end)
    return user_id


def handle_subscription_deleted(event_data: Dict, db: Session) -> int:
    """customer.subscription.deleted: cancel locally; access runs to period end."""
    stripe_sub = event_data.get("object", {})
    user_id = resolve_user_id(db, stripe_sub.get("metadata"), stripe_sub.get("id"))
    subscription_service.cancel_subscription(db, user_id)
    return user_id


def handle_invoice_payment_succeeded(event_data: Dict, db: Session) -> int:
    """invoice.payment_succeeded / invoice.paid: activate for the invoiced period."""
    invoice = event_data.get("object", {})
    provider_id = _invoice_subscription_id(invoice)
    user_id = resolve_user_id(db, _invoice_metadata(invoice), provider_id)

    period_start, period_end = _invoice_period(invoice)
    if period_start is None or period_end is None:
        raise UnresolvableEventError(f"Invoice {invoice.get('id')} has no billing period")

    subscription_service.activate_subscription(db, user_id, period_start, period_end)
    return user_id


def handle_invoice_payment_failed(event_data: Dict, db: Session) -> int:
    """invoice.payment_failed: move to PAST_DUE while Stripe retries."""
    invoice = event_data.get("object", {})
    provider_id = _invoice_subscription_id(invoice)
    user_id = resolve_user_id(db, _invoice_metadata(invoice), provider_id)
    subscription_service.mark_subscription_past_due(db, user_id)
    return user_id


EVENT_HANDLERS: Dict[str, Callable[[Dict, Session], int]] = {
    "customer.subscription.created": handle_subscription_created,
    "customer.subscription.updated": handle_subscription_updated,
    "customer.subscription.deleted": handle_subscription_deleted,
    "invoice.payment_succeeded": handle_invoice_payment_succeeded,
    "invoice.paid": handle_invoice_payment_succeeded,
    "invoice.payment_failed": handle_invoice_payment_failed,
}


def process_webhook_event(event: Dict, db: Session) -> Dict[str, Any]:
    """
    Dispatch a verified Stripe event.

    Returns a small result dict for the HTTP response. Database errors
    propagate so the caller can ask Stripe to retry.

    Raises:
        UnresolvableEventError: The event cannot be mapped to a user
        SubscriptionNotFoundError: The user has no subscription row
    """
    event_id = event.get("id")
    event_type = event.get("type")

    if is_duplicate_event(event_id):
        logger.info(f"Duplicate webhook event acknowledged: id={event_id}, type={event_type}")
        return {"status": "duplicate", "event_id": event_id}

    handler = EVENT_HANDLERS.get(event_type)
    if handler is None:
        logger.debug(f"Ignoring webhook event type={event_type}")
        return {"status": "ignored", "event_type": event_type}

    user_id = handler(event.get("data", {}), db)
    mark_event_processed(event_id)

    logger.info(f"Webhook event processed: id={event_id}, type={event_type}, user_id={user_id}")
    return {"status": "processed", "event_type": event_type}
