"""Turns verified Stripe event payloads into typed event variants."""

from typing import Any

import structlog
from pydantic import ValidationError

from editais.constants import (
    EVENT_CHECKOUT_ASYNC_PAYMENT_SUCCEEDED,
    EVENT_CHECKOUT_COMPLETED,
    EVENT_INVOICE_PAYMENT_FAILED,
    EVENT_SUBSCRIPTION_DELETED,
    EVENT_SUBSCRIPTION_UPDATED,
    METADATA_DOCUMENT_ID,
    METADATA_PLAN_ID,
    METADATA_ROLE_ID,
    METADATA_USER_ID,
)
from editais.errors import MalformedEventError
from editais.models.entitlements import GrantScope, Tier
from editais.models.events import (
    CheckoutCompleted,
    IgnoredEvent,
    PaymentFailed,
    ProviderEvent,
    SubscriptionDeleted,
    SubscriptionUpdated,
)

logger = structlog.get_logger(__name__)


def _reference(value: Any) -> str | None:
    """Stripe sends either an id string or an expanded object with an ``id``."""
    if isinstance(value, str) and value:
        return value
    if isinstance(value, dict) and value.get("id"):
        return str(value["id"])
    return None


def _parse_scope(event_id: str, tier: Tier, metadata: dict) -> GrantScope | None:
    if not tier.is_scoped:
        return None

    document_id = metadata.get(METADATA_DOCUMENT_ID)
    role_id = metadata.get(METADATA_ROLE_ID) if tier == Tier.ROLE else None
    if not document_id:
        raise MalformedEventError(event_id, f"{tier.value} checkout without {METADATA_DOCUMENT_ID}")
    if tier == Tier.ROLE and not role_id:
        raise MalformedEventError(event_id, f"{tier.value} checkout without {METADATA_ROLE_ID}")
    return GrantScope(document_id=str(document_id), role_id=str(role_id) if role_id else None)


def _parse_checkout(event_id: str, event_type: str, session: dict) -> ProviderEvent:
    # Delayed payment methods complete the session before the money arrives;
    # the grant is admitted on the async_payment_succeeded event instead.
    if event_type == EVENT_CHECKOUT_COMPLETED and session.get("payment_status") == "unpaid":
        logger.info("webhook_checkout_awaiting_payment", event_id=event_id)
        return IgnoredEvent(event_id=event_id, event_type=event_type)

    metadata = session.get("metadata") or {}
    user_id = metadata.get(METADATA_USER_ID)
    plan_id = metadata.get(METADATA_PLAN_ID)
    if not user_id or not plan_id:
        raise MalformedEventError(event_id, "checkout metadata is missing user_id or plan_id")

    try:
        tier = Tier(plan_id)
    except ValueError:
        raise MalformedEventError(event_id, f"unknown plan '{plan_id}'")
    if tier == Tier.TRIAL:
        raise MalformedEventError(event_id, "trial plan cannot be purchased")

    scope = _parse_scope(event_id, tier, metadata)
    payment_reference = _reference(session.get("payment_intent")) or _reference(session.get("id"))
    if not payment_reference:
        raise MalformedEventError(event_id, "checkout has no payment reference")

    customer_details = session.get("customer_details") or {}
    return CheckoutCompleted(
        event_id=event_id,
        user_id=str(user_id),
        tier=tier,
        scope=scope,
        payment_reference=payment_reference,
        subscription_reference=_reference(session.get("subscription")),
        customer_reference=_reference(session.get("customer")),
        customer_email=customer_details.get("email"),
    )


def _invoice_subscription(invoice: dict) -> str | None:
    subscription = _reference(invoice.get("subscription"))
    if subscription:
        return subscription
    # Newer API versions moved the reference under parent.subscription_details
    parent = invoice.get("parent") or {}
    details = parent.get("subscription_details") or {}
    return _reference(details.get("subscription"))


def parse_event(event: dict) -> ProviderEvent:
    """
    Map a verified Stripe event onto one of the engine's event variants.

    Raises:
        MalformedEventError: the event type is handled but its payload lacks
            what the engine needs (missing metadata, unknown plan, no ids).
    """
    event_id = str(event.get("id") or "")
    if not event_id:
        raise MalformedEventError("<unknown>", "event has no id")

    event_type = str(event.get("type") or "")
    data_object = (event.get("data") or {}).get("object") or {}

    try:
        if event_type in {EVENT_CHECKOUT_COMPLETED, EVENT_CHECKOUT_ASYNC_PAYMENT_SUCCEEDED}:
            return _parse_checkout(event_id, event_type, data_object)

        if event_type in {EVENT_SUBSCRIPTION_UPDATED, EVENT_SUBSCRIPTION_DELETED}:
            subscription_id = _reference(data_object.get("id"))
            if not subscription_id:
                raise MalformedEventError(event_id, "subscription event without subscription id")
            # Set through subscription_data.metadata at checkout
            user_id = (data_object.get("metadata") or {}).get(METADATA_USER_ID)
            if event_type == EVENT_SUBSCRIPTION_DELETED:
                return SubscriptionDeleted(
                    event_id=event_id,
                    subscription_reference=subscription_id,
                    user_id=user_id,
                )
            return SubscriptionUpdated(
                event_id=event_id,
                subscription_reference=subscription_id,
                user_id=user_id,
                provider_status=str(data_object.get("status") or ""),
                cancel_at_period_end=bool(data_object.get("cancel_at_period_end")),
            )

        if event_type == EVENT_INVOICE_PAYMENT_FAILED:
            subscription_id = _invoice_subscription(data_object)
            if not subscription_id:
                # One-off payments fail inside checkout and never reach a grant.
                return IgnoredEvent(event_id=event_id, event_type=event_type)
            return PaymentFailed(event_id=event_id, subscription_reference=subscription_id)
    except ValidationError as e:
        raise MalformedEventError(event_id, str(e)) from e

    return IgnoredEvent(event_id=event_id, event_type=event_type)
