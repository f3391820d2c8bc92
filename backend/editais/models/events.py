"""Typed payment-provider event variants."""

from typing import Literal

from pydantic import BaseModel

from editais.models.entitlements import GrantScope, Tier


class CheckoutCompleted(BaseModel):
    """A checkout session was paid; carries the metadata set at session creation."""

    kind: Literal["checkout_completed"] = "checkout_completed"
    event_id: str
    user_id: str
    tier: Tier
    scope: GrantScope | None = None
    payment_reference: str
    subscription_reference: str | None = None
    customer_reference: str | None = None
    customer_email: str | None = None


class SubscriptionUpdated(BaseModel):
    """Recurring subscription changed state on the provider side."""

    kind: Literal["subscription_updated"] = "subscription_updated"
    event_id: str
    subscription_reference: str
    user_id: str | None = None
    provider_status: str
    cancel_at_period_end: bool = False


class SubscriptionDeleted(BaseModel):
    """Recurring subscription ended on the provider side."""

    kind: Literal["subscription_deleted"] = "subscription_deleted"
    event_id: str
    subscription_reference: str
    user_id: str | None = None


class PaymentFailed(BaseModel):
    """A recurring invoice payment failed."""

    kind: Literal["payment_failed"] = "payment_failed"
    event_id: str
    subscription_reference: str


class IgnoredEvent(BaseModel):
    """Any event type the engine does not act on."""

    kind: Literal["ignored"] = "ignored"
    event_id: str
    event_type: str


ProviderEvent = (
    CheckoutCompleted | SubscriptionUpdated | SubscriptionDeleted | PaymentFailed | IgnoredEvent
)
