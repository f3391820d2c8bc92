"""
Entitlement engine error hierarchy.

Provides:
- WebhookVerificationError / WebhookConfigurationError / MalformedEventError:
  inbound provider events that must be rejected without mutation
- LifecycleRejection (+ subclasses): precondition violations, each carrying a
  stable RejectionReason code
- ProviderError: Stripe call failed, local state untouched
- StorageError: record store failed, outcome unknown to the caller
"""

from enum import Enum


class RejectionReason(str, Enum):
    """Stable reason codes returned to API callers."""

    ALREADY_USED = "already_used"
    PAID_GRANT_ACTIVE = "paid_grant_active"
    NOT_ELIGIBLE = "not_eligible"
    WRONG_STATUS = "wrong_status"
    NOT_REFUNDABLE = "not_refundable"
    NOT_FOUND = "not_found"
    WRONG_TIER = "wrong_tier"
    SCOPE_ALREADY_CHANGED = "scope_already_changed"
    INVALID_SCOPE = "invalid_scope"
    UNAUTHORIZED = "unauthorized"


class EntitlementError(Exception):
    """Base exception for entitlement engine failures."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class WebhookConfigurationError(EntitlementError):
    """The webhook secret is not configured on this server."""


class WebhookVerificationError(EntitlementError):
    """Signature header missing or signature does not match the payload."""


class MalformedEventError(EntitlementError):
    """A verified event lacks the metadata the engine relies on."""

    def __init__(self, event_id: str, detail: str):
        self.event_id = event_id
        self.detail = detail
        super().__init__(f"Malformed event {event_id}: {detail}")


class LifecycleRejection(EntitlementError):
    """A lifecycle action was refused because a precondition does not hold."""

    reason: RejectionReason = RejectionReason.NOT_ELIGIBLE

    def __init__(self, message: str, reason: RejectionReason | None = None):
        if reason is not None:
            self.reason = reason
        super().__init__(message)

    def to_dict(self) -> dict:
        return {"code": self.reason.value, "message": self.message}


class AlreadyUsedError(LifecycleRejection):
    reason = RejectionReason.ALREADY_USED


class NotEligibleError(LifecycleRejection):
    reason = RejectionReason.NOT_ELIGIBLE


class WrongStatusError(LifecycleRejection):
    reason = RejectionReason.WRONG_STATUS


class NotRefundableError(LifecycleRejection):
    reason = RejectionReason.NOT_REFUNDABLE


class GrantNotFoundError(LifecycleRejection):
    reason = RejectionReason.NOT_FOUND


class WrongTierError(LifecycleRejection):
    reason = RejectionReason.WRONG_TIER


class UnauthorizedError(LifecycleRejection):
    reason = RejectionReason.UNAUTHORIZED


class ProviderError(EntitlementError):
    """Stripe call failed; the action can be retried by the caller."""


class StorageError(EntitlementError):
    """Reading or writing an entitlement record failed."""
