"""Grant and entitlement record models."""

import uuid
from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field, model_validator


class Tier(str, Enum):
    """Access tiers, totally ordered by ``rank``."""

    TRIAL = "plano_trial"
    ROLE = "plano_cargo"
    DOCUMENT = "plano_edital"
    UNLIMITED = "plano_anual"

    @property
    def rank(self) -> int:
        return TIER_RANK[self]

    @property
    def is_scoped(self) -> bool:
        return self in {Tier.ROLE, Tier.DOCUMENT}


TIER_RANK: dict[Tier, int] = {
    Tier.TRIAL: 0,
    Tier.ROLE: 1,
    Tier.DOCUMENT: 2,
    Tier.UNLIMITED: 3,
}


class GrantStatus(str, Enum):
    """Lifecycle status of a grant."""

    ACTIVE = "active"
    REFUND_REQUESTED = "refund_requested"
    REFUNDED = "refunded"
    CANCELED = "canceled"
    PAST_DUE = "past_due"
    # History-only markers
    SUPERSEDED = "superseded"
    EXPIRED = "expired"


# A pending refund has not been executed yet, so the grant keeps granting access.
ACCESS_STATUSES = {GrantStatus.ACTIVE, GrantStatus.REFUND_REQUESTED}


class GrantScope(BaseModel):
    """Content subset a scoped grant is restricted to.

    A document-level scope has no ``role_id``; a role-level scope names both the
    document and the role inside it.
    """

    document_id: str = Field(min_length=1)
    role_id: str | None = None

    def covers(self, requested: "GrantScope") -> bool:
        if requested.document_id != self.document_id:
            return False
        if self.role_id is None:
            return True
        return requested.role_id == self.role_id


class Grant(BaseModel):
    """A single purchased or trial-activated unit of access."""

    grant_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    tier: Tier
    scope: GrantScope | None = None
    status: GrantStatus = GrantStatus.ACTIVE
    start_date: datetime
    expiry_date: datetime | None = None

    payment_reference: str | None = None
    subscription_reference: str | None = None
    customer_reference: str | None = None

    refund_requested_at: datetime | None = None
    refunded_at: datetime | None = None
    ended_at: datetime | None = None
    scope_changed_at: datetime | None = None

    @model_validator(mode="after")
    def _check_scope_matches_tier(self) -> "Grant":
        if self.tier == Tier.ROLE:
            if self.scope is None or not self.scope.role_id:
                raise ValueError("role grants require a document_id and a role_id")
        elif self.tier == Tier.DOCUMENT:
            if self.scope is None or self.scope.role_id is not None:
                raise ValueError("document grants require a document_id and no role_id")
        elif self.scope is not None:
            raise ValueError(f"{self.tier.value} grants carry no scope")
        return self

    @property
    def grants_access(self) -> bool:
        return self.status in ACCESS_STATUSES


class EntitlementRecord(BaseModel):
    """Persisted entitlement state for one user."""

    user_id: str
    active_grants: list[Grant] = Field(default_factory=list)
    history: list[Grant] = Field(default_factory=list)
    # Derived from active_grants by the resolver; never set directly.
    effective_tier: Tier | None = None
    has_used_trial: bool = False
    customer_reference: str | None = None
    version: int = Field(default=0, ge=0)
    updated_at: datetime | None = None

    def find_active(
        self,
        *,
        payment_reference: str | None = None,
        subscription_reference: str | None = None,
        grant_id: str | None = None,
    ) -> Grant | None:
        for grant in self.active_grants:
            if payment_reference and grant.payment_reference == payment_reference:
                return grant
            if subscription_reference and grant.subscription_reference == subscription_reference:
                return grant
            if grant_id and grant.grant_id == grant_id:
                return grant
        return None

    def find_retired(self, payment_reference: str) -> Grant | None:
        """Most recently retired grant for this payment, if any."""
        for grant in reversed(self.history):
            if grant.payment_reference == payment_reference:
                return grant
        return None

    def knows_payment(self, payment_reference: str) -> bool:
        """True when a grant for this payment was ever admitted."""
        return any(
            grant.payment_reference == payment_reference
            for grant in [*self.active_grants, *self.history]
        )

    def retire(self, grant: Grant, status: GrantStatus, at: datetime) -> None:
        """Move an active grant to history with a terminal status."""
        self.active_grants = [g for g in self.active_grants if g.grant_id != grant.grant_id]
        grant.status = status
        grant.ended_at = at
        self.history.append(grant)
