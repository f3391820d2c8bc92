"""User and administrator initiated grant lifecycle actions."""

from datetime import UTC, datetime, timedelta
from typing import Protocol

import structlog
from pydantic import BaseModel

from editais.config import BillingConfig
from editais.errors import (
    AlreadyUsedError,
    GrantNotFoundError,
    LifecycleRejection,
    NotEligibleError,
    NotRefundableError,
    ProviderError,
    RejectionReason,
    UnauthorizedError,
    WrongStatusError,
    WrongTierError,
)
from editais.models.entitlements import EntitlementRecord, Grant, GrantScope, GrantStatus, Tier
from editais.services.admin_authorizer import AdminAuthorizer
from editais.services.entitlement_store import EntitlementStore

logger = structlog.get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class PaymentProvider(Protocol):
    """The Stripe calls lifecycle actions depend on."""

    async def schedule_cancellation(self, subscription_id: str) -> None:
        """Mark the subscription to end at the close of its current period."""

    async def refund_payment(self, payment_reference: str) -> str:
        """Issue a full refund of a grant's payment and return the provider's refund id."""


class RefundRequest(BaseModel):
    """A pending refund, as listed to administrators."""

    user_id: str
    grant: Grant


class LifecycleService:
    """
    Mediates lifecycle actions against the same records the webhook writes.

    Preconditions are evaluated inside the store's update cycle, against the
    record as freshly read, so a concurrent webhook cannot slip a change in
    between the check and the write. Actions that call Stripe do so before any
    local mutation; a provider failure leaves the record untouched.
    """

    def __init__(
        self,
        store: EntitlementStore,
        config: BillingConfig,
        admin_authorizer: AdminAuthorizer,
        payment_provider: PaymentProvider | None = None,
        now_provider=_utcnow,
    ) -> None:
        self.store = store
        self.config = config
        self.admin_authorizer = admin_authorizer
        self.payment_provider = payment_provider
        self.now_provider = now_provider

    def _within_grace_period(self, grant: Grant, now: datetime) -> bool:
        return now - grant.start_date < timedelta(days=self.config.grace_period_days)

    def _find_grant(self, record: EntitlementRecord, reference: str) -> Grant:
        """Look up an active grant by payment reference or grant id."""
        grant = record.find_active(payment_reference=reference, grant_id=reference)
        if grant is None:
            raise GrantNotFoundError(f"No active grant matches '{reference}'")
        return grant

    def _require_provider(self) -> PaymentProvider:
        if self.payment_provider is None:
            raise ProviderError("Payment provider is not configured")
        return self.payment_provider

    async def _require_admin(self, admin_id: str) -> None:
        if not await self.admin_authorizer.is_admin(admin_id):
            logger.warning("admin_action_denied", admin_id=admin_id)
            raise UnauthorizedError("Administrator privileges required")

    async def get_record(self, user_id: str) -> EntitlementRecord:
        return await self.store.get_or_empty(user_id)

    async def start_trial(self, user_id: str) -> EntitlementRecord:
        """Activate the one-time free trial."""

        def activate(record: EntitlementRecord) -> Grant:
            if record.has_used_trial:
                raise AlreadyUsedError("Free trial was already used")
            if any(g.grants_access and g.tier != Tier.TRIAL for g in record.active_grants):
                raise LifecycleRejection(
                    "A paid plan is already active", RejectionReason.PAID_GRANT_ACTIVE
                )

            now = self.now_provider()
            grant = Grant(
                tier=Tier.TRIAL,
                start_date=now,
                expiry_date=now + timedelta(days=self.config.trial_duration_days),
            )
            record.active_grants.append(grant)
            record.has_used_trial = True
            return grant

        record, grant = await self.store.update(user_id, activate)
        logger.info("trial_started", user_id=user_id, grant_id=grant.grant_id, expiry_date=grant.expiry_date)
        return record

    async def request_refund(self, user_id: str, reference: str) -> Grant:
        """Flag a paid grant for refund; access continues until an admin executes it."""

        def flag(record: EntitlementRecord) -> Grant:
            grant = self._find_grant(record, reference)
            if grant.tier == Tier.TRIAL:
                raise NotRefundableError("Free trials are not refundable")
            if grant.status != GrantStatus.ACTIVE:
                raise WrongStatusError(f"Grant is {grant.status.value}, not active")
            now = self.now_provider()
            if not self._within_grace_period(grant, now):
                raise NotEligibleError(
                    f"Refunds are only available within {self.config.grace_period_days} days of purchase"
                )
            grant.status = GrantStatus.REFUND_REQUESTED
            grant.refund_requested_at = now
            return grant

        _, grant = await self.store.update(user_id, flag)
        logger.info(
            "refund_requested",
            user_id=user_id,
            grant_id=grant.grant_id,
            payment_reference=grant.payment_reference,
        )
        return grant

    async def approve_refund(self, admin_id: str, user_id: str, payment_reference: str) -> EntitlementRecord:
        """
        Confirm a requested refund and retire the grant as refunded.

        When ``issue_provider_refunds`` is enabled the refund is issued through
        Stripe first; otherwise the operator has already refunded manually and
        this only records the completion.

        A pending refund outranks a subscription deletion: if Stripe ended the
        subscription first, the grant is already in history as refunded and
        approval only stamps ``refunded_at``. Approving a refund that was
        already completed changes nothing.

        Raises:
            UnauthorizedError: caller is not an administrator.
            GrantNotFoundError: no grant for that payment awaits a refund.
            ProviderError: Stripe refused or was unreachable (nothing changed).
        """
        await self._require_admin(admin_id)

        def refund_of(record: EntitlementRecord) -> Grant:
            grant = record.find_active(payment_reference=payment_reference)
            if grant is not None and grant.status == GrantStatus.REFUND_REQUESTED:
                return grant
            if grant is None:
                retired = record.find_retired(payment_reference)
                if retired is not None and retired.status == GrantStatus.REFUNDED:
                    return retired
            raise GrantNotFoundError(f"No pending refund request for payment '{payment_reference}'")

        provider_refund_id: str | None = None
        if self.config.issue_provider_refunds:
            grant = refund_of(await self.store.get_or_empty(user_id))
            if grant.refunded_at is None:
                provider_refund_id = await self._require_provider().refund_payment(payment_reference)

        def complete(record: EntitlementRecord) -> Grant:
            grant = refund_of(record)
            if grant.refunded_at is not None:
                return grant
            now = self.now_provider()
            if grant.status == GrantStatus.REFUND_REQUESTED:
                record.retire(grant, GrantStatus.REFUNDED, now)
            grant.refunded_at = now
            return grant

        try:
            record, grant = await self.store.update(user_id, complete)
        except GrantNotFoundError:
            if provider_refund_id is not None:
                logger.error(
                    "refund_issued_without_pending_grant",
                    user_id=user_id,
                    payment_reference=payment_reference,
                    refund_id=provider_refund_id,
                )
            raise

        logger.info(
            "refund_completed",
            admin_id=admin_id,
            user_id=user_id,
            grant_id=grant.grant_id,
            refund_id=provider_refund_id,
            effective_tier=record.effective_tier.value if record.effective_tier else None,
        )
        return record

    async def change_scope(self, user_id: str, reference: str, new_scope: GrantScope) -> Grant:
        """Move a scoped grant to another document or role, once, within the grace period."""

        def rescope(record: EntitlementRecord) -> Grant:
            grant = self._find_grant(record, reference)
            if not grant.tier.is_scoped:
                raise WrongTierError(f"{grant.tier.value} grants have no scope to change")
            if grant.status != GrantStatus.ACTIVE:
                raise WrongStatusError(f"Grant is {grant.status.value}, not active")
            if grant.scope_changed_at is not None:
                raise LifecycleRejection(
                    "The scope of this grant was already changed", RejectionReason.SCOPE_ALREADY_CHANGED
                )
            now = self.now_provider()
            if not self._within_grace_period(grant, now):
                raise NotEligibleError(
                    f"Scope changes are only available within {self.config.grace_period_days} days of purchase"
                )
            if (grant.tier == Tier.ROLE) != bool(new_scope.role_id):
                raise LifecycleRejection(
                    f"Scope does not fit a {grant.tier.value} grant", RejectionReason.INVALID_SCOPE
                )
            if new_scope == grant.scope:
                raise LifecycleRejection("Grant already has this scope", RejectionReason.INVALID_SCOPE)

            grant.scope = new_scope
            grant.scope_changed_at = now
            return grant

        _, grant = await self.store.update(user_id, rescope)
        logger.info(
            "grant_scope_changed",
            user_id=user_id,
            grant_id=grant.grant_id,
            document_id=new_scope.document_id,
            role_id=new_scope.role_id,
        )
        return grant

    async def cancel_subscription(self, user_id: str, subscription_reference: str) -> Grant:
        """
        Ask Stripe to stop renewing a recurring grant.

        The local record is not touched: the grant stays active until Stripe
        reports the subscription deleted through the webhook.
        """
        record = await self.store.get_or_empty(user_id)
        grant = record.find_active(subscription_reference=subscription_reference)
        if grant is None:
            raise GrantNotFoundError(f"No active subscription '{subscription_reference}'")
        if grant.tier not in self.config.recurring_tiers:
            raise WrongTierError(f"{grant.tier.value} grants are not recurring")
        if grant.status != GrantStatus.ACTIVE:
            raise WrongStatusError(f"Grant is {grant.status.value}, not active")

        await self._require_provider().schedule_cancellation(subscription_reference)
        logger.info("subscription_cancel_scheduled", user_id=user_id, subscription_id=subscription_reference)
        return grant

    async def list_refund_requests(self, admin_id: str) -> list[RefundRequest]:
        """Snapshot of every refund awaiting approval; may be stale by the time it is read.

        Includes grants whose subscription Stripe already ended while the
        refund was pending; they sit in history as refunded without a
        ``refunded_at``.
        """
        await self._require_admin(admin_id)
        pending: list[RefundRequest] = []
        for record in await self.store.list_records():
            pending.extend(
                RefundRequest(user_id=record.user_id, grant=grant)
                for grant in record.active_grants
                if grant.status == GrantStatus.REFUND_REQUESTED
            )
            pending.extend(
                RefundRequest(user_id=record.user_id, grant=grant)
                for grant in record.history
                if grant.status == GrantStatus.REFUNDED and grant.refunded_at is None
            )
        return pending

    async def expire_lapsed_grants(self, user_id: str) -> list[Grant]:
        """Retire one-off grants whose expiry date has passed.

        Recurring grants are left to Stripe, which reports their end through the
        subscription deletion event. Grants with a pending refund stay until an
        administrator approves it.
        """

        def expire(record: EntitlementRecord) -> list[Grant]:
            now = self.now_provider()
            lapsed = [
                grant
                for grant in record.active_grants
                if grant.status == GrantStatus.ACTIVE
                and grant.subscription_reference is None
                and grant.expiry_date is not None
                and grant.expiry_date <= now
            ]
            for grant in lapsed:
                record.retire(grant, GrantStatus.EXPIRED, now)
            return lapsed

        _, lapsed = await self.store.update(user_id, expire)
        if lapsed:
            logger.info("grants_expired", user_id=user_id, grant_ids=[g.grant_id for g in lapsed])
        return lapsed

    async def expire_all_lapsed_grants(self, admin_id: str) -> int:
        await self._require_admin(admin_id)
        expired = 0
        for record in await self.store.list_records():
            expired += len(await self.expire_lapsed_grants(record.user_id))
        return expired
