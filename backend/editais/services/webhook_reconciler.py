"""Applies payment-provider events to entitlement records."""

from datetime import UTC, datetime, timedelta
from enum import Enum

import structlog
from pydantic import BaseModel

from editais.config import BillingConfig
from editais.constants import DELINQUENT_SUBSCRIPTION_STATUSES
from editais.models.entitlements import EntitlementRecord, Grant, GrantStatus, Tier
from editais.models.events import (
    CheckoutCompleted,
    IgnoredEvent,
    PaymentFailed,
    ProviderEvent,
    SubscriptionDeleted,
    SubscriptionUpdated,
)
from editais.services.entitlement_store import EntitlementStore
from editais.services.notifier import Notifier

logger = structlog.get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class ReconcileOutcome(str, Enum):
    """What applying an event did to the record."""

    ADMITTED = "admitted"
    DUPLICATE = "duplicate"
    CANCELED = "canceled"
    REFUND_PENDING = "refund_pending"
    STATUS_CHANGED = "status_changed"
    NO_OP = "no_op"
    IGNORED = "ignored"


class ReconcileResult(BaseModel):
    event_id: str
    outcome: ReconcileOutcome
    user_id: str | None = None


class WebhookReconciler:
    """Reconciles verified provider events with a user's grant set.

    Each event touches at most one user's record, in a single store cycle.
    Redelivered events are detected through the payment or subscription
    reference and acknowledged without being applied twice.
    """

    def __init__(
        self,
        store: EntitlementStore,
        config: BillingConfig,
        notifier: Notifier | None = None,
        now_provider=_utcnow,
    ) -> None:
        self.store = store
        self.config = config
        self.notifier = notifier
        self.now_provider = now_provider

    async def apply(self, event: ProviderEvent) -> ReconcileResult:
        match event:
            case CheckoutCompleted():
                return await self._admit(event)
            case SubscriptionDeleted():
                return await self._end_subscription(event)
            case SubscriptionUpdated():
                return await self._sync_subscription(event)
            case PaymentFailed():
                return await self._mark_delinquent(event)
            case IgnoredEvent():
                logger.info("webhook_event_ignored", event_id=event.event_id, event_type=event.event_type)
                return ReconcileResult(event_id=event.event_id, outcome=ReconcileOutcome.IGNORED)

    async def _admit(self, event: CheckoutCompleted) -> ReconcileResult:
        if event.subscription_reference:
            await self.store.link_subscription(event.subscription_reference, event.user_id)

        def admit(record: EntitlementRecord) -> ReconcileOutcome:
            if record.knows_payment(event.payment_reference):
                return ReconcileOutcome.DUPLICATE

            now = self.now_provider()
            grant = Grant(
                tier=event.tier,
                scope=event.scope,
                start_date=now,
                expiry_date=now + timedelta(days=self.config.paid_plan_duration_days),
                payment_reference=event.payment_reference,
                subscription_reference=event.subscription_reference,
                customer_reference=event.customer_reference,
            )

            if grant.tier == Tier.UNLIMITED:
                for previous in list(record.active_grants):
                    record.retire(previous, GrantStatus.SUPERSEDED, now)
                record.active_grants = [grant]
            else:
                record.active_grants.append(grant)

            if record.customer_reference is None:
                record.customer_reference = event.customer_reference
            # Buying a plan forfeits the free trial.
            record.has_used_trial = True
            return ReconcileOutcome.ADMITTED

        record, outcome = await self.store.update(event.user_id, admit)

        if outcome == ReconcileOutcome.DUPLICATE:
            logger.info(
                "webhook_checkout_duplicate",
                event_id=event.event_id,
                user_id=event.user_id,
                payment_reference=event.payment_reference,
            )
            return ReconcileResult(event_id=event.event_id, outcome=outcome, user_id=event.user_id)

        logger.info(
            "webhook_checkout_admitted",
            event_id=event.event_id,
            user_id=event.user_id,
            tier=event.tier.value,
            effective_tier=record.effective_tier.value if record.effective_tier else None,
            active_grants=len(record.active_grants),
        )
        await self._notify_admission(event)
        return ReconcileResult(event_id=event.event_id, outcome=outcome, user_id=event.user_id)

    async def _notify_admission(self, event: CheckoutCompleted) -> None:
        if self.notifier is None:
            return
        try:
            await self.notifier.send_plan_confirmation(
                user_id=event.user_id, email=event.customer_email, tier=event.tier
            )
        except Exception as e:
            logger.warning(
                "plan_confirmation_failed",
                event_id=event.event_id,
                user_id=event.user_id,
                error=str(e),
            )

    async def _owner_of(self, subscription_reference: str, hinted_user_id: str | None) -> str | None:
        user_id = await self.store.find_user_for_subscription(subscription_reference)
        return user_id or hinted_user_id

    async def _end_subscription(self, event: SubscriptionDeleted) -> ReconcileResult:
        user_id = await self._owner_of(event.subscription_reference, event.user_id)
        if user_id is None:
            logger.warning(
                "webhook_subscription_owner_unknown",
                event_id=event.event_id,
                subscription_id=event.subscription_reference,
            )
            return ReconcileResult(event_id=event.event_id, outcome=ReconcileOutcome.NO_OP)

        def cancel(record: EntitlementRecord) -> ReconcileOutcome:
            grant = record.find_active(subscription_reference=event.subscription_reference)
            if grant is None:
                # Already retired (refund, supersession or an earlier delivery).
                return ReconcileOutcome.NO_OP
            # A pending refund outranks the cancellation; approval confirms it from history.
            if grant.status == GrantStatus.REFUND_REQUESTED:
                record.retire(grant, GrantStatus.REFUNDED, self.now_provider())
                return ReconcileOutcome.REFUND_PENDING
            record.retire(grant, GrantStatus.CANCELED, self.now_provider())
            return ReconcileOutcome.CANCELED

        record, outcome = await self.store.update(user_id, cancel)
        logger.info(
            "webhook_subscription_deleted",
            event_id=event.event_id,
            user_id=user_id,
            subscription_id=event.subscription_reference,
            outcome=outcome.value,
            effective_tier=record.effective_tier.value if record.effective_tier else None,
        )
        return ReconcileResult(event_id=event.event_id, outcome=outcome, user_id=user_id)

    async def _set_recurring_status(
        self,
        event_id: str,
        subscription_reference: str,
        user_id: str | None,
        target: GrantStatus,
    ) -> ReconcileResult:
        user_id = await self._owner_of(subscription_reference, user_id)
        if user_id is None:
            logger.warning(
                "webhook_subscription_owner_unknown",
                event_id=event_id,
                subscription_id=subscription_reference,
            )
            return ReconcileResult(event_id=event_id, outcome=ReconcileOutcome.NO_OP)

        # Only active <-> past_due moves here; refund and cancellation states stay put.
        source = GrantStatus.PAST_DUE if target == GrantStatus.ACTIVE else GrantStatus.ACTIVE

        def transition(record: EntitlementRecord) -> ReconcileOutcome:
            grant = record.find_active(subscription_reference=subscription_reference)
            if grant is None or grant.status != source:
                return ReconcileOutcome.NO_OP
            grant.status = target
            return ReconcileOutcome.STATUS_CHANGED

        _, outcome = await self.store.update(user_id, transition)
        if outcome == ReconcileOutcome.STATUS_CHANGED:
            logger.info(
                "webhook_subscription_status_changed",
                event_id=event_id,
                user_id=user_id,
                subscription_id=subscription_reference,
                status=target.value,
            )
        return ReconcileResult(event_id=event_id, outcome=outcome, user_id=user_id)

    async def _sync_subscription(self, event: SubscriptionUpdated) -> ReconcileResult:
        if event.cancel_at_period_end:
            # Access continues until Stripe sends the deletion event.
            logger.info(
                "webhook_subscription_cancel_scheduled",
                event_id=event.event_id,
                subscription_id=event.subscription_reference,
            )

        if event.provider_status in DELINQUENT_SUBSCRIPTION_STATUSES:
            target = GrantStatus.PAST_DUE
        elif event.provider_status == "active":
            target = GrantStatus.ACTIVE
        else:
            return ReconcileResult(event_id=event.event_id, outcome=ReconcileOutcome.NO_OP)

        return await self._set_recurring_status(
            event.event_id, event.subscription_reference, event.user_id, target
        )

    async def _mark_delinquent(self, event: PaymentFailed) -> ReconcileResult:
        return await self._set_recurring_status(
            event.event_id, event.subscription_reference, None, GrantStatus.PAST_DUE
        )
