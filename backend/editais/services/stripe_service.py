"""Stripe API wrapper."""

import asyncio
import json
from typing import Any

import stripe
import structlog

from editais.config import StripeConfig
from editais.constants import METADATA_DOCUMENT_ID, METADATA_PLAN_ID, METADATA_ROLE_ID, METADATA_USER_ID
from editais.errors import ProviderError, WebhookConfigurationError, WebhookVerificationError
from editais.models.entitlements import GrantScope, Tier

logger = structlog.get_logger(__name__)


def _id_of(value) -> str | None:
    """Id of a Stripe reference that may be a bare id or an expanded object."""
    if isinstance(value, str):
        return value
    if value:
        return value.get("id")
    return None


class StripeService:
    """Encapsulates the Stripe SDK calls made by the entitlement engine.

    Holds its own ``stripe.StripeClient`` rather than setting the module-level
    ``stripe.api_key``, so several instances (or a fake client in tests) can
    coexist.
    """

    def __init__(self, config: StripeConfig, client: stripe.StripeClient | None = None) -> None:
        if client is None:
            if not config.secret_key:
                raise ValueError("Stripe secret key is required")
            client = stripe.StripeClient(config.secret_key)

        self.config = config
        self.client = client

    @property
    def price_mapping(self) -> dict[Tier, str]:
        return {
            Tier.ROLE: self.config.price_role,
            Tier.DOCUMENT: self.config.price_document,
            Tier.UNLIMITED: self.config.price_unlimited,
        }

    def price_id_for_tier(self, tier: Tier) -> str | None:
        return self.price_mapping.get(tier) or None

    async def ensure_customer(
        self, *, user_id: str, user_email: str | None, customer_id: str | None = None
    ) -> str:
        """Return the user's Stripe customer id, creating the customer on first purchase."""
        if customer_id:
            return customer_id

        params: dict[str, Any] = {"metadata": {METADATA_USER_ID: user_id}}
        if user_email:
            params["email"] = user_email
        try:
            customer = await asyncio.to_thread(self.client.customers.create, params=params)
        except stripe.StripeError as e:
            raise ProviderError(f"Could not create Stripe customer: {e}") from e

        logger.info("stripe_customer_created", user_id=user_id, customer_id=customer.id)
        return customer.id

    async def create_checkout_session(
        self,
        *,
        user_id: str,
        tier: Tier,
        scope: GrantScope | None,
        customer_id: str,
        recurring: bool,
        success_url: str | None = None,
        cancel_url: str | None = None,
    ) -> dict[str, str]:
        price_id = self.price_id_for_tier(tier)
        if not price_id:
            raise ValueError(f"No Stripe price configured for plan '{tier.value}'")

        # The webhook reconciler reads these keys back verbatim.
        metadata = {METADATA_USER_ID: user_id, METADATA_PLAN_ID: tier.value}
        if scope is not None:
            metadata[METADATA_DOCUMENT_ID] = scope.document_id
            if scope.role_id:
                metadata[METADATA_ROLE_ID] = scope.role_id

        params: dict[str, Any] = {
            "mode": "subscription" if recurring else "payment",
            "customer": customer_id,
            "line_items": [{"price": price_id, "quantity": 1}],
            "client_reference_id": user_id,
            "metadata": metadata,
            "success_url": success_url or self.config.checkout_success_url,
            "cancel_url": cancel_url or self.config.checkout_cancel_url,
        }
        if recurring:
            params["subscription_data"] = {"metadata": dict(metadata)}

        try:
            session = await asyncio.to_thread(self.client.checkout.sessions.create, params=params)
        except stripe.StripeError as e:
            raise ProviderError(f"Could not create checkout session: {e}") from e
        return {"id": session.id, "url": session.url}

    def verify_webhook_event(self, payload: bytes, signature: str | None) -> dict:
        """Check the signature over the raw body and return the decoded event."""
        if not self.config.webhook_secret:
            raise WebhookConfigurationError("Stripe webhook secret is not configured")
        if not signature:
            raise WebhookVerificationError("Missing Stripe-Signature header")

        try:
            self.client.construct_event(payload, signature, self.config.webhook_secret)
        except stripe.SignatureVerificationError as e:
            raise WebhookVerificationError(f"Invalid webhook signature: {e}") from e
        except ValueError as e:
            raise WebhookVerificationError(f"Invalid webhook payload: {e}") from e
        return json.loads(payload)

    async def schedule_cancellation(self, subscription_id: str) -> None:
        """Ask Stripe to end the subscription at the close of the current period."""
        try:
            await asyncio.to_thread(
                self.client.subscriptions.update,
                subscription_id,
                params={"cancel_at_period_end": True},
            )
        except stripe.StripeError as e:
            raise ProviderError(f"Could not schedule cancellation for {subscription_id}: {e}") from e

    def _payment_intent_for(self, payment_reference: str) -> str:
        """
        Map a grant's payment reference to the payment intent Stripe can refund.

        Payment-mode checkouts are admitted under their payment intent. Subscription
        checkouts carry none, so their grant keeps the session id and the intent
        is found through the session's first invoice.
        """
        if not payment_reference.startswith("cs_"):
            return payment_reference

        session = self.client.checkout.sessions.retrieve(
            payment_reference, params={"expand": ["invoice"]}
        )
        intent = _id_of(session.get("payment_intent"))
        invoice = session.get("invoice")
        if intent is None and invoice:
            intent = _id_of(invoice.get("payment_intent"))
            if intent is None:
                # API versions from 2025-03-31 list invoice payments instead
                invoice = self.client.invoices.retrieve(
                    _id_of(invoice), params={"expand": ["payments"]}
                )
                for invoice_payment in (invoice.get("payments") or {}).get("data", []):
                    intent = _id_of((invoice_payment.get("payment") or {}).get("payment_intent"))
                    if intent:
                        break
        if intent is None:
            raise ProviderError(f"No payment intent found for checkout {payment_reference}")
        return intent

    async def refund_payment(self, payment_reference: str) -> str:
        """Issue a full refund for a grant's payment and return the refund id."""
        try:
            payment_intent_id = await asyncio.to_thread(self._payment_intent_for, payment_reference)
            refund = await asyncio.to_thread(
                self.client.refunds.create,
                params={"payment_intent": payment_intent_id},
            )
        except stripe.StripeError as e:
            raise ProviderError(f"Could not refund payment {payment_reference}: {e}") from e

        logger.info("stripe_refund_created", payment_reference=payment_reference, refund_id=refund.id)
        return refund.id
