"""Billing API endpoints: checkout creation and the Stripe webhook."""

import structlog
from fastapi import APIRouter, Header, HTTPException, Request
from pydantic import BaseModel, Field, ValidationError

from editais.api.v1.deps import (
    get_lifecycle_service,
    get_reconciler,
    get_store,
    get_stripe_service,
    http_error,
)
from editais.auth import CurrentUser
from editais.errors import (
    MalformedEventError,
    ProviderError,
    StorageError,
    WebhookConfigurationError,
    WebhookVerificationError,
)
from editais.models.entitlements import EntitlementRecord, GrantScope, Tier
from editais.services.event_parser import parse_event
from editais.services.webhook_reconciler import ReconcileOutcome

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/billing", tags=["billing"])


class CheckoutRequest(BaseModel):
    """Checkout session request."""

    plan_id: Tier = Field(description="Requested paid plan")
    document_id: str | None = Field(default=None, description="Edital for scoped plans")
    role_id: str | None = Field(default=None, description="Cargo for the role plan")
    success_url: str | None = Field(default=None, description="Optional override URL")
    cancel_url: str | None = Field(default=None, description="Optional override URL")


class CheckoutResponse(BaseModel):
    """Checkout session response."""

    checkout_url: str
    session_id: str


class WebhookResponse(BaseModel):
    """Stripe webhook processing response."""

    received: bool
    outcome: ReconcileOutcome


def _checkout_scope(body: CheckoutRequest) -> GrantScope | None:
    if not body.plan_id.is_scoped:
        return None
    if not body.document_id:
        raise HTTPException(status_code=400, detail="document_id é obrigatório para este plano")
    if body.plan_id == Tier.ROLE and not body.role_id:
        raise HTTPException(status_code=400, detail="role_id é obrigatório para o plano cargo")
    try:
        return GrantScope(
            document_id=body.document_id,
            role_id=body.role_id if body.plan_id == Tier.ROLE else None,
        )
    except ValidationError:
        raise HTTPException(status_code=400, detail="Escopo inválido")


@router.post("/checkout", response_model=CheckoutResponse)
async def create_checkout_session(
    body: CheckoutRequest,
    request: Request,
    user: CurrentUser,
) -> CheckoutResponse:
    """Create a Stripe Checkout session for a paid plan."""
    if body.plan_id == Tier.TRIAL:
        raise HTTPException(status_code=400, detail="Plano inválido para checkout")
    scope = _checkout_scope(body)

    store = get_store(request)
    stripe_service = get_stripe_service(request)
    recurring = body.plan_id in get_lifecycle_service(request).config.recurring_tiers

    try:
        record = await store.get_or_empty(user.id)
        customer_id = await stripe_service.ensure_customer(
            user_id=user.id,
            user_email=user.email,
            customer_id=record.customer_reference,
        )
        if customer_id != record.customer_reference:

            def remember_customer(current: EntitlementRecord) -> None:
                if current.customer_reference is None:
                    current.customer_reference = customer_id

            await store.update(user.id, remember_customer)

        checkout = await stripe_service.create_checkout_session(
            user_id=user.id,
            tier=body.plan_id,
            scope=scope,
            customer_id=customer_id,
            recurring=recurring,
            success_url=body.success_url,
            cancel_url=body.cancel_url,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except (ProviderError, StorageError) as e:
        logger.warning("checkout_session_failed", user_id=user.id, error=e.message)
        raise http_error(e)

    logger.info("checkout_session_created", user_id=user.id, plan_id=body.plan_id.value, session_id=checkout["id"])
    return CheckoutResponse(checkout_url=checkout["url"], session_id=checkout["id"])


@router.post("/webhook", response_model=WebhookResponse)
async def stripe_webhook(
    request: Request,
    stripe_signature: str | None = Header(default=None, alias="Stripe-Signature"),
) -> WebhookResponse:
    """Verify a Stripe event and reconcile it with the owner's entitlements."""
    stripe_service = get_stripe_service(request)
    reconciler = get_reconciler(request)
    payload = await request.body()

    try:
        event = stripe_service.verify_webhook_event(payload, stripe_signature)
    except WebhookConfigurationError as e:
        logger.error("stripe_webhook_secret_missing")
        raise HTTPException(status_code=500, detail=e.message)
    except WebhookVerificationError as e:
        logger.warning("stripe_webhook_rejected", error=e.message)
        raise HTTPException(status_code=400, detail=e.message)

    try:
        provider_event = parse_event(event)
    except MalformedEventError as e:
        logger.error("stripe_webhook_malformed", event_id=e.event_id, error=e.detail)
        raise HTTPException(status_code=400, detail=e.message)

    try:
        result = await reconciler.apply(provider_event)
    except StorageError as e:
        # 500 makes Stripe redeliver; admission is idempotent per payment.
        logger.error("stripe_webhook_storage_failed", event_id=provider_event.event_id, error=e.message)
        raise HTTPException(status_code=500, detail="Falha ao processar o evento")

    logger.info(
        "stripe_webhook_processed",
        event_id=result.event_id,
        event_type=str(event.get("type", "")),
        outcome=result.outcome.value,
    )
    return WebhookResponse(received=True, outcome=result.outcome)
