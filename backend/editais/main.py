"""
Meus Editais Entitlements - Main FastAPI Application.

Serves the plan checkout, the Stripe webhook, the user lifecycle actions
(trial, refund request, scope change, cancellation) and the administrator
refund workflow.

Run with:
    uvicorn editais.main:app --reload
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from supabase import acreate_client
from supabase._async.client import AsyncClient as AsyncSupabaseClient

from editais.api.v1.admin import router as admin_router
from editais.api.v1.billing import router as billing_router
from editais.api.v1.entitlements import router as entitlements_router
from editais.config import get_settings
from editais.constants import API_TITLE, API_VERSION
from editais.logging_config import setup_logging
from editais.middleware import RequestContextMiddleware
from editais.services.admin_authorizer import (
    AdminAuthorizer,
    StaticAdminAuthorizer,
    SupabaseAdminAuthorizer,
)
from editais.services.entitlement_store import (
    EntitlementRepository,
    EntitlementStore,
    InMemoryEntitlementRepository,
    SupabaseEntitlementRepository,
)
from editais.services.lifecycle_service import LifecycleService
from editais.services.notifier import LoggingNotifier
from editais.services.stripe_service import StripeService
from editais.services.webhook_reconciler import WebhookReconciler

# Get settings before logging setup so we know the debug flag
settings = get_settings()

# Configure logging
setup_logging(settings.debug)

logger = structlog.get_logger(__name__)


async def _connect_supabase() -> AsyncSupabaseClient | None:
    if not (settings.supabase_url and settings.supabase_secret_key):
        logger.warning(
            "supabase_not_configured",
            detail="Auth returns 503; entitlements are kept in memory",
        )
        return None
    try:
        client = await acreate_client(settings.supabase_url, settings.supabase_secret_key)
    except Exception as e:
        logger.warning("supabase_init_failed", error=str(e))
        return None
    logger.info("supabase_configured")
    return client


def _wire_services(state, supabase_client: AsyncSupabaseClient | None) -> None:
    """Build the store and the services sharing it, and hang them on app.state."""
    static_admins = StaticAdminAuthorizer(settings.billing.admin_user_ids)
    repository: EntitlementRepository
    admin_authorizer: AdminAuthorizer
    if supabase_client is not None:
        repository = SupabaseEntitlementRepository(
            supabase_client,
            settings.entitlements_table,
            settings.subscription_owners_table,
        )
        admin_authorizer = SupabaseAdminAuthorizer(
            supabase_client, settings.admins_table, fallback=static_admins
        )
    else:
        repository = InMemoryEntitlementRepository()
        admin_authorizer = static_admins

    stripe_service: StripeService | None = None
    if settings.stripe.secret_key:
        stripe_service = StripeService(settings.stripe)
        logger.info("stripe_configured", recurring_tiers=[t.value for t in settings.billing.recurring_tiers])
    else:
        logger.warning("stripe_not_configured", detail="Checkout and webhook will return 503")

    store = EntitlementStore(repository, max_conflict_retries=settings.billing.store_max_conflict_retries)

    state.supabase = supabase_client
    state.entitlement_store = store
    state.stripe_service = stripe_service
    state.admin_authorizer = admin_authorizer
    state.webhook_reconciler = WebhookReconciler(store, settings.billing, notifier=LoggingNotifier())
    state.lifecycle_service = LifecycleService(
        store,
        settings.billing,
        admin_authorizer,
        payment_provider=stripe_service,
    )


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncGenerator[None, None]:
    """Connect Supabase and Stripe once, shared by every request."""
    logger.info("api_startup", cors_origins=settings.cors_origins)
    _wire_services(_app.state, await _connect_supabase())
    logger.info("services_initialized")

    yield

    logger.info("api_shutdown")


# Create FastAPI app
app = FastAPI(
    title=API_TITLE,
    description=(
        "API de planos e assinaturas da plataforma Meus Editais. "
        "Processa pagamentos do Stripe, mantém os planos ativos de cada usuário "
        "e decide o acesso aos editais e cargos."
    ),
    version=API_VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

# Request context middleware must come before CORS so every response gets
# the X-Request-ID header (including preflight OPTIONS responses).
app.add_middleware(RequestContextMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Include routers
app.include_router(billing_router, prefix="/api/v1")
app.include_router(entitlements_router, prefix="/api/v1")
app.include_router(admin_router, prefix="/api/v1")


@app.get("/")
async def root() -> dict:
    """Root endpoint with API info."""
    return {
        "name": API_TITLE,
        "version": API_VERSION,
        "description": "API de planos e assinaturas da plataforma Meus Editais",
        "docs": "/docs",
    }


@app.get("/health")
async def health() -> dict:
    """Health check endpoint."""
    return {"status": "healthy"}
