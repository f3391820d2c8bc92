"""Service lookups and error translation shared by the v1 routers."""

from fastapi import HTTPException, Request

from editais.errors import LifecycleRejection, ProviderError, RejectionReason, StorageError
from editais.services.entitlement_store import EntitlementStore
from editais.services.lifecycle_service import LifecycleService
from editais.services.stripe_service import StripeService
from editais.services.webhook_reconciler import WebhookReconciler

_REJECTION_STATUS: dict[RejectionReason, int] = {
    RejectionReason.NOT_FOUND: 404,
    RejectionReason.UNAUTHORIZED: 403,
    RejectionReason.INVALID_SCOPE: 422,
}


def get_store(request: Request) -> EntitlementStore:
    store = getattr(request.app.state, "entitlement_store", None)
    if store is None:
        raise HTTPException(status_code=503, detail="Serviço de assinaturas indisponível")
    return store


def get_lifecycle_service(request: Request) -> LifecycleService:
    service = getattr(request.app.state, "lifecycle_service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Serviço de assinaturas indisponível")
    return service


def get_reconciler(request: Request) -> WebhookReconciler:
    reconciler = getattr(request.app.state, "webhook_reconciler", None)
    if reconciler is None:
        raise HTTPException(status_code=503, detail="Serviço de assinaturas indisponível")
    return reconciler


def get_stripe_service(request: Request) -> StripeService:
    service = getattr(request.app.state, "stripe_service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Stripe não configurado")
    return service


def http_error(exc: LifecycleRejection | ProviderError | StorageError) -> HTTPException:
    """Translate an engine exception into the HTTP error the caller sees."""
    if isinstance(exc, LifecycleRejection):
        return HTTPException(status_code=_REJECTION_STATUS.get(exc.reason, 409), detail=exc.to_dict())
    if isinstance(exc, ProviderError):
        return HTTPException(
            status_code=502,
            detail={"code": "provider_unavailable", "message": "Falha ao comunicar com o Stripe"},
        )
    return HTTPException(
        status_code=500,
        detail={"code": "storage_error", "message": "Falha ao acessar os dados de assinatura"},
    )
