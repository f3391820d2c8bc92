"""Administrator API endpoints."""

import structlog
from fastapi import APIRouter, Request
from pydantic import BaseModel

from editais.api.v1.deps import get_lifecycle_service, http_error
from editais.auth import CurrentUser
from editais.errors import LifecycleRejection, ProviderError, StorageError
from editais.models.entitlements import EntitlementRecord
from editais.services.lifecycle_service import RefundRequest

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/admin", tags=["admin"])


class ApproveRefundBody(BaseModel):
    """Refund to confirm as executed."""

    user_id: str
    payment_reference: str


class ExpirationSweepResponse(BaseModel):
    expired: int


@router.get("/refund-requests", response_model=list[RefundRequest])
async def list_refund_requests(request: Request, user: CurrentUser) -> list[RefundRequest]:
    """List every grant awaiting refund approval."""
    service = get_lifecycle_service(request)
    try:
        return await service.list_refund_requests(user.id)
    except (LifecycleRejection, StorageError) as e:
        raise http_error(e)


@router.post("/refunds/approve", response_model=EntitlementRecord)
async def approve_refund(body: ApproveRefundBody, request: Request, user: CurrentUser) -> EntitlementRecord:
    """Confirm a refund and retire the refunded grant."""
    service = get_lifecycle_service(request)
    try:
        return await service.approve_refund(user.id, body.user_id, body.payment_reference)
    except (LifecycleRejection, ProviderError, StorageError) as e:
        raise http_error(e)


@router.post("/expirations/sweep", response_model=ExpirationSweepResponse)
async def sweep_expirations(request: Request, user: CurrentUser) -> ExpirationSweepResponse:
    """Move every lapsed one-off grant to history."""
    service = get_lifecycle_service(request)
    try:
        expired = await service.expire_all_lapsed_grants(user.id)
    except (LifecycleRejection, StorageError) as e:
        raise http_error(e)
    logger.info("expiration_sweep_completed", admin_id=user.id, expired=expired)
    return ExpirationSweepResponse(expired=expired)
