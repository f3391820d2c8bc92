"""Entitlement API endpoints for the authenticated user."""

import structlog
from fastapi import APIRouter, Query, Request
from pydantic import BaseModel, Field

from editais.api.v1.deps import get_lifecycle_service, get_store, http_error
from editais.auth import CurrentUser
from editais.errors import LifecycleRejection, ProviderError, StorageError
from editais.models.entitlements import EntitlementRecord, Grant, GrantScope, Tier
from editais.services.access_guard import can_access

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/entitlements", tags=["entitlements"])


class AccessResponse(BaseModel):
    """Result of an access check for one content scope."""

    allowed: bool
    effective_tier: Tier | None = None


class RefundRequestBody(BaseModel):
    """Refund request for one of the user's grants."""

    reference: str = Field(description="Payment reference or grant id")


class ScopeChangeBody(BaseModel):
    """New scope for a role or document grant."""

    reference: str = Field(description="Payment reference or grant id")
    document_id: str = Field(min_length=1)
    role_id: str | None = None


class CancelBody(BaseModel):
    """Subscription to stop renewing."""

    subscription_id: str


class CancelResponse(BaseModel):
    scheduled: bool
    grant: Grant


@router.get("/me", response_model=EntitlementRecord)
async def my_entitlements(request: Request, user: CurrentUser) -> EntitlementRecord:
    """Return the caller's grants, history and effective tier."""
    try:
        return await get_store(request).get_or_empty(user.id)
    except StorageError as e:
        raise http_error(e)


@router.get("/access", response_model=AccessResponse)
async def check_access(
    request: Request,
    user: CurrentUser,
    document_id: str = Query(min_length=1),
    role_id: str | None = Query(default=None),
) -> AccessResponse:
    """Whether the caller may open content of a document (or of one role in it)."""
    try:
        record = await get_store(request).get(user.id)
    except StorageError as e:
        raise http_error(e)
    allowed = can_access(record, GrantScope(document_id=document_id, role_id=role_id))
    return AccessResponse(allowed=allowed, effective_tier=record.effective_tier if record else None)


@router.post("/trial", response_model=EntitlementRecord)
async def start_trial(request: Request, user: CurrentUser) -> EntitlementRecord:
    """Activate the one-time free trial."""
    service = get_lifecycle_service(request)
    try:
        return await service.start_trial(user.id)
    except (LifecycleRejection, StorageError) as e:
        raise http_error(e)


@router.post("/refund-request", response_model=Grant)
async def request_refund(body: RefundRequestBody, request: Request, user: CurrentUser) -> Grant:
    """Ask for a refund of a grant bought within the grace period."""
    service = get_lifecycle_service(request)
    try:
        return await service.request_refund(user.id, body.reference)
    except (LifecycleRejection, StorageError) as e:
        raise http_error(e)


@router.post("/scope", response_model=Grant)
async def change_scope(body: ScopeChangeBody, request: Request, user: CurrentUser) -> Grant:
    """Move a role or document grant to another scope."""
    service = get_lifecycle_service(request)
    new_scope = GrantScope(document_id=body.document_id, role_id=body.role_id)
    try:
        return await service.change_scope(user.id, body.reference, new_scope)
    except (LifecycleRejection, StorageError) as e:
        raise http_error(e)


@router.post("/cancel", response_model=CancelResponse)
async def cancel_subscription(body: CancelBody, request: Request, user: CurrentUser) -> CancelResponse:
    """Schedule the end of a recurring grant at the close of its billing period."""
    service = get_lifecycle_service(request)
    try:
        grant = await service.cancel_subscription(user.id, body.subscription_id)
    except (LifecycleRejection, ProviderError, StorageError) as e:
        if isinstance(e, ProviderError):
            logger.warning("subscription_cancel_failed", user_id=user.id, error=e.message)
        raise http_error(e)
    return CancelResponse(scheduled=True, grant=grant)
