"""
Custom Domains API Routes

Register, verify, delete custom domains and pick the owner's default.
Typed lifecycle errors map to 404 / 409 / 422 / 429.
"""
import asyncio
from typing import List

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from ..auth import get_current_owner
from ..database import get_db
from ..models.db_models import CloakerDomainDB
from ..services.domains import DomainLifecycleManager
from ..services.errors import (
    CloakerError, DomainConflict, DomainNotFound, StoreUnavailable, VerificationTooSoon,
)
from ..services.domains.dns_checker import TXT_PREFIX, CLOAKER_INGRESS_IP
from ..services.policy import get_policy_cache


router = APIRouter(prefix="/domains", tags=["domains"])


# =============================================================================
# REQUEST/RESPONSE MODELS
# =============================================================================

class CreateDomainRequest(BaseModel):
    """Request to register a custom domain."""
    domain: str = Field(..., min_length=4, max_length=253, description="e.g. go.example.com")
    is_default: bool = Field(default=False, description="Make this the owner's default domain")


def get_domain_manager(db: Session = Depends(get_db)) -> DomainLifecycleManager:
    return DomainLifecycleManager(db)


def _domain_to_dict(row: CloakerDomainDB) -> dict:
    return {
        "id": row.id,
        "domain": row.domain,
        "is_verified": row.is_verified,
        "is_default": row.is_default,
        "dns_status": row.dns_status.value if row.dns_status else None,
        "ssl_status": row.ssl_status.value if row.ssl_status else None,
        "verification_token": row.verification_token,
        "dns_instructions": {
            "txt": {"name": f"{TXT_PREFIX}.{row.domain}", "value": row.verification_token},
            "a": {"name": row.domain, "value": CLOAKER_INGRESS_IP or None},
        },
        "last_check_at": row.last_check_at.isoformat() if row.last_check_at else None,
        "verified_at": row.verified_at.isoformat() if row.verified_at else None,
        "last_error": row.last_error,
        "created_at": row.created_at.isoformat() if row.created_at else None,
    }


def _http_error(e: CloakerError) -> HTTPException:
    if isinstance(e, DomainNotFound):
        return HTTPException(status_code=404, detail=e.message)
    if isinstance(e, DomainConflict):
        return HTTPException(status_code=409, detail=e.message)
    if isinstance(e, VerificationTooSoon):
        retry_after = e.detail.get("retry_after_seconds", 1)
        return HTTPException(status_code=429, detail=e.message, headers={"Retry-After": str(retry_after)})
    if isinstance(e, StoreUnavailable):
        return HTTPException(status_code=503, detail=e.message)
    return HTTPException(status_code=422, detail=e.message)


# =============================================================================
# ENDPOINTS
# =============================================================================

@router.get("", response_model=List[dict])
async def list_domains(
    owner: str = Depends(get_current_owner),
    manager: DomainLifecycleManager = Depends(get_domain_manager),
):
    return [_domain_to_dict(row) for row in manager.list_domains(owner)]


@router.post("", response_model=dict, status_code=201)
async def create_domain(
    request: CreateDomainRequest,
    owner: str = Depends(get_current_owner),
    manager: DomainLifecycleManager = Depends(get_domain_manager),
):
    """Register a domain. Returns the TXT / A records the owner must publish."""
    try:
        row = await asyncio.to_thread(manager.create_domain, owner, request.domain, request.is_default)
    except CloakerError as e:
        raise _http_error(e)
    return _domain_to_dict(row)


@router.delete("/{domain_id}", response_model=dict)
async def delete_domain(
    domain_id: str,
    owner: str = Depends(get_current_owner),
    manager: DomainLifecycleManager = Depends(get_domain_manager),
):
    """Idempotent: deleting an unknown or already deleted domain succeeds."""
    deleted = manager.delete_domain(domain_id, owner)
    if deleted:
        get_policy_cache().clear()
    return {"deleted": deleted, "id": domain_id}


@router.post("/{domain_id}/verify", response_model=dict)
async def verify_domain(
    domain_id: str,
    owner: str = Depends(get_current_owner),
    manager: DomainLifecycleManager = Depends(get_domain_manager),
):
    """
    Check DNS and certificate now. Already verified domains only refresh last_check_at.

    The checks block on the network, so they run in a worker thread.
    """
    try:
        row = await asyncio.to_thread(manager.verify, domain_id, owner)
    except CloakerError as e:
        raise _http_error(e)
    get_policy_cache().invalidate_host(row.domain)
    return _domain_to_dict(row)


@router.post("/{domain_id}/set-default", response_model=dict)
async def set_default_domain(
    domain_id: str,
    owner: str = Depends(get_current_owner),
    manager: DomainLifecycleManager = Depends(get_domain_manager),
):
    try:
        row = manager.set_default(domain_id, owner)
    except CloakerError as e:
        raise _http_error(e)
    # Unbound links resolve through the default domain, so every host may change
    get_policy_cache().clear()
    return _domain_to_dict(row)
