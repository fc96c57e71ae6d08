"""
Scheduler API Routes

Internal endpoints for system-automatic tasks: re-checking pending custom
domains and purging expired rate-limit windows.
"""
import asyncio
import os
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException, Header
from sqlalchemy.orm import Session

from ..database import get_db
from ..services.counters import RateLimiter
from ..services.domains import DomainLifecycleManager
from ..services.errors import StoreUnavailable
from ..services.policy import get_policy_cache
from .domains import get_domain_manager


router = APIRouter(prefix="/internal", tags=["scheduler"])


# =============================================================================
# INTERNAL API KEY VALIDATION
# =============================================================================

INTERNAL_API_KEY = os.getenv("INTERNAL_API_KEY", "scheduler-internal-key-change-in-production")


async def verify_internal_key(x_internal_key: str = Header(...)):
    """Verify internal API key for scheduler endpoints."""
    if x_internal_key != INTERNAL_API_KEY:
        raise HTTPException(status_code=403, detail="Invalid internal API key")
    return True


# =============================================================================
# SCHEDULER ENDPOINTS (SYSTEM-ONLY)
# =============================================================================

@router.post("/domain-poll", response_model=dict)
async def run_domain_poll(
    manager: DomainLifecycleManager = Depends(get_domain_manager),
    _: bool = Depends(verify_internal_key),
):
    """
    Re-check pending and failed custom domains.

    System-automatic - intended to run every few minutes.
    """
    result = await asyncio.to_thread(manager.poll_pending)
    if result["changed"]:
        get_policy_cache().clear()

    return {
        "task": "domain_poll",
        "run_date": datetime.now(timezone.utc).isoformat(),
        **result,
    }


@router.post("/rate-limit-purge", response_model=dict)
async def run_rate_limit_purge(
    db: Session = Depends(get_db),
    _: bool = Depends(verify_internal_key),
):
    """Delete rate-limit windows that can no longer be current."""
    limiter = RateLimiter(db)

    try:
        purged = limiter.purge_expired()
    except StoreUnavailable as e:
        raise HTTPException(status_code=503, detail=e.message)

    return {
        "task": "rate_limit_purge",
        "run_date": datetime.now(timezone.utc).isoformat(),
        "purged": purged,
    }
