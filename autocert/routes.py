"""
FastAPI endpoints for certificate management.

Provides:
- ACME HTTP-01 challenge serving (mount on the plain HTTP app)
- Certificate status
"""
import logging
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel

from .challenges import ChallengeRegistry, challenge_registry
from .manager import CertificateManager
from .policy import should_renew


logger = logging.getLogger(__name__)

challenge_router = APIRouter(tags=["ACME"])
status_router = APIRouter(prefix="/api/tls", tags=["TLS"])

_manager: Optional[CertificateManager] = None


def set_certificate_manager(manager: Optional[CertificateManager]) -> None:
    """Register the manager reported by the status endpoint."""
    global _manager
    _manager = manager


def get_certificate_manager() -> Optional[CertificateManager]:
    return _manager


def get_challenge_registry() -> ChallengeRegistry:
    return challenge_registry


# ============================================================================
# ACME HTTP-01 Challenge Endpoint
# ============================================================================


@challenge_router.get("/.well-known/acme-challenge/{token}")
async def acme_http_challenge(
    token: str,
    registry: ChallengeRegistry = Depends(get_challenge_registry),
):
    """
    Serve ACME HTTP-01 challenge response.

    This endpoint is called by the CA to validate domain ownership.
    """
    if not token.strip():
        raise HTTPException(status_code=400, detail="Missing challenge token")

    response = registry.get(token)
    if response is None:
        logger.warning("[TLS-CHALLENGE] HTTP-01 challenge not found for token: %s...", token[:16])
        raise HTTPException(status_code=404, detail="Challenge not found")

    logger.info("[TLS-CHALLENGE] Serving HTTP-01 challenge for token: %s...", token[:16])
    return PlainTextResponse(response)


@challenge_router.get("/.well-known/acme-challenge/")
async def acme_http_challenge_missing_token():
    raise HTTPException(status_code=400, detail="Missing challenge token")


# ============================================================================
# Certificate Status
# ============================================================================


class TLSStatusResponse(BaseModel):
    """Certificate status."""

    domain: Optional[str] = None
    has_certificate: bool = False
    cert_expires_at: Optional[str] = None
    days_until_expiry: Optional[int] = None
    renewal_due: bool = True
    renewal_running: bool = False
    last_renewal_outcome: Optional[str] = None
    last_renewal_check: Optional[str] = None


@status_router.get("/status", response_model=TLSStatusResponse)
async def get_tls_status(
    manager: Optional[CertificateManager] = Depends(get_certificate_manager),
):
    """Get the current certificate and renewal status."""
    if manager is None:
        raise HTTPException(status_code=503, detail="Certificate manager not configured")

    response = TLSStatusResponse(domain=manager.domain)

    bundle = manager.current_certificate()
    if bundle is not None:
        response.has_certificate = True
        response.cert_expires_at = bundle.not_after.isoformat()
        response.days_until_expiry = max(0, (bundle.not_after - datetime.now(timezone.utc)).days)
    response.renewal_due = should_renew(bundle, threshold=manager.threshold)

    scheduler = manager.scheduler
    if scheduler is not None:
        response.renewal_running = scheduler.is_running
        if scheduler.last_outcome is not None:
            response.last_renewal_outcome = scheduler.last_outcome.value
        if scheduler.last_check_at is not None:
            response.last_renewal_check = scheduler.last_check_at.isoformat()

    return response
