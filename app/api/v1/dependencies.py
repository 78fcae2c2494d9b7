"""
Dependencies for API endpoints.
"""
from typing import Any, Dict

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from app.core.exceptions import AuthenticationError, AuthorizationError
from app.core.security import decode_access_token
from app.services.extraction.service import ExtractionService, get_extraction_service
from app.services.gp51.client import GP51Client, get_gp51_client
from app.services.health.monitor import HealthMonitor, get_health_monitor
from app.services.imports.orchestrator import ImportOrchestrator, get_import_orchestrator
from app.services.rate_limiter import RateLimiter, get_rate_limiter as _get_rate_limiter

# Bearer scheme for admin tokens; missing credentials are reported by get_current_admin
bearer_scheme = HTTPBearer(auto_error=False)


async def get_current_admin(
    credentials: HTTPAuthorizationCredentials = Depends(bearer_scheme)
) -> Dict[str, Any]:
    """
    Get the admin identity from the bearer JWT.

    Returns:
        Dict: Token payload with at least ``sub`` and ``role``

    Raises:
        AuthenticationError: If the token is missing, invalid or expired
        AuthorizationError: If the token does not carry the admin role
    """
    if credentials is None or not credentials.credentials:
        raise AuthenticationError("Missing bearer token")

    payload = decode_access_token(credentials.credentials)
    if not payload.get("sub"):
        raise AuthenticationError("Token has no subject")
    if payload.get("role") != "admin":
        raise AuthorizationError("Admin role required")
    return payload


async def get_orchestrator() -> ImportOrchestrator:
    """Get the import orchestrator."""
    return get_import_orchestrator()


async def get_extractions() -> ExtractionService:
    """Get the extraction service."""
    return get_extraction_service()


async def get_monitor() -> HealthMonitor:
    """Get the GP51 health monitor."""
    return get_health_monitor()


async def get_rate_limiter() -> RateLimiter:
    """Get rate limiter service."""
    return _get_rate_limiter()


async def get_platform_client() -> GP51Client:
    """Get the GP51 client."""
    return get_gp51_client()
