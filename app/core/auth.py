"""Bearer-token guard for the admin endpoints (graph rebuild, status)."""

import hmac
import logging

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from app.config import get_settings

logger = logging.getLogger(__name__)

settings = get_settings()

# auto_error=False so a missing header becomes our 401, not FastAPI's 403
_bearer_scheme = HTTPBearer(auto_error=False)


async def require_admin(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(_bearer_scheme),
) -> str:
    """
    Reject the request unless it carries ADMIN_API_KEY as a bearer token.

    Clients send:
        Authorization: Bearer <ADMIN_API_KEY>

    Without a configured key the admin surface is disabled (503), so a
    deployment that forgot the key never exposes rebuilds unauthenticated.
    """
    if not settings.admin_api_key:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Admin API key is not configured",
        )

    if not credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Admin API key required",
            headers={"WWW-Authenticate": "Bearer"},
        )

    # Constant-time comparison
    if not hmac.compare_digest(
        credentials.credentials.encode("utf-8"),
        settings.admin_api_key.encode("utf-8"),
    ):
        client_ip = request.client.host if request.client else "unknown"
        logger.warning(f"Rejected admin request from {client_ip}")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid admin API key",
            headers={"WWW-Authenticate": "Bearer"},
        )

    return credentials.credentials
