"""FastAPI dependency injection for the on-demand queue endpoints.

Lifecycle Management:
- SyncServices (pool, HTTP client, stores, use cases) is built once at
  application startup and shared across requests
- It is closed at application shutdown

Security:
- Every queue endpoint carries the cron key in its path
- Keys are compared in constant time; an unset APISYNC_CRON_KEY rejects
  every request (fail-closed)
"""

import logging
import secrets
from typing import Optional

from fastapi import Depends, HTTPException, status

from ..services import SyncServices

logger = logging.getLogger(__name__)

# ========== Global State ==========

# Initialized on startup
_services: Optional[SyncServices] = None


async def init_services(services: Optional[SyncServices] = None) -> SyncServices:
    """Build (or install) the shared services.

    Should be called on application startup.
    """
    global _services
    _services = services or await SyncServices.create()
    logger.info(f"API-Sync services initialized ({_services.settings!r})")
    return _services


async def close_services() -> None:
    """Close the shared services.

    Should be called on application shutdown.
    """
    global _services
    if _services:
        await _services.close()
        _services = None
        logger.info("API-Sync services closed")


# ========== Dependency Functions ==========


def get_services() -> SyncServices:
    """Get the shared services."""
    if _services is None:
        raise RuntimeError("Services not initialized. Call init_services() first.")
    return _services


def verify_cron_key(key: str, services: SyncServices = Depends(get_services)) -> SyncServices:
    """Check the path key against APISYNC_CRON_KEY.

    Raises:
        HTTPException: 403 if the key is not configured or does not match
    """
    expected = services.settings.cron_key
    if not expected:
        logger.error("APISYNC_CRON_KEY not set - rejecting on-demand queue request")
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Access denied")

    if not secrets.compare_digest(key.encode(), expected.encode()):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Access denied")

    return services
