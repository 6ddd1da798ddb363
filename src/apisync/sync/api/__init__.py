"""HTTP layer for the queue engine: on-demand pull/push endpoints and health."""

from .dependencies import close_services, get_services, init_services, verify_cron_key
from .router import router

__all__ = [
    "close_services",
    "get_services",
    "init_services",
    "router",
    "verify_cron_key",
]
