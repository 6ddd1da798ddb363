"""FastAPI router for the on-demand queue endpoints.

Pull:
    GET /apisync/pull/{key}
    GET /apisync/pull/{mapping_id}/{key}
    GET /apisync/pull/{mapping_id}/{key}/{remote_id}

Push:
    GET /apisync/push/{key}
    GET /apisync/push/{mapping_id}/{key}

Each populates and/or drains the queue, then answers 204, or 303 to the
``destination`` query parameter when it is a local path. Processing
failures are logged and never reach the response.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status
from fastapi.responses import RedirectResponse

from ..domain.entities import Mapping
from ..services import SyncServices
from .dependencies import get_services, verify_cron_key
from .schemas import HealthResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/apisync", tags=["API-Sync"])


# ========== Helpers ==========


def _finish(destination: Optional[str]) -> Response:
    if destination:
        # Local paths only; "//host" is protocol-relative
        if destination.startswith("/") and not destination.startswith("//"):
            return RedirectResponse(destination, status_code=status.HTTP_303_SEE_OTHER)
        logger.warning(f"Ignoring non-local destination {destination!r}")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


async def _load_mapping(services: SyncServices, mapping_id: str) -> Mapping:
    mapping = await services.mappings.load(mapping_id)
    if mapping is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Mapping not found")
    return mapping


def _deny() -> HTTPException:
    return HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Access denied")


async def _pull(services: SyncServices, mapping: Optional[Mapping], remote_id: Optional[str]) -> None:
    try:
        await services.populator.populate_queue(mapping, remote_id)
        await services.drainer.process_queue()
    except Exception as e:
        logger.error(f"On-demand pull failed: {e}", exc_info=True)


async def _push(services: SyncServices, mapping: Optional[Mapping]) -> None:
    try:
        await services.push_queue.process_queues([mapping] if mapping else None)
    except Exception as e:
        logger.error(f"On-demand push failed: {e}", exc_info=True)


# ========== Pull Endpoints ==========


@router.get("/pull/{key}", status_code=204)
async def pull_standalone(
    destination: Optional[str] = Query(None),
    services: SyncServices = Depends(verify_cron_key),
):
    """Pull every standalone pull mapping, then drain the pull queue."""
    if not services.settings.standalone:
        raise _deny()
    await _pull(services, None, None)
    return _finish(destination)


@router.get("/pull/{mapping_id}/{key}", status_code=204)
async def pull_mapping(
    mapping_id: str,
    destination: Optional[str] = Query(None),
    services: SyncServices = Depends(verify_cron_key),
):
    """Pull one mapping's updated records, then drain the pull queue."""
    mapping = await _load_mapping(services, mapping_id)
    if not mapping.pull_standalone and not services.settings.standalone:
        raise _deny()
    await _pull(services, mapping, None)
    return _finish(destination)


@router.get("/pull/{mapping_id}/{key}/{remote_id}", status_code=204)
async def pull_record(
    mapping_id: str,
    remote_id: str,
    destination: Optional[str] = Query(None),
    services: SyncServices = Depends(verify_cron_key),
):
    """Force-pull a single remote record, then drain the pull queue."""
    mapping = await _load_mapping(services, mapping_id)
    if not mapping.pull_standalone and not services.settings.standalone:
        raise _deny()
    await _pull(services, mapping, remote_id)
    return _finish(destination)


# ========== Push Endpoints ==========


@router.get("/push/{key}", status_code=204)
async def push_standalone(
    destination: Optional[str] = Query(None),
    services: SyncServices = Depends(verify_cron_key),
):
    """Process the push queue for every push mapping."""
    if not services.settings.standalone:
        raise _deny()
    await _push(services, None)
    return _finish(destination)


@router.get("/push/{mapping_id}/{key}", status_code=204)
async def push_mapping(
    mapping_id: str,
    destination: Optional[str] = Query(None),
    services: SyncServices = Depends(verify_cron_key),
):
    """Process the push queue for one mapping."""
    mapping = await _load_mapping(services, mapping_id)
    if not mapping.push_standalone and not services.settings.standalone:
        raise _deny()
    await _push(services, mapping)
    return _finish(destination)


# ========== Health ==========


@router.get("/health", response_model=HealthResponse)
async def health(services: SyncServices = Depends(get_services)):
    """Queue sizes and database health."""
    queue_status = await services.queue_status()
    database = queue_status.get("database")
    healthy = database is None or database.get("healthy", False)
    return HealthResponse(
        status="healthy" if healthy else "unhealthy",
        mode=queue_status["mode"],
        queues=queue_status["queues"],
        database=database,
        circuit=queue_status.get("circuit"),
    )
