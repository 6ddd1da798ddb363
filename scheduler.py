#!/usr/bin/env python3
"""Automated Scheduler for the API-Sync queue engine.

This module provides a long-running scheduler that periodically pulls
updated remote records, processes the push queue and reconciles remote
deletions. Designed to run as the main process in a Docker container.

Architecture:
    - Simple asyncio loop with sleep (no external scheduler)
    - Graceful shutdown on SIGTERM/SIGINT
    - Configurable via environment variables
    - Health check endpoint via optional TCP server

Environment Variables:
    SYNC_INTERVAL_MINUTES: Minutes between sync runs (default: 15)
    SYNC_PULL: Populate and drain the pull queue (default: true)
    SYNC_PUSH: Process the push queue (default: true)
    SYNC_DELETES: Reconcile records deleted remotely (default: false)
    SYNC_ON_STARTUP: Run sync immediately on startup (default: true)
    HEALTH_CHECK_PORT: Port for health check endpoint (default: 8080, 0 to disable)

    Remote credentials and queue settings: see main.py

    Database:
        DATABASE_URL (unset runs in fetch-only mode with APISYNC_MAPPINGS_FILE)

Example:
    # Run every 5 minutes, pull only
    SYNC_INTERVAL_MINUTES=5 SYNC_PUSH=false python scheduler.py

    # Hourly, including remote deletion reconciliation
    SYNC_INTERVAL_MINUTES=60 SYNC_DELETES=true python scheduler.py
"""
import asyncio
import json
import logging
import os
import signal
import sys
from datetime import UTC, datetime, timedelta
from typing import Optional

from dotenv import load_dotenv

load_dotenv()

# Local imports
from src.apisync.api import ApiSyncError
from src.apisync.sync.services import SyncServices

# Initialize logger
logger = logging.getLogger(__name__)

# ============================================
# Configuration
# ============================================

class SchedulerConfig:
    """Configuration loaded from environment variables."""

    def __init__(self):
        self.interval_minutes = int(os.getenv("SYNC_INTERVAL_MINUTES", "15"))
        self.sync_pull = os.getenv("SYNC_PULL", "true").lower() == "true"
        self.sync_push = os.getenv("SYNC_PUSH", "true").lower() == "true"
        self.sync_deletes = os.getenv("SYNC_DELETES", "false").lower() == "true"
        self.sync_on_startup = os.getenv("SYNC_ON_STARTUP", "true").lower() == "true"
        self.health_check_port = int(os.getenv("HEALTH_CHECK_PORT", "8080"))

    def __repr__(self):
        return (
            f"SchedulerConfig("
            f"interval={self.interval_minutes}m, "
            f"pull={self.sync_pull}, "
            f"push={self.sync_push}, "
            f"deletes={self.sync_deletes}, "
            f"startup={self.sync_on_startup}, "
            f"health_port={self.health_check_port})"
        )


# ============================================
# Sync Logic
# ============================================

async def run_pull(services: SyncServices) -> dict:
    enqueued = await services.populator.get_updated_records()
    drained = await services.drainer.process_queue()
    return {"enqueued": enqueued, **drained.to_dict()}


async def run_sync(config: SchedulerConfig, services: SyncServices) -> dict:
    """Run a single sync cycle.

    Passes run one after another: pull, push, then delete reconciliation.
    A failing pass is recorded and does not stop the passes after it.

    Args:
        config: Scheduler configuration
        services: Wired queue engine

    Returns:
        Dict with sync results
    """
    start_time = datetime.now(UTC)
    results = {
        "started_at": start_time.isoformat(),
        "pull": None,
        "push": None,
        "deletes": None,
        "success": False,
    }

    passes = []
    if config.sync_pull:
        passes.append(("pull", run_pull))
    if config.sync_push:
        passes.append(("push", lambda s: s.push_queue.process_queues()))
    if config.sync_deletes:
        passes.append(("deletes", lambda s: s.deleted_records.process_deleted_records()))

    failed = []
    for name, run in passes:
        try:
            results[name] = await run(services)
            logger.info(f"{name.capitalize()} pass completed: {results[name]}")
        except Exception as e:
            error_type = type(e).__name__
            logger.error(f"{name.capitalize()} pass failed: {error_type}: {e}", exc_info=True)
            results[name] = {
                "error": str(e),
                "error_type": error_type,
                "success": False,
            }
            failed.append(name)

    if failed:
        logger.warning(f"Sync cycle completed with failures in: {', '.join(failed)}")
    results["success"] = not failed

    end_time = datetime.now(UTC)
    results["completed_at"] = end_time.isoformat()
    results["duration_seconds"] = (end_time - start_time).total_seconds()

    return results


# ============================================
# Health Check Server
# ============================================

class HealthState:
    """Shared state for health checks."""

    def __init__(self):
        self.last_sync_at: Optional[datetime] = None
        self.last_sync_success: bool = False
        self.total_syncs: int = 0
        self.failed_syncs: int = 0
        self.started_at: datetime = datetime.now(UTC)

    def record(self, results: dict) -> None:
        self.total_syncs += 1
        self.last_sync_at = datetime.now(UTC)
        self.last_sync_success = results["success"]
        if not results["success"]:
            self.failed_syncs += 1

    @property
    def healthy(self) -> bool:
        return self.last_sync_success or self.total_syncs == 0


async def health_check_handler(reader, writer, state: HealthState, services: SyncServices):
    """Handle HTTP health check requests."""
    # Request content is ignored
    await reader.read(1024)

    uptime = (datetime.now(UTC) - state.started_at).total_seconds()
    status = "healthy" if state.healthy else "unhealthy"

    try:
        queues = (await services.queue_status())["queues"]
    except Exception as e:
        logger.warning(f"Health check could not read queue sizes: {e}")
        queues = None

    body = json.dumps({
        "status": status,
        "uptime_seconds": round(uptime),
        "total_syncs": state.total_syncs,
        "failed_syncs": state.failed_syncs,
        "last_sync_at": state.last_sync_at.isoformat() if state.last_sync_at else "never",
        "queues": queues,
    })

    http_status = 200 if status == "healthy" else 503
    response = (
        f"HTTP/1.1 {http_status} {'OK' if http_status == 200 else 'Service Unavailable'}\r\n"
        f"Content-Type: application/json\r\n"
        f"Content-Length: {len(body)}\r\n"
        f"Connection: close\r\n"
        f"\r\n"
        f"{body}"
    )

    writer.write(response.encode())
    await writer.drain()
    writer.close()
    await writer.wait_closed()


async def start_health_server(port: int, state: HealthState, services: SyncServices):
    """Start the health check HTTP server."""
    if port <= 0:
        return None

    async def handler(reader, writer):
        await health_check_handler(reader, writer, state, services)

    server = await asyncio.start_server(handler, "0.0.0.0", port)
    print(f"[Scheduler] Health check server listening on port {port}")
    return server


# ============================================
# Main Scheduler Loop
# ============================================

async def scheduler_loop(
    config: SchedulerConfig,
    services: SyncServices,
    health_state: HealthState,
    shutdown_event: asyncio.Event,
):
    """Main scheduling loop.

    Args:
        config: Scheduler configuration
        services: Wired queue engine
        health_state: Shared health state
        shutdown_event: Event to signal shutdown
    """
    interval_seconds = config.interval_minutes * 60

    if config.sync_on_startup:
        print("[Scheduler] Running initial sync on startup...")
        results = await run_sync(config, services)
        health_state.record(results)
        print(f"[Scheduler] Initial sync complete: {results}")

    next_run = datetime.now(UTC) + timedelta(seconds=interval_seconds)
    print(f"[Scheduler] Next sync at {next_run.isoformat()} (in {config.interval_minutes} minutes)")

    while not shutdown_event.is_set():
        try:
            await asyncio.wait_for(
                shutdown_event.wait(),
                timeout=interval_seconds,
            )
            # Shutdown requested
            break
        except asyncio.TimeoutError:
            pass

        print("\n[Scheduler] ========== SCHEDULED SYNC ==========")
        print(f"[Scheduler] Time: {datetime.now(UTC).isoformat()}")

        results = await run_sync(config, services)
        health_state.record(results)

        print(f"[Scheduler] Sync complete: success={results['success']}, duration={results.get('duration_seconds', 0):.1f}s")

        next_run = datetime.now(UTC) + timedelta(seconds=interval_seconds)
        print(f"[Scheduler] Next sync at {next_run.isoformat()} (in {config.interval_minutes} minutes)")

    print("[Scheduler] Shutdown requested, exiting loop")


# ============================================
# Main Entry Point
# ============================================

async def main():
    """Main entry point for the scheduler."""
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    print("=" * 60)
    print("API-Sync Queue Scheduler")
    print("=" * 60)

    config = SchedulerConfig()
    print(f"[Scheduler] Config: {config}")

    if not config.sync_pull and not config.sync_push and not config.sync_deletes:
        print("[Scheduler] ERROR: Nothing to sync (SYNC_PULL, SYNC_PUSH, and SYNC_DELETES are all false)")
        sys.exit(1)

    try:
        services = await SyncServices.create()
    except ApiSyncError as e:
        print(f"[Scheduler] ERROR: {type(e).__name__}: {e}")
        sys.exit(1)

    if services.fetch_only:
        print("[Scheduler] WARNING: DATABASE_URL not set, queues are in memory and lost on exit")

    health_state = HealthState()
    shutdown_event = asyncio.Event()

    def handle_shutdown(signum, frame):
        print(f"\n[Scheduler] Received signal {signum}, initiating shutdown...")
        shutdown_event.set()

    signal.signal(signal.SIGTERM, handle_shutdown)
    signal.signal(signal.SIGINT, handle_shutdown)

    health_server = await start_health_server(config.health_check_port, health_state, services)

    try:
        await scheduler_loop(
            config=config,
            services=services,
            health_state=health_state,
            shutdown_event=shutdown_event,
        )
    finally:
        print("[Scheduler] Cleaning up...")

        if health_server:
            health_server.close()
            await health_server.wait_closed()

        await services.close()

        print("[Scheduler] Shutdown complete")


if __name__ == "__main__":
    asyncio.run(main())
