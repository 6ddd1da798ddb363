#!/usr/bin/env python3
"""API-Sync Queue Engine CLI.

This module provides a command-line interface for running the API-Sync
push and pull queues against a remote OData service, backed by PostgreSQL
(or by in-memory queues in fetch-only mode).

Architecture:
    - SyncServices wires the stores, transport and use cases once
    - ApiSyncClient is the shared HTTP layer for all remote calls
    - TokenManager / BasicAuthProvider supply credentials
    - Each subcommand runs one pass and prints a summary

Environment Variables Required:
    - APISYNC_BASE_URL: Remote service base URL
    - APISYNC_CLIENT_ID / APISYNC_CLIENT_SECRET / APISYNC_TOKEN_URL: OAuth2
      (or APISYNC_USERNAME / APISYNC_PASSWORD with APISYNC_AUTH_METHOD=basic)
    - APISYNC_MAX_FAILS, APISYNC_RETRY_BACKOFF_SECONDS: Queue retry policy
    - DATABASE_URL: PostgreSQL connection string (optional, see below)
    - APISYNC_MAPPINGS_FILE: Mapping definitions (required without DATABASE_URL)

Example Usage:
    $ python main.py pull                          # Pull updated records, drain queue
    $ python main.py pull --mapping accounts --force
    $ python main.py pull --mapping accounts --remote-id 42
    $ python main.py push                          # Process the push queue
    $ python main.py enqueue-push node 17 update   # Queue one entity change
    $ python main.py delete-records                # Reconcile remote deletions
    $ python main.py load-mappings mappings.json   # Import mappings into the DB
    $ python main.py queue-status
"""
import argparse
import asyncio
import json
import os
import sys
import time
from datetime import UTC, datetime

from dotenv import load_dotenv

load_dotenv()

# Local imports
from src.apisync.api import ApiSyncError, close_pool, create_pool
from src.apisync.sync.adapters.mapping_config import PostgresMappingRepository, load_mappings_file
from src.apisync.sync.domain.entities import PushOp
from src.apisync.sync.services import SyncServices


def print_section(title: str) -> None:
    print("\n" + "=" * 60)
    print(title)
    print("=" * 60)


async def run_pull(services: SyncServices, args: argparse.Namespace) -> dict:
    """Populate the pull queue, then drain it.

    Args:
        services: Wired queue engine
        args: Parsed command-line arguments

    Returns:
        Pull statistics dictionary
    """
    mapping = None
    if args.mapping:
        mapping = await services.mappings.load(args.mapping)
        if mapping is None:
            print(f"[Main] Unknown mapping: {args.mapping}")
            sys.exit(1)

    if args.remote_id and mapping is None:
        print("[Main] --remote-id requires --mapping")
        sys.exit(1)

    if mapping is not None:
        enqueued = await services.populator.populate_queue(mapping, args.remote_id)
    else:
        enqueued = await services.populator.get_updated_records(force_pull=args.force)

    deadline = float("inf") if args.no_time_limit else None
    drained = await services.drainer.process_queue(deadline=deadline)
    return {"enqueued": enqueued, **drained.to_dict()}


async def run_push(services: SyncServices, args: argparse.Namespace) -> dict:
    """Process the push queue for one or all push mappings."""
    mappings = None
    if args.mapping:
        mapping = await services.mappings.load(args.mapping)
        if mapping is None:
            print(f"[Main] Unknown mapping: {args.mapping}")
            sys.exit(1)
        mappings = [mapping]
    return await services.push_queue.process_queues(mappings)


async def run_enqueue_push(services: SyncServices, args: argparse.Namespace) -> dict:
    """Queue a push for every mapping that handles this entity change."""
    entity = await services.entities.load(args.entity_type, args.entity_id)
    if entity is None:
        print(f"[Main] Entity {args.entity_type}/{args.entity_id} not found")
        sys.exit(1)

    item_ids = await services.push_queue.enqueue_entity_change(entity, args.op)
    return {"entity": f"{args.entity_type}/{args.entity_id}", "op": args.op, "queued": item_ids}


async def run_delete_records(services: SyncServices, args: argparse.Namespace) -> dict:
    """Delete local entities whose remote records are gone."""
    return await services.deleted_records.process_deleted_records()


async def run_queue_status(services: SyncServices, args: argparse.Namespace) -> dict:
    return await services.queue_status()


async def load_mappings(args: argparse.Namespace) -> dict:
    """Validate a mappings file and import it into the apisync_mapping table.

    With --check the file is only validated; no database is needed.
    """
    configs = load_mappings_file(args.file)
    print(f"[Main] Validated {len(configs)} mapping(s) from {args.file}")

    if args.check:
        return {"validated": len(configs), "mappings": [c.id for c in configs]}

    database_url = os.getenv("DATABASE_URL")
    if not database_url:
        print("[Main] DATABASE_URL not set, cannot import mappings")
        sys.exit(1)

    pool = await create_pool(database_url)
    try:
        written = await PostgresMappingRepository(pool).import_mappings(configs)
    finally:
        await close_pool(pool)

    return {"imported": written, "mappings": [c.id for c in configs]}


COMMANDS = {
    "pull": run_pull,
    "push": run_push,
    "enqueue-push": run_enqueue_push,
    "delete-records": run_delete_records,
    "queue-status": run_queue_status,
}


async def run_command(args: argparse.Namespace) -> None:
    """Main orchestration function.

    Args:
        args: Parsed command-line arguments
    """
    start_time = time.monotonic()
    print(f"[Main] Starting {args.command} at {datetime.now(UTC).isoformat()}")

    try:
        if args.command == "load-mappings":
            result = await load_mappings(args)
        else:
            services = await SyncServices.create()
            async with services:
                if services.fetch_only:
                    print("[Main] No database configured, using in-memory queues")
                result = await COMMANDS[args.command](services, args)
    except ApiSyncError as e:
        print(f"[Main] {type(e).__name__}: {e}")
        sys.exit(1)

    print_section(f"{args.command.upper()} COMPLETE")
    print(json.dumps(result, indent=2, default=str))

    duration = time.monotonic() - start_time
    print(f"\n[Main] Completed in {duration:.1f} seconds")


def main():
    parser = argparse.ArgumentParser(
        description="Run API-Sync push and pull queues",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py pull                              # Pull updated records for due mappings
  python main.py pull --force                      # Ignore pull frequencies
  python main.py pull --mapping accounts           # Pull one mapping
  python main.py pull --mapping accounts --remote-id 42
  python main.py push --mapping accounts           # Push one mapping's queue
  python main.py enqueue-push node 17 update       # Queue a push for entity node/17
  python main.py load-mappings mappings.json --check
        """
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    pull = subparsers.add_parser("pull", help="Populate and drain the pull queue")
    pull.add_argument("--mapping", metavar="ID", help="Pull only this mapping")
    pull.add_argument("--remote-id", metavar="ID", help="Force-pull one remote record (requires --mapping)")
    pull.add_argument("--force", action="store_true", help="Ignore pull frequencies")
    pull.add_argument(
        "--no-time-limit",
        action="store_true",
        help="Drain until the queue is empty, ignoring APISYNC_PULL_TIME_LIMIT",
    )

    push = subparsers.add_parser("push", help="Process the push queue")
    push.add_argument("--mapping", metavar="ID", help="Push only this mapping")

    enqueue = subparsers.add_parser("enqueue-push", help="Queue a push for a local entity change")
    enqueue.add_argument("entity_type", help="Local entity type")
    enqueue.add_argument("entity_id", help="Local entity id")
    enqueue.add_argument("op", choices=[op.value for op in PushOp], help="Change to push")

    subparsers.add_parser("delete-records", help="Delete local entities removed remotely")

    load = subparsers.add_parser("load-mappings", help="Import a mappings JSON file into the database")
    load.add_argument("file", help="Mappings JSON file")
    load.add_argument("--check", action="store_true", help="Validate only, do not import")

    subparsers.add_parser("queue-status", help="Show queue sizes and health")

    args = parser.parse_args()

    asyncio.run(run_command(args))


if __name__ == "__main__":
    main()
