"""
Observer command line.

Commands:
    observer serve      Backfill, follow new blocks and serve the HTTP API
    observer backfill   Run one backfill pass up to the current head and exit
    observer status     Print cursor and projection statistics as JSON
    observer rebuild    Re-derive inventory from the transaction ledger
"""

import argparse
import asyncio
import json
import logging
import sys

from .config import ObserverConfig
from .errors import ConfigError, ObserverError
from .indexer.coordinator import ObserverService
from .indexer.projection_store import ProjectionStore
from .indexer.projector import EventProjector
from .indexer.query_engine import QueryEngine


def configure_logging(level: str):
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )


def cmd_serve(config: ObserverConfig) -> int:
    import uvicorn

    from .api_server import create_app

    service = ObserverService(config)
    app = create_app(service, manage_lifecycle=True)

    print("=" * 60)
    print("SUPPLY CHAIN OBSERVER")
    print("=" * 60)
    print(f"RPC: {config.rpc_url}")
    print(f"Contracts: {', '.join(config.contract_addresses)}")
    print(f"API: http://{config.api_host}:{config.api_port}/api/health")
    print("-" * 60)

    uvicorn.run(app, host=config.api_host, port=config.api_port, log_level=config.log_level.lower())
    return 0


async def _backfill(config: ObserverConfig) -> int:
    service = ObserverService(config)
    try:
        result = await service.run_backfill_once()
    finally:
        service.store.close()

    print(json.dumps({
        "start": result.start,
        "end": result.end,
        "blocks_processed": result.blocks_processed,
        "halted_at": result.halted_at,
        "error": result.error,
    }, indent=2))
    return 0 if result.completed else 1


def cmd_backfill(config: ObserverConfig) -> int:
    return asyncio.run(_backfill(config))


def cmd_status(config: ObserverConfig) -> int:
    store = ProjectionStore(config.db_path)
    try:
        query = QueryEngine(store)
        print(json.dumps({
            "cursor": store.get_cursor(),
            "blocks": store.count_blocks(),
            "stats": query.get_stats(),
            "conservation_mismatches": query.check_conservation(),
            "faults": query.get_faults(limit=10),
        }, indent=2))
    finally:
        store.close()
    return 0


def cmd_rebuild(config: ObserverConfig) -> int:
    store = ProjectionStore(config.db_path)
    try:
        entries = EventProjector(store).rebuild_inventory()
    finally:
        store.close()
    print(f"Rebuilt {entries} inventory entries from the transaction ledger")
    return 0


COMMANDS = {
    "serve": cmd_serve,
    "backfill": cmd_backfill,
    "status": cmd_status,
    "rebuild": cmd_rebuild,
}


def main(argv=None) -> int:
    """Entry point."""
    parser = argparse.ArgumentParser(description='Supply Chain Observer')
    parser.add_argument('--env-file', default=None, help='Path to a .env file')
    parser.add_argument('--db-path', default=None, help='Override DB_PATH')
    parser.add_argument('--log-level', default=None, help='Override LOG_LEVEL')
    parser.add_argument('command', choices=sorted(COMMANDS), help='Command to run')

    args = parser.parse_args(argv)

    try:
        config = ObserverConfig.from_env(args.env_file)
        if args.db_path:
            config.db_path = args.db_path
        if args.log_level:
            config.log_level = args.log_level.upper()
            config.validate()
    except ConfigError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 2

    configure_logging(config.log_level)

    try:
        return COMMANDS[args.command](config)
    except ObserverError as e:
        logging.getLogger("Observer").error(f"{args.command} failed: {e}")
        return 1
    except KeyboardInterrupt:
        print("\nShutting down...")
        return 0


if __name__ == '__main__':
    sys.exit(main())
