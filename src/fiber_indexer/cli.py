"""
Command-line interface for the fiber indexer.

Provides CLI commands for indexer management:
- init-db: Initialize the database schema
- run: Start the indexer API, workers and pollers
- status: Print snapshot totals and the last indexed / confirmed ordinals
- reprocess: Materialize snapshots whose materialization never completed
- config: Print the effective configuration

Usage:
    fiber-indexer init-db
    fiber-indexer run [--host HOST] [--port PORT]
    fiber-indexer status
    fiber-indexer reprocess [--limit N]
    fiber-indexer config

Environment Variables:
    INDEXER_HOST: Host to bind the API server (default: 0.0.0.0)
    INDEXER_PORT: Port for the API server (default: 8080)
    INDEXER_DB_PATH: SQLite database path (default: data/indexer.db)
    INDEXER_ML0_URL: Metagraph L0 node URL
"""

import argparse
import asyncio
import sys


def cmd_init_db(args: argparse.Namespace) -> int:
    """
    Initialize the database schema.

    Returns:
        0 on success, 1 on error
    """
    from fiber_indexer.db.schema import init_database

    try:
        init_database()
        print("Database initialized successfully.")
        return 0
    except Exception as e:
        print(f"Error initializing database: {e}", file=sys.stderr)
        return 1


def cmd_run(args: argparse.Namespace) -> int:
    """
    Run the indexer with uvicorn.

    The schema is created on startup if missing.

    Returns:
        0 on clean shutdown, 1 on error
    """
    import uvicorn

    from fiber_indexer.api.server import create_app
    from fiber_indexer.config import config, configure_logging

    configure_logging()
    host = args.host or config.server.host
    port = args.port or config.server.port
    try:
        uvicorn.run(create_app(), host=host, port=port, log_config=None)
        return 0
    except Exception as e:
        print(f"Error starting server: {e}", file=sys.stderr)
        return 1


def cmd_status(args: argparse.Namespace) -> int:
    """
    Print snapshot totals and the latest indexed and confirmed ordinals.

    Returns:
        0 on success, 1 on error
    """
    from fiber_indexer.db import fibers_repo, rejections_repo, snapshots_repo
    from fiber_indexer.db.errors import DatabaseError

    try:
        totals = snapshots_repo.get_totals()
        last = snapshots_repo.get_last_indexed()
        last_confirmed = snapshots_repo.get_last_confirmed()
        fibers = fibers_repo.count_fibers()
        rejections = rejections_repo.count_rejections()
    except DatabaseError as e:
        print(f"Error reading database: {e}", file=sys.stderr)
        return 1

    print(f"Snapshots:        {totals.total}")
    print(f"  pending:        {totals.pending}")
    print(f"  confirmed:      {totals.confirmed}")
    print(f"  orphaned:       {totals.orphaned}")
    print(f"  unmaterialized: {totals.unmaterialized}")
    if last:
        print(f"Last indexed:     {last.ordinal} ({last.status})")
    else:
        print("Last indexed:     -")
    print(f"Last confirmed:   {last_confirmed.ordinal if last_confirmed else '-'}")
    print(f"Fibers:           {fibers}")
    print(f"Rejections:       {rejections}")
    return 0


async def _reprocess(limit: int) -> tuple[int, int]:
    from fiber_indexer.config import config
    from fiber_indexer.db import snapshots_repo
    from fiber_indexer.indexing.materializer import Materializer
    from fiber_indexer.ledger.client import LedgerClient

    done = failed = 0
    async with LedgerClient(config.ledger.ml0_url, config.ledger.request_timeout) as ml0:
        materializer = Materializer(ml0, delivery_mode=config.materializer.delivery_mode)
        for snapshot in await asyncio.to_thread(snapshots_repo.list_unmaterialized, limit=limit):
            try:
                await materializer.materialize(snapshot)
                done += 1
            except Exception as e:
                failed += 1
                print(f"Snapshot {snapshot.ordinal} ({snapshot.hash}): {e}", file=sys.stderr)
    return done, failed


def cmd_reprocess(args: argparse.Namespace) -> int:
    """
    Materialize non-orphaned snapshots whose counters are still empty.

    Returns:
        0 if every snapshot was materialized, 1 otherwise
    """
    from fiber_indexer.config import configure_logging

    configure_logging()
    done, failed = asyncio.run(_reprocess(args.limit))
    print(f"Materialized {done} snapshot(s), {failed} failed.")
    return 0 if failed == 0 else 1


def cmd_config(args: argparse.Namespace) -> int:
    """Print the configuration summary."""
    from fiber_indexer.config import print_config_summary

    print_config_summary()
    return 0


def main(argv: list[str] | None = None) -> int:
    """Main entry point for the CLI."""
    parser = argparse.ArgumentParser(
        prog="fiber-indexer",
        description="Fiber Indexer - metagraph snapshot indexer and confirmation tracker",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # init-db command
    init_parser = subparsers.add_parser(
        "init-db",
        help="Initialize the database schema",
        description="Create the indexer tables, indexes and invariant triggers.",
    )
    init_parser.set_defaults(func=cmd_init_db)

    # run command
    run_parser = subparsers.add_parser(
        "run",
        help="Run the indexer",
        description="Start the API server, materialization workers and pollers.",
    )
    run_parser.add_argument(
        "--port",
        "-p",
        type=int,
        help="API server port (default: 8080, or INDEXER_PORT env var)",
    )
    run_parser.add_argument(
        "--host",
        type=str,
        help="Host to bind the server to (default: 0.0.0.0, or INDEXER_HOST env var)",
    )
    run_parser.set_defaults(func=cmd_run)

    # status command
    status_parser = subparsers.add_parser("status", help="Print indexer totals")
    status_parser.set_defaults(func=cmd_status)

    # reprocess command
    reprocess_parser = subparsers.add_parser(
        "reprocess",
        help="Materialize unmaterialized snapshots now",
        description="Materialize PENDING or CONFIRMED snapshots that were never materialized.",
    )
    reprocess_parser.add_argument(
        "--limit",
        "-n",
        type=int,
        default=50,
        help="Maximum snapshots to process (default: 50)",
    )
    reprocess_parser.set_defaults(func=cmd_reprocess)

    # config command
    config_parser = subparsers.add_parser("config", help="Print the configuration summary")
    config_parser.set_defaults(func=cmd_config)

    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 0

    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
