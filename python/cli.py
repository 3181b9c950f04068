"""
Command line entry point for sdnscore

Usage:
    python cli.py init-db
    python cli.py ingest --jsonl watchlist.jsonl --list-date 2024-03-01
    python cli.py score --list-date 2024-03-01 --customers customers.csv
    python cli.py status --list-date 2024-03-01
    python cli.py list-dates
    python cli.py scores --list-date 2024-03-01 --page 1 --page-size 50
"""

import argparse
import json
import logging
import sys
from datetime import date
from typing import List, Optional

from config_manager import ConfigManager, get_config, setup_logging
from coordinator import BatchScoringCoordinator, CoordinatorError
from database import DatabaseSessionProvider, DatabaseSettings, SqlAlchemyStore
from ingestor import IngestError, ListIngestor
from screening_engine import ScreeningEngine
from sources import CsvCustomerSource, CustomerSourceError, JsonLinesListSource

logger = logging.getLogger(__name__)


def _parse_date(value: str) -> date:
    try:
        return date.fromisoformat(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"Invalid date '{value}', expected YYYY-MM-DD")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Watchlist ingestion and batch customer scoring")
    parser.add_argument("--config", help="Path to config.yaml")
    parser.add_argument("--verbose", "-v", action="store_true", help="Verbose output")
    commands = parser.add_subparsers(dest="command", required=True)

    commands.add_parser("init-db", help="Create database tables")

    ingest = commands.add_parser("ingest", help="Ingest a watchlist from a JSON lines file")
    ingest.add_argument("--jsonl", required=True, help="One list record per line")
    ingest.add_argument("--list-date", type=_parse_date, help="List version date (default: today)")
    ingest.add_argument("--name", help="Snapshot display name")

    score = commands.add_parser("score", help="Score all customers against a list date")
    score.add_argument("--list-date", type=_parse_date, required=True)
    score.add_argument("--customers", required=True, help="Customer CSV file")

    status = commands.add_parser("status", help="Show the score run for a list date")
    status.add_argument("--list-date", type=_parse_date, required=True)

    commands.add_parser("list-dates", help="List dates that have scores")

    scores = commands.add_parser("scores", help="Show stored scores for a list date")
    scores.add_argument("--list-date", type=_parse_date, required=True)
    scores.add_argument("--page", type=int, default=1)
    scores.add_argument("--page-size", type=int)

    return parser


def open_store(config: ConfigManager) -> SqlAlchemyStore:
    provider = DatabaseSessionProvider(DatabaseSettings.from_config(config.database))
    provider.init()
    return SqlAlchemyStore(provider)


def run_command(args: argparse.Namespace, config: ConfigManager, store: SqlAlchemyStore) -> int:
    """Execute one parsed command, returning the process exit code"""
    if args.command == "init-db":
        store.provider.create_tables()
        logger.info("✓ Database schema ready")
        return 0

    if args.command == "ingest":
        ingestor = ListIngestor(store, config)
        source = JsonLinesListSource(args.jsonl)
        try:
            snapshot = ingestor.ingest(source.records(), list_date=args.list_date, name=args.name)
        except IngestError as e:
            logger.error(f"✗ Ingestion failed [{e.code.value}]: {e}")
            return 1
        print(json.dumps(snapshot.to_summary(), indent=2))
        return 0

    if args.command == "score":
        coordinator = BatchScoringCoordinator(
            store, ScreeningEngine(config.matching), config.scoring
        )
        try:
            handle = coordinator.run_for_date(args.list_date, CsvCustomerSource(args.customers))
        except CoordinatorError as e:
            logger.error(f"✗ Score run failed [{e.code.value}]: {e}")
            return 1
        except CustomerSourceError as e:
            logger.error(f"✗ Customer source failed: {e}")
            return 1
        print(json.dumps(handle.run.to_dict(), indent=2))
        return 0 if handle.state.value == "completed" else 2

    if args.command == "status":
        run = store.get_run(args.list_date)
        if run is None:
            logger.warning(f"⚠ No score run for {args.list_date.isoformat()}")
            return 1
        print(json.dumps(run.to_dict(), indent=2))
        return 0

    if args.command == "list-dates":
        for list_date in store.list_dates():
            print(list_date.isoformat())
        return 0

    if args.command == "scores":
        size = min(args.page_size or config.api.default_page_size, config.api.max_page_size)
        page = max(args.page, 1)
        records, total = store.scores_page(args.list_date, offset=(page - 1) * size, limit=size)
        print(json.dumps({
            'list_date': args.list_date.isoformat(),
            'page': page,
            'page_size': size,
            'total': total,
            'items': [r.to_dict() for r in records],
        }, indent=2))
        return 0

    raise ValueError(f"Unknown command: {args.command}")


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    config = get_config(args.config)
    setup_logging(config.logging)
    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    store = open_store(config)
    try:
        return run_command(args, config, store)
    finally:
        store.provider.close()


if __name__ == "__main__":
    sys.exit(main())
