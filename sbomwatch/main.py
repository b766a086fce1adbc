#!/usr/bin/env python3
"""Entry point: wire the services together and run the refresh scheduler."""

import argparse
import asyncio
import json
import logging
import sys
from contextlib import contextmanager
from dataclasses import asdict
from pathlib import Path
from typing import Optional

from sbomwatch.application.config import Settings, load_settings
from sbomwatch.application.service.alert_service import AlertCalculator
from sbomwatch.application.service.refresh_scheduler import RefreshScheduler
from sbomwatch.application.service.snapshot_service import SnapshotService
from sbomwatch.infrastructure.clients.feed_client import FeedClient
from sbomwatch.infrastructure.persistence.database import create_database_engine, create_session_factory
from sbomwatch.infrastructure.persistence.repositories import SQLAlchemyRepository
from sbomwatch.infrastructure.persistence.vulnerability_store import SQLAlchemyVulnerabilityStore


def setup_logging(verbose: bool = False, log_file: Optional[str] = None):
    """Configure logging."""
    level = logging.DEBUG if verbose else logging.INFO
    handlers = [logging.StreamHandler(sys.stdout)]

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=handlers,
    )


def create_scheduler(settings: Settings) -> RefreshScheduler:
    """Factory function with dependency injection"""
    engine = create_database_engine(settings.database_url)
    session_factory = create_session_factory(engine)
    feed_client = FeedClient(timeout=settings.request_timeout)
    return RefreshScheduler(session_factory, settings, feed_source=feed_client)


@contextmanager
def get_calculator(settings: Settings):
    """Context manager for an alert calculator with its own session"""
    engine = create_database_engine(settings.database_url)
    session = create_session_factory(engine)()
    try:
        yield AlertCalculator(SQLAlchemyRepository(session), SQLAlchemyVulnerabilityStore(session))
    finally:
        session.close()


async def run(settings: Settings, once: bool) -> int:
    scheduler = create_scheduler(settings)
    if once:
        return 0 if await scheduler.run_once() else 1

    task = scheduler.start()
    try:
        await task
    finally:
        await scheduler.stop()
    return 0


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Correlate project SBOM snapshots with a vulnerability feed"
    )
    parser.add_argument(
        "--config",
        default="config.yaml",
        help="Path to config file (default: config.yaml)",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run a single import and recalculation, then exit",
    )
    parser.add_argument(
        "--summary",
        action="store_true",
        help="Print alert totals across all projects as JSON and exit",
    )
    parser.add_argument(
        "--recatalogue",
        action="store_true",
        help="Re-classify stored components with the component catalogue and exit",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Enable debug logging",
    )
    parser.add_argument(
        "--log-file",
        help="Path to log file",
    )
    args = parser.parse_args()

    setup_logging(args.verbose, args.log_file)
    settings = load_settings(args.config)

    if args.summary:
        with get_calculator(settings) as calculator:
            summary = calculator.global_summary()
        print(json.dumps(dict(asdict(summary), total=summary.total), indent=2))
        return

    if args.recatalogue:
        with get_calculator(settings) as calculator:
            updated = SnapshotService(calculator.repository).recatalogue()
        logging.info(f"{updated} components re-classified")
        return

    try:
        sys.exit(asyncio.run(run(settings, args.once)))
    except KeyboardInterrupt:
        logging.info("Interrupted by user")
        sys.exit(0)


if __name__ == "__main__":
    main()
