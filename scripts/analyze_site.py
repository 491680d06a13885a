#!/usr/bin/env python3
"""Run one site analysis against the in-memory store and print the export."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys

from sitecatalog.core.config import get_settings
from sitecatalog.core.telemetry import configure_logging, setup_telemetry, shutdown_telemetry
from sitecatalog.core.urls import validate_seed_url
from sitecatalog.jobs.orchestrator import run_site_analysis
from sitecatalog.services.exporter import export_results
from sitecatalog.services.guessers import get_guessers
from sitecatalog.services.repository import InMemoryRepository

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Discover, verify and describe the pages of one site.")
    parser.add_argument("url", help="Seed URL (http:// or https://)")
    parser.add_argument(
        "--format",
        dest="export_format",
        choices=["csv", "json"],
        default="csv",
        help="Output format for the verified URL catalog",
    )
    return parser


async def analyze(url: str, export_format: str) -> int:
    settings = get_settings()
    telemetry_runtime = setup_telemetry(None, settings)
    repository = InMemoryRepository()
    try:
        job = await repository.create_job(url)
        outcome = await run_site_analysis(
            job["id"],
            repository=repository,
            guessers=get_guessers(),
            settings=settings,
        )
        if outcome.status != "completed":
            logger.error("analysis failed: %s", outcome.error_message)
            return 1

        rows = await repository.list_url_results(job["id"])
        print(export_results(rows, export_format))
        return 0
    finally:
        shutdown_telemetry(None, telemetry_runtime)


def main() -> None:
    args = build_parser().parse_args()
    configure_logging()
    try:
        url = validate_seed_url(args.url)
    except ValueError as exc:
        print(f"error: {exc}", file=sys.stderr)
        sys.exit(2)
    sys.exit(asyncio.run(analyze(url, args.export_format)))


if __name__ == "__main__":
    main()
