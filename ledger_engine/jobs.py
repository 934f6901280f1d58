"""
Recurring generation job.

An external scheduler (cron, a systemd timer...) runs this once per tick:

    ledger-generate-recurring --as-of 2024-03-31

It prints the generation report as JSON and exits non-zero when any
template failed.
"""

import argparse
import asyncio
import datetime as dt
import sys
from typing import Optional, Sequence

import structlog

from ledger_engine.audit import configure_logging
from ledger_engine.config import get_settings
from ledger_engine.models.events import GenerationReport
from ledger_engine.orchestrator import create_ledger_engine
from ledger_engine.storage import init_db


def _parse_date(value: str) -> dt.date:
    try:
        return dt.date.fromisoformat(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"Expected YYYY-MM-DD, got {value!r}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ledger-generate-recurring",
        description="Materialize every recurring transaction due on or before a date.",
    )
    parser.add_argument(
        "--as-of",
        type=_parse_date,
        help="Generation cut-off date (YYYY-MM-DD). Defaults to today.",
    )
    parser.add_argument(
        "--database",
        help="SQLAlchemy async database URL. Defaults to LEDGER_DB_URL.",
    )
    return parser


async def run(as_of: dt.date, database_url: Optional[str] = None) -> GenerationReport:
    settings = get_settings()
    database = None
    if database_url:
        database = settings.database.model_copy(update={"url": database_url})
    engine, db_engine = create_ledger_engine(settings, database=database)
    try:
        await init_db(db_engine)
        return await engine.run_due_generation(as_of)
    finally:
        await db_engine.dispose()


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    ledger_settings = get_settings().ledger
    configure_logging(ledger_settings.log_level, ledger_settings.log_json)
    logger = structlog.get_logger("ledger_engine.jobs")

    as_of = args.as_of or dt.date.today()
    report = asyncio.run(run(as_of, args.database))

    print(report.model_dump_json(indent=2))
    if report.errors:
        logger.error("recurring_job_finished_with_errors", errors=report.errors)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
