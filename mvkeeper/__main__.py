"""
mvkeeper.__main__ — Entry point for ``python -m mvkeeper``
============================================================

Wiring:
1. Load .env (DATABASE_URL).
2. Load config.yaml (categories, DDL paths, defaults).
3. Create the SQLAlchemy engine and ensure the ledger tables exist.
4. Run one maintenance command and print its result as JSON.

Run with::

    python -m mvkeeper apply
    python -m mvkeeper refresh mv_daily_sales --allow-blocking
    python -m mvkeeper refresh-staggered --delay-ms 2000
    python -m mvkeeper freshness --threshold-hours 12

Exit status is 0 when the command reports success, 1 otherwise.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys

from dotenv import load_dotenv

from mvkeeper.config import load_config
from mvkeeper.database.engine import create_db_engine, init_db
from mvkeeper.database.models import RefreshTrigger
from mvkeeper.services.maintenance import MaintenanceService, RefreshOptions

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s │ %(levelname)-8s │ %(name)s │ %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger("mvkeeper")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="mvkeeper", description="Materialized-view refresh and database maintenance",
    )
    parser.add_argument("--config", default="config.yaml", help="path to config.yaml")
    parser.add_argument("--by", dest="initiated_by", default="cli",
                        help="name recorded as initiated_by")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("apply", help="create indexes, views and tables (idempotent)")

    p = sub.add_parser("refresh", help="refresh one view, or every view if none given")
    p.add_argument("view_name", nargs="?")
    p.add_argument("--stagger-ms", type=int, default=None)
    p.add_argument("--allow-blocking", action="store_true", default=None)

    p = sub.add_parser("refresh-category", help="refresh one category")
    p.add_argument("category")
    p.add_argument("--allow-blocking", action="store_true", default=None)

    p = sub.add_parser("refresh-staggered", help="refresh every category in order")
    p.add_argument("--delay-ms", type=int, default=None)
    p.add_argument("--allow-blocking", action="store_true", default=None)

    p = sub.add_parser("freshness", help="report stale and never-refreshed views")
    p.add_argument("--threshold-hours", type=float, default=None)

    sub.add_parser("status", help="index / view / table inventory")

    p = sub.add_parser("history", help="recent refresh attempts")
    p.add_argument("--limit", type=int, default=50)
    p.add_argument("--view", dest="view_name", default=None)

    p = sub.add_parser("archive", help="move old audit events to the archive")
    p.add_argument("--days", type=int, default=None)

    p = sub.add_parser("purge", help="delete old archived audit events")
    p.add_argument("--days", type=int, default=None)
    return parser


async def run_command(service: MaintenanceService, args: argparse.Namespace) -> dict:
    """Dispatch one parsed command onto the service."""
    by = args.initiated_by
    command = args.command
    if command == "apply":
        return await service.apply_all_optimizations()
    if command == "refresh" and args.view_name:
        return await service.refresh_view(
            args.view_name, RefreshTrigger.MANUAL, by, args.allow_blocking,
        )
    if command == "refresh":
        return await service.refresh_all_materialized_views(
            RefreshTrigger.MANUAL, by,
            RefreshOptions(args.stagger_ms, args.allow_blocking),
        )
    if command == "refresh-category":
        return await service.refresh_views_by_category(
            args.category, RefreshTrigger.MANUAL, by, args.allow_blocking,
        )
    if command == "refresh-staggered":
        return await service.refresh_views_staggered_by_category(
            RefreshTrigger.MANUAL, by, args.delay_ms, args.allow_blocking,
        )
    if command == "freshness":
        return await service.get_freshness_status(args.threshold_hours)
    if command == "status":
        return {"success": True, **await service.get_optimization_status()}
    if command == "history":
        return await service.get_refresh_history(args.limit, args.view_name)
    if command == "archive":
        return await service.archive_old_audit_events(args.days, by)
    if command == "purge":
        return await service.purge_old_archived_events(args.days)
    raise ValueError(f"Unknown command: {args.command}")


def main(argv: list[str] | None = None) -> int:
    """Bootstrap and run one maintenance command."""
    load_dotenv()
    args = build_parser().parse_args(argv)

    try:
        cfg = load_config(args.config)
    except FileNotFoundError as exc:
        logger.critical("%s", exc)
        return 2

    engine = create_db_engine()
    init_db(engine)
    service = MaintenanceService(engine, cfg)

    try:
        result = asyncio.run(run_command(service, args))
    finally:
        engine.dispose()

    print(json.dumps(result, indent=2, default=str))
    return 0 if result.get("success", True) else 1


if __name__ == "__main__":
    sys.exit(main())
