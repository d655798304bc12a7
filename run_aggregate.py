#!/usr/bin/env python
"""Command-line interface for statlake rollups and dump imports.

Usage examples:
  # Aggregate settled hours for every site
  python run_aggregate.py --db statlake.duckdb hourly

  # Re-derive one day / one month
  python run_aggregate.py daily --date 2024-03-14
  python run_aggregate.py monthly --month 2024-02

  # Rebuild every missing or stale rollup for one site
  python run_aggregate.py catch-up --site 3

  # Import an Umami dump (synchronously), or only analyze it
  python run_aggregate.py import umami.sql.gz --dry-run

Exit codes:
  0 success
  1 unexpected failure or failed import
"""
from __future__ import annotations
import argparse, sys, pathlib, json, logging
from datetime import date
from typing import Optional

from statlake_core.aggregation import RollupEngine
from statlake_core.config import AnalyticsConfig, ImportStatus, load_config
from statlake_core.database_utils import connect
from statlake_core.importer import ImportCoordinator
from statlake_core.jobs import InlineJobQueue

logger = logging.getLogger("run_aggregate")


# ------------------------
# Helper utilities
# ------------------------
def print_result(obj: dict, use_json: bool):
    """Uniform output printer. Nested dicts (timings, cleanup counts) are indented in text mode."""
    if use_json:
        print(json.dumps(obj, indent=2, default=str))
        return
    for k, v in obj.items():
        if isinstance(v, dict):
            print(f"{k}:")
            for sk, sv in v.items():
                print(f"  {sk}: {sv}")
        else:
            print(f"{k}: {v}")


def _config(args) -> AnalyticsConfig:
    cfg = load_config(pathlib.Path(args.config) if args.config else None)
    if args.db:
        cfg.database = args.db
    return cfg


def _engine(args) -> RollupEngine:
    cfg = _config(args)
    return RollupEngine(connect(cfg.database), cfg)


# ------------------------
# Commands
# ------------------------
def cmd_hourly(args) -> int:
    print_result(_engine(args).run_hourly(), args.json)
    return 0


def cmd_daily(args) -> int:
    day = date.fromisoformat(args.date) if args.date else None
    print_result(_engine(args).run_daily(day), args.json)
    return 0


def cmd_monthly(args) -> int:
    print_result(_engine(args).run_monthly(args.month), args.json)
    return 0


def cmd_all(args) -> int:
    engine = _engine(args)
    result = {
        'hourly': engine.run_hourly(),
        'daily': engine.run_daily(),
        'monthly': engine.run_monthly(),
    }
    print_result(result, args.json)
    return 0


def cmd_cleanup(args) -> int:
    engine = _engine(args)
    result = {
        'source': engine.cleanup_source_data(),
        'hourly': engine.cleanup_hourly_rollups(),
        'daily': engine.cleanup_daily_rollups(),
        'monthly': engine.cleanup_monthly_rollups(),
    }
    print_result(result, args.json)
    return 0


def cmd_catch_up(args) -> int:
    engine = _engine(args)
    site_ids = [args.site] if args.site is not None else engine.sites.site_ids()
    result = {f"site_{site_id}": engine.catch_up(site_id) for site_id in site_ids}
    print_result(result, args.json)
    return 0


def cmd_import(args) -> int:
    cfg = _config(args)
    if args.keep_file:
        cfg.imports.delete_file_on_finish = False
    conn = connect(cfg.database)
    coordinator = ImportCoordinator(conn, InlineJobQueue(), cfg)
    job_id = coordinator.submit(args.file, dry_run=args.dry_run)
    status = coordinator.status(job_id)
    print_result(status, args.json)
    return 0 if status['status'] == ImportStatus.COMPLETED.value else 1


def cmd_status(args) -> int:
    print_result(_engine(args).status(), args.json)
    return 0


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(description="Statlake rollups and imports")
    p.add_argument("--db", default=None, help="DuckDB database file path (default from config)")
    p.add_argument("--config", default=None, help="YAML config file (default: $STATLAKE_CONFIG)")
    p.add_argument("--json", action="store_true", help="Print machine-readable JSON output")
    p.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    sub = p.add_subparsers(dest="subcmd", required=True)

    sub.add_parser("hourly", help="Aggregate settled hours for all sites").set_defaults(func=cmd_hourly)

    dp = sub.add_parser("daily", help="Derive daily rollups (default: yesterday) plus stale days")
    dp.add_argument("--date", help="Day to derive (YYYY-MM-DD)")
    dp.set_defaults(func=cmd_daily)

    mp = sub.add_parser("monthly", help="Derive monthly rollups (default: previous month) plus stale months")
    mp.add_argument("--month", help="Month to derive (YYYY-MM)")
    mp.set_defaults(func=cmd_monthly)

    sub.add_parser("all", help="Run hourly, daily and monthly sweeps in order").set_defaults(func=cmd_all)
    sub.add_parser("cleanup", help="Apply retention to raw data and rollups").set_defaults(func=cmd_cleanup)

    cp = sub.add_parser("catch-up", help="Rebuild missing or stale rollups")
    cp.add_argument("--site", type=int, default=None, help="Only this site id (default: all sites)")
    cp.set_defaults(func=cmd_catch_up)

    ip = sub.add_parser("import", help="Import an Umami SQL dump (.sql or .sql.gz)")
    ip.add_argument("file", help="Dump file path")
    ip.add_argument("--dry-run", action="store_true", help="Only analyze the dump; write nothing")
    ip.add_argument("--keep-file", action="store_true", help="Do not delete the dump when the job finishes")
    ip.set_defaults(func=cmd_import)

    sub.add_parser("status", help="Pending hours and rollup row counts").set_defaults(func=cmd_status)
    return p


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    try:
        return args.func(args)
    except KeyboardInterrupt:
        print("Interrupted", file=sys.stderr)
        return 1
    except Exception as e:  # pragma: no cover
        logger.error(f"{args.subcmd} failed: {e}", exc_info=args.verbose)
        print(f"ERROR: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
