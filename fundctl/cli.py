import argparse
import logging
import os
import sys
from datetime import date
from pathlib import Path

from config import DEFAULT_FORECAST_TICK, DEFAULT_MISS_RATE, DEFAULT_SESSION_CADENCE_DAYS
from security.logging_filters import RedactSecretsFilter

from .handlers import admin_handlers, forecast_handlers, reconcile_handlers


DEFAULT_DB_PATH = Path(os.getenv("FUND_DB_PATH") or "localdb/funding.db")


def _add_common_db_arg(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--db",
        type=Path,
        default=DEFAULT_DB_PATH,
        help=f"Path to SQLite DB (default: {DEFAULT_DB_PATH})",
    )


def _configure_logging(verbose: bool) -> None:
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(message)s"))
    handler.addFilter(RedactSecretsFilter())
    logger = logging.getLogger("uvicorn.error")
    logger.handlers = [handler]
    logger.setLevel(logging.INFO if verbose else logging.WARNING)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="fundctl", description="Funded item reconciliation and forecasting CLI")
    subparsers = parser.add_subparsers(dest="command")

    # reconcile
    rec_parser = subparsers.add_parser("reconcile", help="Reconcile funded item usage against session notes")
    target = rec_parser.add_mutually_exclusive_group()
    target.add_argument("--client", dest="client_id", type=int, help="Reconcile a single client")
    target.add_argument("--all", dest="all_clients", action="store_true", help="Reconcile every client (default)")
    rec_parser.add_argument("--apply", action="store_true", help="Write corrected usage values (default: dry run)")
    rec_parser.add_argument("--verbose", action="store_true", help="Print the per-item utilization table")
    _add_common_db_arg(rec_parser)

    # diagnose
    diag_parser = subparsers.add_parser("diagnose", help="Check session note item codes against funded items")
    diag_parser.add_argument("--client", dest="client_id", type=int, required=True)
    _add_common_db_arg(diag_parser)

    # forecast
    fc_parser = subparsers.add_parser("forecast", help="Fund utilization forecast for a client's active plan")
    fc_parser.add_argument("--client", dest="client_id", type=int, required=True)
    fc_parser.add_argument("--as-of", dest="as_of", type=date.fromisoformat, help="Forecast date (YYYY-MM-DD, default: today)")
    fc_parser.add_argument(
        "--cadence",
        type=int,
        default=DEFAULT_SESSION_CADENCE_DAYS,
        help=f"Days between sessions (default: {DEFAULT_SESSION_CADENCE_DAYS})",
    )
    fc_parser.add_argument(
        "--miss-rate",
        dest="miss_rate",
        type=float,
        default=DEFAULT_MISS_RATE,
        help="Fraction of sessions expected to be missed when none are recorded",
    )
    fc_parser.add_argument("--tick", choices=["cadence", "monthly"], default=DEFAULT_FORECAST_TICK)
    fc_parser.add_argument("--json", dest="as_json", action="store_true", help="Print the forecast as JSON")
    _add_common_db_arg(fc_parser)

    # db group
    db_parser = subparsers.add_parser("db", help="Database utilities")
    db_sub = db_parser.add_subparsers(dest="db_command")
    migrate_parser = db_sub.add_parser("migrate", help="Run DB migrations")
    _add_common_db_arg(migrate_parser)

    reset_parser = db_sub.add_parser("reset", help="Delete the DB file and re-create the schema")
    _add_common_db_arg(reset_parser)
    reset_parser.add_argument(
        "--force",
        action="store_true",
        help="Do not prompt; proceed with destructive reset",
    )

    return parser


def main(argv: list[str] | None = None) -> int:
    argv = argv if argv is not None else sys.argv[1:]
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 2

    _configure_logging(bool(getattr(args, "verbose", False)))

    if args.command == "reconcile":
        return reconcile_handlers.reconcile(
            args.db,
            client_id=args.client_id,
            apply_fixes=args.apply,
            verbose=args.verbose,
        )

    if args.command == "diagnose":
        return reconcile_handlers.diagnose(args.db, args.client_id)

    if args.command == "forecast":
        return forecast_handlers.forecast(
            args.db,
            args.client_id,
            as_of=args.as_of,
            cadence_days=args.cadence,
            miss_rate=args.miss_rate,
            tick=args.tick,
            as_json=args.as_json,
        )

    if args.command == "db" and args.db_command == "migrate":
        return admin_handlers.db_migrate(args.db)

    if args.command == "db" and args.db_command == "reset":
        return admin_handlers.db_reset(args.db, force=args.force)

    parser.print_help()
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
