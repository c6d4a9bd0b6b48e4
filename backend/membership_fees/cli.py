"""CLI for fee simulations, decision tree bounds, accounting exports and database maintenance."""
import argparse
import json
import subprocess
import sys
from decimal import Decimal
from pathlib import Path

from membership_fees.core.config import get_settings
from membership_fees.core.database import create_all_tables, get_session_local
from membership_fees.core.errors import FeeEngineError
from membership_fees.core.logging_config import LoggingConfig
from membership_fees.core.utils import as_date

BACKEND_DIR = Path(__file__).resolve().parents[1]


def _print_error(error: FeeEngineError) -> int:
    sys.stderr.write(json.dumps(error.to_dict(), default=str, indent=2) + "\n")
    return 1


def cmd_create_tables(args):
    """Create every table from the models (development and tests)."""
    create_all_tables()
    print("Tables created")
    return 0


def cmd_migrate(args):
    """Run alembic upgrade to a revision."""
    return subprocess.call(
        [sys.executable, "-m", "alembic", "upgrade", args.revision],
        cwd=str(BACKEND_DIR)
    )


def cmd_simulate(args):
    """Price a schedule for a member without writing anything."""
    from membership_fees.services.cotisation_fee_calculator import \
        CotisationFeeCalculator
    from membership_fees.services.quotient_familial_resolver import \
        IncomeBracketCache

    settings = get_settings()
    cache = IncomeBracketCache() if settings.enable_caching else None
    db = get_session_local()()
    try:
        calculator = CotisationFeeCalculator(db, income_cache=cache, settings=settings)
        result = calculator.simulate(
            args.member,
            args.schedule,
            payment_date=args.date,
            structure_id=args.structure,
            include_details=args.details,
        )
    except FeeEngineError as e:
        return _print_error(e)
    finally:
        db.close()

    print(result.model_dump_json(indent=2, exclude=None if args.trace else {"trace", "legacy_trace"}))
    return 0


def cmd_bounds(args):
    """Show the lowest and highest amounts a decision tree can produce."""
    from membership_fees.services.tree_lifecycle_manager import \
        TreeLifecycleManager

    db = get_session_local()()
    try:
        bounds = TreeLifecycleManager(db).bounds(
            args.tree,
            Decimal(args.base) if args.base is not None else None
        )
    except FeeEngineError as e:
        return _print_error(e)
    finally:
        db.close()

    print(bounds.model_dump_json(indent=2))
    return 0


def cmd_operations(args):
    """List the accounting operations visible to a structure."""
    from membership_fees.services.accounting_operation_service import \
        AccountingOperationService

    db = get_session_local()()
    try:
        operations = AccountingOperationService(db).list_operations(
            structure_id=args.structure,
            active_only=not args.all
        )
        print(json.dumps([operation.to_dict() for operation in operations], indent=2))
    finally:
        db.close()
    return 0


def cmd_export_reductions(args):
    """Sum billed reductions per accounting operation over a payment-date range."""
    from membership_fees.services.accounting_operation_service import \
        AccountingOperationService

    db = get_session_local()()
    try:
        rows = AccountingOperationService(db).export_reductions_by_operation(
            args.start, args.end, structure_id=args.structure
        )
    except FeeEngineError as e:
        return _print_error(e)
    finally:
        db.close()

    print(json.dumps(rows, default=str, indent=2))
    return 0


def build_parser():
    p = argparse.ArgumentParser(prog="membership-fees")
    sub = p.add_subparsers(dest="cmd")
    s = sub.add_parser("create-tables", help="Create all tables from the models")
    s.set_defaults(func=cmd_create_tables)
    s = sub.add_parser("migrate", help="Run migrations (upgrade head)")
    s.add_argument("--revision", "-r", help="Target revision", default="head")
    s.set_defaults(func=cmd_migrate)
    s = sub.add_parser("simulate", help="Simulate the fee of a member for a schedule")
    s.add_argument("--member", "-m", type=int, required=True, help="Member id")
    s.add_argument("--schedule", "-s", type=int, required=True, help="Fee schedule id")
    s.add_argument("--date", "-d", type=as_date, help="Payment date (YYYY-MM-DD), defaults to today")
    s.add_argument("--structure", type=int, help="Structure id")
    s.add_argument("--details", action="store_true", help="Include the member profile used")
    s.add_argument("--trace", action="store_true", help="Include the evaluation traces")
    s.set_defaults(func=cmd_simulate)
    s = sub.add_parser("bounds", help="Min/max final amounts of a decision tree")
    s.add_argument("--tree", "-t", type=int, required=True, help="Decision tree id")
    s.add_argument("--base", "-b", help="Base amount (defaults to the schedule amount)")
    s.set_defaults(func=cmd_bounds)
    s = sub.add_parser("operations", help="List accounting operations")
    s.add_argument("--structure", type=int, help="Structure id (global operations are always listed)")
    s.add_argument("--all", action="store_true", help="Include inactive operations")
    s.set_defaults(func=cmd_operations)
    s = sub.add_parser("export-reductions", help="Reductions per accounting operation over a period")
    s.add_argument("--start", type=as_date, required=True, help="First payment date (YYYY-MM-DD)")
    s.add_argument("--end", type=as_date, required=True, help="Last payment date (YYYY-MM-DD)")
    s.add_argument("--structure", type=int, help="Structure id")
    s.set_defaults(func=cmd_export_reductions)
    return p


def main(argv=None):
    p = build_parser()
    args = p.parse_args(argv)
    if not hasattr(args, "func"):
        p.print_help()
        return 2
    LoggingConfig.configure()
    return args.func(args)


if __name__ == "__main__":
    raise SystemExit(main())
