#!/usr/bin/env python3
"""Personal CFO CLI - API server, job worker and admin helpers."""
import argparse
import math
import sys
import logging
from pathlib import Path
from typing import Optional

from personal_cfo.config import DB_PATH, ensure_data_dir
from personal_cfo.errors import FinanceError
from personal_cfo.intelligence.entitlements import NUMERIC_RESOURCES, Plan, get_entitlements


def setup_logging(verbose: bool = False):
    """Configure logging."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(levelname)s - %(message)s",
        datefmt="%H:%M:%S"
    )


def _db_path(args) -> Path:
    if args.db:
        return Path(args.db)
    ensure_data_dir()
    return DB_PATH


def _fmt_limit(value) -> str:
    if isinstance(value, bool):
        return "yes" if value else "no"
    if value is None or (isinstance(value, float) and math.isinf(value)):
        return "unlimited"
    return str(value)


def cmd_serve(args):
    """Run the HTTP API."""
    import uvicorn
    from personal_cfo.web import api

    api.app.state.db_path = _db_path(args)
    api.app.state.embedded_worker = not args.no_worker
    uvicorn.run(api.app, host=args.host, port=args.port)
    return 0


def cmd_worker(args):
    """Drain the job queue."""
    from personal_cfo.db.sqlite_store import SQLiteStore
    from personal_cfo.jobs.worker import JobWorker

    with SQLiteStore(_db_path(args)) as store:
        worker = JobWorker(store)
        if args.once:
            worker.run_maintenance()
            handled = worker.drain()
            print(f"Handled {handled} event(s)")
            return 0
        try:
            worker.run_forever()
        except KeyboardInterrupt:
            print("\nWorker stopped")
    return 0


def cmd_extract_pdf(args):
    """Extract text from a PDF through the sandboxed extractor."""
    from personal_cfo.ingestion.pdf_extract import extract_text_from_pdf, validate_pdf_bytes
    from personal_cfo.ingestion.statement_parser import StatementTextParser

    file_path = Path(args.file)
    if not file_path.exists():
        print(f"Error: File not found: {file_path}")
        return 1

    data = file_path.read_bytes()
    problem = validate_pdf_bytes(data)
    if problem:
        print(f"Error: {problem}")
        return 1

    result = extract_text_from_pdf(data, password=args.password)
    if not result.success:
        print(f"Error: {result.error}")
        return 1

    if not args.parse:
        print(result.text)
        return 0

    transactions = StatementTextParser().parse(result.text)
    print(f"Parsed {len(transactions)} transaction(s):")
    for t in transactions:
        print(f"  {t['date']}  {t['amount_cents'] / 100:>10.2f} {t['currency']}  {t['merchant']}")
    return 0


def cmd_plans(args):
    """Show plan entitlements."""
    resources = NUMERIC_RESOURCES + ["keyword_categorization"]
    print(f"{'resource':<24}" + "".join(f"{p.value:>12}" for p in Plan))
    for resource in resources:
        row = "".join(f"{_fmt_limit(getattr(get_entitlements(p), resource)):>12}" for p in Plan)
        print(f"{resource:<24}{row}")
    return 0


def cmd_usage(args):
    """Show a user's plan usage."""
    from personal_cfo.api.finance_service import FinanceService

    with FinanceService(db_path=_db_path(args)) as service:
        me = service.get_me(args.user_id)
        print(f"User: {args.user_id}  Plan: {me['user']['plan']}")
        for resource, usage in me["usage"].items():
            print(
                f"  {resource:<22} used {usage['used']:>4} / {_fmt_limit(usage['limit']):<10}"
                f" remaining {_fmt_limit(usage['remaining'])}"
            )
    return 0


def cmd_set_plan(args):
    """Change a user's plan."""
    from personal_cfo.api.finance_service import FinanceService

    with FinanceService(db_path=_db_path(args)) as service:
        try:
            user = service.set_plan(args.user_id, args.plan)
        except FinanceError as e:
            print(f"Error: {e.message}")
            return 1
        print(f"User {user['id']} is now on the {user['plan']} plan")
    return 0


def main(argv: Optional[list] = None):
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Personal CFO - statement ingestion, categorization and analytics",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  personal-cfo serve --port 8000           Run the API with an embedded worker
  personal-cfo worker                      Run a standalone job worker
  personal-cfo extract-pdf stmt.pdf        Print the text of a statement PDF
  personal-cfo extract-pdf stmt.pdf --parse
  personal-cfo plans                       Show plan entitlements
  personal-cfo usage user_123              Show a user's plan usage
"""
    )

    parser.add_argument("-v", "--verbose", action="store_true", help="Verbose output")
    parser.add_argument("--db", help="SQLite database path (default: ~/.personal_cfo/personal_cfo.db)")

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # Serve command
    serve_parser = subparsers.add_parser("serve", help="Run the HTTP API")
    serve_parser.add_argument("--host", default="127.0.0.1", help="Bind address")
    serve_parser.add_argument("--port", type=int, default=8000, help="Bind port")
    serve_parser.add_argument("--no-worker", action="store_true",
                              help="Don't run the job worker inside the API process")
    serve_parser.set_defaults(func=cmd_serve)

    # Worker command
    worker_parser = subparsers.add_parser("worker", help="Run the background job worker")
    worker_parser.add_argument("--once", action="store_true", help="Drain the queue once and exit")
    worker_parser.set_defaults(func=cmd_worker)

    # Extract command
    extract_parser = subparsers.add_parser("extract-pdf", help="Extract text from a statement PDF")
    extract_parser.add_argument("file", help="PDF file")
    extract_parser.add_argument("--password", help="Password for encrypted PDFs")
    extract_parser.add_argument("--parse", action="store_true", help="Parse transactions from the text")
    extract_parser.set_defaults(func=cmd_extract_pdf)

    # Plans command
    plans_parser = subparsers.add_parser("plans", help="Show plan entitlements")
    plans_parser.set_defaults(func=cmd_plans)

    # Usage command
    usage_parser = subparsers.add_parser("usage", help="Show a user's plan usage")
    usage_parser.add_argument("user_id", help="User ID")
    usage_parser.set_defaults(func=cmd_usage)

    # Set-plan command
    plan_parser = subparsers.add_parser("set-plan", help="Change a user's plan")
    plan_parser.add_argument("user_id", help="User ID")
    plan_parser.add_argument("plan", help="free, plus, pro or admin")
    plan_parser.set_defaults(func=cmd_set_plan)

    args = parser.parse_args(argv)
    setup_logging(args.verbose)

    if not args.command:
        parser.print_help()
        return 0

    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
