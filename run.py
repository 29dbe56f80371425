#!/usr/bin/env python3
"""
Freight Booking Stager — Entry Point.

Operator commands over the local staging cache and the job service:

  show [ORDER_ID]   Print staged shipments
  save-all          Create / update / skip the backend record of every staged order
  import FILE       Upload an Excel export, poll it, then scrape BOLs for a date range
  clear-cache       Drop every staged shipment

Usage:
    python run.py show
    python run.py show 1234
    python run.py save-all --debug
    python run.py import orders.xlsx --start-date 2024-05-01 --end-date 2024-05-03
    python run.py import orders.xlsx --no-scrape
    python run.py --version
    python run.py --env /path/.env save-all
"""

import argparse
import logging
import sys
from datetime import date, timedelta

from freight_booking import StagingOrchestrator, __version__
from freight_booking.models import FILTER_MODES, ScrapeConfig


def _parse_date(value: str) -> date:
    try:
        return date.fromisoformat(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"Invalid date {value!r}, expected YYYY-MM-DD")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Freight Booking Stager - Stage marketplace orders for XPO / Estes LTL booking"
    )
    parser.add_argument("--env", "-e", default="./.env", help="Path to .env file")
    parser.add_argument("--debug", action="store_true", help="Enable debug output")
    parser.add_argument("--version", "-v", action="store_true", help="Show version and exit")

    commands = parser.add_subparsers(dest="command")

    show = commands.add_parser("show", help="Print staged shipments")
    show.add_argument("order_id", nargs="?", type=int, help="Only this order")

    commands.add_parser("save-all", help="Save every staged order to the backend")

    today = date.today()
    imp = commands.add_parser("import", help="Import an Excel export and scrape BOLs")
    imp.add_argument("file", help="Excel file (.xlsx or .xls)")
    imp.add_argument("--start-date", type=_parse_date, default=today - timedelta(days=1),
                     help="Scrape start date (default: yesterday)")
    imp.add_argument("--end-date", type=_parse_date, default=today,
                     help="Scrape end date (default: today)")
    imp.add_argument("--filter-mode", choices=FILTER_MODES, default="both",
                     help="Which order dates the scrape filters on")
    imp.add_argument("--show-browser", action="store_true",
                     help="Run the job service's browser visibly")
    imp.add_argument("--no-scrape", action="store_true", help="Import only, skip BOL scraping")

    commands.add_parser("clear-cache", help="Drop every staged shipment")

    return parser


def main():
    """Parse CLI arguments and run the requested command."""
    parser = build_parser()
    args = parser.parse_args()

    if args.version:
        print(f"freight-booking-stager {__version__}")
        sys.exit(0)

    if not args.command:
        parser.print_help()
        sys.exit(1)

    # Show request/response detail from requests and urllib3
    if args.debug:
        logging.basicConfig(
            level=logging.DEBUG,
            format='%(name)s - %(levelname)s - %(message)s'
        )
        logging.getLogger('urllib3').setLevel(logging.DEBUG)

    orchestrator = StagingOrchestrator(env_file=args.env)
    if args.debug:
        orchestrator.set_debug(True)

    print(f"\n{'='*60}")
    print(f"FREIGHT BOOKING STAGER v{__version__}")
    print("="*60)
    print(f"Backend: {orchestrator.api_base_url}")
    print(f"Job service: {orchestrator.jobs_base_url}")
    print(f"Cache: {orchestrator.cache_file}")

    if not orchestrator.validate_config():
        sys.exit(1)

    try:
        if args.command == "show":
            orchestrator.print_shipments(args.order_id)
            if args.order_id is not None and orchestrator.cache.get(args.order_id) is None:
                sys.exit(1)

        elif args.command == "clear-cache":
            orchestrator.clear()
            print("Staging cache and job statuses cleared")

        elif args.command == "save-all":
            results = orchestrator.save_all()
            orchestrator.print_summary(results)
            if not results.get("success"):
                sys.exit(1)

        elif args.command == "import":
            scrape_config = None
            if not args.no_scrape:
                scrape_config = ScrapeConfig(
                    start_date=args.start_date,
                    end_date=args.end_date,
                    filter_mode=args.filter_mode,
                    headless=not args.show_browser,
                )
            results = orchestrator.run_import(args.file, scrape_config)
            orchestrator.print_summary(results)
            if not results.get("success"):
                sys.exit(1)
    finally:
        orchestrator.close()


if __name__ == "__main__":
    main()
