"""
Command-line front end for the Tally dashboard client.

Usage:
    python -m tally_dashboard configure 192.168.1.2:9000 "ACME (2024-25)"
    python -m tally_dashboard test-connection
    python -m tally_dashboard sales --from 2024-04-01 --to 2024-06-30 --page 2
    python -m tally_dashboard stock --search tap
"""
from __future__ import annotations
import argparse
import sys
from datetime import date
from pathlib import Path
from typing import Optional
from loguru import logger

from .config import DashboardSettings
from .dashboard import TallyDashboard
from .errors import TallyError
from .requests import DateRange


def configure_logging(settings: DashboardSettings, verbose: bool = False) -> None:
    logger.remove()
    logger.add(sys.stderr, level="DEBUG" if verbose else settings.log_level)
    if settings.log_file:
        logger.add(settings.log_file, level="DEBUG", rotation="10 MB", retention=5)


def _date_range(args) -> DateRange:
    if args.from_date is None and args.to_date is None:
        return DateRange.financial_year()
    end = args.to_date or date.today()
    start = args.from_date or date(end.year if end.month >= 4 else end.year - 1, 4, 1)
    return DateRange.from_dates(start, end)


def _stale_note(result) -> None:
    if result.stale:
        print(f"(stale data: {result.error})")
    elif result.from_cache:
        logger.debug("Served from cache")


def _print_sales(result) -> None:
    page = result.data
    print(f"\n=== Sales vouchers: page {page.page} of {page.total_pages or 1} ===")
    for v in page.records:
        print(f"{v.date:<12} {v.voucher_number:<14} {v.party_name[:40]:<40} {v.amount:>14,.2f}  {v.guid}")
    total = f"~{page.total_count}" if page.total_is_estimate else str(page.total_count)
    print(f"\n{len(page.records)} of {total} vouchers; more: {'yes' if page.has_more else 'no'}")
    _stale_note(result)


def _print_voucher(result) -> None:
    v = result.data
    if v is None:
        print("Voucher not found")
        return
    print(f"\n=== {v.voucher_type} {v.voucher_number} ({v.date}) ===")
    print(f"Party:     {v.party_name}")
    print(f"Amount:    {v.amount:,.2f}")
    if v.narration:
        print(f"Narration: {v.narration}")
    for item in v.line_items or []:
        print(f"  {item.item_name[:40]:<40} {item.quantity:>10g} {item.unit:<6} @ {item.rate:>10,.2f} = {item.amount:>12,.2f}")
    _stale_note(result)


def _print_stats(result) -> None:
    s = result.data
    print("\n=== Sales statistics ===")
    print(f"Total sales:   {s.total_sales:,.2f}")
    print(f"Vouchers:      {s.total_vouchers}")
    print(f"Average order: {s.average_order_value:,.2f}")
    print("\nTop customers:")
    for c in s.top_customers:
        print(f"  {c.name[:40]:<40} {c.amount:>14,.2f} ({c.voucher_count})")
    _stale_note(result)


def _print_stock(result) -> None:
    page = result.data
    print(f"\n=== Stock items: page {page.page} of {page.total_pages or 1} ===")
    for i in page.records:
        print(f"{i.name[:40]:<40} {i.closing_balance:>10g} {i.base_units:<6} {i.closing_value:>14,.2f}")
    print(f"\n{page.total_count} items")
    _stale_note(result)


def _print_company(result) -> None:
    d = result.data
    if d is None:
        print("Company not found")
        return
    print(f"\n=== {d.name} ===")
    for label, value in (
        ("GUID", d.guid),
        ("Mailing name", ", ".join(d.mailing_name) or "N/A"),
        ("Address", ", ".join(d.address) or "N/A"),
        ("State", d.state_name),
        ("Country", d.country_name),
        ("Pincode", d.pincode),
        ("Phone", d.phone),
        ("Email", d.email),
        ("Books from", d.books_from),
        ("GSTIN", d.gstin),
        ("PAN", d.pan),
    ):
        print(f"{label + ':':<14}{value}")
    _stale_note(result)


def _print_balance_sheet(result) -> None:
    sheet = result.data
    print("\n=== Balance Sheet ===")
    print("\nLiabilities:")
    for line in sheet.liabilities:
        print(f"  {line.name[:40]:<40} {line.amount:>16,.2f}")
    print(f"  {'Total':<40} {sheet.total_liabilities:>16,.2f}")
    print("\nAssets:")
    for line in sheet.assets:
        print(f"  {line.name[:40]:<40} {line.amount:>16,.2f}")
    print(f"  {'Total':<40} {sheet.total_assets:>16,.2f}")
    print(f"\nNet worth: {sheet.net_worth:,.2f}")
    _stale_note(result)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="tally_dashboard",
        description="Tally Dashboard - query sales, inventory and company data from Tally",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable verbose logging")

    subparsers = parser.add_subparsers(dest="command", help="Command")

    configure_parser = subparsers.add_parser("configure", help="Set the Tally server and company")
    configure_parser.add_argument("server", help="host, host:port or http://host:port")
    configure_parser.add_argument("company", nargs="?", help="Company name as shown in Tally")

    subparsers.add_parser("reset", help="Forget the saved server and company")
    subparsers.add_parser("test-connection", help="Test Tally connection")
    subparsers.add_parser("companies", help="List companies open in Tally")

    company_parser = subparsers.add_parser("company", help="Show company details")
    company_parser.add_argument("name", nargs="?", help="Company name (default: active company)")

    def add_range(p):
        p.add_argument("--from", dest="from_date", type=lambda s: date.fromisoformat(s),
                       help="Start date (YYYY-MM-DD, default: start of financial year)")
        p.add_argument("--to", dest="to_date", type=lambda s: date.fromisoformat(s),
                       help="End date (YYYY-MM-DD, default: today)")

    sales_parser = subparsers.add_parser("sales", help="List sales vouchers")
    add_range(sales_parser)
    sales_parser.add_argument("--page", type=int, default=1)
    sales_parser.add_argument("--page-size", type=int)
    sales_parser.add_argument("--search", help="Filter on party name")
    sales_parser.add_argument("--refresh", action="store_true", help="Bypass the cache")

    voucher_parser = subparsers.add_parser("voucher", help="Show one voucher with line items")
    voucher_parser.add_argument("guid", help="Voucher GUID")

    stats_parser = subparsers.add_parser("stats", help="Sales statistics and top customers")
    add_range(stats_parser)

    stock_parser = subparsers.add_parser("stock", help="List stock items")
    stock_parser.add_argument("--search", help="Filter on item name")
    stock_parser.add_argument("--page", type=int, default=1)
    stock_parser.add_argument("--page-size", type=int)

    bs_parser = subparsers.add_parser("balance-sheet", help="Show the balance sheet")
    add_range(bs_parser)

    raw_parser = subparsers.add_parser("raw", help="Post an XML request file and print the response")
    raw_parser.add_argument("file", type=Path, help="XML request file")
    raw_parser.add_argument("--save", "-o", type=Path, help="Save the response to a file")

    return parser


def run(args, dash: TallyDashboard) -> int:
    if args.command == "configure":
        config = dash.configure(args.server, args.company)
        print(f"Server: {config.server_url}")
        print(f"Company: {config.active_company or '(none)'}")

    elif args.command == "reset":
        dash.reset()
        print("Configuration cleared")

    elif args.command == "test-connection":
        result = dash.test_connection()
        for key, value in result.items():
            print(f"{key}: {value}")
        return 0 if result["status"] == "connected" else 1

    elif args.command == "companies":
        result = dash.company.list_companies()
        active = dash.resolver.get_active_company()
        for c in result.data:
            print(f"{'*' if c.name == active else ' '} {c.name}")
        _stale_note(result)

    elif args.command == "company":
        _print_company(dash.company.get_details(args.name))

    elif args.command == "sales":
        _print_sales(dash.sales.get_page(
            _date_range(args),
            page=args.page,
            page_size=args.page_size,
            search_filter=args.search,
            force_refresh=args.refresh,
        ))

    elif args.command == "voucher":
        _print_voucher(dash.sales.get_details(args.guid))

    elif args.command == "stats":
        _print_stats(dash.sales.get_statistics(_date_range(args)))

    elif args.command == "stock":
        _print_stock(dash.inventory.get_page(
            page=args.page, page_size=args.page_size, search_filter=args.search
        ))

    elif args.command == "balance-sheet":
        _print_balance_sheet(dash.balance_sheet.get_balance_sheet(_date_range(args)))

    elif args.command == "raw":
        response = dash.transport.send(args.file.read_text(encoding="utf-8"))
        if args.save:
            args.save.write_text(response, encoding="utf-8")
            print(f"Saved {len(response)} bytes to {args.save}")
        else:
            print(response)

    return 0


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    settings = DashboardSettings.from_env()
    configure_logging(settings, args.verbose)

    try:
        with TallyDashboard(settings) as dash:
            return run(args, dash)
    except TallyError as e:
        logger.error(e.describe())
        return 1


if __name__ == "__main__":
    sys.exit(main())
