"""
XML parsers for Tally responses.

- Base: sanitization, field access, amount/date parsing
- Vouchers: sales pages, voucher details, counts, statistics
- Masters: stock items, companies
- Reports: balance sheet
"""

from .base import (
    FieldAccessor,
    ParseResult,
    sanitize_xml,
    parse_root,
    parse_amount,
    parse_quantity,
    parse_tally_date,
    format_tally_date,
    to_tally_date,
)
from .vouchers import (
    parse_sales_vouchers,
    parse_voucher_details,
    parse_voucher_count,
    parse_sales_statistics,
)
from .masters import (
    parse_stock_items,
    parse_company_list,
    parse_company_details,
    parse_company_tax_details,
)
from .reports import parse_balance_sheet

__all__ = [
    # Base
    "FieldAccessor",
    "ParseResult",
    "sanitize_xml",
    "parse_root",
    "parse_amount",
    "parse_quantity",
    "parse_tally_date",
    "format_tally_date",
    "to_tally_date",
    # Vouchers
    "parse_sales_vouchers",
    "parse_voucher_details",
    "parse_voucher_count",
    "parse_sales_statistics",
    # Masters
    "parse_stock_items",
    "parse_company_list",
    "parse_company_details",
    "parse_company_tax_details",
    # Reports
    "parse_balance_sheet",
]
