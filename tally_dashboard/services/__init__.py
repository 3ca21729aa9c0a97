"""
Domain services over the Tally transport.

- Sales: voucher pages, counts, details, statistics
- Inventory: stock items
- Company: company list, details, tax details
- Balance sheet
"""

from .base import BaseService, paginate
from .sales import SalesService
from .inventory import InventoryService
from .company import CompanyService
from .balance_sheet import BalanceSheetService

__all__ = [
    "BaseService",
    "paginate",
    "SalesService",
    "InventoryService",
    "CompanyService",
    "BalanceSheetService",
]
