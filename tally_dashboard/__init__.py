"""
Tally Dashboard - client layer between a dashboard UI and a Tally server.

Turns typed queries into Tally XML requests, sends them one at a time over
HTTP, parses the XML answers into typed records, and caches and paginates
the results so the UI stays responsive.

Key Features:
- Sales vouchers with paging, counts, details and statistics
- Stock items, company list and details, balance sheet
- Single-lane FIFO transport with classified, actionable errors
- TTL cache with background prefetch of neighbouring pages
- Stale answers when Tally is unreachable but data was cached

Usage:
    from tally_dashboard import TallyDashboard, DateRange

    with TallyDashboard() as dash:
        result = dash.sales.get_page(DateRange("20240401", "20240630"))
"""

__version__ = "1.0.0"

from .config import DashboardSettings
from .dashboard import TallyDashboard
from .errors import TallyError
from .requests import DateRange

__all__ = ["DashboardSettings", "TallyDashboard", "TallyError", "DateRange", "__version__"]
