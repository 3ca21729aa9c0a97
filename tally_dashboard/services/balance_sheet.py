"""
Balance sheet service.
"""
from __future__ import annotations
from typing import Optional
from loguru import logger

from ..cache import RequestFingerprint
from ..models import BalanceSheet, ServiceResult
from ..parsers import parse_balance_sheet
from ..requests import DateRange, build_report_query
from .base import BaseService

BALANCE_SHEET = "balance_sheet"


class BalanceSheetService(BaseService):

    def get_balance_sheet(
        self,
        date_range: DateRange,
        company: Optional[str] = None,
        force_refresh: bool = False,
    ) -> ServiceResult[BalanceSheet]:
        """Balance Sheet report for the range, split into assets and liabilities."""
        company = self.resolver.require_company(company)

        def fetch() -> BalanceSheet:
            xml = build_report_query("Balance Sheet", company, date_range)
            sheet = parse_balance_sheet(self.transport.send(xml))
            logger.info(
                f"Balance sheet for '{company}': assets {sheet.total_assets:,.2f}, "
                f"liabilities {sheet.total_liabilities:,.2f}"
            )
            return sheet

        return self._load(
            RequestFingerprint.create(BALANCE_SHEET, date_range, company),
            fetch,
            ttl=self.settings.cache_ttl,
            force_refresh=force_refresh,
        )

    def refresh(self, date_range: Optional[DateRange] = None, company: Optional[str] = None) -> int:
        """Drop cached balance sheets for the company, for one range or all of them."""
        company = self.resolver.require_company(company)
        dropped = self.cache.invalidate(
            lambda fp: fp.entity_kind == BALANCE_SHEET
            and fp.company_name == company
            and (date_range is None or (fp.from_date, fp.to_date) == (date_range.from_date, date_range.to_date))
        )
        logger.info(f"Refreshed balance sheet for '{company}' ({dropped} entries dropped)")
        return dropped
