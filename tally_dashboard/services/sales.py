"""
Sales service: paginated sales vouchers, voucher details, statistics.
"""
from __future__ import annotations
from typing import Optional
from loguru import logger

from ..cache import RequestFingerprint
from ..errors import TallyError, ValidationError
from ..models import CustomerTotal, PaginatedResult, SalesStatistics, ServiceResult, Voucher
from ..parsers import (
    parse_sales_statistics,
    parse_sales_vouchers,
    parse_voucher_count,
    parse_voucher_details,
)
from ..requests import (
    DateRange,
    VoucherQuery,
    build_voucher_query,
    normalize_filter,
)
from .base import BaseService, adjacent_pages, paginate

SALES_PAGE = "sales_vouchers"
SALES_COUNT = "sales_voucher_count"
SALES_DETAILS = "sales_voucher_details"
SALES_STATS = "sales_statistics"


class SalesService(BaseService):
    """Sales vouchers for the active (or an explicit) company."""

    def _page_fp(self, date_range, company, page, page_size, search_filter) -> RequestFingerprint:
        return RequestFingerprint.create(
            SALES_PAGE, date_range, company, page, page_size, search_filter
        )

    def _count_fp(self, date_range, company, search_filter) -> RequestFingerprint:
        return RequestFingerprint.create(SALES_COUNT, date_range, company, search_filter=search_filter)

    def _page_size(self, page_size: Optional[int]) -> int:
        size = page_size or self.settings.page_size
        if size <= 0:
            raise ValidationError(f"page_size must be positive, got {size}")
        return size

    def _fetch_page(
        self,
        date_range: DateRange,
        company: str,
        page: int,
        page_size: int,
        search_filter: Optional[str],
    ) -> PaginatedResult[Voucher]:
        xml = build_voucher_query(VoucherQuery(
            company=company,
            date_range=date_range,
            skip=(page - 1) * page_size,
            limit=page_size,
            search_filter=search_filter,
        ))
        parsed = parse_sales_vouchers(self.transport.send(xml), page=page)

        total = self._known_total(date_range, company, page, search_filter)
        result = paginate(parsed.records, page, page_size, total)
        logger.info(
            f"Fetched {len(result.records)} sales vouchers for '{company}' "
            f"(page {page}, total {result.total_count}{'~' if result.total_is_estimate else ''})"
        )
        return result

    def _known_total(self, date_range, company, page, search_filter) -> Optional[int]:
        """
        Total voucher count for the criteria, if one is known.

        Page 1 always asks Tally; later pages reuse the cached count. A failed
        count query leaves the page to estimate its own total.
        """
        if page == 1:
            try:
                return self.get_count(
                    date_range, search_filter=search_filter, company=company, force_refresh=True
                ).data
            except TallyError as e:
                logger.warning(f"Count query failed, estimating total: {e.message}")
                return None
        return self.cache.get(self._count_fp(date_range, company, search_filter))

    def _prefetch_pages(self, date_range, company, page_size, search_filter):
        def schedule(result: PaginatedResult):
            targets = [
                (
                    self._page_fp(date_range, company, p, page_size, search_filter),
                    lambda p=p: self._fetch_page(date_range, company, p, page_size, search_filter),
                )
                for p in adjacent_pages(result)
            ]
            self._schedule_prefetch(targets, ttl=self.settings.cache_ttl)
        return schedule

    def get_page(
        self,
        date_range: DateRange,
        page: int = 1,
        page_size: Optional[int] = None,
        search_filter: Optional[str] = None,
        company: Optional[str] = None,
        force_refresh: bool = False,
    ) -> ServiceResult[PaginatedResult[Voucher]]:
        """
        One page of sales vouchers.

        Page 1 also runs the count query, so its total is authoritative; other
        pages reuse that count until it expires.
        """
        if page < 1:
            raise ValidationError(f"page must be >= 1, got {page}")
        size = self._page_size(page_size)
        company = self.resolver.require_company(company)
        search_filter = normalize_filter(search_filter)

        return self._load(
            self._page_fp(date_range, company, page, size, search_filter),
            lambda: self._fetch_page(date_range, company, page, size, search_filter),
            ttl=self.settings.cache_ttl,
            force_refresh=force_refresh,
            prefetch=self._prefetch_pages(date_range, company, size, search_filter),
        )

    def get_count(
        self,
        date_range: DateRange,
        search_filter: Optional[str] = None,
        company: Optional[str] = None,
        force_refresh: bool = False,
    ) -> ServiceResult[int]:
        """Number of sales vouchers matching the criteria."""
        company = self.resolver.require_company(company)
        search_filter = normalize_filter(search_filter)

        def fetch() -> int:
            xml = build_voucher_query(VoucherQuery(
                company=company,
                date_range=date_range,
                search_filter=search_filter,
                count_only=True,
            ))
            count = parse_voucher_count(self.transport.send(xml))
            logger.debug(f"{count} sales vouchers match for '{company}'")
            return count

        return self._load(
            self._count_fp(date_range, company, search_filter),
            fetch,
            ttl=self.settings.count_ttl,
            force_refresh=force_refresh,
        )

    def get_details(
        self,
        guid: str,
        company: Optional[str] = None,
        force_refresh: bool = False,
    ) -> ServiceResult[Optional[Voucher]]:
        """A single voucher with its line items; data is None if Tally has no such voucher."""
        guid = (guid or "").strip()
        if not guid:
            raise ValidationError("Voucher GUID is empty")
        company = self.resolver.require_company(company)

        def fetch() -> Optional[Voucher]:
            xml = build_voucher_query(VoucherQuery(company=company, guid=guid))
            voucher = parse_voucher_details(self.transport.send(xml), guid=guid)
            if voucher is None:
                logger.info(f"Voucher {guid} not found in '{company}'")
            return voucher

        return self._load(
            RequestFingerprint(SALES_DETAILS, company_name=company, search_filter=guid),
            fetch,
            ttl=self.settings.cache_ttl,
            force_refresh=force_refresh,
        )

    def get_statistics(
        self,
        date_range: DateRange,
        company: Optional[str] = None,
        force_refresh: bool = False,
    ) -> ServiceResult[SalesStatistics]:
        """Totals and top customers over every sales voucher in the range."""
        company = self.resolver.require_company(company)

        def fetch() -> SalesStatistics:
            xml = build_voucher_query(VoucherQuery(
                company=company,
                date_range=date_range,
                fields=("PartyLedgerName", "Amount"),
            ))
            stats = parse_sales_statistics(self.transport.send(xml))
            logger.info(
                f"Sales statistics for '{company}': {stats.total_vouchers} vouchers, "
                f"total {stats.total_sales:,.2f}"
            )
            return stats

        return self._load(
            RequestFingerprint.create(SALES_STATS, date_range, company),
            fetch,
            ttl=self.settings.cache_ttl,
            force_refresh=force_refresh,
        )

    def get_top_customers(
        self,
        date_range: DateRange,
        limit: int = 10,
        company: Optional[str] = None,
    ) -> ServiceResult[list[CustomerTotal]]:
        stats = self.get_statistics(date_range, company=company)
        return ServiceResult(
            data=stats.data.top_customers[:limit],
            error=stats.error,
            from_cache=stats.from_cache,
            stale=stats.stale,
        )

    def refresh(self, date_range: DateRange, company: Optional[str] = None) -> int:
        """Drop every cached page, count and statistic for the range and company."""
        company = self.resolver.require_company(company)
        dropped = self.cache.invalidate(
            lambda fp: fp.entity_kind in (SALES_PAGE, SALES_COUNT, SALES_STATS)
            and fp.company_name == company
            and fp.from_date == date_range.from_date
            and fp.to_date == date_range.to_date
        )
        logger.info(f"Refreshed sales cache for '{company}' ({dropped} entries dropped)")
        return dropped


__all__ = ["SalesService"]
