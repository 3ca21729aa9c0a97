"""
Inventory service: stock item masters.

Tally returns the whole stock item list in one export, so the list is cached
as a unit and pages are cut from it locally.
"""
from __future__ import annotations
from typing import Optional
from loguru import logger

from ..cache import RequestFingerprint
from ..errors import ValidationError
from ..models import PaginatedResult, ServiceResult, StockItem
from ..parsers import parse_stock_items
from ..requests import build_collection_query, normalize_filter
from .base import BaseService, paginate

STOCK_ITEMS = "stock_items"

STOCK_ITEM_FIELDS = (
    "NAME", "BASEUNITS", "OPENINGBALANCE", "OPENINGVALUE",
    "CLOSINGBALANCE", "CLOSINGVALUE", "STANDARDCOST", "STANDARDPRICE",
)


def matches(item: StockItem, search: str) -> bool:
    """Case-insensitive substring match on the name or its alias."""
    needle = search.lower()
    return needle in item.name.lower() or needle in (item.language_name or "").lower()


class InventoryService(BaseService):

    def get_stock_items(
        self,
        company: Optional[str] = None,
        force_refresh: bool = False,
    ) -> ServiceResult[list[StockItem]]:
        company = self.resolver.require_company(company)

        def fetch() -> list[StockItem]:
            xml = build_collection_query(
                "StockItem", STOCK_ITEM_FIELDS, company=company, collection_name="StockItem"
            )
            items = parse_stock_items(self.transport.send(xml)).records
            logger.info(f"Fetched {len(items)} stock items for '{company}'")
            return items

        return self._load(
            RequestFingerprint(STOCK_ITEMS, company_name=company),
            fetch,
            ttl=self.settings.inventory_cache_ttl,
            force_refresh=force_refresh,
        )

    def get_page(
        self,
        page: int = 1,
        page_size: Optional[int] = None,
        search_filter: Optional[str] = None,
        company: Optional[str] = None,
        force_refresh: bool = False,
    ) -> ServiceResult[PaginatedResult[StockItem]]:
        """A page of stock items, optionally filtered by name; the total is exact."""
        if page < 1:
            raise ValidationError(f"page must be >= 1, got {page}")
        size = page_size or self.settings.page_size
        if size <= 0:
            raise ValidationError(f"page_size must be positive, got {size}")

        items = self.get_stock_items(company=company, force_refresh=force_refresh)
        search = normalize_filter(search_filter)
        selected = [i for i in items.data if matches(i, search)] if search else items.data

        start = (page - 1) * size
        return ServiceResult(
            data=paginate(selected[start:start + size], page, size, total=len(selected)),
            error=items.error,
            from_cache=items.from_cache,
            stale=items.stale,
        )

    def refresh(self, company: Optional[str] = None) -> int:
        company = self.resolver.require_company(company)
        dropped = self.cache.invalidate(
            lambda fp: fp.entity_kind == STOCK_ITEMS and fp.company_name == company
        )
        logger.info(f"Refreshed stock items for '{company}'")
        return dropped
