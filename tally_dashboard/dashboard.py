"""
Composition root: builds and owns the shared client state.

One resolver, one transport lane, one cache, one in-flight registry and one
prefetch executor are created here and handed to every service.
"""
from __future__ import annotations
from concurrent.futures import ThreadPoolExecutor
from typing import Optional
import requests
from loguru import logger

from .cache import InFlightRegistry, TTLCache
from .client import TallyTransport
from .config import ConfigResolver, ConfigStore, ConnectionConfig, DashboardSettings
from .errors import ValidationError
from .services import BalanceSheetService, CompanyService, InventoryService, SalesService


class TallyDashboard:
    """
    Entry point for dashboard consumers.

    Usage:
        with TallyDashboard() as dash:
            dash.configure("192.168.1.2:9000", "ACME (2024-25)")
            page = dash.sales.get_page(DateRange("20240401", "20240630"))
    """

    def __init__(
        self,
        settings: Optional[DashboardSettings] = None,
        store: Optional[ConfigStore] = None,
        session: Optional[requests.Session] = None,
    ):
        self.settings = settings or DashboardSettings.from_env()
        errors = self.settings.validate()
        if errors:
            raise ValidationError("Invalid settings: " + "; ".join(errors))

        self.resolver = ConfigResolver(self.settings, store or ConfigStore(self.settings.config_file))
        self.transport = TallyTransport(self.resolver, self.settings.request_timeout, session=session)
        self.cache = TTLCache(self.settings.cache_ttl)
        self.in_flight = InFlightRegistry()
        self.prefetcher = ThreadPoolExecutor(max_workers=1, thread_name_prefix="tally-prefetch")

        shared = dict(
            transport=self.transport,
            resolver=self.resolver,
            cache=self.cache,
            in_flight=self.in_flight,
            settings=self.settings,
            prefetcher=self.prefetcher,
        )
        self.sales = SalesService(**shared)
        self.inventory = InventoryService(**shared)
        self.company = CompanyService(**shared)
        self.balance_sheet = BalanceSheetService(**shared)

    @property
    def config(self) -> ConnectionConfig:
        return self.resolver.config

    def configure(self, server: str, company: Optional[str] = None) -> ConnectionConfig:
        """Point the client at a Tally server and optionally select a company."""
        self.resolver.configure(server)
        if company:
            self.resolver.set_active_company(company)
        self.cache.clear()
        return self.resolver.config

    def select_company(self, name: str) -> None:
        self.resolver.set_active_company(name)

    def reset(self) -> None:
        """Forget the saved server and company and drop every cached response."""
        self.resolver.reset()
        self.cache.clear()

    def test_connection(self) -> dict:
        return self.transport.test_connection(self.resolver.get_active_company())

    def close(self):
        """Stop prefetching, then drain the transport lane."""
        self.prefetcher.shutdown(wait=True, cancel_futures=True)
        self.transport.close()
        logger.debug("Dashboard client closed")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False
