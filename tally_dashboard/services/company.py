"""
Company service: companies open in Tally and their master details.
"""
from __future__ import annotations
from typing import Optional
from loguru import logger

from ..cache import RequestFingerprint
from ..models import Company, CompanyDetails, CompanyTaxDetails, ServiceResult
from ..parsers import parse_company_details, parse_company_list, parse_company_tax_details
from ..requests import build_collection_query, build_object_query
from .base import BaseService

COMPANY_LIST = "company_list"
COMPANY_DETAILS = "company_details"
COMPANY_TAX = "company_tax_details"

COMPANY_DETAIL_FIELDS = (
    "Name", "GUID", "MAILINGNAME.LIST", "ADDRESS.LIST", "PHONE", "EMAIL",
    "COUNTRYNAME", "STATENAME", "PINCODE", "BOOKSFROM", "PARTYGSTIN", "PAN",
)
COMPANY_TAX_FIELDS = ("NAME", "INCOMETAXNUMBER", "BOOKSFROM")


class CompanyService(BaseService):

    def list_companies(self, force_refresh: bool = False) -> ServiceResult[list[Company]]:
        """Companies currently open in Tally; needs no active company."""

        def fetch() -> list[Company]:
            xml = build_collection_query("Company", ["NAME"], collection_name="List of Companies")
            companies = parse_company_list(self.transport.send(xml)).records
            logger.info(f"Tally has {len(companies)} open companies")
            return companies

        return self._load(
            RequestFingerprint(COMPANY_LIST),
            fetch,
            ttl=self.settings.cache_ttl,
            force_refresh=force_refresh,
        )

    def get_details(
        self,
        name: Optional[str] = None,
        force_refresh: bool = False,
    ) -> ServiceResult[Optional[CompanyDetails]]:
        """Master details of a company (the active one by default)."""
        name = self.resolver.require_company(name)

        def fetch() -> Optional[CompanyDetails]:
            xml = build_object_query("Company", {"Name": name}, COMPANY_DETAIL_FIELDS)
            return parse_company_details(self.transport.send(xml))

        return self._load(
            RequestFingerprint(COMPANY_DETAILS, company_name=name),
            fetch,
            ttl=self.settings.cache_ttl,
            force_refresh=force_refresh,
        )

    def get_tax_details(
        self,
        name: Optional[str] = None,
        force_refresh: bool = False,
    ) -> ServiceResult[Optional[CompanyTaxDetails]]:
        name = self.resolver.require_company(name)

        def fetch() -> Optional[CompanyTaxDetails]:
            xml = build_collection_query(
                "Company", COMPANY_TAX_FIELDS, company=name, collection_name="CompanyDetails"
            )
            return parse_company_tax_details(self.transport.send(xml))

        return self._load(
            RequestFingerprint(COMPANY_TAX, company_name=name),
            fetch,
            ttl=self.settings.cache_ttl,
            force_refresh=force_refresh,
        )

    def refresh(self) -> int:
        dropped = self.cache.invalidate(
            lambda fp: fp.entity_kind in (COMPANY_LIST, COMPANY_DETAILS, COMPANY_TAX)
        )
        logger.info(f"Refreshed company data ({dropped} entries dropped)")
        return dropped
