"""
Parsers for Tally master data: stock items and companies.
"""
from __future__ import annotations
from typing import Optional
from loguru import logger

from ..models import NOT_AVAILABLE, Company, CompanyDetails, CompanyTaxDetails, StockItem
from .base import (
    FieldAccessor,
    ParseResult,
    children,
    find_records,
    format_tally_date,
    parse_amount,
    parse_quantity,
    parse_root,
)


def _or_na(value: str) -> str:
    return value if value else NOT_AVAILABLE


def _language_name(f: FieldAccessor) -> Optional[str]:
    """Alias from LANGUAGENAME.LIST/NAME.LIST/NAME, skipping the primary name."""
    primary = f.get("NAME")
    for lst in children(f.element, "LANGUAGENAME.LIST"):
        for alias in FieldAccessor(lst).values("NAME"):
            if alias != primary:
                return alias
    return None


def parse_stock_items(xml_text: str) -> ParseResult[StockItem]:
    """
    Parse stock item masters.

    Quantities keep their sign (negative stock is meaningful); monetary values
    are absolute. Items with no name are skipped and reported.
    """
    root = parse_root(xml_text)
    elems = find_records(root, "STOCKITEM")
    result: ParseResult[StockItem] = ParseResult(raw_count=len(elems))

    for i, elem in enumerate(elems):
        f = FieldAccessor(elem)
        name = f.get("NAME")
        if not name:
            result.skipped.append(f"STOCKITEM #{i} has no NAME")
            continue

        result.records.append(StockItem(
            name=name,
            reserved_name=f.get("RESERVEDNAME") or None,
            language_name=_language_name(f),
            base_units=f.get("BASEUNITS"),
            opening_balance=parse_quantity(f.get("OPENINGBALANCE"))[0],
            closing_balance=parse_quantity(f.get("CLOSINGBALANCE"))[0],
            opening_value=abs(parse_amount(f.get("OPENINGVALUE"))),
            closing_value=abs(parse_amount(f.get("CLOSINGVALUE"))),
            standard_cost=abs(parse_quantity(f.get("STANDARDCOST"))[0]),
            standard_price=abs(parse_quantity(f.get("STANDARDPRICE"))[0]),
        ))

    result.log("stock items")
    return result


def parse_company_list(xml_text: str) -> ParseResult[Company]:
    """
    Parse the list of companies open in Tally.

    Some Tally builds return bare NAME elements instead of COMPANY records;
    those are accepted too, minus system names starting with '$$'.
    """
    root = parse_root(xml_text)
    elems = find_records(root, "COMPANY")
    result: ParseResult[Company] = ParseResult(raw_count=len(elems))

    for i, elem in enumerate(elems):
        f = FieldAccessor(elem)
        name = f.get("NAME")
        if not name:
            result.skipped.append(f"COMPANY #{i} has no NAME")
            continue
        result.records.append(Company(
            name=name,
            start_from=format_tally_date(f.first("STARTINGFROM", "STARTFROM")),
            end_to=format_tally_date(f.first("ENDINGAT", "ENDTO")),
        ))

    if not elems:
        names = find_records(root, "NAME")
        result.raw_count = len(names)
        for elem in names:
            name = "".join(elem.itertext()).strip()
            if not name:
                result.skipped.append("empty NAME element")
            elif name.startswith("$$"):
                result.skipped.append(f"system name {name}")
            else:
                result.records.append(Company(name=name))

    result.log("companies")
    return result


def _first_company(xml_text: str):
    root = parse_root(xml_text)
    elems = find_records(root, "COMPANY")
    if not elems:
        logger.debug("No COMPANY element found in response")
        return None
    return elems[0]


def parse_company_details(xml_text: str) -> Optional[CompanyDetails]:
    """Parse a company object export; None when no COMPANY element is present."""
    elem = _first_company(xml_text)
    if elem is None:
        return None

    f = FieldAccessor(elem)
    return CompanyDetails(
        name=_or_na(f.get("NAME")),
        guid=_or_na(f.get("GUID")),
        email=_or_na(f.first("EMAIL", "EMAILID")),
        phone=_or_na(f.first("PHONE", "PHONENUMBER")),
        address=f.values("ADDRESS"),
        pincode=_or_na(f.get("PINCODE")),
        country_name=_or_na(f.first("COUNTRYNAME", "COUNTRYOFRESIDENCE")),
        state_name=_or_na(f.first("STATENAME", "STATE")),
        books_from=_or_na(format_tally_date(f.get("BOOKSFROM"))),
        mailing_name=f.values("MAILINGNAME"),
        gstin=_or_na(f.first("GSTREGISTRATIONNUMBER", "PARTYGSTIN", "GSTIN")),
        pan=_or_na(f.first("INCOMETAXNUMBER", "PAN")),
    )


def parse_company_tax_details(xml_text: str) -> Optional[CompanyTaxDetails]:
    elem = _first_company(xml_text)
    if elem is None:
        return None

    f = FieldAccessor(elem)
    return CompanyTaxDetails(
        name=_or_na(f.get("NAME")),
        income_tax_number=_or_na(f.first("INCOMETAXNUMBER", "PAN")),
        books_from=_or_na(format_tally_date(f.get("BOOKSFROM"))),
    )
