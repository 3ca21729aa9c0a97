"""
Parsers for Tally voucher exports.

Handles:
- Sales voucher pages (header fields only)
- Voucher details with inventory line items
- Voucher counts
- Sales statistics (totals and top customers)
"""
from __future__ import annotations
from typing import Optional
from lxml import etree
from loguru import logger

from ..models import CustomerTotal, LineItem, SalesStatistics, Voucher
from .base import (
    FieldAccessor,
    ParseResult,
    children,
    find_records,
    format_tally_date,
    parse_amount,
    parse_quantity,
    parse_root,
    parse_tally_date,
)

LEDGER_ENTRY_TAGS = ("ALLLEDGERENTRIES.LIST", "LEDGERENTRIES.LIST")
INVENTORY_ENTRY_TAGS = ("ALLINVENTORYENTRIES.LIST", "INVENTORYENTRIES.LIST", "ALLINVENTORYENTRIES")
TOP_CUSTOMER_LIMIT = 10


def _entries(voucher: etree._Element, tags: tuple[str, ...]) -> list[etree._Element]:
    out = []
    for tag in tags:
        out.extend(children(voucher, tag))
    return out


def voucher_amount_signed(voucher: etree._Element) -> float:
    """
    Signed voucher amount, trying multiple sources.

    The header AMOUNT is used when present. Otherwise the ledger line with the
    largest magnitude (the party line on a balanced voucher) is taken with its
    sign, and as a last resort the inventory lines are summed.
    """
    header = FieldAccessor(voucher).get("AMOUNT")
    if header:
        return parse_amount(header)

    best_val = 0.0
    for le in _entries(voucher, LEDGER_ENTRY_TAGS):
        v = FieldAccessor(le).amount("AMOUNT")
        if abs(v) > abs(best_val):
            best_val = v
    if best_val:
        return best_val

    return sum(FieldAccessor(e).amount("AMOUNT") for e in _entries(voucher, INVENTORY_ENTRY_TAGS))


def _line_item(entry: etree._Element) -> Optional[LineItem]:
    f = FieldAccessor(entry)
    name = f.get("STOCKITEMNAME")
    if not name:
        return None

    quantity, unit = parse_quantity(f.first("BILLEDQTY", "ACTUALQTY"))
    rate, rate_unit = parse_quantity(f.get("RATE"))
    amount = abs(f.amount("AMOUNT"))

    # Tally's inventory DISCOUNT is a percentage; the rupee figure is derived
    discount_text = f.get("DISCOUNT")
    discount_percent = abs(parse_amount(discount_text)) if discount_text else None
    discount = None
    if discount_percent:
        gross = abs(quantity * rate)
        if gross > amount:
            discount = round(gross - amount, 2)

    return LineItem(
        item_name=name,
        hsn_code=f.first("GSTHSNNAME", "HSNCODE", "HSN"),
        quantity=abs(quantity),
        unit=unit or rate_unit,
        rate=abs(rate),
        amount=amount,
        discount=discount,
        discount_percent=discount_percent,
    )


def parse_line_items(voucher: etree._Element) -> ParseResult[LineItem]:
    entries = _entries(voucher, INVENTORY_ENTRY_TAGS)
    result: ParseResult[LineItem] = ParseResult(raw_count=len(entries))
    for i, entry in enumerate(entries):
        item = _line_item(entry)
        if item is None:
            result.skipped.append(f"inventory entry #{i} has no STOCKITEMNAME")
        else:
            result.records.append(item)
    return result


def voucher_from_element(
    elem: etree._Element,
    fallback_id: str,
    with_lines: bool = False,
) -> Voucher:
    """Build a Voucher from one VOUCHER element; never raises for missing fields."""
    f = FieldAccessor(elem)
    raw_date = f.get("DATE")
    guid = f.get("GUID")

    line_items = None
    if with_lines:
        lines = parse_line_items(elem)
        lines.log("line items")
        line_items = lines.records

    return Voucher(
        id=guid or fallback_id,
        voucher_number=f.first("VOUCHERNUMBER", "VCHNUMBER"),
        date=format_tally_date(raw_date),
        posting_date=parse_tally_date(raw_date),
        party_name=f.first("PARTYLEDGERNAME", "PARTYNAME"),
        amount=abs(voucher_amount_signed(elem)),
        narration=f.get("NARRATION"),
        reference=f.first("REFERENCE", "REFERENCENUMBER"),
        guid=guid,
        alter_id=f.get("ALTERID").replace(" ", ""),
        voucher_type=f.first("VOUCHERTYPENAME", "VCHTYPE"),
        voucher_retain_key=f.get("VOUCHERRETAINKEY"),
        line_items=line_items,
    )


def parse_sales_vouchers(xml_text: str, page: int = 1) -> ParseResult[Voucher]:
    """
    Parse one page of sales vouchers.

    Vouchers without a GUID still come through, identified by a synthetic
    'voucher-{page}-{index}' token that is unique within the page.
    """
    root = parse_root(xml_text)
    elems = find_records(root, "VOUCHER")
    result: ParseResult[Voucher] = ParseResult(raw_count=len(elems))

    synthetic = 0
    for index, elem in enumerate(elems):
        voucher = voucher_from_element(elem, fallback_id=f"voucher-{page}-{index}")
        if not voucher.guid:
            synthetic += 1
        result.records.append(voucher)

    if synthetic:
        logger.debug(f"{synthetic} vouchers on page {page} had no GUID; synthetic ids assigned")
    result.log("vouchers")
    return result


def parse_voucher_details(xml_text: str, guid: Optional[str] = None) -> Optional[Voucher]:
    """
    Parse a single voucher with its inventory line items.

    When guid is given and several vouchers come back, the matching one wins.
    Returns None if the response holds no voucher.
    """
    root = parse_root(xml_text)
    elems = find_records(root, "VOUCHER")
    if not elems:
        logger.debug("No VOUCHER element in details response")
        return None

    chosen = elems[0]
    if guid:
        for elem in elems:
            if FieldAccessor(elem).get("GUID") == guid:
                chosen = elem
                break
    return voucher_from_element(chosen, fallback_id=guid or "voucher-details-0", with_lines=True)


def parse_voucher_count(xml_text: str) -> int:
    """Number of VOUCHER records in a count-only export."""
    return len(find_records(parse_root(xml_text), "VOUCHER"))


def parse_sales_statistics(xml_text: str, top: int = TOP_CUSTOMER_LIMIT) -> SalesStatistics:
    """
    Aggregate sales totals and per-customer figures.

    Amounts are absolute; a voucher without a party counts under 'Unknown'.
    """
    root = parse_root(xml_text)
    elems = find_records(root, "VOUCHER")

    total = 0.0
    by_customer: dict[str, list] = {}
    for elem in elems:
        f = FieldAccessor(elem)
        amount = abs(voucher_amount_signed(elem))
        party = f.first("PARTYLEDGERNAME", "PARTYNAME", default="Unknown")
        total += amount
        bucket = by_customer.setdefault(party, [0.0, 0])
        bucket[0] += amount
        bucket[1] += 1

    top_customers = sorted(
        (CustomerTotal(name=name, amount=amt, voucher_count=count)
         for name, (amt, count) in by_customer.items()),
        key=lambda c: c.amount,
        reverse=True,
    )[:top]

    count = len(elems)
    logger.debug(f"Statistics over {count} vouchers, {len(by_customer)} customers")
    return SalesStatistics(
        total_sales=total,
        total_vouchers=count,
        average_order_value=total / count if count else 0.0,
        top_customers=top_customers,
    )
