"""
Parsers for Tally report exports (TYPE=Data).

The Balance Sheet report comes back flat: a BSNAME element naming the line,
followed by a BSAMT sibling holding its amounts:

    <BSNAME><DSPACCNAME><DSPDISPNAME>Capital Account</DSPDISPNAME></DSPACCNAME></BSNAME>
    <BSAMT><BSSUBAMT></BSSUBAMT><BSMAINAMT>-500000.00</BSMAINAMT></BSAMT>
"""
from __future__ import annotations
from loguru import logger

from ..models import NOT_AVAILABLE, BalanceSheet, BalanceSheetLine
from .base import FieldAccessor, ParseResult, find_records, local_name, parse_amount, parse_root


def _line_name(bsname) -> str:
    for tag in ("DSPDISPNAME", "DSPACCNAME"):
        found = find_records(bsname, tag)
        if found:
            text = "".join(found[0].itertext()).strip()
            if text:
                return text
    return "".join(bsname.itertext()).strip()


def parse_balance_sheet_lines(xml_text: str) -> ParseResult[BalanceSheetLine]:
    root = parse_root(xml_text)
    names = find_records(root, "BSNAME")
    result: ParseResult[BalanceSheetLine] = ParseResult(raw_count=len(names))
    if not names:
        return result

    current = None
    for elem in names[0].getparent():
        tag = local_name(elem)
        if tag == "BSNAME":
            if current is not None:
                result.records.append(current)
            current = BalanceSheetLine(name=_line_name(elem) or NOT_AVAILABLE)
        elif tag == "BSAMT":
            if current is None:
                result.skipped.append("BSAMT without a preceding BSNAME")
                continue
            f = FieldAccessor(elem)
            current = current.model_copy(update={
                "main_amount": parse_amount(f.get("BSMAINAMT")),
                "sub_amount": parse_amount(f.get("BSSUBAMT")),
            })
            result.records.append(current)
            current = None
    if current is not None:
        result.records.append(current)

    result.log("balance sheet lines")
    return result


def parse_balance_sheet(xml_text: str) -> BalanceSheet:
    """
    Parse the Balance Sheet report and split it into assets and liabilities.

    Tally exports debit balances as positive and credit balances as negative,
    so a positive line is an asset and a negative one a liability. Totals use
    absolute amounts. Lines with no amount at all are left out of both sides.
    """
    lines = parse_balance_sheet_lines(xml_text)

    assets, liabilities, empty = [], [], 0
    for line in lines:
        if line.signed_amount > 0:
            assets.append(line)
        elif line.signed_amount < 0:
            liabilities.append(line)
        else:
            empty += 1
    if empty:
        logger.debug(f"{empty} balance sheet lines carry no amount")

    total_assets = sum(line.amount for line in assets)
    total_liabilities = sum(line.amount for line in liabilities)
    return BalanceSheet(
        assets=assets,
        liabilities=liabilities,
        total_assets=total_assets,
        total_liabilities=total_liabilities,
        net_worth=total_assets - total_liabilities,
    )
