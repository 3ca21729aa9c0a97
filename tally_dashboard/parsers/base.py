"""
Base utilities for parsing Tally XML responses.

Provides:
- XML sanitization and root parsing
- Field access (attribute, then child element, then nested .LIST element)
- Amount, quantity and date parsing
- ParseResult, the aggregate every list parser returns
"""
from __future__ import annotations
import re
from dataclasses import dataclass, field
from datetime import date
from typing import Generic, Iterator, Optional, TypeVar
from lxml import etree
from loguru import logger

from ..errors import ParseError

T = TypeVar("T")

_NON_NUMERIC = re.compile(r"[^\d.+-]")
# A dot closing an abbreviation ("Rs.") or not followed by a digit is not a decimal point
_STRAY_DOT = re.compile(r"(?<=[A-Za-z])\.|\.(?!\d)")
_TALLY_DATE = re.compile(r"^\d{8}$")
# The body is already text; a declared encoding (Tally exports UTF-16) no longer applies
_XML_DECLARATION = re.compile(r"^\ufeff?\s*<\?xml[^>]*\?>")


def sanitize_xml(xml_text: str) -> str:
    """
    Remove invalid XML characters and fix common issues.

    Tally emits control characters and invalid character references such as
    &#4; inside exported text; lxml refuses both.
    """
    if not xml_text:
        return xml_text

    xml_text = xml_text.replace("\x00", "")

    # Invalid numeric character references (&#0; .. &#31; except tab, LF, CR)
    xml_text = re.sub(r"&#([0-8]|1[0-2]|1[4-9]|2[0-9]|3[01]);", "", xml_text)
    xml_text = re.sub(r"&#x([0-8bBcCeEfF]|1[0-9a-fA-F]);", "", xml_text)

    # Raw control characters; XML 1.0 allows only #x9 | #xA | #xD | [#x20-#xD7FF] | [#xE000-#xFFFD]
    xml_text = re.sub(r"[\x01-\x08\x0B\x0C\x0E-\x1F\uFFFE\uFFFF]", "", xml_text)

    # Bare ampersands that are not entity references
    xml_text = re.sub(r"&(?!(amp|lt|gt|apos|quot|#\d+|#x[\da-fA-F]+);)", "&amp;", xml_text)

    return xml_text


def parse_root(xml_text: str) -> etree._Element:
    """
    Parse a response body into its root element.

    Raises ParseError only when the body is not XML at all; a well-formed
    document with missing fields is the field accessors' problem, not ours.
    """
    if xml_text is None or not xml_text.strip():
        raise ParseError("Tally returned an empty response")
    sanitized = _XML_DECLARATION.sub("", sanitize_xml(xml_text.strip()), count=1)
    parser = etree.XMLParser(recover=False, resolve_entities=False, huge_tree=True)
    try:
        return etree.fromstring(sanitized.encode("utf-8"), parser)
    except etree.XMLSyntaxError as e:
        snippet = xml_text.strip()[:120].replace("\n", " ")
        raise ParseError(f"Response is not valid XML ({e}): {snippet!r}") from e


def local_name(element: etree._Element) -> str:
    """Upper-cased tag without namespace; '' for comments and processing instructions."""
    if not isinstance(element.tag, str):
        return ""
    return etree.QName(element).localname.upper()


def children(element: etree._Element | None, tag: str) -> list[etree._Element]:
    """Direct children whose local name matches tag, ignoring case and namespace."""
    if element is None:
        return []
    wanted = tag.upper()
    return [c for c in element if local_name(c) == wanted]


def find_records(root: etree._Element, tag: str) -> list[etree._Element]:
    """
    All descendants named tag (case and namespace insensitive), outermost only.

    A VOUCHER nested inside another VOUCHER is part of the outer record, not a
    record of its own.
    """
    wanted = tag.upper()
    found = []
    for elem in root.iter():
        if local_name(elem) != wanted:
            continue
        if any(local_name(a) == wanted for a in elem.iterancestors()):
            continue
        found.append(elem)
    return found


def _text_of(element: etree._Element) -> str:
    return "".join(element.itertext()).strip()


def _attribute(element: etree._Element, name: str) -> Optional[str]:
    wanted = name.upper()
    for key, value in element.attrib.items():
        if etree.QName(key).localname.upper() == wanted:
            return value.strip()
    return None


class FieldAccessor:
    """
    Reads a named field from a Tally element.

    Tally puts the same logical field in different places depending on the
    export (NAME="..." attribute, <NAME> child, <NAME.LIST><NAME> list). The
    lookup order is fixed: attribute, child element, nested list element. The
    first non-empty value wins; otherwise the default is returned.
    """

    def __init__(self, element: etree._Element | None):
        self.element = element

    def get(self, name: str, default: str = "") -> str:
        elem = self.element
        if elem is None:
            return default

        value = _attribute(elem, name)
        if value:
            return value

        for child in children(elem, name):
            value = _text_of(child)
            if value:
                return value

        for lst in children(elem, f"{name}.LIST"):
            for child in children(lst, name):
                value = _text_of(child)
                if value:
                    return value

        return default

    def first(self, *names: str, default: str = "") -> str:
        """First non-empty value among several field names."""
        for name in names:
            value = self.get(name)
            if value:
                return value
        return default

    def values(self, name: str, item: Optional[str] = None) -> list[str]:
        """Values of a repeated field, e.g. ADDRESS.LIST/ADDRESS."""
        item = item or name
        values = []
        for lst in children(self.element, f"{name}.LIST"):
            for child in children(lst, item):
                text = _text_of(child)
                if text:
                    values.append(text)
        if not values:
            for child in children(self.element, item):
                text = _text_of(child)
                if text:
                    values.append(text)
        return values

    def amount(self, name: str) -> float:
        return parse_amount(self.get(name))

    def __call__(self, name: str, default: str = "") -> str:
        return self.get(name, default)


def parse_amount(s: str | None) -> float:
    """
    Parse a Tally numeric field.

    Everything except digits, sign and decimal point is stripped first
    (currency symbols and abbreviations like "Rs.", thousands separators,
    whitespace, units). A value that still does not parse becomes 0.0; NaN
    and infinities never escape.
    """
    if not s:
        return 0.0
    cleaned = _NON_NUMERIC.sub("", _STRAY_DOT.sub("", str(s)))
    if not cleaned:
        return 0.0
    try:
        value = float(cleaned)
    except ValueError:
        logger.debug(f"Could not parse amount: {s!r}")
        return 0.0
    if value != value or value in (float("inf"), float("-inf")):
        return 0.0
    return value


def parse_quantity(s: str | None) -> tuple[float, str]:
    """
    Split a Tally quantity like ' 12.50 Nos' into (12.5, 'Nos').

    Rates are exported as '150.00/Nos'; the unit after the slash is kept.
    """
    if not s:
        return 0.0, ""
    s = str(s).strip()
    number = re.match(r"^[^\d+-]*([+-]?[\d,]*\.?\d+)", s)
    if not number:
        return 0.0, s.lstrip("/").strip()
    unit = s[number.end():].strip().lstrip("/").strip()
    return parse_amount(number.group(1)), unit


def parse_int(s: str | None, default: int = 0) -> int:
    """Parse Tally integer string ('1 234' and '123.0' included)."""
    if not s:
        return default
    s = str(s).strip().replace(",", "").replace(" ", "")
    try:
        return int(float(s))
    except ValueError:
        logger.debug(f"Could not parse int: {s!r}")
        return default


def parse_tally_date(s: str | None) -> Optional[date]:
    """Parse an 8-digit YYYYMMDD string; None for anything else."""
    if not s:
        return None
    s = str(s).strip()
    if not _TALLY_DATE.match(s):
        return None
    try:
        return date(int(s[:4]), int(s[4:6]), int(s[6:8]))
    except ValueError:
        return None


def format_tally_date(s: str | None) -> str:
    """
    Render a Tally date as DD/MM/YYYY.

    Anything that is not a valid YYYYMMDD value is returned unchanged.
    """
    if s is None:
        return ""
    parsed = parse_tally_date(s)
    if parsed is None:
        return s
    return parsed.strftime("%d/%m/%Y")


def to_tally_date(d: date) -> str:
    """Python date to Tally's YYYYMMDD."""
    return d.strftime("%Y%m%d")


@dataclass
class ParseResult(Generic[T]):
    """
    Records parsed from one response plus what was left behind.

    raw_count is the number of candidate elements found; every one of them is
    either in records or explained in skipped.
    """
    records: list[T] = field(default_factory=list)
    raw_count: int = 0
    skipped: list[str] = field(default_factory=list)

    @property
    def parsed_count(self) -> int:
        return len(self.records)

    def __iter__(self) -> Iterator[T]:
        return iter(self.records)

    def __len__(self) -> int:
        return len(self.records)

    def log(self, entity: str) -> None:
        logger.debug(f"Parsed {self.parsed_count} of {self.raw_count} {entity}")
        if self.skipped:
            logger.warning(
                f"Skipped {len(self.skipped)} {entity}: " + "; ".join(self.skipped[:5])
                + (" ..." if len(self.skipped) > 5 else "")
            )
