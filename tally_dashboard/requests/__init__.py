"""
XML request builders for the Tally HTTP API.

Requests are rendered from Jinja2 templates in this directory. The
environment autoescapes every interpolated value, so a company name like
"A & B <Traders>" or a search term with quotes cannot break the document.
Free text that ends up inside a TDL string literal additionally has its
double quotes removed, since XML escaping alone would not stop it from
closing the literal once Tally decodes the entity.
"""
from __future__ import annotations
import re
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from pathlib import Path
from typing import Mapping, Optional, Sequence
from jinja2 import Environment, FileSystemLoader, StrictUndefined

from ..errors import ValidationError

# Template directory
TEMPLATE_DIR = Path(__file__).parent

# Available templates
TEMPLATES = {
    "collection": "collection.xml.j2",
    "object": "object.xml.j2",
    "report": "report.xml.j2",
}

SALES_CHILD_OF = "$$VchTypeTaxInvoice:$$VchTypeSales"

VOUCHER_FIELDS = (
    "Date", "VoucherTypeName", "VoucherNumber", "PartyLedgerName", "Amount",
    "Narration", "Reference", "GUID", "ALTERID", "VoucherRetainKey",
)
VOUCHER_DETAIL_FIELDS = VOUCHER_FIELDS + (
    "AllInventoryEntries.StockItemName", "AllInventoryEntries.Rate",
    "AllInventoryEntries.ActualQty", "AllInventoryEntries.BilledQty",
    "AllInventoryEntries.Amount", "AllInventoryEntries.Discount",
    "AllInventoryEntries.GSTHSNName", "AllLedgerEntries.LedgerName",
    "AllLedgerEntries.Amount",
)

_DATE_RE = re.compile(r"^\d{8}$")
_TAG_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_.]*$")

_env = Environment(
    loader=FileSystemLoader(str(TEMPLATE_DIR)),
    autoescape=True,
    trim_blocks=True,
    lstrip_blocks=True,
    undefined=StrictUndefined,
)


def get_template_path(name: str) -> Path:
    """Get path to a template file."""
    if name not in TEMPLATES:
        raise ValueError(f"Unknown template: {name}. Valid: {list(TEMPLATES.keys())}")
    return TEMPLATE_DIR / TEMPLATES[name]


def render(name: str, **context) -> str:
    """Render a request template with variables."""
    get_template_path(name)
    context.setdefault("company", None)
    context.setdefault("date_range", None)
    context.setdefault("variables", ())
    return _env.get_template(TEMPLATES[name]).render(**context)


def normalize_filter(text: Optional[str]) -> Optional[str]:
    """
    Canonical form of free search text: trimmed, inner whitespace collapsed.

    Empty input becomes None so that '' and '   ' mean "no filter".
    """
    if text is None:
        return None
    text = " ".join(str(text).split())
    return text or None


def tdl_string(value: str) -> str:
    """Quote free text as a TDL string literal; embedded double quotes are dropped."""
    return '"' + str(value).replace('"', "") + '"'


def _check_date(value: str, label: str) -> str:
    value = (value or "").strip()
    if not _DATE_RE.match(value):
        raise ValidationError(f"{label} must be an 8-digit YYYYMMDD date, got {value!r}")
    try:
        datetime.strptime(value, "%Y%m%d")
    except ValueError as e:
        raise ValidationError(f"{label} {value!r} is not a calendar date") from e
    return value


@dataclass(frozen=True)
class DateRange:
    """Inclusive date range in Tally's YYYYMMDD form."""

    from_date: str
    to_date: str

    def __post_init__(self):
        object.__setattr__(self, "from_date", _check_date(self.from_date, "from_date"))
        object.__setattr__(self, "to_date", _check_date(self.to_date, "to_date"))
        if self.from_date > self.to_date:
            raise ValidationError(
                f"Date range is inverted: {self.from_date} is after {self.to_date}",
                remedies=["Swap the dates or pick a start date on or before the end date"],
            )

    @classmethod
    def from_dates(cls, start: date, end: date) -> "DateRange":
        return cls(start.strftime("%Y%m%d"), end.strftime("%Y%m%d"))

    @classmethod
    def last_days(cls, days: int, today: Optional[date] = None) -> "DateRange":
        today = today or date.today()
        return cls.from_dates(today - timedelta(days=days), today)

    @classmethod
    def financial_year(cls, today: Optional[date] = None, start_month: int = 4) -> "DateRange":
        """Start of the current financial year (April by default) up to today."""
        today = today or date.today()
        year = today.year if today.month >= start_month else today.year - 1
        return cls.from_dates(date(year, start_month, 1), today)


@dataclass(frozen=True)
class Formula:
    """A named TDL formula used as a collection filter."""

    name: str
    expression: str


def date_filter() -> Formula:
    return Formula("DateFilter", "$$VchDate >= ##SVFROMDATE AND $$VchDate <= ##SVTODATE")


def party_filter(text: str) -> Formula:
    return Formula("PartyFilter", f"$$PartyLedgerName Contains {tdl_string(text)}")


@dataclass
class VoucherQuery:
    """Parameters of a sales voucher export."""

    company: str
    date_range: Optional[DateRange] = None
    skip: int = 0
    limit: Optional[int] = None
    search_filter: Optional[str] = None
    guid: Optional[str] = None
    count_only: bool = False
    child_of: str = SALES_CHILD_OF
    fields: Sequence[str] = field(default_factory=lambda: VOUCHER_FIELDS)

    def validate(self) -> None:
        if not (self.company or "").strip():
            raise ValidationError("Company name is required for a voucher query")
        if self.date_range is None and not self.guid:
            raise ValidationError("A date range is required unless a voucher GUID is given")
        if self.skip < 0:
            raise ValidationError(f"skip must be >= 0, got {self.skip}")
        if self.limit is not None and self.limit <= 0:
            raise ValidationError(f"limit must be positive, got {self.limit}")


def _check_company(company: Optional[str]) -> Optional[str]:
    if company is None:
        return None
    company = company.strip()
    if not company:
        raise ValidationError("Company name is empty")
    return company


def _check_variables(variables: Mapping[str, str] | None) -> list[tuple[str, str]]:
    out = []
    for name, value in (variables or {}).items():
        if not _TAG_RE.match(name):
            raise ValidationError(f"Invalid static variable name {name!r}")
        out.append((name, value))
    return out


def build_collection_query(
    entity_kind: str,
    fields: Sequence[str],
    filters: Sequence[Formula] = (),
    company: Optional[str] = None,
    date_range: Optional[DateRange] = None,
    skip: Optional[int] = None,
    limit: Optional[int] = None,
    collection_name: Optional[str] = None,
    child_of: Optional[str] = None,
    variables: Mapping[str, str] | None = None,
) -> str:
    """Build a TYPE=Collection export of entity_kind fetching the given fields."""
    if not entity_kind:
        raise ValidationError("entity_kind is required")
    if not fields:
        raise ValidationError("At least one field must be fetched")
    if skip is not None and skip < 0:
        raise ValidationError(f"skip must be >= 0, got {skip}")
    if limit is not None and limit <= 0:
        raise ValidationError(f"limit must be positive, got {limit}")
    return render(
        "collection",
        entity_kind=entity_kind,
        collection_name=collection_name or f"{entity_kind}Collection",
        fields=list(fields),
        filters=list(filters),
        company=_check_company(company),
        date_range=date_range,
        skip=skip,
        limit=limit,
        child_of=child_of,
        variables=_check_variables(variables),
    )


def build_voucher_query(params: VoucherQuery) -> str:
    """
    Build a sales voucher export.

    Three shapes share one template: a page (SKIP/LIMIT window), a count
    (GUID only, no window) and a single voucher's details (GUID filter plus
    inventory and ledger lines).
    """
    params.validate()

    filters = [date_filter()] if params.date_range else []
    search = normalize_filter(params.search_filter)
    if search:
        filters.append(party_filter(search))

    variables: dict[str, str] = {}
    fields = list(params.fields)
    skip, limit = params.skip, params.limit
    name = "SalesVouchers"

    if params.guid:
        variables["SVVOUCHERGUID"] = params.guid.strip()
        filters.append(Formula("VoucherFilter", "$GUID = ##SVVOUCHERGUID"))
        fields = list(VOUCHER_DETAIL_FIELDS)
        skip, limit = None, None
        name = "VoucherDetails"
    elif params.count_only:
        fields = ["GUID"]
        skip, limit = None, None
        name = "SalesVouchersCount"

    return build_collection_query(
        "Voucher",
        fields,
        filters=filters,
        company=params.company,
        date_range=params.date_range,
        skip=skip,
        limit=limit,
        collection_name=name,
        child_of=params.child_of,
        variables=variables,
    )


def build_object_query(
    entity_kind: str,
    id_fields: Mapping[str, str],
    fields: Sequence[str],
    company: Optional[str] = None,
) -> str:
    """
    Build a TYPE=Object export of one entity identified by id_fields.

    id_fields holds exactly one {id type: value} pair, e.g. {"Name": "ACME"}.
    """
    if len(id_fields) != 1:
        raise ValidationError(f"Exactly one identifying field is required, got {len(id_fields)}")
    (id_type, id_value), = id_fields.items()
    if not (id_value or "").strip():
        raise ValidationError(f"{entity_kind} {id_type} is empty")
    return render(
        "object",
        entity_kind=entity_kind,
        id_type=id_type,
        id_value=id_value.strip(),
        fields=list(fields),
        company=_check_company(company),
    )


def build_report_query(
    report_name: str,
    company: str,
    date_range: Optional[DateRange] = None,
    explode: bool = False,
) -> str:
    """Build a TYPE=Data export of a built-in report such as 'Balance Sheet'."""
    variables = {"EXPLODEFLAG": "Yes"} if explode else {}
    return render(
        "report",
        report_name=report_name,
        company=_check_company(company),
        date_range=date_range,
        variables=_check_variables(variables),
    )


__all__ = [
    "TEMPLATES",
    "TEMPLATE_DIR",
    "DateRange",
    "Formula",
    "VoucherQuery",
    "build_collection_query",
    "build_voucher_query",
    "build_object_query",
    "build_report_query",
    "normalize_filter",
    "tdl_string",
]
