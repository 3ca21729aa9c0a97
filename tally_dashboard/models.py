from __future__ import annotations
import datetime as dt
from typing import Generic, Optional, TypeVar
from pydantic import BaseModel, Field

NOT_AVAILABLE = "N/A"

T = TypeVar("T")


class LineItem(BaseModel):
    item_name: str
    hsn_code: str = ""
    quantity: float = 0.0
    unit: str = ""
    rate: float = 0.0
    amount: float = 0.0              # always absolute
    discount: Optional[float] = None
    discount_percent: Optional[float] = None


class Voucher(BaseModel):
    id: str
    voucher_number: str = ""
    date: str = ""                   # DD/MM/YYYY, or the raw value if unparseable
    posting_date: Optional[dt.date] = None
    party_name: str = ""
    amount: float = 0.0              # always absolute
    narration: str = ""
    reference: str = ""
    guid: str = ""
    alter_id: str = ""
    voucher_type: str = ""
    voucher_retain_key: str = ""
    line_items: Optional[list[LineItem]] = None


class StockItem(BaseModel):
    name: str
    reserved_name: Optional[str] = None
    language_name: Optional[str] = None
    base_units: str = ""
    opening_balance: float = 0.0
    closing_balance: float = 0.0
    opening_value: float = 0.0
    closing_value: float = 0.0
    standard_cost: float = 0.0
    standard_price: float = 0.0


class PaginatedResult(BaseModel, Generic[T]):
    records: list[T]
    page: int
    page_size: int
    total_count: int
    has_more: bool
    total_is_estimate: bool = True

    @property
    def total_pages(self) -> int:
        if self.page_size <= 0:
            return 0
        return -(-self.total_count // self.page_size)


class CustomerTotal(BaseModel):
    name: str
    amount: float
    voucher_count: int


class SalesStatistics(BaseModel):
    total_sales: float = 0.0
    total_vouchers: int = 0
    average_order_value: float = 0.0
    top_customers: list[CustomerTotal] = Field(default_factory=list)


class Company(BaseModel):
    name: str
    start_from: str = ""
    end_to: str = ""


class CompanyDetails(BaseModel):
    name: str = NOT_AVAILABLE
    guid: str = NOT_AVAILABLE
    email: str = NOT_AVAILABLE
    phone: str = NOT_AVAILABLE
    address: list[str] = Field(default_factory=list)
    pincode: str = NOT_AVAILABLE
    country_name: str = NOT_AVAILABLE
    state_name: str = NOT_AVAILABLE
    books_from: str = NOT_AVAILABLE
    mailing_name: list[str] = Field(default_factory=list)
    gstin: str = NOT_AVAILABLE
    pan: str = NOT_AVAILABLE


class CompanyTaxDetails(BaseModel):
    name: str = NOT_AVAILABLE
    income_tax_number: str = NOT_AVAILABLE
    books_from: str = NOT_AVAILABLE


class BalanceSheetLine(BaseModel):
    name: str = NOT_AVAILABLE
    main_amount: float = 0.0         # signed as exported; credit is negative
    sub_amount: float = 0.0

    @property
    def signed_amount(self) -> float:
        return self.main_amount if self.main_amount != 0 else self.sub_amount

    @property
    def amount(self) -> float:
        return abs(self.signed_amount)


class BalanceSheet(BaseModel):
    assets: list[BalanceSheetLine] = Field(default_factory=list)
    liabilities: list[BalanceSheetLine] = Field(default_factory=list)
    total_assets: float = 0.0
    total_liabilities: float = 0.0
    net_worth: float = 0.0


class ServiceResult(BaseModel, Generic[T]):
    """
    What every domain service read returns.

    ``error`` is set when the data is a degraded answer: the fetch failed and
    ``data`` is the last cached value (``stale`` is then True).
    """
    data: T
    error: Optional[str] = None
    from_cache: bool = False
    stale: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None
