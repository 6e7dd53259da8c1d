"""
Reconciliation request/response schemas. Money travels as two-decimal strings.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field

MONEY_PATTERN = r"^-?\d+(\.\d{1,2})?$"


class RegistryEntry(BaseModel):
    beneficiary_id: str
    document_id: str
    name: Optional[str]
    kind: Optional[str]
    plan_name: Optional[str] = None
    cost_center: Optional[str] = None
    monthly_fee: str


class MatchedEntry(RegistryEntry):
    line_id: str
    invoice_name: Optional[str]
    charged_amount: str


class MismatchedEntry(MatchedEntry):
    difference: str


class OnlyInInvoiceEntry(BaseModel):
    line_id: str
    document_id: str
    invoice_name: Optional[str]
    charged_amount: str


class DuplicateEntry(BaseModel):
    document_id: str
    name: Optional[str]
    occurrences: int
    sum: str
    amounts: List[str]
    beneficiary_id: Optional[str] = None
    monthly_fee: Optional[str] = None


class LineEntry(BaseModel):
    line_id: str
    document_id: str
    beneficiary_name: Optional[str]
    charged_amount: str
    status: str


class ReconciliationSummary(BaseModel):
    invoice_count: int
    active_count: int
    matched_count: int
    mismatched_count: int
    only_in_invoice_count: int
    only_in_registry_count: int
    duplicate_count: int
    registry_in_duplicates: int
    invoice_sum: str
    matched_sum: str
    mismatched_sum: str
    mismatched_difference_sum: str
    only_in_invoice_sum: str
    duplicate_sum: str
    only_in_registry_sum: str


class ClosureInfo(BaseModel):
    closure_id: str
    status: str
    declared_total: Optional[str]
    notes: Optional[str]
    closed_at: Optional[datetime]
    updated_at: Optional[datetime]
    difference: Optional[str]


class ReconciliationReport(BaseModel):
    reference_month: str
    insurer_id: Optional[str]
    filters: Dict[str, Optional[str]]
    summary: ReconciliationSummary
    matched: List[MatchedEntry]
    mismatched: List[MismatchedEntry]
    only_in_invoice: List[OnlyInInvoiceEntry]
    only_in_registry: List[RegistryEntry]
    duplicates: List[DuplicateEntry]
    lines: List[LineEntry]
    closure: ClosureInfo


class CloseRequest(BaseModel):
    month: str = Field(..., pattern=r"^\d{4}-\d{2}$")
    declared_total: str = Field(..., pattern=MONEY_PATTERN)
    notes: Optional[str] = None
    insurer_id: Optional[str] = None


class ClosureUpdateRequest(BaseModel):
    month: str = Field(..., pattern=r"^\d{4}-\d{2}$")
    insurer_id: Optional[str] = None
    declared_total: Optional[str] = Field(None, pattern=MONEY_PATTERN)
    notes: Optional[str] = None
    expected_updated_at: Optional[datetime] = Field(None, description="Rejects the update if the closure changed since")


class ReopenRequest(BaseModel):
    month: str = Field(..., pattern=r"^\d{4}-\d{2}$")
    insurer_id: Optional[str] = None


class ClosureRead(BaseModel):
    closure_id: str
    reference_month: str
    insurer_id: Optional[str]
    status: str
    declared_total: Optional[str]
    notes: Optional[str]
    snapshot: Optional[Dict[str, Any]] = None
    closed_at: Optional[datetime]
    updated_at: Optional[datetime]


class HistoryItem(ClosureInfo):
    reference_month: str
    insurer_id: Optional[str]
    invoice_total: str
    snapshot: Optional[Dict[str, Any]] = None


class HistorySummary(BaseModel):
    periods: int
    closed: int
    open: int
    declared_sum: str
    invoice_sum: str
    difference: str


class HistoryList(BaseModel):
    items: List[HistoryItem]
    total: int
    page: int
    page_size: int
    summary: HistorySummary


class FilterOptions(BaseModel):
    kinds: List[str]
    plans: List[str]
    cost_centers: List[str]
