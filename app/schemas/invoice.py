from datetime import date, datetime
from typing import Dict, List, Optional
from pydantic import BaseModel, Field
from uuid import UUID

from app.models.enums import InvoiceLineStatus
from app.schemas.beneficiary_import import DetectedColumn, RowError


class InvoiceImportResult(BaseModel):
    processed: int
    skipped: int
    invalid_document: int
    invalid_amount: int
    total_rows: int
    reference_month: str
    insurer_id: Optional[str] = None
    errors: List[RowError]
    detected_columns: Dict[str, DetectedColumn]
    sample_columns: List[str]


class InvoiceLineRead(BaseModel):
    line_id: UUID
    insurer_id: Optional[str]
    reference_month: date
    beneficiary_name: Optional[str]
    document_id: str
    charged_amount: str
    reconciliation_status: InvoiceLineStatus
    created_at: Optional[datetime]

    class Config:
        from_attributes = True


class InvoiceLineList(BaseModel):
    items: List[InvoiceLineRead]
    total: int
    page: int
    page_size: int


class MarkReconciledRequest(BaseModel):
    month: str = Field(..., pattern=r"^\d{4}-\d{2}$")
    insurer_id: Optional[str] = None
    document_ids: Optional[List[str]] = Field(None, description="Only these documents; all lines of the month when omitted")


class AffectedLines(BaseModel):
    affected: int
