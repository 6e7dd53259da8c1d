from typing import Any, Dict, List, Optional
from pydantic import BaseModel
from uuid import UUID


class RowError(BaseModel):
    row_number: int
    reason: str
    data: Dict[str, Any] = {}


class CreatedUpdated(BaseModel):
    created: int = 0
    updated: int = 0


class DetectedColumn(BaseModel):
    column: str
    strategy: str
    rows: int


class BeneficiaryImportResult(BaseModel):
    created: int
    updated: int
    inactivated: int
    skipped: int
    titulars: CreatedUpdated
    dependents: CreatedUpdated
    total_rows: int
    errors: List[RowError]
    detected_columns: Dict[str, DetectedColumn]
    import_run_id: UUID
    run_id: Optional[str] = None
