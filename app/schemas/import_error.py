from datetime import datetime
from typing import Any, Dict, List, Optional
from pydantic import BaseModel
from uuid import UUID


class ImportErrorRead(BaseModel):
    error_id: UUID
    import_run_id: Optional[UUID]
    row_number: int
    reason: str
    data: Optional[Dict[str, Any]]
    created_at: Optional[datetime]

    class Config:
        from_attributes = True


class ImportErrorList(BaseModel):
    items: List[ImportErrorRead]
    total: int
    page: int
    page_size: int
