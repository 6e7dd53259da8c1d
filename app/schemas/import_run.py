from datetime import datetime
from typing import Any, Dict, List, Optional
from pydantic import BaseModel
from uuid import UUID as PyUUID


class ImportRunRead(BaseModel):
    import_run_id: PyUUID
    client_id: PyUUID
    run_id: Optional[str]
    latest: bool
    payload: Dict[str, Any]
    created_at: Optional[datetime]

    class Config:
        from_attributes = True


class ImportRunList(BaseModel):
    items: List[ImportRunRead]
    total: int
    page: int
    page_size: int


class DeletedCount(BaseModel):
    deleted: int
