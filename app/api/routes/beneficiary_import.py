import logging
from typing import Optional

from fastapi import APIRouter, Depends, File, Form, UploadFile
from sqlalchemy.orm import Session

from app.api.deps import get_client, read_upload
from app.core.config import settings
from app.core.database import get_db
from app.models.tenant_model import Client
from app.schemas.beneficiary_import import BeneficiaryImportResult
from app.services.beneficiary_import_service import import_beneficiaries
from app.services.tabular_parser import parse_upload

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/beneficiaries/import", response_model=BeneficiaryImportResult)
async def upload_beneficiaries(
    file: UploadFile = File(...),
    run_id: Optional[str] = Form(None),
    client: Client = Depends(get_client),
    db: Session = Depends(get_db),
):
    contents = await read_upload(file)
    rows = parse_upload(contents, file.filename, file.content_type)
    logger.info(f"Beneficiary roster {file.filename!r} for client {client.client_id}: {len(rows)} row(s)")

    return import_beneficiaries(
        db,
        client.client_id,
        rows,
        run_id=run_id,
        legacy_pad=settings.DOCUMENT_ID_LEGACY_PAD,
    )
