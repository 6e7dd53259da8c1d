from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from app.api.deps import Pagination, get_client, get_pagination
from app.core.database import get_db
from app.models.tenant_model import Client
from app.schemas.import_run import DeletedCount, ImportRunList, ImportRunRead
from app.services import import_run_service

router = APIRouter()


@router.get("/import-runs", response_model=ImportRunList)
def list_import_runs(
    paging: Pagination = Depends(get_pagination),
    client: Client = Depends(get_client),
    db: Session = Depends(get_db),
):
    runs, total = import_run_service.list_runs(db, client.client_id, paging.page, paging.page_size)
    return {"items": runs, "total": total, "page": paging.page, "page_size": paging.page_size}


# declared before "/import-runs/{ref}" so "latest" is not taken for a run id
@router.get("/import-runs/latest", response_model=ImportRunRead)
def latest_import_run(client: Client = Depends(get_client), db: Session = Depends(get_db)):
    return import_run_service.get_latest_run(db, client.client_id)


@router.get("/import-runs/{ref}", response_model=ImportRunRead)
def get_import_run(ref: str, client: Client = Depends(get_client), db: Session = Depends(get_db)):
    return import_run_service.get_run(db, client.client_id, ref)


@router.patch("/import-runs/{ref}/latest", response_model=ImportRunRead)
def promote_import_run(ref: str, client: Client = Depends(get_client), db: Session = Depends(get_db)):
    return import_run_service.set_latest_run(db, client.client_id, ref)


@router.delete("/import-runs/{ref}", status_code=204)
def delete_import_run(ref: str, client: Client = Depends(get_client), db: Session = Depends(get_db)):
    import_run_service.delete_run(db, client.client_id, ref)


@router.delete("/import-runs", response_model=DeletedCount)
def delete_all_import_runs(client: Client = Depends(get_client), db: Session = Depends(get_db)):
    return {"deleted": import_run_service.delete_all_runs(db, client.client_id)}
