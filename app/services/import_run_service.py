"""
Ledger of import batches with a single "latest" pointer per client.
"""
import logging
import uuid
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.exceptions import ConflictException, NotFoundException
from app.models.import_run import ImportRun

logger = logging.getLogger(__name__)


def _clear_latest(db: Session, client_id: uuid.UUID) -> None:
    (
        db.query(ImportRun)
        .filter(ImportRun.client_id == client_id, ImportRun.latest.is_(True))
        .update({ImportRun.latest: False}, synchronize_session="fetch")
    )
    # the partial unique index is checked per statement, so the demotion
    # has to reach the database before the promotion does
    db.flush()


def _flush_or_conflict(db: Session, client_id: uuid.UUID) -> None:
    try:
        db.flush()
    except IntegrityError as exc:
        db.rollback()
        logger.warning(f"Concurrent latest-run promotion for client {client_id}")
        raise ConflictException(
            "Another import run was promoted concurrently, retry the operation",
            details={"client_id": str(client_id)},
        ) from exc


def create_latest_run(
    db: Session,
    client_id: uuid.UUID,
    payload: Dict[str, Any],
    run_id: Optional[str] = None,
) -> ImportRun:
    """
    Add a run and make it the client's latest one.

    Only flushes; the caller owns the transaction so the run commits together
    with the import it describes.
    """
    _clear_latest(db, client_id)
    run = ImportRun(
        import_run_id=uuid.uuid4(),
        client_id=client_id,
        run_id=run_id,
        payload=payload,
        latest=True,
    )
    db.add(run)
    _flush_or_conflict(db, client_id)
    logger.info(f"Import run {run.import_run_id} recorded as latest for client {client_id}")
    return run


def _find_run(db: Session, client_id: uuid.UUID, ref: str) -> Optional[ImportRun]:
    query = db.query(ImportRun).filter(ImportRun.client_id == client_id)
    try:
        internal_id = uuid.UUID(str(ref))
    except ValueError:
        internal_id = None

    if internal_id is not None:
        run = query.filter(ImportRun.import_run_id == internal_id).first()
        if run is not None:
            return run
    return query.filter(ImportRun.run_id == str(ref)).order_by(ImportRun.created_at.desc()).first()


def get_run(db: Session, client_id: uuid.UUID, ref: str) -> ImportRun:
    """Look a run up by internal id or by external run id."""
    run = _find_run(db, client_id, ref)
    if run is None:
        raise NotFoundException("Import run not found", details={"run": str(ref)})
    return run


def get_latest_run(db: Session, client_id: uuid.UUID) -> ImportRun:
    run = (
        db.query(ImportRun)
        .filter(ImportRun.client_id == client_id, ImportRun.latest.is_(True))
        .order_by(ImportRun.created_at.desc())
        .first()
    )
    if run is None:
        raise NotFoundException("No import run recorded for this client")
    return run


def set_latest_run(db: Session, client_id: uuid.UUID, ref: str) -> ImportRun:
    run = get_run(db, client_id, ref)
    if run.latest:
        return run

    _clear_latest(db, client_id)
    run.latest = True
    _flush_or_conflict(db, client_id)
    db.commit()
    db.refresh(run)
    logger.info(f"Import run {run.import_run_id} promoted to latest for client {client_id}")
    return run


def delete_run(db: Session, client_id: uuid.UUID, ref: str) -> None:
    """Delete one run. Removing the latest run leaves the client without one."""
    run = get_run(db, client_id, ref)
    db.delete(run)
    db.commit()
    logger.info(f"Import run {run.import_run_id} deleted for client {client_id}")


def delete_all_runs(db: Session, client_id: uuid.UUID) -> int:
    deleted = (
        db.query(ImportRun)
        .filter(ImportRun.client_id == client_id)
        .delete(synchronize_session=False)
    )
    db.commit()
    logger.info(f"Deleted {deleted} import run(s) for client {client_id}")
    return deleted


def list_runs(db: Session, client_id: uuid.UUID, page: int = 1, page_size: int = 20) -> Tuple[List[ImportRun], int]:
    query = db.query(ImportRun).filter(ImportRun.client_id == client_id)
    total = query.count()
    items = (
        query.order_by(ImportRun.created_at.desc())
        .offset((page - 1) * page_size)
        .limit(page_size)
        .all()
    )
    return items, total
