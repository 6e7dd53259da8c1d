from sqlalchemy import Column, String, Boolean, DateTime, ForeignKey, JSON, Uuid, Index, text
from sqlalchemy.sql import func
import uuid
from app.core.database import Base


class ImportRun(Base):
    __tablename__ = "import_run"

    import_run_id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    client_id = Column(Uuid(as_uuid=True), ForeignKey("client.client_id", ondelete="CASCADE"), nullable=False)
    run_id = Column(String(64))
    payload = Column(JSON, nullable=False)
    latest = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        Index("ix_import_run_client_created", "client_id", "created_at"),
        Index("ix_import_run_client_run_id", "client_id", "run_id"),
        # one latest run per client; the rotation in import_run_service keeps
        # this satisfied, the index turns a racing writer into an IntegrityError
        Index(
            "uq_import_run_latest_per_client",
            "client_id",
            unique=True,
            postgresql_where=text("latest"),
            sqlite_where=text("latest = 1"),
        ),
    )
