from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, JSON, Uuid, Index
from sqlalchemy.sql import func
import uuid
from app.core.database import Base


class BeneficiaryImportError(Base):
    __tablename__ = "beneficiary_import_error"

    error_id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    client_id = Column(Uuid(as_uuid=True), ForeignKey("client.client_id", ondelete="CASCADE"), nullable=False)
    import_run_id = Column(Uuid(as_uuid=True), ForeignKey("import_run.import_run_id", ondelete="SET NULL"))
    row_number = Column(Integer, nullable=False)
    reason = Column(String, nullable=False)
    data = Column(JSON)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        Index("ix_import_error_client_created", "client_id", "created_at"),
    )
