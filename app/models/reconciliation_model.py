# app/models/reconciliation_model.py
from sqlalchemy import Column, String, Date, DateTime, Numeric, Text, ForeignKey, Enum, JSON, Uuid, UniqueConstraint, CheckConstraint, Index, text
from sqlalchemy.sql import func
import uuid
from app.core.database import Base
from app.models.enums import ClosureStatus


class ReconciliationClosure(Base):
    __tablename__ = "reconciliation_closure"

    closure_id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    client_id = Column(Uuid(as_uuid=True), ForeignKey("client.client_id", ondelete="CASCADE"), nullable=False)
    reference_month = Column(Date, nullable=False)
    insurer_id = Column(String(64))
    status = Column(
        Enum(ClosureStatus, name="closure_status", native_enum=False),
        nullable=False,
        default=ClosureStatus.OPEN,
    )
    declared_total = Column(Numeric(14, 2))
    notes = Column(Text)
    snapshot = Column(JSON)
    closed_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        UniqueConstraint("client_id", "reference_month", "insurer_id", name="uq_closure_client_month_insurer"),
        # NULLs are distinct in the constraint above, the period without insurer needs its own guard
        Index(
            "uq_closure_client_month_no_insurer",
            "client_id",
            "reference_month",
            unique=True,
            postgresql_where=text("insurer_id IS NULL"),
            sqlite_where=text("insurer_id IS NULL"),
        ),
        CheckConstraint(
            "status = 'OPEN' OR (closed_at IS NOT NULL AND declared_total IS NOT NULL)",
            name="ck_closure_closed_has_declaration",
        ),
    )
