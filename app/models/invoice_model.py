# app/models/invoice_model.py
from sqlalchemy import Column, String, Date, DateTime, ForeignKey, Enum, JSON, Uuid, Index
from sqlalchemy.sql import func
import uuid
from app.core.database import Base
from app.models.enums import InvoiceLineStatus


class ImportedInvoiceLine(Base):
    __tablename__ = "imported_invoice_line"

    line_id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    client_id = Column(Uuid(as_uuid=True), ForeignKey("client.client_id", ondelete="CASCADE"), nullable=False)
    insurer_id = Column(String(64))
    reference_month = Column(Date, nullable=False)
    beneficiary_name = Column(String)
    document_id = Column(String(11), nullable=False)
    # fixed two-decimal string, e.g. "1234.56"
    charged_amount = Column(String(24), nullable=False)
    reconciliation_status = Column(
        Enum(InvoiceLineStatus, name="invoice_line_status", native_enum=False),
        nullable=False,
        default=InvoiceLineStatus.PENDING,
    )
    raw = Column(JSON)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        Index("ix_invoice_line_client_month", "client_id", "reference_month", "insurer_id"),
        Index("ix_invoice_line_client_document", "client_id", "document_id"),
    )
