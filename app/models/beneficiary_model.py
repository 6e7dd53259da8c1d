# app/models/beneficiary_model.py
from sqlalchemy import (
    Column, String, Date, DateTime, Numeric, Text, ForeignKey, Enum, Uuid,
    CheckConstraint, UniqueConstraint, Index,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import uuid
from app.core.database import Base
from app.models.enums import BeneficiaryKind, BeneficiaryStatus


class Beneficiary(Base):
    __tablename__ = "beneficiary"

    beneficiary_id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    client_id = Column(Uuid(as_uuid=True), ForeignKey("client.client_id", ondelete="CASCADE"), nullable=False)

    full_name = Column(String, nullable=False)
    document_id = Column(String(11), nullable=False)
    kind = Column(Enum(BeneficiaryKind, name="beneficiary_kind", native_enum=False), nullable=False)
    titular_id = Column(Uuid(as_uuid=True), ForeignKey("beneficiary.beneficiary_id", ondelete="RESTRICT"))
    enrollment_code = Column(String(60))
    card_number = Column(String(60))
    sex = Column(String(1))
    birth_date = Column(Date)
    plan_name = Column(String)
    cost_center = Column(String)
    age_bracket = Column(String(40))
    state = Column(String(2))
    contract_id = Column(String(60))
    monthly_fee = Column(Numeric(12, 2))

    status = Column(
        Enum(BeneficiaryStatus, name="beneficiary_status", native_enum=False),
        nullable=False,
        default=BeneficiaryStatus.ACTIVE,
    )
    entry_date = Column(Date, nullable=False)
    exit_date = Column(Date)
    remark = Column(Text)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    titular = relationship("Beneficiary", remote_side=[beneficiary_id], backref="dependents")

    __table_args__ = (
        UniqueConstraint("client_id", "document_id", name="uq_beneficiary_client_document"),
        CheckConstraint(
            "exit_date IS NULL OR entry_date IS NULL OR exit_date >= entry_date",
            name="ck_beneficiary_exit_after_entry",
        ),
        CheckConstraint(
            "(status = 'INACTIVE' AND exit_date IS NOT NULL) OR "
            "(status = 'ACTIVE' AND exit_date IS NULL)",
            name="ck_beneficiary_exit_matches_status",
        ),
        CheckConstraint(
            "(kind = 'TITULAR' AND titular_id IS NULL) OR "
            "(kind <> 'TITULAR' AND titular_id IS NOT NULL)",
            name="ck_beneficiary_titular_link",
        ),
        Index("ix_beneficiary_client_enrollment", "client_id", "enrollment_code"),
        Index("ix_beneficiary_client_status", "client_id", "status"),
    )
