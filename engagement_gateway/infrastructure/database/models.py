"""SQLAlchemy ORM models for contracts, payment schedules and signature audit records"""

import uuid
from sqlalchemy import (
    BigInteger,
    Boolean,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy.sql import func

Base = declarative_base()


class ContractModel(Base):
    """Tutoring contract; `version` guards conditional updates"""

    __tablename__ = "contracts"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    negotiation_id = Column(Text, nullable=False, unique=True)
    student_id = Column(Text, nullable=False)
    tutor_id = Column(Text, nullable=False)
    subject_id = Column(Text, nullable=False)
    title = Column(Text, nullable=False)

    price_per_session = Column(BigInteger, nullable=False)
    session_duration = Column(Integer, nullable=False)
    total_sessions = Column(Integer, nullable=False)
    total_amount = Column(BigInteger, nullable=False)
    payment_method = Column(Text, nullable=False)
    installment_count = Column(Integer, nullable=True)
    down_payment = Column(BigInteger, nullable=True)
    first_payment_percentage = Column(Integer, nullable=True)
    start_date = Column(Date, nullable=True)

    status = Column(Text, nullable=False, default="DRAFT")
    student_signature_kind = Column(Text, nullable=True)
    student_signed_at = Column(DateTime(timezone=True), nullable=True)
    student_signature_ip = Column(Text, nullable=True)
    student_signature_ref = Column(Uuid, nullable=True)
    tutor_signature_kind = Column(Text, nullable=True)
    tutor_signed_at = Column(DateTime(timezone=True), nullable=True)
    tutor_signature_ip = Column(Text, nullable=True)
    tutor_signature_ref = Column(Uuid, nullable=True)
    is_fully_signed = Column(Boolean, nullable=False, default=False)
    content_hash = Column(Text, nullable=True)

    approved_at = Column(DateTime(timezone=True), nullable=True)
    activated_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_by = Column(Text, nullable=True)
    cancellation_reason = Column(Text, nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=True)
    version = Column(Integer, nullable=False, default=0)

    schedule = relationship("PaymentScheduleModel", back_populates="contract", uselist=False)
    signatures = relationship("SignatureAuditModel", back_populates="contract")

    __table_args__ = (
        Index("ix_contracts_student_status_created", "student_id", "status", "created_at"),
        Index("ix_contracts_tutor_status_created", "tutor_id", "status", "created_at"),
        Index("ix_contracts_status_expires", "status", "expires_at"),
    )


class PaymentScheduleModel(Base):
    """Billing plan derived from one contract"""

    __tablename__ = "payment_schedules"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    contract_id = Column(Uuid, ForeignKey("contracts.id", ondelete="CASCADE"), nullable=False, unique=True)
    student_id = Column(Text, nullable=False)
    tutor_id = Column(Text, nullable=False)
    total_amount = Column(BigInteger, nullable=False)
    paid_amount = Column(BigInteger, nullable=False, default=0)
    remaining_amount = Column(BigInteger, nullable=False)
    payment_method = Column(Text, nullable=False)
    status = Column(Text, nullable=False, default="PENDING")

    late_fee_percentage = Column(Integer, nullable=False, default=5)
    grace_period_days = Column(Integer, nullable=False, default=3)
    refund_percentage = Column(Integer, nullable=False, default=80)
    minimum_notice_days = Column(Integer, nullable=False, default=7)

    first_due_date = Column(Date, nullable=False)
    last_due_date = Column(Date, nullable=False)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    version = Column(Integer, nullable=False, default=0)

    contract = relationship("ContractModel", back_populates="schedule")
    installments = relationship(
        "InstallmentModel",
        back_populates="schedule",
        cascade="all, delete-orphan",
        order_by="InstallmentModel.installment_number",
    )

    __table_args__ = (
        Index("ix_schedules_student_status_created", "student_id", "status", "created_at"),
        Index("ix_schedules_tutor_status_created", "tutor_id", "status", "created_at"),
    )


class InstallmentModel(Base):
    """Individual installment within a payment schedule"""

    __tablename__ = "installments"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    schedule_id = Column(Uuid, ForeignKey("payment_schedules.id", ondelete="CASCADE"), nullable=False)
    installment_number = Column(Integer, nullable=False)
    session_number = Column(Integer, nullable=False)
    amount = Column(BigInteger, nullable=False)
    due_date = Column(Date, nullable=False)
    status = Column(Text, nullable=False, default="UNPAID")
    paid_at = Column(DateTime(timezone=True), nullable=True)
    payment_method = Column(Text, nullable=True)
    transaction_ref = Column(Text, nullable=True)
    notes = Column(Text, nullable=True)

    schedule = relationship("PaymentScheduleModel", back_populates="installments")

    __table_args__ = (
        UniqueConstraint("schedule_id", "installment_number", name="uq_installment_number"),
        Index("ix_installments_status_due", "status", "due_date"),
    )


class SignatureAuditModel(Base):
    """Append-only signing attempt; never updated after insert"""

    __tablename__ = "signature_audit_records"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    contract_id = Column(Uuid, ForeignKey("contracts.id", ondelete="CASCADE"), nullable=False, index=True)
    signer_id = Column(Text, nullable=False, index=True)
    signer_role = Column(Text, nullable=False)
    email = Column(Text, nullable=False)
    otp_hash = Column(Text, nullable=False)
    ip_address = Column(Text, nullable=True)
    user_agent = Column(Text, nullable=True)
    consent_text = Column(Text, nullable=False)
    verification_attempts = Column(Integer, nullable=False, default=1)
    status = Column(Text, nullable=False)
    signed_at = Column(DateTime(timezone=True), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    contract = relationship("ContractModel", back_populates="signatures")

    __table_args__ = (Index("ix_signatures_contract_role", "contract_id", "signer_role"),)


class NegotiationModel(Base):
    """Accepted contact request, owned by the negotiation service"""

    __tablename__ = "negotiation_records"

    id = Column(Text, primary_key=True)
    student_id = Column(Text, nullable=False)
    tutor_id = Column(Text, nullable=False, index=True)
    subject_id = Column(Text, nullable=False)
    status = Column(Text, nullable=False)


class UserModel(Base):
    """Identity projection used for audit and notification addressing"""

    __tablename__ = "users"

    id = Column(Text, primary_key=True)
    email = Column(Text, nullable=False)
    display_name = Column(Text, nullable=False)
