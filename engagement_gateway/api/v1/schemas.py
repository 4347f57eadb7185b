"""Pydantic schemas for API request/response validation"""

import uuid
from datetime import date, datetime
from typing import List, Optional
from pydantic import BaseModel, Field

from engagement_gateway.domain.models import (
    ApprovalAction,
    Contract,
    ContractStatus,
    InstallmentStatus,
    PartySignature,
    PaymentMethod,
    PaymentSchedule,
    ScheduleStatus,
    ScheduleSummary,
    SignatureAuditRecord,
    SignatureKind,
    SignatureStatus,
    SignerRole,
)


class ContractCreateRequest(BaseModel):
    """Request body for POST /v1/contracts"""

    negotiation_id: str = Field(..., min_length=1, description="Accepted negotiation identifier")
    title: str = Field(..., min_length=1)
    price_per_session: int = Field(..., gt=0, description="Price per session in whole currency units")
    session_duration: int = Field(..., gt=0, description="Session length in minutes")
    total_sessions: int = Field(..., ge=1)
    payment_method: PaymentMethod = PaymentMethod.FULL_PAYMENT
    installment_count: Optional[int] = Field(None, ge=1)
    down_payment: Optional[int] = Field(None, ge=0)
    first_payment_percentage: Optional[int] = Field(None, ge=0, le=100)
    start_date: Optional[date] = None
    auto_sign: Optional[bool] = Field(None, description="Tutor signs while creating")


class DraftUpdateRequest(BaseModel):
    """Request body for PATCH /v1/contracts/{contract_id}; omitted fields stay as they are"""

    title: Optional[str] = Field(None, min_length=1)
    price_per_session: Optional[int] = Field(None, gt=0)
    session_duration: Optional[int] = Field(None, gt=0)
    total_sessions: Optional[int] = Field(None, ge=1)
    payment_method: Optional[PaymentMethod] = None
    installment_count: Optional[int] = Field(None, ge=1)
    down_payment: Optional[int] = Field(None, ge=0)
    first_payment_percentage: Optional[int] = Field(None, ge=0, le=100)
    start_date: Optional[date] = None


class ApprovalRequest(BaseModel):
    action: ApprovalAction
    reason: Optional[str] = None


class SigningRequest(BaseModel):
    role: SignerRole


class SignRequest(BaseModel):
    """OTP code entered by the signer for a previously issued handle"""

    role: SignerRole
    handle: str = Field(..., min_length=1)
    code: str = Field(..., min_length=4, max_length=8)


class CancelRequest(BaseModel):
    reason: Optional[str] = None


class PaymentRequest(BaseModel):
    """Request body for POST /v1/payment-schedules/{schedule_id}/payments"""

    installment_number: int = Field(..., ge=1)
    amount: int = Field(..., gt=0)
    method: str = Field(..., min_length=1, description="e.g. bank_transfer, card")
    transaction_ref: Optional[str] = None
    notes: Optional[str] = None


class SignatureSchema(BaseModel):
    kind: SignatureKind
    signed_at: datetime
    signature_ref: uuid.UUID
    ip_address: Optional[str] = None

    @classmethod
    def from_domain(cls, signature: Optional[PartySignature]) -> Optional["SignatureSchema"]:
        if signature is None:
            return None
        return cls(
            kind=signature.kind,
            signed_at=signature.signed_at,
            signature_ref=signature.signature_ref,
            ip_address=signature.ip_address,
        )


class ContractResponse(BaseModel):
    contract_id: uuid.UUID
    negotiation_id: str
    student_id: str
    tutor_id: str
    subject_id: str
    title: str
    price_per_session: int
    session_duration: int
    total_sessions: int
    total_amount: int
    payment_method: PaymentMethod
    installment_count: Optional[int] = None
    down_payment: Optional[int] = None
    first_payment_percentage: Optional[int] = None
    start_date: Optional[date] = None
    status: ContractStatus
    student_signature: Optional[SignatureSchema] = None
    tutor_signature: Optional[SignatureSchema] = None
    is_fully_signed: bool
    activated_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    @classmethod
    def from_domain(cls, contract: Contract) -> "ContractResponse":
        return cls(
            contract_id=contract.id,
            negotiation_id=contract.negotiation_id,
            student_id=contract.student_id,
            tutor_id=contract.tutor_id,
            subject_id=contract.subject_id,
            title=contract.title,
            price_per_session=contract.price_per_session,
            session_duration=contract.session_duration,
            total_sessions=contract.total_sessions,
            total_amount=contract.total_amount,
            payment_method=contract.payment_method,
            installment_count=contract.installment_count,
            down_payment=contract.down_payment,
            first_payment_percentage=contract.first_payment_percentage,
            start_date=contract.start_date,
            status=contract.status,
            student_signature=SignatureSchema.from_domain(contract.student_signature),
            tutor_signature=SignatureSchema.from_domain(contract.tutor_signature),
            is_fully_signed=contract.is_fully_signed,
            activated_at=contract.activated_at,
            cancelled_at=contract.cancelled_at,
            expires_at=contract.expires_at,
            created_at=contract.created_at,
        )


class ContractListResponse(BaseModel):
    user_id: str
    contracts: List[ContractResponse]


class SigningChallengeResponse(BaseModel):
    """Response for POST /v1/contracts/{contract_id}/signing"""

    contract_id: uuid.UUID
    role: SignerRole
    email: str
    handle: str
    expires_at: datetime
    consent_text: str


class SignResponse(BaseModel):
    contract: ContractResponse
    signature_record_id: uuid.UUID
    fully_signed: bool


class AuditRecordSchema(BaseModel):
    record_id: uuid.UUID
    signer_id: str
    signer_role: SignerRole
    email: str
    otp_hash: str
    consent_text: str
    verification_attempts: int
    status: SignatureStatus
    signed_at: datetime
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None

    @classmethod
    def from_domain(cls, record: SignatureAuditRecord) -> "AuditRecordSchema":
        return cls(
            record_id=record.id,
            signer_id=record.signer_id,
            signer_role=record.signer_role,
            email=record.email,
            otp_hash=record.otp_hash,
            consent_text=record.consent_text,
            verification_attempts=record.verification_attempts,
            status=record.status,
            signed_at=record.signed_at,
            ip_address=record.ip_address,
            user_agent=record.user_agent,
        )


class AuditTrailResponse(BaseModel):
    contract_id: uuid.UUID
    content_hash: Optional[str] = None
    integrity_valid: bool
    records: List[AuditRecordSchema]


class InstallmentSchema(BaseModel):
    """Single installment in a payment schedule"""

    installment_number: int
    session_number: int
    amount: int
    due_date: date
    status: InstallmentStatus
    paid_at: Optional[datetime] = None
    transaction_ref: Optional[str] = None
    late_fee: int = 0


class ScheduleResponse(BaseModel):
    """Response for GET /v1/contracts/{contract_id}/payment-schedule"""

    schedule_id: uuid.UUID
    contract_id: uuid.UUID
    status: ScheduleStatus
    payment_method: PaymentMethod
    total_amount: int
    paid_amount: int
    remaining_amount: int
    first_due_date: date
    last_due_date: date
    next_due_date: Optional[date] = None
    next_due_amount: Optional[int] = None
    overdue_installments: int
    installments: List[InstallmentSchema]

    @classmethod
    def from_domain(cls, schedule: PaymentSchedule, summary: ScheduleSummary, late_fees: dict) -> "ScheduleResponse":
        return cls(
            schedule_id=schedule.id,
            contract_id=schedule.contract_id,
            status=schedule.status,
            payment_method=schedule.payment_method,
            total_amount=schedule.total_amount,
            paid_amount=schedule.paid_amount,
            remaining_amount=schedule.remaining_amount,
            first_due_date=schedule.first_due_date,
            last_due_date=schedule.last_due_date,
            next_due_date=summary.next_due_date,
            next_due_amount=summary.next_due_amount,
            overdue_installments=summary.overdue_installments,
            installments=[
                InstallmentSchema(
                    installment_number=i.installment_number,
                    session_number=i.session_number,
                    amount=i.amount,
                    due_date=i.due_date,
                    status=i.status,
                    paid_at=i.paid_at,
                    transaction_ref=i.transaction_ref,
                    late_fee=late_fees.get(i.installment_number, 0),
                )
                for i in schedule.installments
            ],
        )
