"""Domain models - pure Python dataclasses representing business entities"""

import uuid
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import List, Optional, Union


class ContractStatus(str, Enum):
    DRAFT = "DRAFT"
    PENDING_STUDENT_APPROVAL = "PENDING_STUDENT_APPROVAL"
    APPROVED = "APPROVED"
    PENDING_TUTOR_SIGNATURE = "PENDING_TUTOR_SIGNATURE"
    PENDING_STUDENT_SIGNATURE = "PENDING_STUDENT_SIGNATURE"
    ACTIVE = "ACTIVE"
    CANCELLED = "CANCELLED"
    EXPIRED = "EXPIRED"
    COMPLETED = "COMPLETED"


class PaymentMethod(str, Enum):
    FULL_PAYMENT = "FULL_PAYMENT"
    INSTALLMENTS = "INSTALLMENTS"


class ScheduleStatus(str, Enum):
    PENDING = "PENDING"
    ACTIVE = "ACTIVE"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    OVERDUE = "OVERDUE"


class InstallmentStatus(str, Enum):
    UNPAID = "UNPAID"
    PENDING = "PENDING"
    PAID = "PAID"
    OVERDUE = "OVERDUE"
    CANCELLED = "CANCELLED"


class SignerRole(str, Enum):
    STUDENT = "student"
    TUTOR = "tutor"

    @property
    def other(self) -> "SignerRole":
        return SignerRole.TUTOR if self is SignerRole.STUDENT else SignerRole.STUDENT


class SignatureStatus(str, Enum):
    PENDING = "PENDING"
    VERIFIED = "VERIFIED"
    FAILED = "FAILED"
    EXPIRED = "EXPIRED"


class SignatureKind(str, Enum):
    """How a party signature was produced"""

    OTP_VERIFIED = "OTP_VERIFIED"
    AUTO_SIGNED = "AUTO_SIGNED"
    LEGACY = "LEGACY"  # plain signatures imported from before the audit ledger existed


class ApprovalAction(str, Enum):
    APPROVE = "APPROVE"
    REJECT = "REJECT"
    REQUEST_CHANGES = "REQUEST_CHANGES"


@dataclass
class NegotiationRecord:
    """Accepted request a contract is created from"""

    id: str
    student_id: str
    tutor_id: str
    subject_id: str
    status: str  # only "ACCEPTED" records can become contracts


@dataclass
class UserIdentity:
    id: str
    email: str
    display_name: str


@dataclass
class PartySignature:
    """Signature field stored on a contract for one party"""

    kind: SignatureKind
    signed_at: datetime
    signature_ref: uuid.UUID  # id of the authoritative SignatureAuditRecord
    ip_address: Optional[str] = None


@dataclass
class Contract:
    """One negotiated tutoring engagement"""

    id: uuid.UUID
    negotiation_id: str
    student_id: str
    tutor_id: str
    subject_id: str
    title: str

    # Commercial terms
    price_per_session: int
    session_duration: int  # minutes
    total_sessions: int
    total_amount: int
    payment_method: PaymentMethod
    installment_count: Optional[int] = None
    down_payment: Optional[int] = None
    first_payment_percentage: Optional[int] = None
    start_date: Optional[date] = None

    # Lifecycle
    status: ContractStatus = ContractStatus.DRAFT
    student_signature: Optional[PartySignature] = None
    tutor_signature: Optional[PartySignature] = None
    is_fully_signed: bool = False
    content_hash: Optional[str] = None
    approved_at: Optional[datetime] = None
    activated_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancelled_by: Optional[str] = None
    cancellation_reason: Optional[str] = None
    expires_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    version: int = 0

    def party_id(self, role: SignerRole) -> str:
        return self.student_id if role is SignerRole.STUDENT else self.tutor_id

    def signature_for(self, role: SignerRole) -> Optional[PartySignature]:
        return self.student_signature if role is SignerRole.STUDENT else self.tutor_signature

    def set_signature(self, role: SignerRole, signature: PartySignature) -> None:
        if role is SignerRole.STUDENT:
            self.student_signature = signature
        else:
            self.tutor_signature = signature
        self.is_fully_signed = self.student_signature is not None and self.tutor_signature is not None

    def is_party(self, user_id: str) -> bool:
        return user_id in (self.student_id, self.tutor_id)


@dataclass
class InstallmentSpec:
    """Calculator output: one planned payment line"""

    number: int
    amount: int
    due_date: date


@dataclass
class Installment:
    """Single payment line within a payment schedule"""

    installment_number: int
    session_number: int
    amount: int
    due_date: date
    status: InstallmentStatus = InstallmentStatus.UNPAID
    paid_at: Optional[datetime] = None
    payment_method: Optional[str] = None
    transaction_ref: Optional[str] = None
    notes: Optional[str] = None


@dataclass
class PaymentTerms:
    late_fee_percentage: int = 5
    grace_period_days: int = 3
    refund_percentage: int = 80
    minimum_notice_days: int = 7


@dataclass
class PaymentSchedule:
    """Billing plan derived from one contract"""

    id: uuid.UUID
    contract_id: uuid.UUID
    student_id: str
    tutor_id: str
    total_amount: int
    payment_method: PaymentMethod
    installments: List[Installment]
    terms: PaymentTerms
    paid_amount: int = 0
    status: ScheduleStatus = ScheduleStatus.PENDING
    first_due_date: Optional[date] = None
    last_due_date: Optional[date] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    version: int = 0

    @property
    def remaining_amount(self) -> int:
        return self.total_amount - self.paid_amount

    def installment(self, number: int) -> Optional[Installment]:
        return next((i for i in self.installments if i.installment_number == number), None)


@dataclass
class ScheduleSummary:
    schedule_id: uuid.UUID
    contract_id: uuid.UUID
    status: ScheduleStatus
    total_amount: int
    paid_amount: int
    remaining_amount: int
    paid_installments: int
    overdue_installments: int
    next_due_date: Optional[date] = None
    next_due_amount: Optional[int] = None


@dataclass
class SigningAudit:
    """Request metadata captured verbatim into the audit record"""

    consent_text: str
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


@dataclass
class OtpEvidence:
    """Signer-supplied one-time code for a previously issued handle"""

    handle: str
    code: str
    audit: SigningAudit


@dataclass
class AutoSignEvidence:
    """Tutor authored and signed the contract in one step"""

    audit: SigningAudit


SigningEvidence = Union[OtpEvidence, AutoSignEvidence]


@dataclass
class OtpChallenge:
    handle: str
    expires_at: datetime


@dataclass
class OtpVerification:
    matched: bool
    otp_hash: str


@dataclass
class SigningChallenge:
    """Returned to a signer when signing starts"""

    contract_id: uuid.UUID
    role: SignerRole
    email: str
    handle: str
    expires_at: datetime
    consent_text: str


@dataclass
class SignatureAuditRecord:
    """Append-only proof of one signing attempt"""

    id: uuid.UUID
    contract_id: uuid.UUID
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


@dataclass
class SignOutcome:
    """Result of verify-and-sign, identical for race winners and losers"""

    contract: Contract
    record: SignatureAuditRecord
    fully_signed: bool


@dataclass
class AuditTrail:
    contract_id: uuid.UUID
    content_hash: Optional[str]
    integrity_valid: bool
    records: List[SignatureAuditRecord] = field(default_factory=list)


@dataclass
class ContractDraft:
    """Tutor-supplied terms for a new contract"""

    negotiation_id: str
    title: str
    price_per_session: int
    session_duration: int
    total_sessions: int
    payment_method: PaymentMethod = PaymentMethod.FULL_PAYMENT
    installment_count: Optional[int] = None
    down_payment: Optional[int] = None
    first_payment_percentage: Optional[int] = None
    start_date: Optional[date] = None


@dataclass
class DraftChanges:
    """Editable fields while a contract is in DRAFT"""

    title: Optional[str] = None
    price_per_session: Optional[int] = None
    session_duration: Optional[int] = None
    total_sessions: Optional[int] = None
    payment_method: Optional[PaymentMethod] = None
    installment_count: Optional[int] = None
    down_payment: Optional[int] = None
    first_payment_percentage: Optional[int] = None
    start_date: Optional[date] = None


@dataclass
class ContractFilters:
    student_id: Optional[str] = None
    tutor_id: Optional[str] = None
    status: Optional[ContractStatus] = None
    created_from: Optional[datetime] = None
    created_to: Optional[datetime] = None
    limit: int = 20


@dataclass
class ScheduleFilters:
    student_id: Optional[str] = None
    tutor_id: Optional[str] = None
    status: Optional[ScheduleStatus] = None
    limit: int = 20
