"""Data access layer: maps ORM rows to domain dataclasses"""

import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional
from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from engagement_gateway.domain.contracts import CANCELLABLE_STATUSES, parse_status
from engagement_gateway.domain.exceptions import ConcurrentModificationError
from engagement_gateway.domain.models import (
    Contract,
    ContractFilters,
    Installment,
    InstallmentStatus,
    NegotiationRecord,
    PartySignature,
    PaymentMethod,
    PaymentSchedule,
    PaymentTerms,
    ScheduleFilters,
    ScheduleStatus,
    SignatureAuditRecord,
    SignatureKind,
    SignatureStatus,
    SignerRole,
    UserIdentity,
)
from engagement_gateway.infrastructure.database.models import (
    ContractModel,
    InstallmentModel,
    NegotiationModel,
    PaymentScheduleModel,
    SignatureAuditModel,
    UserModel,
)
from engagement_gateway.utils.date_utils import ensure_utc

LEGACY_SIGNATURE_NAMESPACE = uuid.UUID("6f1c9a52-3d4e-4b8a-9c0f-2a7d5e8b1c34")

# Columns written back by compare_and_set; identity and creation fields never change
_MUTABLE_CONTRACT_FIELDS = (
    "title",
    "price_per_session",
    "session_duration",
    "total_sessions",
    "total_amount",
    "installment_count",
    "down_payment",
    "first_payment_percentage",
    "start_date",
    "is_fully_signed",
    "content_hash",
    "approved_at",
    "activated_at",
    "completed_at",
    "cancelled_at",
    "cancelled_by",
    "cancellation_reason",
    "expires_at",
    "updated_at",
)


def _signature_columns(prefix: str, signature: Optional[PartySignature]) -> Dict[str, Any]:
    return {
        f"{prefix}_signature_kind": signature.kind.value if signature else None,
        f"{prefix}_signed_at": signature.signed_at if signature else None,
        f"{prefix}_signature_ip": signature.ip_address if signature else None,
        f"{prefix}_signature_ref": signature.signature_ref if signature else None,
    }


def _signature_from_row(row: ContractModel, prefix: str) -> Optional[PartySignature]:
    signed_at = getattr(row, f"{prefix}_signed_at")
    if signed_at is None:
        return None
    return PartySignature(
        kind=SignatureKind(getattr(row, f"{prefix}_signature_kind") or SignatureKind.OTP_VERIFIED.value),
        signed_at=ensure_utc(signed_at),
        signature_ref=getattr(row, f"{prefix}_signature_ref"),
        ip_address=getattr(row, f"{prefix}_signature_ip"),
    )


def signature_from_legacy_document(document: Dict[str, Any], role: SignerRole) -> Optional[PartySignature]:
    """
    Map a signature from the legacy document shapes.

    Two shapes exist for the same concept:
    - plain flow: {"studentSignature": {"signedAt", "ipAddress", "signatureData"}}
    - OTP flow:   {"studentSignedAt": ...}
    Both become one PartySignature; the reference is derived deterministically
    because legacy records predate the audit ledger.
    """
    nested = document.get(f"{role.value}Signature") or {}
    flat_signed_at = document.get(f"{role.value}SignedAt")
    signed_at = nested.get("signedAt") or flat_signed_at
    if signed_at is None:
        return None
    if isinstance(signed_at, str):
        signed_at = datetime.fromisoformat(signed_at.replace("Z", "+00:00"))

    contract_ref = str(document.get("_id") or document.get("id"))
    return PartySignature(
        kind=SignatureKind.OTP_VERIFIED if flat_signed_at else SignatureKind.LEGACY,
        signed_at=ensure_utc(signed_at),
        signature_ref=uuid.uuid5(LEGACY_SIGNATURE_NAMESPACE, f"{contract_ref}:{role.value}"),
        ip_address=nested.get("ipAddress"),
    )


def _contract_from_row(row: ContractModel) -> Contract:
    return Contract(
        id=row.id,
        negotiation_id=row.negotiation_id,
        student_id=row.student_id,
        tutor_id=row.tutor_id,
        subject_id=row.subject_id,
        title=row.title,
        price_per_session=row.price_per_session,
        session_duration=row.session_duration,
        total_sessions=row.total_sessions,
        total_amount=row.total_amount,
        payment_method=PaymentMethod(row.payment_method),
        installment_count=row.installment_count,
        down_payment=row.down_payment,
        first_payment_percentage=row.first_payment_percentage,
        start_date=row.start_date,
        status=parse_status(row.status),
        student_signature=_signature_from_row(row, "student"),
        tutor_signature=_signature_from_row(row, "tutor"),
        is_fully_signed=row.is_fully_signed,
        content_hash=row.content_hash,
        approved_at=ensure_utc(row.approved_at),
        activated_at=ensure_utc(row.activated_at),
        completed_at=ensure_utc(row.completed_at),
        cancelled_at=ensure_utc(row.cancelled_at),
        cancelled_by=row.cancelled_by,
        cancellation_reason=row.cancellation_reason,
        expires_at=ensure_utc(row.expires_at),
        created_at=ensure_utc(row.created_at),
        updated_at=ensure_utc(row.updated_at),
        version=row.version,
    )


class ContractRepository:
    """Repository for contracts with optimistic concurrency on `version`"""

    def __init__(self, db: Session):
        self.db = db

    def add(self, contract: Contract) -> None:
        db_contract = ContractModel(
            id=contract.id,
            negotiation_id=contract.negotiation_id,
            student_id=contract.student_id,
            tutor_id=contract.tutor_id,
            subject_id=contract.subject_id,
            payment_method=contract.payment_method.value,
            status=contract.status.value,
            created_at=contract.created_at,
            version=contract.version,
            **{name: getattr(contract, name) for name in _MUTABLE_CONTRACT_FIELDS},
            **_signature_columns("student", contract.student_signature),
            **_signature_columns("tutor", contract.tutor_signature),
        )
        self.db.add(db_contract)
        self.db.flush()

    def get(self, contract_id: uuid.UUID) -> Optional[Contract]:
        """Always reads the stored row, never a cached identity-map copy"""
        row = self.db.get(ContractModel, contract_id, populate_existing=True)
        return _contract_from_row(row) if row else None

    def get_by_negotiation(self, negotiation_id: str) -> Optional[Contract]:
        row = self.db.execute(
            select(ContractModel).where(ContractModel.negotiation_id == negotiation_id)
        ).scalar_one_or_none()
        return _contract_from_row(row) if row else None

    def compare_and_set(self, contract: Contract, expected_version: int) -> bool:
        """
        Write the contract only if nobody else wrote it since `expected_version` was read.

        Returns False on a lost race; the caller reloads and re-evaluates.
        """
        values = {name: getattr(contract, name) for name in _MUTABLE_CONTRACT_FIELDS}
        values.update(_signature_columns("student", contract.student_signature))
        values.update(_signature_columns("tutor", contract.tutor_signature))
        values["payment_method"] = contract.payment_method.value
        values["status"] = contract.status.value
        values["version"] = expected_version + 1

        result = self.db.execute(
            update(ContractModel)
            .where(ContractModel.id == contract.id, ContractModel.version == expected_version)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return False
        contract.version = expected_version + 1
        return True

    def list(self, filters: ContractFilters) -> List[Contract]:
        query = select(ContractModel)
        if filters.student_id:
            query = query.where(ContractModel.student_id == filters.student_id)
        if filters.tutor_id:
            query = query.where(ContractModel.tutor_id == filters.tutor_id)
        if filters.status:
            query = query.where(ContractModel.status == filters.status.value)
        if filters.created_from:
            query = query.where(ContractModel.created_at >= filters.created_from)
        if filters.created_to:
            query = query.where(ContractModel.created_at < filters.created_to)
        query = query.order_by(ContractModel.created_at.desc()).limit(filters.limit)
        return [_contract_from_row(row) for row in self.db.execute(query).scalars()]

    def list_expirable(self, now: datetime) -> List[Contract]:
        """Pre-signature contracts whose approval/signing deadline has passed"""
        query = select(ContractModel).where(
            ContractModel.status.in_([s.value for s in CANCELLABLE_STATUSES]),
            ContractModel.expires_at < now,
        )
        return [_contract_from_row(row) for row in self.db.execute(query).scalars()]


def _schedule_from_row(row: PaymentScheduleModel) -> PaymentSchedule:
    return PaymentSchedule(
        id=row.id,
        contract_id=row.contract_id,
        student_id=row.student_id,
        tutor_id=row.tutor_id,
        total_amount=row.total_amount,
        paid_amount=row.paid_amount,
        payment_method=PaymentMethod(row.payment_method),
        status=ScheduleStatus(row.status),
        terms=PaymentTerms(
            late_fee_percentage=row.late_fee_percentage,
            grace_period_days=row.grace_period_days,
            refund_percentage=row.refund_percentage,
            minimum_notice_days=row.minimum_notice_days,
        ),
        installments=[
            Installment(
                installment_number=inst.installment_number,
                session_number=inst.session_number,
                amount=inst.amount,
                due_date=inst.due_date,
                status=InstallmentStatus(inst.status),
                paid_at=ensure_utc(inst.paid_at),
                payment_method=inst.payment_method,
                transaction_ref=inst.transaction_ref,
                notes=inst.notes,
            )
            for inst in row.installments
        ],
        first_due_date=row.first_due_date,
        last_due_date=row.last_due_date,
        completed_at=ensure_utc(row.completed_at),
        cancelled_at=ensure_utc(row.cancelled_at),
        created_at=ensure_utc(row.created_at),
        version=row.version,
    )


def _installment_row(installment: Installment) -> InstallmentModel:
    return InstallmentModel(
        installment_number=installment.installment_number,
        session_number=installment.session_number,
        amount=installment.amount,
        due_date=installment.due_date,
        status=installment.status.value,
        paid_at=installment.paid_at,
        payment_method=installment.payment_method,
        transaction_ref=installment.transaction_ref,
        notes=installment.notes,
    )


class ScheduleRepository:
    """Repository for payment schedules and their installments"""

    def __init__(self, db: Session):
        self.db = db

    def add(self, schedule: PaymentSchedule) -> None:
        db_schedule = PaymentScheduleModel(id=schedule.id, contract_id=schedule.contract_id)
        self._write(db_schedule, schedule)
        db_schedule.created_at = schedule.created_at
        db_schedule.version = schedule.version
        db_schedule.installments = [_installment_row(i) for i in schedule.installments]
        self.db.add(db_schedule)
        self.db.flush()

    def get(self, schedule_id: uuid.UUID) -> Optional[PaymentSchedule]:
        row = self.db.get(PaymentScheduleModel, schedule_id, populate_existing=True)
        return _schedule_from_row(row) if row else None

    def get_by_contract(self, contract_id: uuid.UUID) -> Optional[PaymentSchedule]:
        row = self.db.execute(
            select(PaymentScheduleModel)
            .where(PaymentScheduleModel.contract_id == contract_id)
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        return _schedule_from_row(row) if row else None

    def save(self, schedule: PaymentSchedule) -> None:
        """
        Persist aggregate state; installments are matched by number.

        The version bump is a conditional update, so a schedule read before
        another request's write is rejected instead of overwriting it.

        Raises:
            ConcurrentModificationError: The stored version moved on since `schedule` was read
        """
        result = self.db.execute(
            update(PaymentScheduleModel)
            .where(PaymentScheduleModel.id == schedule.id, PaymentScheduleModel.version == schedule.version)
            .values(version=schedule.version + 1)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise ConcurrentModificationError("Payment schedule was modified concurrently")
        schedule.version += 1

        db_schedule = self.db.get(PaymentScheduleModel, schedule.id)
        self._write(db_schedule, schedule)
        db_schedule.version = schedule.version

        existing = {inst.installment_number: inst for inst in db_schedule.installments}
        wanted = {i.installment_number for i in schedule.installments}

        # A re-quote can shrink the plan; drop lines that no longer exist
        for number, row in existing.items():
            if number not in wanted:
                db_schedule.installments.remove(row)

        for installment in schedule.installments:
            row = existing.get(installment.installment_number)
            if row is None:
                db_schedule.installments.append(_installment_row(installment))
                continue
            row.session_number = installment.session_number
            row.amount = installment.amount
            row.due_date = installment.due_date
            row.status = installment.status.value
            row.paid_at = installment.paid_at
            row.payment_method = installment.payment_method
            row.transaction_ref = installment.transaction_ref
            row.notes = installment.notes
        self.db.flush()

    def list(self, filters: ScheduleFilters) -> List[PaymentSchedule]:
        query = select(PaymentScheduleModel)
        if filters.student_id:
            query = query.where(PaymentScheduleModel.student_id == filters.student_id)
        if filters.tutor_id:
            query = query.where(PaymentScheduleModel.tutor_id == filters.tutor_id)
        if filters.status:
            query = query.where(PaymentScheduleModel.status == filters.status.value)
        query = (
            query.order_by(PaymentScheduleModel.created_at.desc())
            .limit(filters.limit)
            .execution_options(populate_existing=True)
        )
        return [_schedule_from_row(row) for row in self.db.execute(query).scalars()]

    @staticmethod
    def _write(row: PaymentScheduleModel, schedule: PaymentSchedule) -> None:
        row.student_id = schedule.student_id
        row.tutor_id = schedule.tutor_id
        row.total_amount = schedule.total_amount
        row.paid_amount = schedule.paid_amount
        row.remaining_amount = schedule.remaining_amount
        row.payment_method = schedule.payment_method.value
        row.status = schedule.status.value
        row.late_fee_percentage = schedule.terms.late_fee_percentage
        row.grace_period_days = schedule.terms.grace_period_days
        row.refund_percentage = schedule.terms.refund_percentage
        row.minimum_notice_days = schedule.terms.minimum_notice_days
        row.first_due_date = schedule.first_due_date
        row.last_due_date = schedule.last_due_date
        row.completed_at = schedule.completed_at
        row.cancelled_at = schedule.cancelled_at


def _record_from_row(row: SignatureAuditModel) -> SignatureAuditRecord:
    return SignatureAuditRecord(
        id=row.id,
        contract_id=row.contract_id,
        signer_id=row.signer_id,
        signer_role=SignerRole(row.signer_role),
        email=row.email,
        otp_hash=row.otp_hash,
        consent_text=row.consent_text,
        verification_attempts=row.verification_attempts,
        status=SignatureStatus(row.status),
        signed_at=ensure_utc(row.signed_at),
        ip_address=row.ip_address,
        user_agent=row.user_agent,
    )


class SignatureRepository:
    """Append-only store for signature audit records"""

    def __init__(self, db: Session):
        self.db = db

    def append(self, record: SignatureAuditRecord) -> None:
        self.db.add(
            SignatureAuditModel(
                id=record.id,
                contract_id=record.contract_id,
                signer_id=record.signer_id,
                signer_role=record.signer_role.value,
                email=record.email,
                otp_hash=record.otp_hash,
                ip_address=record.ip_address,
                user_agent=record.user_agent,
                consent_text=record.consent_text,
                verification_attempts=record.verification_attempts,
                status=record.status.value,
                signed_at=record.signed_at,
            )
        )
        self.db.flush()

    def list_for_contract(self, contract_id: uuid.UUID) -> List[SignatureAuditRecord]:
        query = (
            select(SignatureAuditModel)
            .where(SignatureAuditModel.contract_id == contract_id)
            .order_by(SignatureAuditModel.signed_at, SignatureAuditModel.verification_attempts)
        )
        return [_record_from_row(row) for row in self.db.execute(query).scalars()]

    def count_attempts(self, contract_id: uuid.UUID, role: SignerRole) -> int:
        return self.db.execute(
            select(func.count(SignatureAuditModel.id)).where(
                SignatureAuditModel.contract_id == contract_id,
                SignatureAuditModel.signer_role == role.value,
            )
        ).scalar_one()

    def first_verified(self, contract_id: uuid.UUID, role: SignerRole) -> Optional[SignatureAuditRecord]:
        row = self.db.execute(
            select(SignatureAuditModel)
            .where(
                SignatureAuditModel.contract_id == contract_id,
                SignatureAuditModel.signer_role == role.value,
                SignatureAuditModel.status == SignatureStatus.VERIFIED.value,
            )
            .order_by(SignatureAuditModel.signed_at, SignatureAuditModel.verification_attempts)
            .limit(1)
        ).scalar_one_or_none()
        return _record_from_row(row) if row else None


class NegotiationRepository:
    """Read-only access to negotiation records"""

    def __init__(self, db: Session):
        self.db = db

    def get(self, negotiation_id: str) -> Optional[NegotiationRecord]:
        row = self.db.get(NegotiationModel, negotiation_id)
        if not row:
            return None
        return NegotiationRecord(
            id=row.id,
            student_id=row.student_id,
            tutor_id=row.tutor_id,
            subject_id=row.subject_id,
            status=row.status,
        )


class UserRepository:
    """Read-only identity lookups"""

    def __init__(self, db: Session):
        self.db = db

    def get(self, user_id: str) -> Optional[UserIdentity]:
        row = self.db.get(UserModel, user_id)
        if not row:
            return None
        return UserIdentity(id=row.id, email=row.email, display_name=row.display_name)
