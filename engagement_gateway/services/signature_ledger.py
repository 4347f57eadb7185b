"""Signature ledger: OTP-gated signing attempts recorded as append-only audit entries"""

import hashlib
import logging
import uuid
from typing import List, Optional
from sqlalchemy.orm import Session

from engagement_gateway.config import settings
from engagement_gateway.domain.contracts import SIGNABLE_STATUSES, require_party
from engagement_gateway.domain.exceptions import (
    ContractNotFoundError,
    InvalidStateError,
    PermissionDeniedError,
    UserNotFoundError,
    VerificationFailedError,
)
from engagement_gateway.domain.models import (
    AutoSignEvidence,
    Contract,
    OtpEvidence,
    SignatureAuditRecord,
    SignatureStatus,
    SignerRole,
    SigningAudit,
    SigningChallenge,
    SigningEvidence,
    UserIdentity,
)
from engagement_gateway.infrastructure.database import session
from engagement_gateway.infrastructure.database.repositories import (
    ContractRepository,
    SignatureRepository,
    UserRepository,
)
from engagement_gateway.infrastructure.observability.metrics import signature_attempt_counter
from engagement_gateway.utils.date_utils import SystemClock

logger = logging.getLogger(__name__)

AUTO_SIGN_HASH_PREFIX = "auto-sign:"


def auto_sign_hash(contract: Contract) -> str:
    """Deterministic, visibly non-OTP hash for tutor auto-signatures"""
    digest = hashlib.sha256(f"{contract.id}:{contract.tutor_id}".encode("utf-8")).hexdigest()
    return AUTO_SIGN_HASH_PREFIX + digest


class SignatureLedger:
    """
    Records one immutable audit entry per signing attempt.

    The ledger never edits contract signature fields; deciding whether a
    VERIFIED record changes the contract is the lifecycle's job.
    """

    def __init__(self, db: Session, otp_provider, clock: SystemClock | None = None):
        self.db = db
        self.otp = otp_provider
        self.clock = clock or SystemClock()
        self.records = SignatureRepository(db)
        self.users = UserRepository(db)
        self.contracts = ContractRepository(db)

    def _identity(self, user_id: str) -> UserIdentity:
        user = self.users.get(user_id)
        if user is None:
            raise UserNotFoundError()
        return user

    async def begin_signing(self, contract_id: uuid.UUID, signer_id: str, role: SignerRole) -> SigningChallenge:
        """
        Validate the signer and ask the OTP collaborator for a challenge.

        Raises:
            PermissionDeniedError: Signer is not the contract's party for `role`
            InvalidStateError: Contract does not accept signatures, or this role already signed
            UserNotFoundError: Signer has no identity record
            CollaboratorUnavailableError: OTP service unreachable
        """
        contract = self.contracts.get(contract_id)
        if contract is None:
            raise ContractNotFoundError()
        require_party(contract, signer_id, role)
        if contract.status not in SIGNABLE_STATUSES:
            raise InvalidStateError(f"Contract is {contract.status.value} and cannot be signed")
        if contract.signature_for(role) is not None:
            raise InvalidStateError(f"The {role.value} has already signed this contract")

        user = self._identity(signer_id)
        challenge = await self.otp.generate(contract.id, user.email, role, contract.title)

        logger.info(
            "Signing started",
            extra={"contract_id": str(contract.id), "signer_id": signer_id, "role": role.value},
        )
        return SigningChallenge(
            contract_id=contract.id,
            role=role,
            email=user.email,
            handle=challenge.handle,
            expires_at=challenge.expires_at,
            consent_text=settings.consent_text,
        )

    def record_attempt(
        self,
        contract: Contract,
        signer_id: str,
        role: SignerRole,
        email: str,
        otp_hash: str,
        verified: bool,
        audit: SigningAudit,
    ) -> SignatureAuditRecord:
        """Append one attempt; retry policy for FAILED attempts belongs to the caller"""
        record = SignatureAuditRecord(
            id=uuid.uuid4(),
            contract_id=contract.id,
            signer_id=signer_id,
            signer_role=role,
            email=email,
            otp_hash=otp_hash,
            consent_text=audit.consent_text,
            verification_attempts=self.records.count_attempts(contract.id, role) + 1,
            status=SignatureStatus.VERIFIED if verified else SignatureStatus.FAILED,
            signed_at=self.clock.now(),
            ip_address=audit.ip_address,
            user_agent=audit.user_agent,
        )
        self.records.append(record)

        outcome = "verified" if verified else "failed"
        signature_attempt_counter.labels(role=role.value, outcome=outcome).inc()
        logger.info(
            "Signature attempt recorded",
            extra={
                "contract_id": str(contract.id),
                "signer_id": signer_id,
                "role": role.value,
                "outcome": outcome,
                "attempt": record.verification_attempts,
            },
        )
        return record

    async def verify(self, contract: Contract, signer_id: str, role: SignerRole, evidence: OtpEvidence) -> SignatureAuditRecord:
        """
        Check an OTP with the collaborator and record the attempt.

        A FAILED attempt is committed before the error is raised so the
        audit trail keeps it.

        Raises:
            VerificationFailedError: Code mismatch or expired handle
        """
        user = self._identity(signer_id)
        result = await self.otp.verify(evidence.handle, evidence.code)
        record = self.record_attempt(contract, signer_id, role, user.email, result.otp_hash, result.matched, evidence.audit)
        if not result.matched:
            session.commit(self.db)
            raise VerificationFailedError()
        return record

    def record_auto_signature(self, contract: Contract, audit: SigningAudit) -> SignatureAuditRecord:
        """Tutor authored and signed at creation; still leaves a VERIFIED audit entry"""
        user = self._identity(contract.tutor_id)
        return self.record_attempt(
            contract, contract.tutor_id, SignerRole.TUTOR, user.email, auto_sign_hash(contract), True, audit
        )

    async def sign(
        self,
        contract: Contract,
        signer_id: str,
        role: SignerRole,
        evidence: SigningEvidence,
    ) -> SignatureAuditRecord:
        """Dispatch on the evidence variant"""
        require_party(contract, signer_id, role)
        if isinstance(evidence, AutoSignEvidence):
            if role is not SignerRole.TUTOR:
                raise PermissionDeniedError("Only the tutor can auto-sign")
            return self.record_auto_signature(contract, evidence.audit)
        return await self.verify(contract, signer_id, role, evidence)

    def authoritative_record(self, contract_id: uuid.UUID, role: SignerRole) -> Optional[SignatureAuditRecord]:
        """The first VERIFIED record per (contract, role) is the legal proof"""
        return self.records.first_verified(contract_id, role)

    def records_for(self, contract_id: uuid.UUID) -> List[SignatureAuditRecord]:
        return self.records.list_for_contract(contract_id)
