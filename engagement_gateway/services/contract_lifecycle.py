"""Contract lifecycle: approval, OTP-gated dual signing and activation"""

import logging
import uuid
from datetime import timedelta
from typing import Callable, List, Optional
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from engagement_gateway.config import Settings, settings
from engagement_gateway.domain.contracts import (
    CANCELLABLE_STATUSES,
    SIGNABLE_STATUSES,
    apply_draft_changes,
    compute_content_hash,
    compute_total,
    require_party,
)
from engagement_gateway.domain.exceptions import (
    ContractNotFoundError,
    DuplicateContractError,
    InvalidStateError,
    InvalidTermsError,
    NegotiationNotFoundError,
    PermissionDeniedError,
    ScheduleNotFoundError,
)
from engagement_gateway.domain.models import (
    ApprovalAction,
    AuditTrail,
    AutoSignEvidence,
    Contract,
    ContractDraft,
    ContractFilters,
    ContractStatus,
    DraftChanges,
    PartySignature,
    PaymentMethod,
    PaymentSchedule,
    ScheduleFilters,
    ScheduleStatus,
    ScheduleSummary,
    SignatureKind,
    SignerRole,
    SigningAudit,
    SigningChallenge,
    SigningEvidence,
    SignOutcome,
)
from engagement_gateway.infrastructure.database import session
from engagement_gateway.infrastructure.database.repositories import ContractRepository, NegotiationRepository
from engagement_gateway.infrastructure.observability.logging import log_collaborator_failure, log_transition
from engagement_gateway.infrastructure.observability.metrics import (
    activation_counter,
    collaborator_failure_counter,
    record_transition,
)
from engagement_gateway.services.payment_schedule import PaymentScheduleEngine
from engagement_gateway.services.signature_ledger import SignatureLedger
from engagement_gateway.utils.date_utils import SystemClock

logger = logging.getLogger(__name__)

ACCEPTED_NEGOTIATION = "ACCEPTED"


class ContractLifecycle:
    """
    Owns the contract state machine.

    Collaborators are injected: the schedule engine and signature ledger
    share this unit of work's session; `engagements` and `notifier` are
    the external class-creation and notification services. Every write
    to a contract goes through a version-checked conditional update.
    """

    def __init__(
        self,
        db: Session,
        schedules: PaymentScheduleEngine,
        ledger: SignatureLedger,
        engagements,
        notifier,
        clock: SystemClock | None = None,
        config: Settings | None = None,
    ):
        self.db = db
        self.schedules = schedules
        self.ledger = ledger
        self.engagements = engagements
        self.notifier = notifier
        self.clock = clock or SystemClock()
        self.config = config or settings
        self.contracts = ContractRepository(db)
        self.negotiations = NegotiationRepository(db)

    # ---- helpers ---------------------------------------------------------

    def _load(self, contract_id: uuid.UUID) -> Contract:
        contract = self.contracts.get(contract_id)
        if contract is None:
            raise ContractNotFoundError()
        return contract

    def _mutate(self, contract_id: uuid.UUID, change: Callable[[Contract], None]) -> tuple:
        """
        Apply `change` to a fresh copy and write it with compare-and-set.

        `change` validates and mutates; it runs again on every reload, so a
        concurrent writer's result is always re-evaluated.

        Returns:
            (contract after the write, status before the write)
        """
        for _ in range(self.config.signature_cas_retries):
            contract = self._load(contract_id)
            from_status = contract.status
            expected_version = contract.version
            change(contract)
            contract.updated_at = self.clock.now()
            if self.contracts.compare_and_set(contract, expected_version):
                return contract, from_status
            logger.info("Contract write conflict, retrying", extra={"contract_id": str(contract_id)})
        raise InvalidStateError("Contract is being modified concurrently, please retry")

    def _committed(self, contract: Contract, from_status: Optional[ContractStatus], actor_id: Optional[str]) -> None:
        if from_status == contract.status:
            return
        record_transition(from_status, contract.status)
        log_transition(str(contract.id), from_status.value if from_status else None, contract.status.value, actor_id)

    async def _notify(self, contract: Contract, user_id: str, event_type: str, **payload) -> None:
        """Fire-and-forget; a failed notification never undoes committed state"""
        try:
            await self.notifier.notify(user_id, event_type, {"contract_id": str(contract.id), **payload})
        except Exception as e:
            collaborator_failure_counter.labels(collaborator="notification").inc()
            log_collaborator_failure(str(contract.id), "notification", e)

    def _is_past_deadline(self, contract: Contract) -> bool:
        return (
            contract.status in CANCELLABLE_STATUSES
            and contract.expires_at is not None
            and contract.expires_at <= self.clock.now()
        )

    # ---- creation and drafting -------------------------------------------

    async def create_contract(
        self,
        tutor_id: str,
        draft: ContractDraft,
        auto_sign: bool | None = None,
        audit: SigningAudit | None = None,
    ) -> Contract:
        """
        Create a contract from an accepted negotiation owned by the tutor.

        Flow:
        1. Check the negotiation is ACCEPTED, owned by the tutor and not yet used
        2. Compute the total and persist the contract in DRAFT
        3. INSTALLMENTS contracts get their PENDING schedule right away
        4. Under the auto-sign policy the tutor signature is recorded and the
           contract goes straight to PENDING_STUDENT_APPROVAL

        Raises:
            NegotiationNotFoundError: No accepted negotiation with that id
            PermissionDeniedError: Negotiation belongs to another tutor
            DuplicateContractError: Negotiation already has a contract
            InvalidTermsError: Malformed commercial or payment terms
        """
        # 1. Negotiation checks
        negotiation = self.negotiations.get(draft.negotiation_id)
        if negotiation is None or negotiation.status != ACCEPTED_NEGOTIATION:
            raise NegotiationNotFoundError()
        if negotiation.tutor_id != tutor_id:
            raise PermissionDeniedError("Only the negotiation's tutor can create its contract")
        if self.contracts.get_by_negotiation(negotiation.id) is not None:
            raise DuplicateContractError()

        # 2. Terms
        if draft.session_duration <= 0:
            raise InvalidTermsError("Session duration must be positive")
        now = self.clock.now()
        contract = Contract(
            id=uuid.uuid4(),
            negotiation_id=negotiation.id,
            student_id=negotiation.student_id,
            tutor_id=negotiation.tutor_id,
            subject_id=negotiation.subject_id,
            title=draft.title,
            price_per_session=draft.price_per_session,
            session_duration=draft.session_duration,
            total_sessions=draft.total_sessions,
            total_amount=compute_total(draft.price_per_session, draft.total_sessions),
            payment_method=draft.payment_method,
            installment_count=draft.installment_count,
            down_payment=draft.down_payment,
            first_payment_percentage=draft.first_payment_percentage,
            start_date=draft.start_date,
            expires_at=now + timedelta(days=self.config.contract_expiry_days),
            created_at=now,
            updated_at=now,
        )
        self.schedules.plan_for(contract)
        try:
            self.contracts.add(contract)
        except IntegrityError as e:
            # Another request created a contract for this negotiation after the check above
            self.db.rollback()
            raise DuplicateContractError() from e

        # 3. Schedule for installment plans
        if contract.payment_method == PaymentMethod.INSTALLMENTS:
            self.schedules.create(contract.id)

        # 4. Auto-sign policy
        if auto_sign is None:
            auto_sign = self.config.auto_sign_tutor_on_create
        if auto_sign:
            record = self.ledger.record_auto_signature(
                contract, audit or SigningAudit(consent_text=self.config.consent_text)
            )

            def sign_and_submit(current: Contract) -> None:
                current.content_hash = compute_content_hash(current)
                current.set_signature(
                    SignerRole.TUTOR,
                    PartySignature(
                        kind=SignatureKind.AUTO_SIGNED,
                        signed_at=record.signed_at,
                        signature_ref=record.id,
                        ip_address=record.ip_address,
                    ),
                )
                current.status = ContractStatus.PENDING_STUDENT_APPROVAL

            contract, _ = self._mutate(contract.id, sign_and_submit)

        session.commit(self.db)
        self._committed(contract, None, tutor_id)

        if contract.status == ContractStatus.PENDING_STUDENT_APPROVAL:
            await self._notify(contract, contract.student_id, "contract_submitted", title=contract.title)
        return contract

    def update_draft(self, contract_id: uuid.UUID, tutor_id: str, changes: DraftChanges) -> Contract:
        """
        Edit terms while in DRAFT; an existing PENDING schedule is re-quoted.

        Raises:
            InvalidStateError: Contract has left DRAFT
            InvalidTermsError: New terms cannot be billed
        """

        def edit(contract: Contract) -> None:
            require_party(contract, tutor_id, SignerRole.TUTOR)
            if contract.status != ContractStatus.DRAFT:
                raise InvalidStateError("Only draft contracts can be edited")
            apply_draft_changes(contract, changes)
            self.schedules.plan_for(contract)

        contract, _ = self._mutate(contract_id, edit)

        if self.schedules.requote(contract) is None and contract.payment_method == PaymentMethod.INSTALLMENTS:
            self.schedules.create(contract.id)

        session.commit(self.db)
        logger.info("Draft updated", extra={"contract_id": str(contract.id), "total_amount": contract.total_amount})
        return contract

    async def submit_for_approval(self, contract_id: uuid.UUID, tutor_id: str) -> Contract:
        """DRAFT -> PENDING_STUDENT_APPROVAL"""

        def submit(contract: Contract) -> None:
            require_party(contract, tutor_id, SignerRole.TUTOR)
            if contract.status != ContractStatus.DRAFT:
                raise InvalidStateError("Only draft contracts can be submitted")
            contract.status = ContractStatus.PENDING_STUDENT_APPROVAL
            contract.expires_at = self.clock.now() + timedelta(days=self.config.contract_expiry_days)

        contract, from_status = self._mutate(contract_id, submit)
        session.commit(self.db)
        self._committed(contract, from_status, tutor_id)

        await self._notify(contract, contract.student_id, "contract_submitted", title=contract.title)
        return contract

    # ---- approval --------------------------------------------------------

    async def respond_to_approval(
        self,
        contract_id: uuid.UUID,
        student_id: str,
        action: ApprovalAction,
        reason: str | None = None,
    ) -> Contract:
        """
        Student decision on a submitted contract.

        - APPROVE: APPROVED, and the schedule is created if it does not exist yet
        - REJECT: CANCELLED, schedule cancelled
        - REQUEST_CHANGES: back to DRAFT; a tutor auto-signature over the old terms is dropped

        Raises:
            PermissionDeniedError: Caller is not the contract's student
            InvalidStateError: Contract is not awaiting approval, or its deadline passed
        """
        contract = self._load(contract_id)
        require_party(contract, student_id, SignerRole.STUDENT)
        if contract.status == ContractStatus.PENDING_STUDENT_APPROVAL and self._is_past_deadline(contract):
            await self._expire(contract.id)
            raise InvalidStateError("Contract has expired")

        def respond(current: Contract) -> None:
            if current.status != ContractStatus.PENDING_STUDENT_APPROVAL:
                raise InvalidStateError(f"Contract is {current.status.value}, not awaiting approval")
            now = self.clock.now()
            if action == ApprovalAction.APPROVE:
                current.status = ContractStatus.APPROVED
                current.approved_at = now
            elif action == ApprovalAction.REJECT:
                current.status = ContractStatus.CANCELLED
                current.cancelled_at = now
                current.cancelled_by = student_id
                current.cancellation_reason = reason
            else:
                current.status = ContractStatus.DRAFT
                current.tutor_signature = None
                current.is_fully_signed = False
                current.content_hash = None

        contract, from_status = self._mutate(contract_id, respond)

        if action == ApprovalAction.APPROVE:
            self.schedules.ensure(contract.id)
        elif action == ApprovalAction.REJECT:
            self.schedules.cancel(contract.id)

        session.commit(self.db)
        self._committed(contract, from_status, student_id)

        event = {
            ApprovalAction.APPROVE: "contract_approved",
            ApprovalAction.REJECT: "contract_rejected",
            ApprovalAction.REQUEST_CHANGES: "contract_changes_requested",
        }[action]
        await self._notify(contract, contract.tutor_id, event, reason=reason)
        return contract

    # ---- signing ---------------------------------------------------------

    async def initiate_signing(self, contract_id: uuid.UUID, user_id: str, role: SignerRole) -> SigningChallenge:
        """
        Snapshot the content hash (once) and issue an OTP challenge.

        Raises:
            PermissionDeniedError: Caller is not the party for `role`
            InvalidStateError: Contract not signable, already signed by this role, or expired
        """
        contract = self._load(contract_id)
        require_party(contract, user_id, role)
        if self._is_past_deadline(contract):
            await self._expire(contract.id)
            raise InvalidStateError("Contract has expired")

        if contract.status in SIGNABLE_STATUSES and contract.content_hash is None:

            def snapshot(current: Contract) -> None:
                if current.content_hash is None:
                    current.content_hash = compute_content_hash(current)

            self._mutate(contract_id, snapshot)
            session.commit(self.db)

        return await self.ledger.begin_signing(contract_id, user_id, role)

    async def verify_and_sign(
        self,
        contract_id: uuid.UUID,
        user_id: str,
        role: SignerRole,
        evidence: SigningEvidence,
    ) -> SignOutcome:
        """
        Verify the signer's evidence and set their signature exactly once.

        The "both signatures present" check and the move to ACTIVE are one
        conditional write keyed on the contract version. When the write loses
        a race the contract is reloaded and re-evaluated: a role that is
        already signed short-circuits to success, and only the caller whose
        write made the contract fully signed runs the activation effects
        (schedule activation, engagement creation, notifications).

        Raises:
            PermissionDeniedError: Caller is not the party for `role`
            InvalidStateError: Contract does not accept signatures, or its deadline passed
            VerificationFailedError: OTP mismatch or expired handle (attempt is still recorded)
        """
        contract = self._load(contract_id)
        require_party(contract, user_id, role)
        if self._is_past_deadline(contract):
            await self._expire(contract.id)
            raise InvalidStateError("Contract has expired")
        already_signed = contract.signature_for(role) is not None
        if contract.status not in SIGNABLE_STATUSES and not already_signed:
            raise InvalidStateError(f"Contract is {contract.status.value} and cannot be signed")

        record = await self.ledger.sign(contract, user_id, role, evidence)
        signature = PartySignature(
            kind=SignatureKind.AUTO_SIGNED if isinstance(evidence, AutoSignEvidence) else SignatureKind.OTP_VERIFIED,
            signed_at=record.signed_at,
            signature_ref=record.id,
            ip_address=evidence.audit.ip_address,
        )

        activated = False
        for _ in range(self.config.signature_cas_retries):
            if contract.signature_for(role) is not None:
                # Duplicate signature for this role: keep the audit entry, change nothing else
                session.commit(self.db)
                authoritative = self.ledger.authoritative_record(contract.id, role) or record
                return SignOutcome(contract=contract, record=authoritative, fully_signed=contract.is_fully_signed)
            if contract.status not in SIGNABLE_STATUSES:
                session.commit(self.db)
                raise InvalidStateError(f"Contract is {contract.status.value} and cannot be signed")

            from_status = contract.status
            expected_version = contract.version
            now = self.clock.now()
            if contract.content_hash is None:
                contract.content_hash = compute_content_hash(contract)
            contract.set_signature(role, signature)
            activated = contract.is_fully_signed
            if activated:
                contract.status = ContractStatus.ACTIVE
                contract.activated_at = now
            contract.updated_at = now

            if self.contracts.compare_and_set(contract, expected_version):
                break
            logger.info("Signature write conflict, reloading", extra={"contract_id": str(contract_id), "role": role.value})
            contract = self._load(contract_id)
        else:
            session.commit(self.db)
            raise InvalidStateError("Contract is being modified concurrently, please retry")

        schedule = None
        if activated:
            self.schedules.ensure(contract.id)
            schedule = self.schedules.activate(contract.id)

        session.commit(self.db)
        self._committed(contract, from_status, user_id)
        logger.info(
            "Contract signed",
            extra={"contract_id": str(contract.id), "role": role.value, "fully_signed": contract.is_fully_signed},
        )

        if activated:
            await self._on_activated(contract, schedule)
        else:
            await self._notify(contract, contract.party_id(role.other), "contract_signed_by_party", role=role.value)
        return SignOutcome(contract=contract, record=record, fully_signed=contract.is_fully_signed)

    async def _on_activated(self, contract: Contract, schedule: PaymentSchedule) -> None:
        """One-time effects of becoming fully signed; failures are logged only"""
        activation_counter.inc()
        payload = {
            "contract_id": str(contract.id),
            "student_id": contract.student_id,
            "tutor_id": contract.tutor_id,
            "schedule_terms": {
                "schedule_id": str(schedule.id),
                "total_sessions": contract.total_sessions,
                "session_duration": contract.session_duration,
                "start_date": contract.start_date.isoformat() if contract.start_date else None,
                "payment_method": schedule.payment_method.value,
                "installments": [
                    {
                        "installment_number": i.installment_number,
                        "session_number": i.session_number,
                        "amount": i.amount,
                        "due_date": i.due_date.isoformat(),
                    }
                    for i in schedule.installments
                ],
            },
        }
        try:
            await self.engagements.activate(payload)
        except Exception as e:
            collaborator_failure_counter.labels(collaborator="engagement").inc()
            log_collaborator_failure(str(contract.id), "engagement", e)

        for user_id in (contract.student_id, contract.tutor_id):
            await self._notify(contract, user_id, "contract_activated", title=contract.title)

    # ---- cancellation, expiry, completion ----------------------------------

    async def cancel_contract(self, contract_id: uuid.UUID, user_id: str, reason: str | None = None) -> Contract:
        """
        Either party cancels before the contract is fully signed.

        Raises:
            PermissionDeniedError: Caller is not a party
            InvalidStateError: Contract is ACTIVE or already terminal
        """

        def cancel(contract: Contract) -> None:
            require_party(contract, user_id)
            if contract.status not in CANCELLABLE_STATUSES:
                raise InvalidStateError(f"A {contract.status.value} contract cannot be cancelled")
            contract.status = ContractStatus.CANCELLED
            contract.cancelled_at = self.clock.now()
            contract.cancelled_by = user_id
            contract.cancellation_reason = reason

        contract, from_status = self._mutate(contract_id, cancel)
        schedule = self.schedules.cancel(contract.id)
        refund = self.schedules.refund_quote(schedule, contract) if schedule else 0

        session.commit(self.db)
        self._committed(contract, from_status, user_id)

        other_party = contract.tutor_id if user_id == contract.student_id else contract.student_id
        await self._notify(contract, other_party, "contract_cancelled", reason=reason, refund_amount=refund)
        return contract

    async def _expire(self, contract_id: uuid.UUID) -> Contract:
        def expire(contract: Contract) -> None:
            if contract.status not in CANCELLABLE_STATUSES:
                raise InvalidStateError(f"A {contract.status.value} contract cannot expire")
            contract.status = ContractStatus.EXPIRED

        contract, from_status = self._mutate(contract_id, expire)
        self.schedules.cancel(contract.id)
        session.commit(self.db)
        self._committed(contract, from_status, None)

        for user_id in (contract.student_id, contract.tutor_id):
            await self._notify(contract, user_id, "contract_expired", title=contract.title)
        return contract

    async def expire_contract(self, contract_id: uuid.UUID) -> Contract:
        """
        Policy timer: move a pre-ACTIVE contract past its deadline to EXPIRED.

        Raises:
            InvalidStateError: Contract is not pre-ACTIVE or its deadline has not passed
        """
        contract = self._load(contract_id)
        if not self._is_past_deadline(contract):
            raise InvalidStateError("Contract has not reached its deadline")
        return await self._expire(contract_id)

    async def expire_stale_contracts(self) -> List[Contract]:
        expired = []
        for contract in self.contracts.list_expirable(self.clock.now()):
            try:
                expired.append(await self._expire(contract.id))
            except InvalidStateError:
                # Signed or cancelled since the query ran
                continue
        logger.info("Expiry sweep finished", extra={"expired": len(expired)})
        return expired

    async def complete_contract(self, contract_id: uuid.UUID) -> Contract:
        """External trigger once every session has been delivered and settled"""

        def complete(contract: Contract) -> None:
            if contract.status != ContractStatus.ACTIVE:
                raise InvalidStateError(f"A {contract.status.value} contract cannot be completed")
            contract.status = ContractStatus.COMPLETED
            contract.completed_at = self.clock.now()

        contract, from_status = self._mutate(contract_id, complete)
        session.commit(self.db)
        self._committed(contract, from_status, None)

        for user_id in (contract.student_id, contract.tutor_id):
            await self._notify(contract, user_id, "contract_completed", title=contract.title)
        return contract

    async def settle_payment(
        self,
        schedule_id: uuid.UUID,
        student_id: str,
        installment_number: int,
        amount: int,
        method: str,
        transaction_ref: str | None = None,
        notes: str | None = None,
    ) -> PaymentSchedule:
        """
        Record an installment payment made by the student.

        When the schedule reaches COMPLETED an ACTIVE contract completes with it.

        Raises:
            ScheduleNotFoundError: Unknown schedule
            PermissionDeniedError: Caller is not the schedule's student
        """
        if self.schedules.load(schedule_id).student_id != student_id:
            raise PermissionDeniedError("Only the contract's student can pay its installments")

        schedule = self.schedules.record_payment(schedule_id, installment_number, amount, method, transaction_ref, notes)

        contract, from_status = None, None
        if schedule.status == ScheduleStatus.COMPLETED and self._load(schedule.contract_id).status == ContractStatus.ACTIVE:

            def complete(current: Contract) -> None:
                if current.status == ContractStatus.ACTIVE:
                    current.status = ContractStatus.COMPLETED
                    current.completed_at = self.clock.now()

            contract, from_status = self._mutate(schedule.contract_id, complete)

        session.commit(self.db)

        paid = schedule.installment(installment_number)
        await self._notify(
            self._load(schedule.contract_id),
            schedule.tutor_id,
            "installment_paid",
            installment_number=installment_number,
            amount=paid.amount,
        )
        if contract is not None:
            self._committed(contract, from_status, student_id)
            for user_id in (contract.student_id, contract.tutor_id):
                await self._notify(contract, user_id, "contract_completed", title=contract.title)
        return schedule

    # ---- reads -----------------------------------------------------------

    def get_contract(self, contract_id: uuid.UUID, user_id: str) -> Contract:
        contract = self._load(contract_id)
        require_party(contract, user_id)
        return contract

    def list_contracts(self, filters: ContractFilters) -> List[Contract]:
        return self.contracts.list(filters)

    def pending_for_student(self, student_id: str, limit: int = 20) -> List[Contract]:
        return self.contracts.list(
            ContractFilters(student_id=student_id, status=ContractStatus.PENDING_STUDENT_APPROVAL, limit=limit)
        )

    def get_schedule_for_contract(self, contract_id: uuid.UUID, user_id: str) -> PaymentSchedule:
        """Reads sweep overdue installments lazily and persist the result"""
        self.get_contract(contract_id, user_id)
        schedule = self.schedules.for_contract(contract_id)
        if schedule is None:
            raise ScheduleNotFoundError()
        session.commit(self.db)
        return schedule

    def schedule_summary(self, contract_id: uuid.UUID, user_id: str) -> ScheduleSummary:
        return self.schedules.summary(self.get_schedule_for_contract(contract_id, user_id))

    def list_schedules(self, filters: ScheduleFilters) -> List[PaymentSchedule]:
        schedules = self.schedules.list(filters)
        session.commit(self.db)
        return schedules

    def audit_trail(self, contract_id: uuid.UUID, user_id: str) -> AuditTrail:
        """All signing attempts, oldest first, plus whether the signed terms are unchanged"""
        contract = self.get_contract(contract_id, user_id)
        return AuditTrail(
            contract_id=contract.id,
            content_hash=contract.content_hash,
            integrity_valid=contract.content_hash is not None
            and contract.content_hash == compute_content_hash(contract),
            records=self.ledger.records_for(contract.id),
        )
