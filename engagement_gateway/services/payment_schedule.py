"""Payment schedule engine: derives, activates, cancels and settles billing plans"""

import logging
import uuid
from typing import List, Optional
from sqlalchemy.orm import Session

from engagement_gateway.config import settings
from engagement_gateway.domain import schedule as rules
from engagement_gateway.domain.exceptions import (
    ConcurrentModificationError,
    ContractNotFoundError,
    DuplicateScheduleError,
    InstallmentNotFoundError,
    ScheduleNotFoundError,
)
from engagement_gateway.domain.installments import generate_installment_plan
from engagement_gateway.domain.models import (
    Contract,
    InstallmentSpec,
    InstallmentStatus,
    PaymentSchedule,
    PaymentTerms,
    ScheduleFilters,
    ScheduleSummary,
)
from engagement_gateway.infrastructure.database.repositories import ContractRepository, ScheduleRepository
from engagement_gateway.infrastructure.observability.metrics import overdue_installments_counter, payment_counter
from engagement_gateway.utils.date_utils import SystemClock

logger = logging.getLogger(__name__)


def default_terms() -> PaymentTerms:
    return PaymentTerms(
        late_fee_percentage=settings.default_late_fee_percentage,
        grace_period_days=settings.default_grace_period_days,
        refund_percentage=settings.default_refund_percentage,
        minimum_notice_days=settings.default_minimum_notice_days,
    )


class PaymentScheduleEngine:
    """
    Owns the schedule/installment aggregate.

    Methods flush but never commit: the caller decides the transaction
    boundary so a contract transition and its schedule change land together.
    It never calls notification or engagement collaborators.
    """

    def __init__(self, db: Session, clock: SystemClock | None = None):
        self.db = db
        self.clock = clock or SystemClock()
        self.schedules = ScheduleRepository(db)
        self.contracts = ContractRepository(db)

    def plan_for(self, contract: Contract) -> List[InstallmentSpec]:
        """Run the installment calculator on a contract's current terms"""
        return generate_installment_plan(
            total_amount=contract.total_amount,
            payment_method=contract.payment_method,
            installment_count=contract.installment_count,
            down_payment=contract.down_payment,
            first_payment_percentage=contract.first_payment_percentage,
            anchor_date=contract.start_date or self.clock.today(),
            first_due_days=settings.full_payment_due_days,
        )

    def create(self, contract_id: uuid.UUID, terms: PaymentTerms | None = None) -> PaymentSchedule:
        """
        Derive and persist a PENDING schedule for a contract.

        Raises:
            ContractNotFoundError: Unknown contract id
            DuplicateScheduleError: The contract already has a schedule
            InvalidTermsError: The contract's payment terms cannot be split
        """
        contract = self.contracts.get(contract_id)
        if contract is None:
            raise ContractNotFoundError()
        if self.schedules.get_by_contract(contract_id) is not None:
            raise DuplicateScheduleError()

        schedule = rules.new_schedule(contract, self.plan_for(contract), terms or default_terms(), self.clock.now())
        self.schedules.add(schedule)
        logger.info(
            "Payment schedule created",
            extra={
                "contract_id": str(contract_id),
                "schedule_id": str(schedule.id),
                "installments": len(schedule.installments),
                "total_amount": schedule.total_amount,
            },
        )
        return schedule

    def ensure(self, contract_id: uuid.UUID) -> PaymentSchedule:
        """Return the contract's schedule, creating it when missing"""
        return self.schedules.get_by_contract(contract_id) or self.create(contract_id)

    def requote(self, contract: Contract) -> Optional[PaymentSchedule]:
        """Re-derive a PENDING schedule after its contract's draft terms changed"""
        schedule = self.schedules.get_by_contract(contract.id)
        if schedule is None:
            return None
        rules.replace_installments(schedule, contract.total_amount, self.plan_for(contract))
        schedule.payment_method = contract.payment_method
        self.schedules.save(schedule)
        return schedule

    def activate(self, contract_id: uuid.UUID) -> PaymentSchedule:
        """PENDING -> ACTIVE (OVERDUE if a line is already past due); already billing is a no-op"""
        schedule = self.schedules.get_by_contract(contract_id)
        if schedule is None:
            raise ScheduleNotFoundError()
        activated = rules.activate(schedule)
        if not self.sweep_overdue(schedule) and activated:
            self.schedules.save(schedule)
        return schedule

    def cancel(self, contract_id: uuid.UUID) -> Optional[PaymentSchedule]:
        """Cancel the contract's schedule; no schedule or already cancelled is a no-op"""
        schedule = self.schedules.get_by_contract(contract_id)
        if schedule is None:
            return None
        if rules.cancel(schedule, self.clock.now()):
            self.schedules.save(schedule)
        return schedule

    def record_payment(
        self,
        schedule_id: uuid.UUID,
        installment_number: int,
        amount: int,
        method: str,
        transaction_ref: str | None = None,
        notes: str | None = None,
    ) -> PaymentSchedule:
        """
        Settle one installment in full.

        Raises:
            ScheduleNotFoundError: Unknown schedule id
            InvalidStateError: Schedule is not ACTIVE or OVERDUE
            InstallmentNotFoundError: No such installment, or it is already PAID/CANCELLED
            AmountMismatchError: Partial or excess payment
            ConcurrentModificationError: Lost every retry against concurrent payments
        """
        for _ in range(settings.signature_cas_retries):
            schedule = self.load(schedule_id)
            rules.record_payment(schedule, installment_number, amount, method, transaction_ref, self.clock.now(), notes)
            try:
                self.schedules.save(schedule)
                break
            except ConcurrentModificationError:
                logger.info("Payment write conflict, reloading", extra={"schedule_id": str(schedule_id)})
        else:
            raise ConcurrentModificationError("Payment schedule is being modified concurrently, please retry")

        payment_counter.labels(payment_method=schedule.payment_method.value).inc()
        logger.info(
            "Installment paid",
            extra={
                "schedule_id": str(schedule.id),
                "installment_number": installment_number,
                "amount": amount,
                "schedule_status": schedule.status.value,
            },
        )
        return schedule

    def sweep_overdue(self, schedule: PaymentSchedule) -> bool:
        """Flag past-due installments; persists only when something changed"""
        before = sum(1 for i in schedule.installments if i.status == InstallmentStatus.OVERDUE)
        changed = rules.sweep_overdue(schedule, self.clock.now())
        if changed:
            flagged = sum(1 for i in schedule.installments if i.status == InstallmentStatus.OVERDUE) - before
            overdue_installments_counter.inc(flagged)
            self.schedules.save(schedule)
        return changed

    def load(self, schedule_id: uuid.UUID) -> PaymentSchedule:
        """Read without sweeping"""
        schedule = self.schedules.get(schedule_id)
        if schedule is None:
            raise ScheduleNotFoundError()
        return schedule

    def _sweep_on_read(self, schedule: PaymentSchedule) -> None:
        """A concurrent writer wins; the swept view is still returned and the next read persists it"""
        try:
            self.sweep_overdue(schedule)
        except ConcurrentModificationError:
            logger.info("Overdue sweep skipped, schedule changed concurrently", extra={"schedule_id": str(schedule.id)})

    def get(self, schedule_id: uuid.UUID) -> PaymentSchedule:
        schedule = self.load(schedule_id)
        self._sweep_on_read(schedule)
        return schedule

    def for_contract(self, contract_id: uuid.UUID) -> Optional[PaymentSchedule]:
        schedule = self.schedules.get_by_contract(contract_id)
        if schedule is not None:
            self._sweep_on_read(schedule)
        return schedule

    def list(self, filters: ScheduleFilters) -> List[PaymentSchedule]:
        schedules = self.schedules.list(filters)
        for schedule in schedules:
            self._sweep_on_read(schedule)
        return schedules

    def late_fee(self, schedule: PaymentSchedule, installment_number: int) -> int:
        installment = schedule.installment(installment_number)
        if installment is None:
            raise InstallmentNotFoundError()
        return rules.calculate_late_fee(installment, schedule.terms, self.clock.today())

    def refund_quote(self, schedule: PaymentSchedule, contract: Contract) -> int:
        """Refund owed if the contract were cancelled today; no start date counts as enough notice"""
        if contract.start_date is None:
            notice_days = schedule.terms.minimum_notice_days
        else:
            notice_days = (contract.start_date - self.clock.today()).days
        return rules.calculate_refund(schedule, notice_days)

    def summary(self, schedule: PaymentSchedule) -> ScheduleSummary:
        return rules.summarize(schedule)
