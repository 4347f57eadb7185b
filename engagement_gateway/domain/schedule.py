"""Payment schedule rules - pure functions over the PaymentSchedule aggregate"""

import uuid
from datetime import date, datetime
from typing import List, Optional

from engagement_gateway.domain.exceptions import (
    AmountMismatchError,
    InstallmentNotFoundError,
    InvalidStateError,
)
from engagement_gateway.domain.installments import percentage_of
from engagement_gateway.domain.models import (
    Contract,
    Installment,
    InstallmentSpec,
    InstallmentStatus,
    PaymentSchedule,
    PaymentTerms,
    ScheduleStatus,
    ScheduleSummary,
)

OPEN_INSTALLMENT_STATUSES = {InstallmentStatus.UNPAID, InstallmentStatus.PENDING}
UNSETTLED_INSTALLMENT_STATUSES = OPEN_INSTALLMENT_STATUSES | {InstallmentStatus.OVERDUE}
PAYABLE_INSTALLMENT_STATUSES = UNSETTLED_INSTALLMENT_STATUSES
SETTLED_INSTALLMENT_STATUSES = {InstallmentStatus.PAID, InstallmentStatus.CANCELLED}
BILLING_SCHEDULE_STATUSES = {ScheduleStatus.ACTIVE, ScheduleStatus.OVERDUE}


def installments_from_specs(specs: List[InstallmentSpec]) -> List[Installment]:
    """Each installment funds the session with the same number"""
    return [
        Installment(
            installment_number=line.number,
            session_number=line.number,
            amount=line.amount,
            due_date=line.due_date,
        )
        for line in specs
    ]


def new_schedule(
    contract: Contract,
    specs: List[InstallmentSpec],
    terms: PaymentTerms,
    now: datetime,
) -> PaymentSchedule:
    installments = installments_from_specs(specs)
    return PaymentSchedule(
        id=uuid.uuid4(),
        contract_id=contract.id,
        student_id=contract.student_id,
        tutor_id=contract.tutor_id,
        total_amount=contract.total_amount,
        payment_method=contract.payment_method,
        installments=installments,
        terms=terms,
        first_due_date=installments[0].due_date,
        last_due_date=installments[-1].due_date,
        created_at=now,
    )


def replace_installments(schedule: PaymentSchedule, total_amount: int, specs: List[InstallmentSpec]) -> None:
    """Re-quote a schedule that has not started billing"""
    if schedule.status != ScheduleStatus.PENDING or schedule.paid_amount:
        raise InvalidStateError("Only an unpaid pending schedule can be re-quoted")
    schedule.total_amount = total_amount
    schedule.installments = installments_from_specs(specs)
    schedule.first_due_date = schedule.installments[0].due_date
    schedule.last_due_date = schedule.installments[-1].due_date


def activate(schedule: PaymentSchedule) -> bool:
    """
    PENDING -> ACTIVE, or straight to OVERDUE when a line was flagged while
    the contract was still being signed. Returns False when already billing.
    """
    if schedule.status == ScheduleStatus.PENDING:
        schedule.status = ScheduleStatus.OVERDUE if _has_overdue(schedule) else ScheduleStatus.ACTIVE
        return True
    if schedule.status == ScheduleStatus.CANCELLED:
        raise InvalidStateError("A cancelled payment schedule cannot be activated")
    return False


def cancel(schedule: PaymentSchedule, now: datetime) -> bool:
    """
    Move a schedule to CANCELLED and void every unsettled installment.

    PAID installments are kept as they are. Returns False when the schedule
    was already cancelled.
    """
    if schedule.status == ScheduleStatus.CANCELLED:
        return False
    if schedule.status == ScheduleStatus.COMPLETED:
        raise InvalidStateError("A completed payment schedule cannot be cancelled")

    for installment in schedule.installments:
        if installment.status in UNSETTLED_INSTALLMENT_STATUSES:
            installment.status = InstallmentStatus.CANCELLED

    schedule.status = ScheduleStatus.CANCELLED
    schedule.cancelled_at = now
    return True


def record_payment(
    schedule: PaymentSchedule,
    installment_number: int,
    amount: int,
    method: str,
    transaction_ref: Optional[str],
    now: datetime,
    notes: Optional[str] = None,
) -> Installment:
    """
    Mark one installment PAID. Whole-installment payments only.

    Validation happens before any field changes, so a rejected payment
    leaves the schedule untouched.
    """
    if schedule.status not in BILLING_SCHEDULE_STATUSES:
        raise InvalidStateError(f"Payment schedule is {schedule.status.value}, payments are not accepted")

    installment = schedule.installment(installment_number)
    if installment is None or installment.status not in PAYABLE_INSTALLMENT_STATUSES:
        raise InstallmentNotFoundError(f"Installment {installment_number} not found or not payable")

    if amount != installment.amount:
        raise AmountMismatchError(f"Expected {installment.amount}, received {amount}")

    installment.status = InstallmentStatus.PAID
    installment.paid_at = now
    installment.payment_method = method
    installment.transaction_ref = transaction_ref
    installment.notes = notes

    schedule.paid_amount += amount
    _settle_status(schedule, now)
    return installment


def _has_overdue(schedule: PaymentSchedule) -> bool:
    return any(i.status == InstallmentStatus.OVERDUE for i in schedule.installments)


def _settle_status(schedule: PaymentSchedule, now: datetime) -> None:
    if schedule.status == ScheduleStatus.COMPLETED:
        return
    all_settled = all(i.status in SETTLED_INSTALLMENT_STATUSES for i in schedule.installments)
    if schedule.remaining_amount <= 0 or all_settled:
        schedule.status = ScheduleStatus.COMPLETED
        schedule.completed_at = now
    elif schedule.status == ScheduleStatus.OVERDUE and not _has_overdue(schedule):
        schedule.status = ScheduleStatus.ACTIVE


def sweep_overdue(schedule: PaymentSchedule, now: datetime) -> bool:
    """
    Flag unpaid installments whose due date has passed.

    An ACTIVE schedule holding any overdue installment becomes OVERDUE.
    Returns whether anything changed so callers know whether to persist.
    """
    today = now.date()
    changed = False
    for installment in schedule.installments:
        if installment.status in OPEN_INSTALLMENT_STATUSES and installment.due_date < today:
            installment.status = InstallmentStatus.OVERDUE
            changed = True

    if schedule.status == ScheduleStatus.ACTIVE and _has_overdue(schedule):
        schedule.status = ScheduleStatus.OVERDUE
        changed = True
    return changed


def calculate_late_fee(installment: Installment, terms: PaymentTerms, today: date) -> int:
    """
    Late fee owed on an unsettled installment.

    Nothing is charged within the grace period; after it, `late_fee_percentage`
    of the installment amount accrues for every started week.
    """
    if installment.status in SETTLED_INSTALLMENT_STATUSES:
        return 0
    days_late = (today - installment.due_date).days - terms.grace_period_days
    if days_late <= 0:
        return 0
    weeks = -(-days_late // 7)
    return percentage_of(installment.amount, terms.late_fee_percentage) * weeks


def calculate_refund(schedule: PaymentSchedule, notice_days: int) -> int:
    """Refund owed on cancellation: a share of what was paid, only with enough notice"""
    if notice_days < schedule.terms.minimum_notice_days:
        return 0
    return schedule.paid_amount * schedule.terms.refund_percentage // 100


def summarize(schedule: PaymentSchedule) -> ScheduleSummary:
    upcoming = sorted(
        (i for i in schedule.installments if i.status in UNSETTLED_INSTALLMENT_STATUSES),
        key=lambda i: i.due_date,
    )
    next_installment = upcoming[0] if upcoming else None
    return ScheduleSummary(
        schedule_id=schedule.id,
        contract_id=schedule.contract_id,
        status=schedule.status,
        total_amount=schedule.total_amount,
        paid_amount=schedule.paid_amount,
        remaining_amount=schedule.remaining_amount,
        paid_installments=sum(1 for i in schedule.installments if i.status == InstallmentStatus.PAID),
        overdue_installments=sum(1 for i in schedule.installments if i.status == InstallmentStatus.OVERDUE),
        next_due_date=next_installment.due_date if next_installment else None,
        next_due_amount=next_installment.amount if next_installment else None,
    )
