"""Integration tests for the payment schedule engine against the test database"""

import copy
import uuid
import pytest
from datetime import date, timedelta
from sqlalchemy.orm import Session
from engagement_gateway.domain import schedule as rules
from engagement_gateway.domain.exceptions import (
    AmountMismatchError,
    ConcurrentModificationError,
    ContractNotFoundError,
    DuplicateScheduleError,
    InvalidStateError,
    ScheduleNotFoundError,
)
from engagement_gateway.domain.models import (
    Contract,
    InstallmentStatus,
    PaymentMethod,
    PaymentTerms,
    ScheduleFilters,
    ScheduleStatus,
)
from engagement_gateway.infrastructure.database.repositories import ContractRepository
from engagement_gateway.services.payment_schedule import PaymentScheduleEngine
from engagement_gateway.utils.date_utils import FixedClock


def _contract(db: Session, clock: FixedClock, **overrides) -> Contract:
    fields = dict(
        id=uuid.uuid4(),
        negotiation_id=f"neg-{uuid.uuid4()}",
        student_id="student_1",
        tutor_id="tutor_1",
        subject_id="math",
        title="Physics",
        price_per_session=100_000,
        session_duration=60,
        total_sessions=10,
        total_amount=1_000_000,
        payment_method=PaymentMethod.INSTALLMENTS,
        installment_count=3,
        down_payment=200_000,
        start_date=clock.today(),
        created_at=clock.now(),
    )
    fields.update(overrides)
    contract = Contract(**fields)
    ContractRepository(db).add(contract)
    db.commit()
    return contract


def test_create_persists_pending_schedule(db: Session, schedules: PaymentScheduleEngine, clock: FixedClock):
    contract = _contract(db, clock)

    schedule = schedules.create(contract.id)
    db.commit()

    stored = schedules.load(schedule.id)
    assert stored.status == ScheduleStatus.PENDING
    assert [i.amount for i in stored.installments] == [200_000, 266_667, 266_667, 266_666]
    assert sum(i.amount for i in stored.installments) == stored.total_amount == 1_000_000
    assert stored.first_due_date == clock.today()
    assert stored.last_due_date == date(2025, 6, 10)
    assert stored.terms == PaymentTerms(5, 3, 80, 7)


def test_create_full_payment(db: Session, schedules: PaymentScheduleEngine, clock: FixedClock):
    """One installment for the whole amount, due three days after the start date"""
    contract = _contract(db, clock, payment_method=PaymentMethod.FULL_PAYMENT, installment_count=None, down_payment=None)

    schedule = schedules.create(contract.id)

    assert len(schedule.installments) == 1
    assert schedule.installments[0].amount == 1_000_000
    assert schedule.installments[0].due_date == clock.today() + timedelta(days=3)


def test_create_rejects_unknown_contract_and_duplicates(db: Session, schedules: PaymentScheduleEngine, clock: FixedClock):
    with pytest.raises(ContractNotFoundError):
        schedules.create(uuid.uuid4())

    contract = _contract(db, clock)
    schedules.create(contract.id)
    with pytest.raises(DuplicateScheduleError):
        schedules.create(contract.id)


def test_activate_and_cancel_idempotent(db: Session, schedules: PaymentScheduleEngine, clock: FixedClock):
    contract = _contract(db, clock)
    schedules.create(contract.id)

    assert schedules.activate(contract.id).status == ScheduleStatus.ACTIVE
    assert schedules.activate(contract.id).status == ScheduleStatus.ACTIVE

    first = schedules.cancel(contract.id)
    second = schedules.cancel(contract.id)
    db.commit()

    assert first.status == second.status == ScheduleStatus.CANCELLED
    assert all(i.status == InstallmentStatus.CANCELLED for i in second.installments)
    assert schedules.cancel(uuid.uuid4()) is None


def test_activate_without_schedule(db: Session, schedules: PaymentScheduleEngine, clock: FixedClock):
    contract = _contract(db, clock)

    with pytest.raises(ScheduleNotFoundError):
        schedules.activate(contract.id)


def test_record_payment_persists(db: Session, schedules: PaymentScheduleEngine, clock: FixedClock):
    contract = _contract(db, clock)
    schedule = schedules.create(contract.id)
    schedules.activate(contract.id)

    schedules.record_payment(schedule.id, 1, 200_000, "bank_transfer", "tx-1", notes="down payment")
    db.commit()

    stored = schedules.load(schedule.id)
    assert stored.paid_amount == 200_000
    assert stored.remaining_amount == 800_000
    assert stored.installment(1).status == InstallmentStatus.PAID
    assert stored.installment(1).payment_method == "bank_transfer"
    assert stored.installment(1).notes == "down payment"


def test_record_payment_mismatch_leaves_store_untouched(db: Session, schedules: PaymentScheduleEngine, clock: FixedClock):
    contract = _contract(db, clock)
    schedule = schedules.create(contract.id)
    schedules.activate(contract.id)
    db.commit()

    with pytest.raises(AmountMismatchError):
        schedules.record_payment(schedule.id, 2, 100, "card")

    stored = schedules.load(schedule.id)
    assert stored.paid_amount == 0
    assert stored.installment(2).status == InstallmentStatus.UNPAID


def test_record_payment_on_pending_schedule(db: Session, schedules: PaymentScheduleEngine, clock: FixedClock):
    contract = _contract(db, clock)
    schedule = schedules.create(contract.id)

    with pytest.raises(InvalidStateError):
        schedules.record_payment(schedule.id, 1, 200_000, "card")


def test_completing_every_installment(db: Session, schedules: PaymentScheduleEngine, clock: FixedClock):
    contract = _contract(db, clock)
    schedule = schedules.create(contract.id)
    schedules.activate(contract.id)

    for installment in schedule.installments:
        schedules.record_payment(schedule.id, installment.installment_number, installment.amount, "card")
    db.commit()

    stored = schedules.load(schedule.id)
    assert stored.status == ScheduleStatus.COMPLETED
    assert stored.completed_at == clock.now()
    assert stored.remaining_amount == 0


def test_reads_sweep_lazily(db: Session, schedules: PaymentScheduleEngine, clock: FixedClock):
    contract = _contract(db, clock)
    schedule = schedules.create(contract.id)
    schedules.activate(contract.id)
    db.commit()

    clock.advance(days=20)
    swept = schedules.get(schedule.id)
    db.commit()

    assert swept.status == ScheduleStatus.OVERDUE
    assert swept.installment(1).status == InstallmentStatus.OVERDUE
    assert swept.installment(2).status == InstallmentStatus.UNPAID
    assert schedules.load(schedule.id).installment(1).status == InstallmentStatus.OVERDUE


def test_requote_replaces_pending_lines(db: Session, schedules: PaymentScheduleEngine, clock: FixedClock):
    contract = _contract(db, clock)
    schedules.create(contract.id)

    contract.installment_count = 2
    contract.down_payment = None
    contract.total_amount = 600_000
    schedules.requote(contract)
    db.commit()

    stored = schedules.for_contract(contract.id)
    assert [i.amount for i in stored.installments] == [300_000, 300_000]
    assert stored.total_amount == 600_000


def test_list_filters_by_party_and_status(db: Session, schedules: PaymentScheduleEngine, clock: FixedClock):
    first = _contract(db, clock)
    second = _contract(db, clock, student_id="student_2")
    schedules.create(first.id)
    schedules.create(second.id)
    schedules.activate(second.id)
    db.commit()

    assert len(schedules.list(ScheduleFilters(tutor_id="tutor_1"))) == 2
    assert [s.contract_id for s in schedules.list(ScheduleFilters(student_id="student_2"))] == [second.id]
    assert [s.contract_id for s in schedules.list(ScheduleFilters(status=ScheduleStatus.PENDING))] == [first.id]


def test_refund_quote(db: Session, schedules: PaymentScheduleEngine, clock: FixedClock):
    contract = _contract(db, clock, start_date=clock.today() + timedelta(days=10))
    schedule = schedules.create(contract.id)
    schedules.activate(contract.id)
    schedule = schedules.record_payment(schedule.id, 1, 200_000, "card")

    assert schedules.refund_quote(schedule, contract) == 160_000

    clock.advance(days=4)
    assert schedules.refund_quote(schedule, contract) == 0


def test_activation_flags_lines_already_past_due(db: Session, schedules: PaymentScheduleEngine, clock: FixedClock):
    contract = _contract(db, clock)
    schedule = schedules.create(contract.id)
    db.commit()

    clock.advance(days=2)
    activated = schedules.activate(contract.id)
    db.commit()

    assert activated.status == ScheduleStatus.OVERDUE
    assert schedules.load(schedule.id).installment(1).status == InstallmentStatus.OVERDUE


def test_overdue_installment_is_payable(db: Session, schedules: PaymentScheduleEngine, clock: FixedClock):
    contract = _contract(db, clock)
    schedule = schedules.create(contract.id)
    schedules.activate(contract.id)
    clock.advance(days=2)
    assert schedules.get(schedule.id).status == ScheduleStatus.OVERDUE

    paid = schedules.record_payment(schedule.id, 1, 200_000, "card")
    db.commit()

    assert paid.installment(1).status == InstallmentStatus.PAID
    assert paid.status == ScheduleStatus.ACTIVE
    assert schedules.load(schedule.id).status == ScheduleStatus.ACTIVE


def test_stale_schedule_write_is_rejected(db: Session, schedules: PaymentScheduleEngine, clock: FixedClock):
    contract = _contract(db, clock)
    schedule = schedules.create(contract.id)
    schedules.activate(contract.id)
    db.commit()

    stale = schedules.load(schedule.id)
    schedules.record_payment(schedule.id, 1, 200_000, "card")
    rules.record_payment(stale, 2, 266_667, "card", None, clock.now())

    with pytest.raises(ConcurrentModificationError):
        schedules.schedules.save(stale)
    db.commit()

    stored = schedules.load(schedule.id)
    assert stored.paid_amount == 200_000
    assert stored.installment(2).status == InstallmentStatus.UNPAID


def test_concurrent_payments_both_count(db: Session, schedules: PaymentScheduleEngine, clock: FixedClock):
    """The second payment read the schedule before the first landed; it reloads and applies on top"""
    contract = _contract(db, clock)
    schedule = schedules.create(contract.id)
    schedules.activate(contract.id)
    db.commit()

    stale = copy.deepcopy(schedules.load(schedule.id))
    schedules.record_payment(schedule.id, 1, 200_000, "card")

    real_get = schedules.schedules.get
    reads = []

    def racing_get(schedule_id):
        reads.append(schedule_id)
        return copy.deepcopy(stale) if len(reads) == 1 else real_get(schedule_id)

    schedules.schedules.get = racing_get
    result = schedules.record_payment(schedule.id, 2, 266_667, "card")
    db.commit()

    assert len(reads) == 2
    stored = schedules.load(schedule.id)
    assert stored.paid_amount == result.paid_amount == 466_667
    assert stored.paid_amount == sum(i.amount for i in stored.installments if i.status == InstallmentStatus.PAID)
