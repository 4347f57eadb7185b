"""Payment schedule read and installment settlement endpoints"""

import uuid
from fastapi import APIRouter, Depends

from engagement_gateway.api.dependencies import get_current_user_id, get_lifecycle
from engagement_gateway.api.v1.schemas import PaymentRequest, ScheduleResponse
from engagement_gateway.domain.models import PaymentSchedule
from engagement_gateway.services.contract_lifecycle import ContractLifecycle

router = APIRouter()


def _schedule_response(lifecycle: ContractLifecycle, schedule: PaymentSchedule) -> ScheduleResponse:
    engine = lifecycle.schedules
    late_fees = {i.installment_number: engine.late_fee(schedule, i.installment_number) for i in schedule.installments}
    return ScheduleResponse.from_domain(schedule, engine.summary(schedule), late_fees)


@router.get("/contracts/{contract_id}/payment-schedule", response_model=ScheduleResponse)
def get_payment_schedule(
    contract_id: uuid.UUID,
    user_id: str = Depends(get_current_user_id),
    lifecycle: ContractLifecycle = Depends(get_lifecycle),
):
    """
    Retrieve the contract's payment schedule.

    Past-due installments are flagged OVERDUE on read.
    """
    schedule = lifecycle.get_schedule_for_contract(contract_id, user_id)
    return _schedule_response(lifecycle, schedule)


@router.post("/payment-schedules/{schedule_id}/payments", response_model=ScheduleResponse)
async def record_payment(
    schedule_id: uuid.UUID,
    body: PaymentRequest,
    user_id: str = Depends(get_current_user_id),
    lifecycle: ContractLifecycle = Depends(get_lifecycle),
):
    """Settle one installment in full; partial payments are rejected"""
    schedule = await lifecycle.settle_payment(
        schedule_id,
        user_id,
        body.installment_number,
        body.amount,
        body.method,
        body.transaction_ref,
        body.notes,
    )
    return _schedule_response(lifecycle, schedule)
