"""Installment plan generation from contract payment terms"""

from datetime import date
from decimal import Decimal, ROUND_HALF_UP
from typing import List, Optional

from engagement_gateway.domain.exceptions import InvalidTermsError
from engagement_gateway.domain.models import InstallmentSpec, PaymentMethod
from engagement_gateway.utils.date_utils import add_days, add_months


def split_evenly(amount: int, parts: int) -> List[int]:
    """
    Split `amount` into `parts` lines: ceiling share for all but the last,
    last line takes the exact remainder so the sum is always `amount`.

    Example:
        800000 / 3 -> [266667, 266667, 266666]
    """
    share = -(-amount // parts)
    last = amount - share * (parts - 1)
    if last <= 0:
        raise InvalidTermsError(f"Cannot split {amount} into {parts} positive installments")
    return [share] * (parts - 1) + [last]


def percentage_of(amount: int, percentage: float) -> int:
    """Half-up rounding to whole currency units"""
    value = Decimal(amount) * Decimal(str(percentage)) / Decimal(100)
    return int(value.quantize(Decimal(1), rounding=ROUND_HALF_UP))


def generate_installment_plan(
    total_amount: int,
    payment_method: PaymentMethod,
    installment_count: Optional[int] = None,
    down_payment: Optional[int] = None,
    first_payment_percentage: Optional[float] = None,
    anchor_date: date | None = None,
    first_due_days: int = 3,
) -> List[InstallmentSpec]:
    """
    Derive the ordered installment lines for a contract.

    Requirements:
    - FULL_PAYMENT (or a single installment): one line, due anchor + 3 days
    - Down payment: line 1 is the down payment due on the anchor date, the rest
      is split over `installment_count` lines due monthly after the anchor
    - First-payment percentage: line 1 is round(total * pct / 100) due anchor + 3
      days, the rest is split over `installment_count - 1` monthly lines
    - Neither: `installment_count` even lines, first due anchor + 3 days, then monthly
    - Amounts always sum exactly to `total_amount`

    Raises:
        InvalidTermsError: non-positive total, count < 1, percentage outside
        [0, 100], or a split that would leave an empty installment
    """
    if total_amount <= 0:
        raise InvalidTermsError("Total amount must be positive")
    if installment_count is not None and installment_count < 1:
        raise InvalidTermsError("Installment count must be at least 1")
    if first_payment_percentage is not None and not 0 <= first_payment_percentage <= 100:
        raise InvalidTermsError("First payment percentage must be between 0 and 100")
    if down_payment is not None and not 0 <= down_payment < total_amount:
        raise InvalidTermsError("Down payment must be non-negative and below the total amount")

    if anchor_date is None:
        anchor_date = date.today()

    first_due = add_days(anchor_date, first_due_days)

    if payment_method == PaymentMethod.FULL_PAYMENT or installment_count == 1:
        return [InstallmentSpec(number=1, amount=total_amount, due_date=first_due)]

    if installment_count is None:
        raise InvalidTermsError("Installment count is required for installment payments")

    # (amount, due_date) pairs, numbered afterwards
    lines = []

    if down_payment:
        lines.append((down_payment, anchor_date))
        for month, amount in enumerate(split_evenly(total_amount - down_payment, installment_count), start=1):
            lines.append((amount, add_months(anchor_date, month)))
    else:
        first_amount = (
            percentage_of(total_amount, first_payment_percentage)
            if first_payment_percentage is not None
            else 0
        )
        if first_amount > 0:
            remaining = total_amount - first_amount
            if remaining <= 0:
                raise InvalidTermsError("Nothing left to split after the first payment")
            lines.append((first_amount, first_due))
            for month, amount in enumerate(split_evenly(remaining, installment_count - 1), start=1):
                lines.append((amount, add_months(anchor_date, month)))
        else:
            for index, amount in enumerate(split_evenly(total_amount, installment_count)):
                lines.append((amount, first_due if index == 0 else add_months(anchor_date, index)))

    return [
        InstallmentSpec(number=number, amount=amount, due_date=due_date)
        for number, (amount, due_date) in enumerate(lines, start=1)
    ]
