"""
Installment Schedule Module

Splits a loan's gross receivable evenly into monthly installments.
"""

import calendar
from datetime import date
from decimal import Decimal
from typing import List

from .exceptions import ValidationError
from .models import Installment, InstallmentStatus
from .money import ZERO, quantize, to_non_negative_decimal


def add_months(start_date: date, months: int) -> date:
    """Add months to a date, handling month-end edge cases"""
    month = start_date.month - 1 + months
    year = start_date.year + month // 12
    month = month % 12 + 1
    day = min(start_date.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def installment_amount(gross_receivable: Decimal, months: int) -> Decimal:
    """Equal share of the receivable per installment, rounded to cents"""
    return quantize(gross_receivable / Decimal(months))


def generate_schedule(loan_start: date, months: int, gross_receivable) -> List[Installment]:
    """
    Generate the installment schedule for a new loan

    Every installment owes ``gross_receivable / months``. Rounding
    remainders are not redistributed, so the schedule total can differ
    from the receivable by a few cents; the loan balance is taken from the
    schedule total.

    Args:
        loan_start: Due date of the first installment
        months: Number of monthly installments
        gross_receivable: Total owed over the term

    Returns:
        Installments in due-date order, unpaid and not yet persisted
    """
    if isinstance(months, bool) or not isinstance(months, int) or months <= 0:
        raise ValidationError(f"months must be a positive integer, got {months!r}")
    receivable = to_non_negative_decimal(gross_receivable, "gross_receivable")

    per_installment = installment_amount(receivable, months)
    if per_installment <= ZERO:
        raise ValidationError(
            f"gross_receivable {receivable} is less than one cent per installment "
            f"over {months} months"
        )

    return [
        Installment(
            pay_id=None,
            loan_id=None,
            schedule=add_months(loan_start, i),
            to_pay=per_installment,
            amount=ZERO,
            status=InstallmentStatus.NOT_PAID
        )
        for i in range(months)
    ]
