"""
Payment Allocation Module

Distributes one payment across a loan's installments in ascending
``pay_id`` order, settling each fully before moving to the next.

The allocator only reads and writes installment rows. It must run inside
the caller's storage transaction so that selecting the next unpaid
installment and updating it cannot interleave with another payment.
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from .exceptions import InstallmentNotFoundError
from .models import Installment, InstallmentStatus
from .money import ZERO, quantize, total
from .storage import StorageInterface


@dataclass(frozen=True)
class InstallmentAllocation:
    """What one payment did to one installment"""
    pay_id: int
    applied: Decimal
    amount: Decimal        # Paid so far, after this payment
    to_pay: Decimal
    status: InstallmentStatus


@dataclass
class Allocation:
    """Result of spreading a payment over the schedule"""
    allocations: List[InstallmentAllocation] = field(default_factory=list)
    remainder: Decimal = ZERO

    @property
    def applied(self) -> Decimal:
        return total(a.applied for a in self.allocations)

    @property
    def last_pay_id(self) -> Optional[int]:
        if not self.allocations:
            return None
        return self.allocations[-1].pay_id


class PaymentAllocator:
    """Applies payments to installment rows"""

    def __init__(self, storage: StorageInterface, receipts_table: str = "receipt"):
        self.storage = storage
        self.receipts_table = receipts_table

    def next_unpaid(self, loan_id: int, after_id: int = 0) -> Optional[Installment]:
        """Earliest unpaid installment of the loan with pay_id greater than after_id"""
        data = self.storage.find_next(
            self.receipts_table,
            {"loan_id": loan_id, "status": InstallmentStatus.NOT_PAID.value},
            after_id
        )
        if data:
            return Installment.from_dict(data)
        return None

    def starting_installment(self, loan_id: int,
                             starting_installment_id: Optional[int] = None) -> Optional[Installment]:
        """
        Resolve where a payment starts

        An explicit starting installment must belong to the loan. If it is
        already paid the payment starts at the next unpaid one after it.
        Without one, the payment starts at the loan's earliest unpaid
        installment.
        """
        if starting_installment_id is None:
            return self.next_unpaid(loan_id)

        data = self.storage.load(self.receipts_table, starting_installment_id)
        if not data or data.get('loan_id') != loan_id:
            raise InstallmentNotFoundError(starting_installment_id, loan_id)

        installment = Installment.from_dict(data)
        if installment.is_paid:
            return self.next_unpaid(loan_id, installment.pay_id)
        return installment

    def allocate(self, loan_id: int, amount: Decimal, transaction_time: datetime,
                 starting_installment_id: Optional[int] = None) -> Allocation:
        """
        Apply a payment to the loan's installments

        Args:
            loan_id: Loan the installments belong to
            amount: Positive payment amount
            transaction_time: Time recorded on every touched installment
            starting_installment_id: Installment to start from, or None for
                the earliest unpaid one

        Returns:
            Allocation with one entry per touched installment and whatever
            could not be placed because the schedule ran out
        """
        allocation = Allocation()
        remaining = quantize(amount)
        cursor = self.starting_installment(loan_id, starting_installment_id)

        while remaining > ZERO and cursor is not None:
            applied = min(cursor.outstanding, remaining)
            cursor.record_payment(applied, transaction_time)
            self.storage.save(self.receipts_table, cursor.pay_id, cursor.to_dict())

            allocation.allocations.append(InstallmentAllocation(
                pay_id=cursor.pay_id,
                applied=applied,
                amount=cursor.amount,
                to_pay=cursor.to_pay,
                status=cursor.status
            ))
            remaining = quantize(remaining - applied)

            if remaining > ZERO:
                cursor = self.next_unpaid(loan_id, cursor.pay_id)

        allocation.remainder = remaining
        return allocation
