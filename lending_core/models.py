"""
Ledger Records Module

Loan, installment (receipt) and payment history records, with the column
names of the persisted ``loan``, ``receipt`` and ``paymentHistory`` tables.
"""

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional

from .exceptions import ValidationError
from .money import (
    ZERO, quantize, to_decimal, to_positive_decimal, to_non_negative_decimal
)


class LoanStatus(Enum):
    """Loan lifecycle states"""
    ACTIVE = "Active"          # Originated, repayments outstanding
    COMPLETED = "Completed"    # Every installment paid
    CANCELLED = "Cancelled"    # Withdrawn before completion
    DELETED = "Deleted"        # Soft-deleted, kept for history


class InstallmentStatus(Enum):
    NOT_PAID = "Not paid"
    PAID = "Paid"


def _parse_date(value) -> Optional[date]:
    if value is None or (isinstance(value, date) and not isinstance(value, datetime)):
        return value
    if isinstance(value, datetime):
        return value.date()
    return date.fromisoformat(str(value)[:10])


def _parse_datetime(value) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


def _iso(value) -> Optional[str]:
    return value.isoformat() if value is not None else None


@dataclass
class LoanTerms:
    """Parameters supplied when a loan is originated"""
    customer_id: int
    loan_amount: Decimal
    interest: Decimal                  # Flat interest rate in percent, e.g. 5 for 5%
    months: int
    loan_start: date
    service: Decimal = ZERO            # Service fee added to the receivable
    adjustment: Decimal = ZERO
    transaction_date: Optional[date] = None

    def __post_init__(self):
        if isinstance(self.customer_id, bool) or not isinstance(self.customer_id, int):
            raise ValidationError(f"customer_id must be an integer, got {self.customer_id!r}")
        self.loan_amount = to_positive_decimal(self.loan_amount, "loan_amount")
        self.interest = to_non_negative_decimal(self.interest, "interest")
        self.service = to_non_negative_decimal(self.service, "service")
        self.adjustment = to_decimal(self.adjustment, "adjustment")

        if isinstance(self.months, bool) or not isinstance(self.months, int) or self.months <= 0:
            raise ValidationError(f"months must be a positive integer, got {self.months!r}")
        if self.loan_start is None:
            raise ValidationError("loan_start is required")
        self.loan_start = _parse_date(self.loan_start)
        self.transaction_date = _parse_date(self.transaction_date)

    @property
    def interest_amount(self) -> Decimal:
        return quantize(self.loan_amount * self.interest / Decimal('100'))

    @property
    def gross_receivable(self) -> Decimal:
        """Total owed over the full term"""
        return quantize(self.loan_amount + self.interest_amount + self.service)


@dataclass
class Loan:
    """Loan aggregate root with its computed receivable fields"""
    loan_id: Optional[int]
    customer_id: int
    loan_start: date
    loan_end: date
    months: int
    transaction_date: date
    loan_amount: Decimal
    interest: Decimal
    gross_receivable: Decimal
    payday_payment: Decimal
    service: Decimal
    balance: Decimal
    adjustment: Decimal
    overall_balance: Decimal
    status: LoanStatus = LoanStatus.ACTIVE
    version: int = 0
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def interest_amount(self) -> Decimal:
        return quantize(self.gross_receivable - self.loan_amount - self.service)

    @property
    def is_active(self) -> bool:
        return self.status == LoanStatus.ACTIVE

    def set_balance(self, balance: Decimal) -> None:
        """Set outstanding balance, clamped at zero"""
        self.balance = quantize(max(ZERO, balance))
        self.overall_balance = quantize(self.balance + self.adjustment)

    _money_fields = (
        'loan_amount', 'interest', 'gross_receivable', 'payday_payment',
        'service', 'balance', 'adjustment', 'overall_balance'
    )

    def to_dict(self) -> Dict[str, Any]:
        result = {
            'loan_id': self.loan_id,
            'customer_id': self.customer_id,
            'loan_start': _iso(self.loan_start),
            'loan_end': _iso(self.loan_end),
            'months': self.months,
            'transaction_date': _iso(self.transaction_date),
            'status': self.status.value,
            'version': self.version,
            'created_at': _iso(self.created_at),
            'updated_at': _iso(self.updated_at),
        }
        for name in self._money_fields:
            result[name] = str(getattr(self, name))
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Loan':
        return cls(
            loan_id=data['loan_id'],
            customer_id=data['customer_id'],
            loan_start=_parse_date(data['loan_start']),
            loan_end=_parse_date(data['loan_end']),
            months=data['months'],
            transaction_date=_parse_date(data['transaction_date']),
            status=LoanStatus(data['status']),
            version=data.get('version', 0),
            created_at=_parse_datetime(data['created_at']),
            updated_at=_parse_datetime(data['updated_at']),
            **{name: Decimal(data[name]) for name in cls._money_fields}
        )


@dataclass
class Installment:
    """One scheduled repayment obligation (a receipt)"""
    pay_id: Optional[int]
    loan_id: Optional[int]
    schedule: date
    to_pay: Decimal
    amount: Decimal = ZERO
    status: InstallmentStatus = InstallmentStatus.NOT_PAID
    transaction_time: Optional[datetime] = None

    @property
    def outstanding(self) -> Decimal:
        """Amount still owed on this installment"""
        return quantize(max(ZERO, self.to_pay - self.amount))

    @property
    def is_paid(self) -> bool:
        return self.status == InstallmentStatus.PAID

    def record_payment(self, applied: Decimal, transaction_time: datetime) -> None:
        """Add an applied amount and re-derive status (Paid iff amount >= to_pay)"""
        self.amount = quantize(self.amount + applied)
        if self.amount >= self.to_pay:
            self.status = InstallmentStatus.PAID
        else:
            self.status = InstallmentStatus.NOT_PAID
        self.transaction_time = transaction_time

    def to_dict(self) -> Dict[str, Any]:
        return {
            'pay_id': self.pay_id,
            'loan_id': self.loan_id,
            'schedule': _iso(self.schedule),
            'to_pay': str(self.to_pay),
            'amount': str(self.amount),
            'status': self.status.value,
            'transaction_time': _iso(self.transaction_time),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Installment':
        return cls(
            pay_id=data['pay_id'],
            loan_id=data['loan_id'],
            schedule=_parse_date(data['schedule']),
            to_pay=Decimal(data['to_pay']),
            amount=Decimal(data['amount']),
            status=InstallmentStatus(data['status']),
            transaction_time=_parse_datetime(data.get('transaction_time'))
        )


@dataclass(frozen=True)
class PaymentHistory:
    """Immutable record of money applied to a loan"""
    history_id: Optional[int]
    loan_id: int
    pay_id: int
    amount: Decimal
    payment_method: str
    notes: str
    transaction_time: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            'history_id': self.history_id,
            'loan_id': self.loan_id,
            'pay_id': self.pay_id,
            'amount': str(self.amount),
            'payment_method': self.payment_method,
            'notes': self.notes,
            'transaction_time': _iso(self.transaction_time),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PaymentHistory':
        return cls(
            history_id=data['history_id'],
            loan_id=data['loan_id'],
            pay_id=data['pay_id'],
            amount=Decimal(data['amount']),
            payment_method=data['payment_method'],
            notes=data['notes'],
            transaction_time=_parse_datetime(data['transaction_time'])
        )
