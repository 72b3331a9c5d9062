"""
Loan Ledger Module

Handles loan origination with its installment schedule, payment
allocation, history recording and the loan lifecycle (completion,
cancellation, soft deletion).

Every mutation runs inside ``storage.atomic()`` and, for an existing loan,
under that loan's lock, so a failure leaves no partial writes and two
payments against one loan are applied one after the other.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional
import logging
import threading
from contextlib import contextmanager

from .allocation import Allocation, InstallmentAllocation, PaymentAllocator
from .config import get_config
from .exceptions import (
    ConcurrencyConflictError, LoanNotFoundError, LoanStateError, ValidationError
)
from .logging_config import get_logger, log_action
from .models import (
    Installment, Loan, LoanStatus, LoanTerms, PaymentHistory
)
from .money import ZERO, format_amount, quantize, to_positive_decimal, total
from .schedule import add_months, generate_schedule, installment_amount
from .storage import StorageInterface


class HistoryGranularity(Enum):
    """How many history rows one payment produces"""
    PER_TRANSACTION = "per_transaction"  # One row, keyed on the last installment touched
    PER_INSTALLMENT = "per_installment"  # One row per installment touched


class PaymentOutcome(Enum):
    APPLIED = "applied"
    APPLIED_WITH_REMAINDER = "applied_with_remainder"
    LOAN_NOT_FOUND = "loan_not_found"


@dataclass
class PaymentResult:
    """Outcome of applying one payment to a loan"""
    outcome: PaymentOutcome
    loan_id: int
    amount: Decimal
    applied: Decimal = ZERO
    remainder: Decimal = ZERO
    new_balance: Optional[Decimal] = None
    loan_status: Optional[LoanStatus] = None
    allocations: List[InstallmentAllocation] = field(default_factory=list)
    history: List[PaymentHistory] = field(default_factory=list)

    @classmethod
    def not_found(cls, loan_id: int, amount: Decimal) -> 'PaymentResult':
        return cls(outcome=PaymentOutcome.LOAN_NOT_FOUND, loan_id=loan_id, amount=amount)

    @property
    def message(self) -> str:
        if self.outcome == PaymentOutcome.LOAN_NOT_FOUND:
            return f"Loan {self.loan_id} not found"
        if self.outcome == PaymentOutcome.APPLIED_WITH_REMAINDER:
            return (f"Payment applied; {format_amount(self.remainder)} exceeded the outstanding "
                    f"schedule and was not allocated")
        if self.loan_status == LoanStatus.COMPLETED:
            return "Payment processed successfully. All installments paid - loan completed."
        return "Payment processed successfully"


@dataclass
class PortfolioSummary:
    """Aggregate figures across all loans that are not deleted"""
    total_loans: int
    active_loans: int
    completed_loans: int
    cancelled_loans: int
    total_disbursed: Decimal
    total_interest: Decimal
    total_outstanding: Decimal
    total_collected: Decimal
    collection_rate: Decimal        # Percent of receivable collected


class KeyedLock:
    """One re-entrant lock per key, dropped once no thread holds or awaits it"""

    def __init__(self):
        self._locks: Dict[Any, list] = {}  # key -> [RLock, holders and waiters]
        self._guard = threading.Lock()

    @contextmanager
    def hold(self, key):
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = self._locks[key] = [threading.RLock(), 0]
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[key]

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


def outstanding_balance(installments: Iterable[Installment]) -> Decimal:
    """Sum of what is still owed across installments"""
    return total(installment.outstanding for installment in installments)


class LoanLedger:
    """
    Manages loans, their installment schedules and payment history
    """

    def __init__(
        self,
        storage: StorageInterface,
        history_granularity: Optional[str] = None,
        default_payment_method: Optional[str] = None,
        max_term_months: Optional[int] = None,
        max_interest_rate: Optional[Decimal] = None,
        logger: Optional[logging.Logger] = None
    ):
        config = get_config()
        if history_granularity is None:
            history_granularity = config.history_granularity
        if default_payment_method is None:
            default_payment_method = config.default_payment_method
        if max_term_months is None:
            max_term_months = config.max_term_months
        if max_interest_rate is None:
            max_interest_rate = config.max_interest_rate

        self.storage = storage
        self.history_granularity = HistoryGranularity(history_granularity)
        self.default_payment_method = default_payment_method
        self.max_term_months = max_term_months
        self.max_interest_rate = Decimal(str(max_interest_rate))
        self.logger = logger or get_logger()

        self.loans_table = "loan"
        self.receipts_table = "receipt"
        self.history_table = "paymentHistory"

        self.allocator = PaymentAllocator(storage, self.receipts_table)
        self._locks = KeyedLock()

    def create_loan(self, terms: LoanTerms) -> Loan:
        """
        Originate a loan and persist it with its full installment schedule

        Args:
            terms: Loan parameters

        Returns:
            Created Loan with its assigned loan_id
        """
        if terms.months > self.max_term_months:
            raise ValidationError(
                f"months cannot exceed {self.max_term_months}, got {terms.months}"
            )
        if terms.interest > self.max_interest_rate:
            raise ValidationError(
                f"interest cannot exceed {self.max_interest_rate}%, got {terms.interest}"
            )

        now = datetime.now(timezone.utc)
        gross_receivable = terms.gross_receivable
        schedule = generate_schedule(terms.loan_start, terms.months, gross_receivable)

        loan = Loan(
            loan_id=None,
            customer_id=terms.customer_id,
            loan_start=terms.loan_start,
            loan_end=add_months(terms.loan_start, terms.months),
            months=terms.months,
            transaction_date=terms.transaction_date or now.date(),
            loan_amount=terms.loan_amount,
            interest=terms.interest,
            gross_receivable=gross_receivable,
            payday_payment=installment_amount(gross_receivable, terms.months),
            service=terms.service,
            balance=ZERO,
            adjustment=terms.adjustment,
            overall_balance=ZERO,
            status=LoanStatus.ACTIVE,
            created_at=now,
            updated_at=now
        )
        # Opening balance is the schedule total so balance == sum of outstanding installments
        loan.set_balance(outstanding_balance(schedule))

        with self.storage.atomic():
            loan.loan_id = self.storage.insert(self.loans_table, loan.to_dict(), "loan_id")
            for installment in schedule:
                installment.loan_id = loan.loan_id
                installment.pay_id = self.storage.insert(
                    self.receipts_table, installment.to_dict(), "pay_id"
                )

        log_action(
            self.logger, "info", f"Loan {loan.loan_id} originated",
            action="loan_originated", resource=f"loan/{loan.loan_id}",
            extra={
                "customer_id": loan.customer_id,
                "loan_amount": str(loan.loan_amount),
                "gross_receivable": str(loan.gross_receivable),
                "months": loan.months,
                "installments": len(schedule)
            }
        )
        return loan

    def apply_payment(
        self,
        loan_id: int,
        amount,
        transaction_time: Optional[datetime] = None,
        method: Optional[str] = None,
        notes: str = "",
        starting_installment_id: Optional[int] = None
    ) -> PaymentResult:
        """
        Apply a payment across the loan's installments

        Args:
            loan_id: Loan being paid
            amount: Positive payment amount
            transaction_time: When the payment was made (defaults to now)
            method: Payment method (defaults to the configured method)
            notes: Free text stored on the history row
            starting_installment_id: Installment to start from; the earliest
                unpaid installment when omitted

        Returns:
            PaymentResult. A missing loan is reported as LOAN_NOT_FOUND with
            nothing written; money beyond the outstanding schedule is
            reported as APPLIED_WITH_REMAINDER.
        """
        amount = to_positive_decimal(amount)
        if transaction_time is None:
            transaction_time = datetime.now(timezone.utc)
        method = method or self.default_payment_method
        notes = notes or ""

        with self._locks.hold(loan_id):
            try:
                with self.storage.atomic():
                    loan = self.get_loan(loan_id)
                    if loan is None:
                        log_action(
                            self.logger, "warning", f"Payment for unknown loan {loan_id}",
                            action="payment_rejected", resource=f"loan/{loan_id}"
                        )
                        return PaymentResult.not_found(loan_id, amount)

                    if not loan.is_active:
                        raise LoanStateError(
                            f"Loan {loan_id} is {loan.status.value} and cannot accept payments"
                        )

                    expected_version = loan.version
                    allocation = self.allocator.allocate(
                        loan_id, amount, transaction_time, starting_installment_id
                    )

                    installments = self.get_installments(loan_id)
                    loan.set_balance(outstanding_balance(installments))
                    if installments and all(i.is_paid for i in installments):
                        loan.status = LoanStatus.COMPLETED

                    self._save_loan(loan, expected_version)
                    history = self._record_history(
                        loan_id, allocation, method, notes, transaction_time
                    )
            except ConcurrencyConflictError:
                log_action(
                    self.logger, "warning", f"Concurrent modification of loan {loan_id}",
                    action="payment_conflict", resource=f"loan/{loan_id}"
                )
                raise

        result = PaymentResult(
            outcome=(PaymentOutcome.APPLIED_WITH_REMAINDER if allocation.remainder > ZERO
                     else PaymentOutcome.APPLIED),
            loan_id=loan_id,
            amount=amount,
            applied=allocation.applied,
            remainder=allocation.remainder,
            new_balance=loan.balance,
            loan_status=loan.status,
            allocations=allocation.allocations,
            history=history
        )
        self._log_payment(result, method)
        return result

    def get_loan(self, loan_id: int) -> Optional[Loan]:
        """Get loan by ID"""
        loan_dict = self.storage.load(self.loans_table, loan_id)
        if loan_dict:
            return Loan.from_dict(loan_dict)
        return None

    def require_loan(self, loan_id: int) -> Loan:
        loan = self.get_loan(loan_id)
        if loan is None:
            raise LoanNotFoundError(loan_id)
        return loan

    def list_active_loans(self) -> List[Loan]:
        """All loans that have not been deleted, oldest first"""
        return [
            Loan.from_dict(data) for data in self.storage.load_all(self.loans_table)
            if data['status'] != LoanStatus.DELETED.value
        ]

    def get_customer_loans(self, customer_id: int) -> List[Loan]:
        """Active loans for a customer"""
        loans_data = self.storage.find(
            self.loans_table,
            {"customer_id": customer_id, "status": LoanStatus.ACTIVE.value}
        )
        return [Loan.from_dict(data) for data in loans_data]

    def get_installments(self, loan_id: int) -> List[Installment]:
        """Installment schedule for a loan in pay_id order"""
        receipts = self.storage.find(self.receipts_table, {"loan_id": loan_id})
        return [Installment.from_dict(data) for data in receipts]

    def get_payment_history(self, loan_id: int) -> List[PaymentHistory]:
        """Payment history rows for a loan in the order they were written"""
        rows = self.storage.find(self.history_table, {"loan_id": loan_id})
        return [PaymentHistory.from_dict(data) for data in rows]

    def delete_loan(self, loan_id: int) -> Loan:
        """
        Soft delete a loan

        The loan, its installments and its history stay in storage; only the
        status changes. Deleting an already deleted loan changes nothing.
        """
        with self._locks.hold(loan_id):
            with self.storage.atomic():
                loan = self.require_loan(loan_id)
                if loan.status == LoanStatus.DELETED:
                    return loan
                previous = loan.status
                loan.status = LoanStatus.DELETED
                self._save_loan(loan, loan.version)

        log_action(
            self.logger, "info", f"Loan {loan_id} deleted",
            action="loan_deleted", resource=f"loan/{loan_id}",
            extra={"previous_status": previous.value}
        )
        return loan

    def cancel_loan(self, loan_id: int) -> Loan:
        """Cancel a loan that has not been completed or deleted"""
        with self._locks.hold(loan_id):
            with self.storage.atomic():
                loan = self.require_loan(loan_id)
                if loan.status == LoanStatus.CANCELLED:
                    return loan
                if loan.status == LoanStatus.COMPLETED:
                    raise LoanStateError(f"Cannot cancel completed loan {loan_id}")
                if loan.status == LoanStatus.DELETED:
                    raise LoanStateError(f"Cannot cancel deleted loan {loan_id}")
                loan.status = LoanStatus.CANCELLED
                self._save_loan(loan, loan.version)

        log_action(
            self.logger, "info", f"Loan {loan_id} cancelled",
            action="loan_cancelled", resource=f"loan/{loan_id}",
            extra={"balance": str(loan.balance)}
        )
        return loan

    def recalculate_balances(self) -> int:
        """
        Re-derive every loan's balance and completion from its installments

        Returns:
            Number of loans whose stored figures were corrected
        """
        corrected = 0
        for data in self.storage.load_all(self.loans_table):
            loan_id = data['loan_id']
            with self._locks.hold(loan_id):
                with self.storage.atomic():
                    loan = self.get_loan(loan_id)
                    if loan is None or loan.status == LoanStatus.DELETED:
                        continue

                    installments = self.get_installments(loan_id)
                    before = (loan.balance, loan.overall_balance, loan.status)
                    loan.set_balance(outstanding_balance(installments))
                    if (loan.is_active and installments
                            and all(i.is_paid for i in installments)):
                        loan.status = LoanStatus.COMPLETED

                    if (loan.balance, loan.overall_balance, loan.status) != before:
                        self._save_loan(loan, loan.version)
                        corrected += 1
                        log_action(
                            self.logger, "warning", f"Loan {loan_id} balance corrected",
                            action="balance_recalculated", resource=f"loan/{loan_id}",
                            extra={"previous_balance": str(before[0]),
                                   "balance": str(loan.balance)}
                        )
        return corrected

    def portfolio_summary(self) -> PortfolioSummary:
        """Totals across every loan that is not deleted"""
        loans = self.list_active_loans()
        counted = [loan for loan in loans if loan.status != LoanStatus.CANCELLED]
        counted_ids = {loan.loan_id for loan in counted}

        total_collected = total(
            Decimal(row['amount']) for row in self.storage.load_all(self.history_table)
            if row['loan_id'] in counted_ids
        )
        receivable = total(loan.gross_receivable for loan in counted)
        if receivable > ZERO:
            collection_rate = quantize(total_collected / receivable * Decimal('100'))
        else:
            collection_rate = ZERO

        return PortfolioSummary(
            total_loans=len(loans),
            active_loans=sum(1 for loan in loans if loan.status == LoanStatus.ACTIVE),
            completed_loans=sum(1 for loan in loans if loan.status == LoanStatus.COMPLETED),
            cancelled_loans=sum(1 for loan in loans if loan.status == LoanStatus.CANCELLED),
            total_disbursed=total(loan.loan_amount for loan in counted),
            total_interest=total(loan.interest_amount for loan in counted),
            total_outstanding=total(
                loan.balance for loan in counted if loan.status == LoanStatus.ACTIVE
            ),
            total_collected=total_collected,
            collection_rate=collection_rate
        )

    def _save_loan(self, loan: Loan, expected_version: int) -> None:
        """Write the loan if nobody else has written it since it was read"""
        current = self.storage.load(self.loans_table, loan.loan_id)
        if current is None or current.get('version', 0) != expected_version:
            raise ConcurrencyConflictError(
                f"Loan {loan.loan_id} was modified concurrently "
                f"(expected version {expected_version})"
            )
        loan.version = expected_version + 1
        loan.updated_at = datetime.now(timezone.utc)
        self.storage.save(self.loans_table, loan.loan_id, loan.to_dict())

    def _record_history(self, loan_id: int, allocation: Allocation, method: str,
                        notes: str, transaction_time: datetime) -> List[PaymentHistory]:
        """Append history rows for an allocation"""
        if not allocation.allocations:
            return []

        if self.history_granularity == HistoryGranularity.PER_INSTALLMENT:
            entries = [(a.pay_id, a.applied) for a in allocation.allocations]
        else:
            entries = [(allocation.last_pay_id, allocation.applied)]

        history = []
        for pay_id, applied in entries:
            row = {
                'history_id': None,
                'loan_id': loan_id,
                'pay_id': pay_id,
                'amount': str(applied),
                'payment_method': method,
                'notes': notes,
                'transaction_time': transaction_time.isoformat()
            }
            self.storage.insert(self.history_table, row, "history_id")
            history.append(PaymentHistory.from_dict(row))
        return history

    def _log_payment(self, result: PaymentResult, method: str) -> None:
        resource = f"loan/{result.loan_id}"
        log_action(
            self.logger, "info", f"Payment of {result.amount} applied to loan {result.loan_id}",
            action="payment_applied", resource=resource,
            extra={
                "applied": str(result.applied),
                "new_balance": str(result.new_balance),
                "installments": [a.pay_id for a in result.allocations],
                "method": method
            }
        )
        if result.outcome == PaymentOutcome.APPLIED_WITH_REMAINDER:
            log_action(
                self.logger, "warning",
                f"Payment to loan {result.loan_id} exceeded the schedule by {result.remainder}",
                action="payment_overpaid", resource=resource,
                extra={"remainder": str(result.remainder)}
            )
        if result.loan_status == LoanStatus.COMPLETED:
            log_action(
                self.logger, "info", f"Loan {result.loan_id} completed",
                action="loan_completed", resource=resource
            )
