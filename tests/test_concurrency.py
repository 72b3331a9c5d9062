"""
Tests for concurrent payments against one loan
"""

import tempfile
import threading
from datetime import date
from decimal import Decimal
from pathlib import Path

from lending_core.loans import LoanLedger, PaymentOutcome, outstanding_balance
from lending_core.models import LoanStatus, LoanTerms
from lending_core.storage import InMemoryStorage, SQLiteStorage


TERMS = dict(
    customer_id=7,
    loan_amount=Decimal("1000"),
    interest=Decimal("20"),
    months=6,
    loan_start=date(2024, 1, 15)
)


def pay_concurrently(ledgers, loan_id, payments, amount="100"):
    """Fire payments from separate threads, cycling through the given ledgers"""
    results = []
    errors = []
    lock = threading.Lock()

    def pay(ledger):
        try:
            result = ledger.apply_payment(loan_id, amount)
            with lock:
                results.append(result)
        except Exception as e:
            with lock:
                errors.append(e)

    threads = [
        threading.Thread(target=pay, args=(ledgers[i % len(ledgers)],))
        for i in range(payments)
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    return results, errors


class TestConcurrentPayments:
    """Test payments on one loan are serialized without lost updates"""

    def _assert_settled(self, ledger, loan_id, payments):
        loan = ledger.get_loan(loan_id)
        installments = ledger.get_installments(loan_id)

        assert loan.status == LoanStatus.COMPLETED
        assert loan.balance == Decimal("0.00")
        assert loan.balance == outstanding_balance(installments)
        assert loan.version == payments
        assert all(i.amount == Decimal("200.00") for i in installments)
        assert len(ledger.get_payment_history(loan_id)) == payments

    def test_in_memory_threads(self):
        """Test twelve threads paying 100 each settle a 1200 loan exactly"""
        ledger = LoanLedger(InMemoryStorage())
        loan = ledger.create_loan(LoanTerms(**TERMS))

        results, errors = pay_concurrently([ledger], loan.loan_id, 12)

        assert errors == []
        assert all(r.outcome == PaymentOutcome.APPLIED for r in results)
        assert sorted(r.new_balance for r in results) == [
            Decimal(100 * n).quantize(Decimal("0.01")) for n in range(12)
        ]
        self._assert_settled(ledger, loan.loan_id, 12)

    def test_sqlite_threads(self):
        """Test concurrent payments through one SQLite-backed ledger"""
        with tempfile.TemporaryDirectory() as temp_dir:
            storage = SQLiteStorage(Path(temp_dir) / "lending.db")
            try:
                ledger = LoanLedger(storage)
                loan = ledger.create_loan(LoanTerms(**TERMS))

                results, errors = pay_concurrently([ledger], loan.loan_id, 12)

                assert errors == []
                self._assert_settled(ledger, loan.loan_id, 12)
            finally:
                storage.close()

    def test_sqlite_separate_connections(self):
        """Test ledgers on separate connections to one file are serialized by the database"""
        with tempfile.TemporaryDirectory() as temp_dir:
            db_path = Path(temp_dir) / "lending.db"
            first = SQLiteStorage(db_path, timeout=30.0)
            second = SQLiteStorage(db_path, timeout=30.0)
            try:
                ledgers = [LoanLedger(first), LoanLedger(second)]
                loan = ledgers[0].create_loan(LoanTerms(**TERMS))

                results, errors = pay_concurrently(ledgers, loan.loan_id, 12)

                assert errors == []
                self._assert_settled(ledgers[1], loan.loan_id, 12)
            finally:
                first.close()
                second.close()

    def test_overlapping_overpayments(self):
        """Test only the money the schedule can absorb is applied"""
        ledger = LoanLedger(InMemoryStorage())
        loan = ledger.create_loan(LoanTerms(**TERMS))

        results, errors = pay_concurrently([ledger], loan.loan_id, 3, amount="500")

        assert errors == []
        assert sum(r.applied for r in results) == Decimal("1200.00")
        assert sum(r.remainder for r in results) == Decimal("300.00")
        assert ledger.get_loan(loan.loan_id).balance == Decimal("0.00")
