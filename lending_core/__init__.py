"""
Lending Core

Loan origination, installment schedules and repayment allocation over a
transactional ledger. All monetary values use Decimal.
"""

__version__ = "1.0.0"
