"""
Pydantic schemas for API requests and responses
"""

from datetime import date, datetime
from typing import Any, Dict, Optional
from pydantic import BaseModel, Field

from ..exceptions import ValidationError
from ..loans import PaymentResult
from ..models import LoanTerms


def _parse_iso(value: Optional[str], parser, field: str):
    if value is None:
        return None
    try:
        return parser(value)
    except ValueError:
        raise ValidationError(f"{field} must be an ISO date, got {value!r}")


class CreateLoanRequest(BaseModel):
    customer_id: int
    loan_amount: str = Field(..., description="Principal as decimal string")
    interest: str = Field(..., description="Flat interest rate in percent, e.g. \"5\"")
    months: int = Field(..., description="Number of monthly installments")
    loan_start: str  # ISO date string, due date of the first installment
    service: str = "0"
    adjustment: str = "0"
    transaction_date: Optional[str] = None  # ISO date string

    def to_loan_terms(self) -> LoanTerms:
        return LoanTerms(
            customer_id=self.customer_id,
            loan_amount=self.loan_amount,
            interest=self.interest,
            months=self.months,
            loan_start=_parse_iso(self.loan_start, date.fromisoformat, "loan_start"),
            service=self.service,
            adjustment=self.adjustment,
            transaction_date=_parse_iso(self.transaction_date, date.fromisoformat,
                                        "transaction_date")
        )


class PaymentRequest(BaseModel):
    amount: str = Field(..., description="Payment amount as decimal string")
    pay_id: Optional[int] = Field(None, description="Installment to start from")
    transaction_time: Optional[str] = None  # ISO datetime string
    payment_method: Optional[str] = None
    notes: str = ""

    def parsed_transaction_time(self) -> Optional[datetime]:
        return _parse_iso(self.transaction_time, datetime.fromisoformat, "transaction_time")


def payment_result_response(result: PaymentResult) -> Dict[str, Any]:
    return {
        "outcome": result.outcome.value,
        "message": result.message,
        "loan_id": result.loan_id,
        "amount": str(result.amount),
        "applied": str(result.applied),
        "remainder": str(result.remainder),
        "new_balance": str(result.new_balance),
        "loan_status": result.loan_status.value,
        "allocations": [
            {
                "pay_id": a.pay_id,
                "applied": str(a.applied),
                "amount": str(a.amount),
                "to_pay": str(a.to_pay),
                "status": a.status.value
            }
            for a in result.allocations
        ],
        "history": [h.to_dict() for h in result.history]
    }
