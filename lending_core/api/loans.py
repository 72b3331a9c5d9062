"""
Loan endpoints
"""

from fastapi import APIRouter, HTTPException, Depends, status

from .dependencies import LendingSystem, get_lending_system
from .schemas import CreateLoanRequest, PaymentRequest, payment_result_response
from ..exceptions import (
    ConcurrencyConflictError, LendingError, LoanStateError, NotFoundError,
    PersistenceError, ValidationError
)
from ..loans import PaymentOutcome


router = APIRouter()


def http_error(error: LendingError) -> HTTPException:
    """Map a ledger error to an HTTP error response"""
    if isinstance(error, NotFoundError):
        return HTTPException(status_code=404, detail=str(error))
    if isinstance(error, (LoanStateError, ConcurrencyConflictError)):
        return HTTPException(status_code=409, detail=str(error))
    if isinstance(error, ValidationError):
        return HTTPException(status_code=422, detail=str(error))
    if isinstance(error, PersistenceError):
        return HTTPException(status_code=503, detail=str(error))
    return HTTPException(status_code=400, detail=str(error))


def _require_loan(system: LendingSystem, loan_id: int):
    loan = system.ledger.get_loan(loan_id)
    if not loan:
        raise HTTPException(status_code=404, detail=f"Loan {loan_id} not found")
    return loan


@router.post("", status_code=status.HTTP_201_CREATED)
def create_loan(
    request: CreateLoanRequest,
    system: LendingSystem = Depends(get_lending_system)
):
    """Originate a new loan with its installment schedule"""
    try:
        loan = system.ledger.create_loan(request.to_loan_terms())
    except LendingError as e:
        raise http_error(e)

    return {
        "loan": loan.to_dict(),
        "installments": [i.to_dict() for i in system.ledger.get_installments(loan.loan_id)],
        "message": "Loan originated successfully"
    }


@router.get("")
def list_loans(system: LendingSystem = Depends(get_lending_system)):
    """List all loans that have not been deleted"""
    try:
        loans = system.ledger.list_active_loans()
    except LendingError as e:
        raise http_error(e)
    return {"loans": [loan.to_dict() for loan in loans], "count": len(loans)}


@router.get("/summary")
def get_portfolio_summary(system: LendingSystem = Depends(get_lending_system)):
    """Portfolio totals and collection rate"""
    try:
        summary = system.ledger.portfolio_summary()
    except LendingError as e:
        raise http_error(e)

    return {
        "total_loans": summary.total_loans,
        "active_loans": summary.active_loans,
        "completed_loans": summary.completed_loans,
        "cancelled_loans": summary.cancelled_loans,
        "total_disbursed": str(summary.total_disbursed),
        "total_interest": str(summary.total_interest),
        "total_outstanding": str(summary.total_outstanding),
        "total_collected": str(summary.total_collected),
        "collection_rate": str(summary.collection_rate)
    }


@router.post("/recalculate-balances")
def recalculate_balances(system: LendingSystem = Depends(get_lending_system)):
    """Re-derive every loan's balance from its installments"""
    try:
        corrected = system.ledger.recalculate_balances()
    except LendingError as e:
        raise http_error(e)
    return {"corrected": corrected, "message": f"Recalculated balances, {corrected} corrected"}


@router.get("/customer/{customer_id}")
def get_customer_loans(
    customer_id: int,
    system: LendingSystem = Depends(get_lending_system)
):
    """Active loans for a customer"""
    try:
        loans = system.ledger.get_customer_loans(customer_id)
    except LendingError as e:
        raise http_error(e)
    return {"loans": [loan.to_dict() for loan in loans], "count": len(loans)}


@router.get("/{loan_id}")
def get_loan(
    loan_id: int,
    system: LendingSystem = Depends(get_lending_system)
):
    """Get loan details"""
    try:
        loan = _require_loan(system, loan_id)
    except LendingError as e:
        raise http_error(e)
    return loan.to_dict()


@router.get("/{loan_id}/installments")
def get_installments(
    loan_id: int,
    system: LendingSystem = Depends(get_lending_system)
):
    """Installment schedule with payment progress"""
    try:
        _require_loan(system, loan_id)
        installments = system.ledger.get_installments(loan_id)
    except LendingError as e:
        raise http_error(e)

    return {
        "loan_id": loan_id,
        "installments": [i.to_dict() for i in installments],
        "count": len(installments)
    }


@router.get("/{loan_id}/history")
def get_payment_history(
    loan_id: int,
    system: LendingSystem = Depends(get_lending_system)
):
    """Payment history rows for a loan"""
    try:
        _require_loan(system, loan_id)
        history = system.ledger.get_payment_history(loan_id)
    except LendingError as e:
        raise http_error(e)

    return {
        "loan_id": loan_id,
        "history": [h.to_dict() for h in history],
        "count": len(history)
    }


@router.post("/{loan_id}/payments")
def make_payment(
    loan_id: int,
    request: PaymentRequest,
    system: LendingSystem = Depends(get_lending_system)
):
    """Apply a payment across the loan's installments"""
    try:
        result = system.ledger.apply_payment(
            loan_id,
            request.amount,
            transaction_time=request.parsed_transaction_time(),
            method=request.payment_method,
            notes=request.notes,
            starting_installment_id=request.pay_id
        )
    except LendingError as e:
        raise http_error(e)

    if result.outcome == PaymentOutcome.LOAN_NOT_FOUND:
        raise HTTPException(status_code=404, detail=result.message)

    return payment_result_response(result)


@router.put("/{loan_id}/cancel")
def cancel_loan(
    loan_id: int,
    system: LendingSystem = Depends(get_lending_system)
):
    """Cancel a loan that is not completed"""
    try:
        loan = system.ledger.cancel_loan(loan_id)
    except LendingError as e:
        raise http_error(e)
    return {"loan": loan.to_dict(), "message": "Loan cancelled successfully"}


@router.delete("/{loan_id}")
def delete_loan(
    loan_id: int,
    system: LendingSystem = Depends(get_lending_system)
):
    """Soft delete a loan"""
    try:
        loan = system.ledger.delete_loan(loan_id)
    except LendingError as e:
        raise http_error(e)
    return {"loan_id": loan.loan_id, "status": loan.status.value,
            "message": "Loan deleted successfully"}
