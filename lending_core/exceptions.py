"""Exception hierarchy for the lending core."""


class LendingError(Exception):
    """Base exception for all lending errors."""


class ValidationError(LendingError):
    """Raised when input fails validation before any write."""


class LoanStateError(ValidationError):
    """Raised when a loan's status does not allow the operation."""


class NotFoundError(LendingError):
    """Raised when a referenced record does not exist."""


class LoanNotFoundError(NotFoundError):
    """Raised when a loan does not exist."""

    def __init__(self, loan_id):
        self.loan_id = loan_id
        super().__init__(f"Loan {loan_id} not found")


class InstallmentNotFoundError(NotFoundError):
    """Raised when an installment does not exist or belongs to another loan."""

    def __init__(self, pay_id, loan_id=None):
        self.pay_id = pay_id
        self.loan_id = loan_id
        if loan_id is None:
            message = f"Installment {pay_id} not found"
        else:
            message = f"Installment {pay_id} not found for loan {loan_id}"
        super().__init__(message)


class PersistenceError(LendingError):
    """Raised when the underlying store fails."""


class ConcurrencyConflictError(LendingError):
    """Raised when a record changed underneath a read-modify-write."""
