from typing import Optional

from fastapi import HTTPException


class LedgerError(HTTPException):
    """Base class for errors raised by the ledger service.

    Each subclass fixes the HTTP status and a machine-readable error code;
    the exception handlers in ``main`` render both.
    """
    status_code = 500
    error_code = "INTERNAL_ERROR"
    default_detail = "Internal server error"

    def __init__(self, detail: Optional[str] = None):
        super().__init__(status_code=self.status_code, detail=detail or self.default_detail)


class CustomerNotFoundError(LedgerError):
    status_code = 404
    error_code = "CUSTOMER_NOT_FOUND"
    default_detail = "Customer not found"


class AccountNotFoundError(LedgerError):
    status_code = 404
    error_code = "ACCOUNT_NOT_FOUND"
    default_detail = "Account not found"


class LoanNotFoundError(LedgerError):
    status_code = 404
    error_code = "LOAN_NOT_FOUND"
    default_detail = "Loan not found"


class InsufficientFundsError(LedgerError):
    status_code = 400
    error_code = "INSUFFICIENT_FUNDS"
    default_detail = "Insufficient funds"


class TransactionLimitError(LedgerError):
    status_code = 400
    error_code = "AMOUNT_LIMIT_EXCEEDED"
    default_detail = "Amount exceeds maximum transaction amount"


class LoanNotPendingError(LedgerError):
    status_code = 409
    error_code = "LOAN_NOT_PENDING"
    default_detail = "Loan is not pending"


class IdempotencyConflictError(LedgerError):
    status_code = 409
    error_code = "IDEMPOTENCY_CONFLICT"
    default_detail = "Idempotency key was already used for a different request"
