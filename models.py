from pydantic import BaseModel, Field, PlainSerializer, field_validator
from enum import Enum
from typing import Annotated, Optional
from datetime import datetime
from decimal import Decimal
import re


# Decimal in the domain, JSON number on the wire
Money = Annotated[Decimal, PlainSerializer(float, return_type=float, when_used="json")]


class TransactionType(str, Enum):
    deposit = "deposit"
    withdrawal = "withdrawal"


class LoanStatus(str, Enum):
    pending = "pending"
    approved = "approved"
    rejected = "rejected"


class Customer(BaseModel):
    id: str = Field(..., description="Customer identifier")
    name: str = Field(..., description="Customer name")
    balance: Money = Field(default=Decimal("0"), description="Sum of the customer's account balances")


class Account(BaseModel):
    accountId: str = Field(..., description="Account identifier")
    customerId: str = Field(..., description="Owning customer identifier")
    balance: Money = Field(default=Decimal("0"), description="Current account balance")


class Transaction(BaseModel):
    id: str = Field(..., description="Transaction identifier")
    accountId: str = Field(..., description="Account the transaction applies to")
    amount: Money = Field(..., description="Transaction amount")
    type: TransactionType = Field(..., description="Transaction type")
    timestamp: datetime = Field(..., description="Time the transaction was recorded")


class Loan(BaseModel):
    id: str = Field(..., description="Loan identifier")
    customerId: str = Field(..., description="Applicant customer identifier")
    amount: Money = Field(..., description="Requested amount")
    status: LoanStatus = Field(default=LoanStatus.pending, description="Loan status")


class CustomerCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=200, description="Customer name")


class AccountCreateRequest(BaseModel):
    customerId: str = Field(..., min_length=1, max_length=100, description="Owning customer identifier")


class TransactionRequest(BaseModel):
    accountId: str = Field(..., min_length=1, max_length=100, description="Account identifier")
    amount: Money = Field(..., gt=0, max_digits=12, decimal_places=2, description="Positive transaction amount")
    idempotencyKey: Optional[str] = Field(
        default=None,
        min_length=1,
        max_length=100,
        description="Optional key making retries of the same request safe"
    )

    @field_validator('idempotencyKey')
    @classmethod
    def validate_idempotency_key(cls, v):
        if v is not None and not re.match(r'^[a-zA-Z0-9_-]+$', v):
            raise ValueError('Idempotency key must contain only alphanumeric characters, underscores, and hyphens')
        return v


class LoanApplicationRequest(BaseModel):
    customerId: str = Field(..., min_length=1, max_length=100, description="Applicant customer identifier")
    amount: Money = Field(..., gt=0, max_digits=12, decimal_places=2, description="Requested amount")


class IdempotencyRecord(BaseModel):
    key: str
    operation: TransactionType
    accountId: str
    amount: Decimal
    response: Account


class BalanceResponse(BaseModel):
    balance: Money = Field(..., description="Current account balance")


class ErrorResponse(BaseModel):
    detail: str = Field(..., description="Error description")
    error_code: str = Field(..., description="Machine-readable error code")
    timestamp: datetime = Field(default_factory=datetime.now, description="Error timestamp")


class HealthResponse(BaseModel):
    status: str = Field(..., description="Service health status")
    timestamp: datetime = Field(default_factory=datetime.now)
    customers_count: int = Field(..., description="Number of customers")
    accounts_count: int = Field(..., description="Number of accounts")
    transactions_count: int = Field(..., description="Number of recorded transactions")
    loans_count: int = Field(..., description="Number of loan applications")
