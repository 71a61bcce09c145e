from fastapi import FastAPI, HTTPException, Request, Depends
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded
from typing import List
import logging
import structlog
import time
from contextlib import asynccontextmanager

from models import (
    Account,
    AccountCreateRequest,
    BalanceResponse,
    Customer,
    CustomerCreateRequest,
    ErrorResponse,
    HealthResponse,
    Loan,
    LoanApplicationRequest,
    LoanStatus,
    Transaction,
    TransactionRequest,
)
from services import LedgerService, get_ledger_service
from repositories import (
    get_account_repository,
    get_customer_repository,
    get_idempotency_repository,
    get_loan_repository,
    get_transaction_repository,
)
from config import get_settings

settings = get_settings()

# Configure structured logging
logging.basicConfig(format="%(message)s", level=settings.log_level.upper())

structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.JSONRenderer() if settings.log_format == "json" else structlog.dev.ConsoleRenderer()
    ],
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    wrapper_class=structlog.stdlib.BoundLogger,
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger()

# Rate limiting
limiter = Limiter(key_func=get_remote_address)


def mutation_rate_limit() -> str:
    return f"{get_settings().rate_limit_per_minute}/minute"


# Application lifespan
@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    logger.info(
        "Starting Ledger Service",
        environment=settings.environment,
        storage_dir=settings.storage_dir
    )
    yield
    # Shutdown
    logger.info("Shutting down Ledger Service")

# Create FastAPI app
app = FastAPI(
    title=settings.app_name,
    description="Ledger service for customers, accounts, transactions and loans",
    version=settings.app_version,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan
)

# Add rate limiting
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins,
    allow_credentials=True,
    allow_methods=settings.allowed_methods,
    allow_headers=settings.allowed_headers,
)

# Request logging middleware
@app.middleware("http")
async def log_requests(request: Request, call_next):
    if not settings.enable_detailed_logging:
        return await call_next(request)

    start_time = time.time()

    logger.info(
        "Request started",
        method=request.method,
        url=str(request.url),
        client_ip=request.client.host if request.client else None
    )

    response = await call_next(request)

    process_time = time.time() - start_time
    logger.info(
        "Request completed",
        method=request.method,
        url=str(request.url),
        status_code=response.status_code,
        process_time=round(process_time, 4)
    )

    return response

# Dependency injection
def get_service(
    customer_repo=Depends(get_customer_repository),
    account_repo=Depends(get_account_repository),
    transaction_repo=Depends(get_transaction_repository),
    loan_repo=Depends(get_loan_repository),
    idempotency_repo=Depends(get_idempotency_repository)
) -> LedgerService:
    return get_ledger_service(
        customer_repo, account_repo, transaction_repo, loan_repo, idempotency_repo, get_settings()
    )

# Health check endpoint
@app.get(
    "/health",
    response_model=HealthResponse,
    summary="Health Check",
    description="Check API health and get record counts"
)
async def health_check(
    customer_repo=Depends(get_customer_repository),
    account_repo=Depends(get_account_repository),
    transaction_repo=Depends(get_transaction_repository),
    loan_repo=Depends(get_loan_repository)
):
    try:
        return HealthResponse(
            status="healthy",
            customers_count=await customer_repo.count(),
            accounts_count=await account_repo.count(),
            transactions_count=await transaction_repo.count(),
            loans_count=await loan_repo.count()
        )
    except Exception as e:
        logger.error("Health check failed", error=str(e))
        raise HTTPException(
            status_code=500,
            detail="Health check failed"
        )

# Customers
@app.post(
    "/customers",
    response_model=Customer,
    summary="Create Customer"
)
async def create_customer(
    customer_request: CustomerCreateRequest,
    service: LedgerService = Depends(get_service)
):
    return await service.create_customer(customer_request.name)


@app.get(
    "/customers/{customer_id}",
    response_model=Customer,
    summary="Get Customer",
    description="Get a customer; the balance is the sum of the customer's account balances",
    responses={404: {"description": "Customer not found"}}
)
async def get_customer(customer_id: str, service: LedgerService = Depends(get_service)):
    return await service.get_customer(customer_id)


@app.get(
    "/customers/{customer_id}/accounts",
    response_model=List[Account],
    summary="List Customer Accounts",
    responses={404: {"description": "Customer not found"}}
)
async def list_customer_accounts(customer_id: str, service: LedgerService = Depends(get_service)):
    return await service.list_customer_accounts(customer_id)

# Accounts
@app.post(
    "/accounts",
    response_model=Account,
    summary="Create Account",
    responses={404: {"description": "Customer not found"}}
)
async def create_account(
    account_request: AccountCreateRequest,
    service: LedgerService = Depends(get_service)
):
    return await service.create_account(account_request.customerId)


@app.get(
    "/accounts/{account_id}",
    response_model=Account,
    summary="Get Account",
    responses={404: {"description": "Account not found"}}
)
async def get_account(account_id: str, service: LedgerService = Depends(get_service)):
    return await service.get_account(account_id)


@app.get(
    "/accounts/{account_id}/balance",
    response_model=BalanceResponse,
    summary="Get Balance",
    responses={404: {"description": "Account not found"}}
)
async def get_balance(account_id: str, service: LedgerService = Depends(get_service)):
    return BalanceResponse(balance=await service.get_balance(account_id))


@app.get(
    "/accounts/{account_id}/transactions",
    response_model=List[Transaction],
    summary="List Account Transactions",
    description="Transactions recorded for an account, in recording order"
)
async def list_transactions(account_id: str, service: LedgerService = Depends(get_service)):
    return await service.list_transactions(account_id)

# Balance mutations
TRANSACTION_RESPONSES = {
    200: {"description": "Transaction applied; returns the updated account"},
    400: {"description": "Bad request - insufficient funds or amount above limit"},
    404: {"description": "Account not found"},
    409: {"description": "Idempotency key reused with a different request"},
    429: {"description": "Rate limit exceeded"},
    500: {"description": "Internal server error"}
}


async def _run_transaction(operation, transaction_request: TransactionRequest, kind: str):
    try:
        logger.info(
            "Transaction request received",
            type=kind,
            account_id=transaction_request.accountId,
            idempotency_key=transaction_request.idempotencyKey
        )

        result = await operation(
            transaction_request.accountId,
            transaction_request.amount,
            transaction_request.idempotencyKey
        )

        logger.info(
            "Transaction request completed successfully",
            type=kind,
            account_id=transaction_request.accountId,
            balance=str(result.balance)
        )

        return result

    except HTTPException as e:
        logger.warning(
            "Transaction request failed with HTTP exception",
            type=kind,
            status_code=e.status_code,
            detail=e.detail,
            account_id=transaction_request.accountId
        )
        raise e

    except Exception as e:
        logger.error(
            "Transaction request failed with unexpected error",
            type=kind,
            error=str(e),
            account_id=transaction_request.accountId,
            exc_info=True
        )
        raise HTTPException(
            status_code=500,
            detail="Internal server error"
        )


@app.post(
    "/transactions/deposit",
    response_model=Account,
    summary="Deposit",
    responses=TRANSACTION_RESPONSES
)
@limiter.limit(mutation_rate_limit)
async def deposit(
    request: Request,
    transaction_request: TransactionRequest,
    service: LedgerService = Depends(get_service)
):
    return await _run_transaction(service.deposit, transaction_request, "deposit")


@app.post(
    "/transactions/withdraw",
    response_model=Account,
    summary="Withdraw",
    responses=TRANSACTION_RESPONSES
)
@limiter.limit(mutation_rate_limit)
async def withdraw(
    request: Request,
    transaction_request: TransactionRequest,
    service: LedgerService = Depends(get_service)
):
    return await _run_transaction(service.withdraw, transaction_request, "withdrawal")

# Loans
@app.post(
    "/loans",
    response_model=Loan,
    summary="Apply for Loan",
    responses={404: {"description": "Customer not found"}}
)
async def apply_for_loan(
    loan_request: LoanApplicationRequest,
    service: LedgerService = Depends(get_service)
):
    return await service.apply_for_loan(loan_request.customerId, loan_request.amount)


@app.get(
    "/loans/{loan_id}",
    response_model=Loan,
    summary="Get Loan",
    responses={404: {"description": "Loan not found"}}
)
async def get_loan(loan_id: str, service: LedgerService = Depends(get_service)):
    return await service.get_loan(loan_id)


@app.post(
    "/loans/{loan_id}/approve",
    response_model=Loan,
    summary="Approve Loan",
    responses={404: {"description": "Loan not found"}, 409: {"description": "Loan is not pending"}}
)
async def approve_loan(loan_id: str, service: LedgerService = Depends(get_service)):
    return await service.decide_loan(loan_id, LoanStatus.approved)


@app.post(
    "/loans/{loan_id}/reject",
    response_model=Loan,
    summary="Reject Loan",
    responses={404: {"description": "Loan not found"}, 409: {"description": "Loan is not pending"}}
)
async def reject_loan(loan_id: str, service: LedgerService = Depends(get_service)):
    return await service.decide_loan(loan_id, LoanStatus.rejected)

# Global exception handler
@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            detail=exc.detail,
            error_code=getattr(exc, "error_code", f"HTTP_{exc.status_code}")
        ).model_dump(mode="json")
    )

@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    logger.error(
        "Unhandled exception",
        error=str(exc),
        url=str(request.url),
        method=request.method,
        exc_info=True
    )

    return JSONResponse(
        status_code=500,
        content=ErrorResponse(
            detail="Internal server error",
            error_code="INTERNAL_ERROR"
        ).model_dump(mode="json")
    )

# Root endpoint
@app.get("/", include_in_schema=False)
async def root():
    return {"message": settings.app_name, "docs": "/docs"}

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_level=settings.log_level.lower()
    )
