import uuid
from datetime import datetime
from zoneinfo import ZoneInfo
from decimal import Decimal
from typing import List, Optional
import structlog

from config import Settings
from errors import (
    AccountNotFoundError,
    CustomerNotFoundError,
    IdempotencyConflictError,
    InsufficientFundsError,
    LoanNotFoundError,
    LoanNotPendingError,
    TransactionLimitError,
)
from models import (
    Account,
    Customer,
    IdempotencyRecord,
    Loan,
    LoanStatus,
    Transaction,
    TransactionType,
)
from repositories import (
    AccountRepository,
    CustomerRepository,
    IdempotencyRepository,
    LoanRepository,
    TransactionRepository,
)

logger = structlog.get_logger()


class LedgerService:
    def __init__(
        self,
        customer_repo: CustomerRepository,
        account_repo: AccountRepository,
        transaction_repo: TransactionRepository,
        loan_repo: LoanRepository,
        idempotency_repo: IdempotencyRepository,
        settings: Settings,
    ):
        self.customer_repo = customer_repo
        self.account_repo = account_repo
        self.transaction_repo = transaction_repo
        self.loan_repo = loan_repo
        self.idempotency_repo = idempotency_repo
        self.settings = settings

    # Customers

    async def create_customer(self, name: str) -> Customer:
        customer = Customer(id=str(uuid.uuid4()), name=name, balance=Decimal("0"))
        await self.customer_repo.insert(customer)
        logger.info("Customer created", customer_id=customer.id)
        return customer

    async def get_customer(self, customer_id: str) -> Customer:
        """Get a customer with its balance aggregated over its accounts."""
        customer = await self._require_customer(customer_id)
        accounts = await self.account_repo.scan_by_customer(customer_id)
        customer.balance = sum((account.balance for account in accounts), Decimal("0"))
        return customer

    async def list_customer_accounts(self, customer_id: str) -> List[Account]:
        await self._require_customer(customer_id)
        return await self.account_repo.scan_by_customer(customer_id)

    # Accounts

    async def create_account(self, customer_id: str) -> Account:
        if self.settings.enforce_references:
            await self._require_customer(customer_id)

        account = Account(accountId=str(uuid.uuid4()), customerId=customer_id, balance=Decimal("0"))
        await self.account_repo.insert(account)
        logger.info("Account created", account_id=account.accountId, customer_id=customer_id)
        return account

    async def get_account(self, account_id: str) -> Account:
        account = await self.account_repo.get(account_id)
        if account is None:
            raise AccountNotFoundError()
        return account

    async def get_balance(self, account_id: str) -> Decimal:
        account = await self.get_account(account_id)
        return account.balance

    async def list_transactions(self, account_id: str) -> List[Transaction]:
        return await self.transaction_repo.scan_by_account(account_id)

    # Balance mutations

    async def deposit(
        self, account_id: str, amount: Decimal, idempotency_key: Optional[str] = None
    ) -> Account:
        return await self._apply(TransactionType.deposit, account_id, amount, idempotency_key)

    async def withdraw(
        self, account_id: str, amount: Decimal, idempotency_key: Optional[str] = None
    ) -> Account:
        return await self._apply(TransactionType.withdrawal, account_id, amount, idempotency_key)

    async def _apply(
        self,
        transaction_type: TransactionType,
        account_id: str,
        amount: Decimal,
        idempotency_key: Optional[str],
    ) -> Account:
        """Apply a deposit or withdrawal and record it as one unit."""

        logger.info(
            "Processing transaction",
            account_id=account_id,
            amount=str(amount),
            type=transaction_type.value,
            idempotency_key=idempotency_key
        )

        if amount > Decimal(str(self.settings.max_transaction_amount)):
            logger.warning(
                "Transaction amount above limit",
                account_id=account_id,
                amount=str(amount),
                limit=str(self.settings.max_transaction_amount)
            )
            raise TransactionLimitError()

        if idempotency_key is None:
            return await self._apply_to_account(transaction_type, account_id, amount)

        # Keyed requests are serialized so a key is checked and recorded as one step
        async with self.idempotency_repo.get_lock():
            replayed = await self._replay(idempotency_key, transaction_type, account_id, amount)
            if replayed is not None:
                return replayed

            updated = await self._apply_to_account(transaction_type, account_id, amount)
            await self.idempotency_repo.save(IdempotencyRecord(
                key=idempotency_key,
                operation=transaction_type,
                accountId=account_id,
                amount=amount,
                response=updated
            ))
            return updated

    async def _apply_to_account(
        self, transaction_type: TransactionType, account_id: str, amount: Decimal
    ) -> Account:
        if await self.account_repo.get(account_id) is None:
            logger.warning(
                "Account not found",
                account_id=account_id,
                type=transaction_type.value
            )
            raise AccountNotFoundError()

        async with self.account_repo.get_lock(account_id):
            account = await self.account_repo.get(account_id)

            if transaction_type == TransactionType.withdrawal:
                new_balance = self._debit(account, amount)
            else:
                new_balance = account.balance + amount

            transaction = Transaction(
                id=str(uuid.uuid4()),
                accountId=account_id,
                amount=amount,
                type=transaction_type,
                timestamp=datetime.now(ZoneInfo(self.settings.timezone))
            )
            updated = account.model_copy(update={"balance": new_balance})

            await self.transaction_repo.append(transaction)
            try:
                await self.account_repo.insert(updated)
            except Exception:
                # Balance was not written; drop the transaction recorded for it
                await self.transaction_repo.remove(transaction.id)
                logger.error(
                    "Balance update failed, transaction discarded",
                    transaction_id=transaction.id,
                    account_id=account_id,
                    exc_info=True
                )
                raise

            logger.info(
                "Transaction processed successfully",
                transaction_id=transaction.id,
                account_id=account_id,
                type=transaction_type.value,
                old_balance=str(account.balance),
                new_balance=str(new_balance)
            )

            return updated

    def _debit(self, account: Account, amount: Decimal) -> Decimal:
        if account.balance < amount:
            logger.warning(
                "Insufficient funds for withdrawal",
                account_id=account.accountId,
                current_balance=str(account.balance),
                requested_amount=str(amount)
            )
            raise InsufficientFundsError()
        return account.balance - amount

    async def _replay(
        self,
        idempotency_key: str,
        transaction_type: TransactionType,
        account_id: str,
        amount: Decimal,
    ) -> Optional[Account]:
        record = await self.idempotency_repo.get(idempotency_key)
        if record is None:
            return None

        if (record.operation, record.accountId, record.amount) != (transaction_type, account_id, amount):
            logger.warning(
                "Idempotency key reused with different request",
                idempotency_key=idempotency_key,
                account_id=account_id
            )
            raise IdempotencyConflictError()

        logger.info(
            "Returning existing result due to idempotency",
            idempotency_key=idempotency_key,
            account_id=account_id
        )
        return record.response

    # Loans

    async def apply_for_loan(self, customer_id: str, amount: Decimal) -> Loan:
        if self.settings.enforce_references:
            await self._require_customer(customer_id)

        loan = Loan(id=str(uuid.uuid4()), customerId=customer_id, amount=amount, status=LoanStatus.pending)
        await self.loan_repo.insert(loan)
        logger.info("Loan application received", loan_id=loan.id, customer_id=customer_id, amount=str(amount))
        return loan

    async def get_loan(self, loan_id: str) -> Loan:
        loan = await self.loan_repo.get(loan_id)
        if loan is None:
            raise LoanNotFoundError()
        return loan

    async def decide_loan(self, loan_id: str, status: LoanStatus) -> Loan:
        """Move a pending loan to approved or rejected."""
        loan = await self.get_loan(loan_id)
        if loan.status != LoanStatus.pending:
            logger.warning("Loan decision on settled loan", loan_id=loan_id, status=loan.status.value)
            raise LoanNotPendingError()

        decided = loan.model_copy(update={"status": status})
        await self.loan_repo.insert(decided)
        logger.info("Loan decided", loan_id=loan_id, status=status.value)
        return decided

    async def _require_customer(self, customer_id: str) -> Customer:
        customer = await self.customer_repo.get(customer_id)
        if customer is None:
            logger.warning("Customer not found", customer_id=customer_id)
            raise CustomerNotFoundError()
        return customer


# Factory function for dependency injection
def get_ledger_service(
    customer_repo: CustomerRepository,
    account_repo: AccountRepository,
    transaction_repo: TransactionRepository,
    loan_repo: LoanRepository,
    idempotency_repo: IdempotencyRepository,
    settings: Settings,
) -> LedgerService:
    return LedgerService(customer_repo, account_repo, transaction_repo, loan_repo, idempotency_repo, settings)
