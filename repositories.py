from abc import ABC, abstractmethod
from typing import Dict, List, Optional
import asyncio
from collections import defaultdict

from config import get_settings
from models import Account, Customer, IdempotencyRecord, Loan, Transaction
from storage import KeyValueStore, Slot, open_store


class CustomerRepository(ABC):
    @abstractmethod
    async def get(self, customer_id: str) -> Optional[Customer]:
        """Get customer. Returns None if customer doesn't exist."""
        pass

    @abstractmethod
    async def insert(self, customer: Customer) -> None:
        pass

    @abstractmethod
    async def count(self) -> int:
        pass


class AccountRepository(ABC):
    @abstractmethod
    async def get(self, account_id: str) -> Optional[Account]:
        """Get account. Returns None if account doesn't exist."""
        pass

    @abstractmethod
    async def insert(self, account: Account) -> None:
        """Insert a new account or replace the stored one."""
        pass

    @abstractmethod
    async def scan_by_customer(self, customer_id: str) -> List[Account]:
        """Get all accounts owned by a customer."""
        pass

    @abstractmethod
    async def count(self) -> int:
        pass

    @abstractmethod
    def get_lock(self, account_id: str) -> asyncio.Lock:
        """Get lock serializing balance updates for an existing account."""
        pass


class TransactionRepository(ABC):
    @abstractmethod
    async def append(self, transaction: Transaction) -> None:
        pass

    @abstractmethod
    async def remove(self, transaction_id: str) -> None:
        """Remove a transaction whose balance update could not be written."""
        pass

    @abstractmethod
    async def scan_by_account(self, account_id: str) -> List[Transaction]:
        """Get an account's transactions in recording order."""
        pass

    @abstractmethod
    async def count(self) -> int:
        pass


class LoanRepository(ABC):
    @abstractmethod
    async def get(self, loan_id: str) -> Optional[Loan]:
        pass

    @abstractmethod
    async def insert(self, loan: Loan) -> None:
        pass

    @abstractmethod
    async def count(self) -> int:
        pass


class IdempotencyRepository(ABC):
    @abstractmethod
    async def get(self, idempotency_key: str) -> Optional[IdempotencyRecord]:
        """Get stored result by idempotency key."""
        pass

    @abstractmethod
    async def save(self, record: IdempotencyRecord) -> None:
        pass

    @abstractmethod
    def get_lock(self) -> asyncio.Lock:
        """Get lock serializing requests that carry an idempotency key."""
        pass


class KeyValueCustomerRepository(CustomerRepository):
    def __init__(self, store: KeyValueStore):
        self.store = store

    async def get(self, customer_id: str) -> Optional[Customer]:
        data = self.store.get(customer_id)
        return Customer.model_validate(data) if data is not None else None

    async def insert(self, customer: Customer) -> None:
        self.store.insert(customer.id, customer.model_dump())

    async def count(self) -> int:
        return len(self.store)


class KeyValueAccountRepository(AccountRepository):
    def __init__(self, store: KeyValueStore):
        self.store = store
        self.locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def get(self, account_id: str) -> Optional[Account]:
        data = self.store.get(account_id)
        return Account.model_validate(data) if data is not None else None

    async def insert(self, account: Account) -> None:
        self.store.insert(account.accountId, account.model_dump())

    async def scan_by_customer(self, customer_id: str) -> List[Account]:
        return [
            Account.model_validate(data)
            for data in self.store.values()
            if data["customerId"] == customer_id
        ]

    async def count(self) -> int:
        return len(self.store)

    def get_lock(self, account_id: str) -> asyncio.Lock:
        return self.locks[account_id]


class KeyValueTransactionRepository(TransactionRepository):
    def __init__(self, store: KeyValueStore):
        self.store = store

    async def append(self, transaction: Transaction) -> None:
        self.store.insert(transaction.id, transaction.model_dump())

    async def remove(self, transaction_id: str) -> None:
        self.store.delete(transaction_id)

    async def scan_by_account(self, account_id: str) -> List[Transaction]:
        # Linear scan; the store keeps insertion order
        return [
            Transaction.model_validate(data)
            for data in self.store.values()
            if data["accountId"] == account_id
        ]

    async def count(self) -> int:
        return len(self.store)


class KeyValueLoanRepository(LoanRepository):
    def __init__(self, store: KeyValueStore):
        self.store = store

    async def get(self, loan_id: str) -> Optional[Loan]:
        data = self.store.get(loan_id)
        return Loan.model_validate(data) if data is not None else None

    async def insert(self, loan: Loan) -> None:
        self.store.insert(loan.id, loan.model_dump())

    async def count(self) -> int:
        return len(self.store)


class KeyValueIdempotencyRepository(IdempotencyRepository):
    def __init__(self, store: KeyValueStore):
        self.store = store
        self.lock = asyncio.Lock()

    async def get(self, idempotency_key: str) -> Optional[IdempotencyRecord]:
        data = self.store.get(idempotency_key)
        return IdempotencyRecord.model_validate(data) if data is not None else None

    async def save(self, record: IdempotencyRecord) -> None:
        self.store.insert(record.key, record.model_dump())

    def get_lock(self) -> asyncio.Lock:
        return self.lock


class Repositories:
    """The five collections of one ledger, opened from the same storage location."""

    def __init__(self, storage_dir: Optional[str] = None):
        self.customers = KeyValueCustomerRepository(open_store(Slot.CUSTOMERS, storage_dir))
        self.accounts = KeyValueAccountRepository(open_store(Slot.ACCOUNTS, storage_dir))
        self.transactions = KeyValueTransactionRepository(open_store(Slot.TRANSACTIONS, storage_dir))
        self.loans = KeyValueLoanRepository(open_store(Slot.LOANS, storage_dir))
        self.idempotency = KeyValueIdempotencyRepository(open_store(Slot.IDEMPOTENCY, storage_dir))


_repositories = Repositories(get_settings().storage_dir)


def get_customer_repository() -> CustomerRepository:
    return _repositories.customers


def get_account_repository() -> AccountRepository:
    return _repositories.accounts


def get_transaction_repository() -> TransactionRepository:
    return _repositories.transactions


def get_loan_repository() -> LoanRepository:
    return _repositories.loans


def get_idempotency_repository() -> IdempotencyRepository:
    return _repositories.idempotency


# Para testes
def reset_repositories(storage_dir: Optional[str] = None) -> None:
    """Replace all repositories with fresh ones (for testing only)."""
    global _repositories
    _repositories = Repositories(storage_dir)
