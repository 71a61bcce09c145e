import json
import os
import pytest
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path
from unittest.mock import patch

from models import Account, Customer, IdempotencyRecord, Loan, LoanStatus, Transaction, TransactionType
from config import TestingSettings
from repositories import Repositories
from services import LedgerService
from storage import InMemoryStore, JsonFileStore, Slot, open_store


class TestInMemoryStore:
    """Test the ordered key-value store."""

    def test_get_insert_values(self):
        store = InMemoryStore()
        store.insert("b", {"n": 1})
        store.insert("a", {"n": 2})

        assert store.get("b") == {"n": 1}
        assert store.get("missing") is None
        assert store.values() == [{"n": 1}, {"n": 2}]
        assert len(store) == 2

    def test_replace_keeps_position(self):
        store = InMemoryStore()
        store.insert("a", {"n": 1})
        store.insert("b", {"n": 2})
        store.insert("a", {"n": 3})

        assert store.values() == [{"n": 3}, {"n": 2}]

    def test_returned_records_are_copies(self):
        store = InMemoryStore()
        store.insert("a", {"n": 1})

        store.get("a")["n"] = 99

        assert store.get("a") == {"n": 1}

    def test_delete(self):
        store = InMemoryStore()
        store.insert("a", {"n": 1})

        assert store.delete("a") is True
        assert store.delete("a") is False
        assert len(store) == 0


class TestJsonFileStore:
    """Test the file-backed store."""

    def test_records_survive_reopen(self, tmp_path):
        path = tmp_path / "collection_0.json"
        store = JsonFileStore(path)
        store.insert("a", {"amount": Decimal("10.50"), "at": datetime(2024, 1, 2, tzinfo=timezone.utc)})
        store.insert("b", {"type": TransactionType.deposit})

        reopened = JsonFileStore(path)

        assert reopened.get("a") == {"amount": "10.50", "at": "2024-01-02T00:00:00+00:00"}
        assert reopened.get("b") == {"type": "deposit"}
        assert [r for r in reopened.values()] == [reopened.get("a"), reopened.get("b")]

    def test_delete_is_persisted(self, tmp_path):
        path = tmp_path / "collection_0.json"
        store = JsonFileStore(path)
        store.insert("a", {"n": 1})
        store.delete("a")

        assert json.loads(path.read_text()) == {}
        assert len(JsonFileStore(path)) == 0

    def test_open_store(self, tmp_path):
        assert isinstance(open_store(Slot.CUSTOMERS), InMemoryStore)

        store = open_store(Slot.LOANS, str(tmp_path))

        assert isinstance(store, JsonFileStore)
        assert store.path == tmp_path / "collection_3.json"


class TestRepositories:
    """Test repositories over file-backed stores."""

    @pytest.mark.asyncio
    async def test_records_survive_restart(self, tmp_path):
        repos = Repositories(str(tmp_path))
        customer = Customer(id="cust_1", name="Alice")
        account = Account(accountId="acc_1", customerId="cust_1", balance=Decimal("60.00"))
        transaction = Transaction(
            id="txn_1",
            accountId="acc_1",
            amount=Decimal("40.00"),
            type=TransactionType.withdrawal,
            timestamp=datetime(2024, 5, 1, 12, 30, tzinfo=timezone.utc)
        )
        loan = Loan(id="loan_1", customerId="cust_1", amount=Decimal("1000"))
        await repos.customers.insert(customer)
        await repos.accounts.insert(account)
        await repos.transactions.append(transaction)
        await repos.loans.insert(loan)
        await repos.idempotency.save(IdempotencyRecord(
            key="key_1",
            operation=TransactionType.withdrawal,
            accountId="acc_1",
            amount=Decimal("40.00"),
            response=account
        ))

        restarted = Repositories(str(tmp_path))

        assert await restarted.customers.get("cust_1") == customer
        assert await restarted.accounts.get("acc_1") == account
        assert await restarted.transactions.scan_by_account("acc_1") == [transaction]
        assert (await restarted.loans.get("loan_1")).status == LoanStatus.pending
        assert (await restarted.idempotency.get("key_1")).response == account

    @pytest.mark.asyncio
    async def test_collections_are_independent(self):
        repos = Repositories()
        await repos.customers.insert(Customer(id="same", name="Alice"))
        await repos.accounts.insert(Account(accountId="same", customerId="same"))

        assert await repos.customers.count() == 1
        assert await repos.accounts.count() == 1
        assert (await repos.customers.get("same")).name == "Alice"
        assert await repos.loans.get("same") is None

    @pytest.mark.asyncio
    async def test_scans_filter_by_owner(self):
        repos = Repositories()
        await repos.accounts.insert(Account(accountId="a1", customerId="c1"))
        await repos.accounts.insert(Account(accountId="a2", customerId="c2"))
        await repos.accounts.insert(Account(accountId="a3", customerId="c1"))

        accounts = await repos.accounts.scan_by_customer("c1")

        assert [a.accountId for a in accounts] == ["a1", "a3"]

    def test_lock_is_per_account(self):
        repos = Repositories()

        assert repos.accounts.get_lock("a1") is repos.accounts.get_lock("a1")
        assert repos.accounts.get_lock("a1") is not repos.accounts.get_lock("a2")


class TestFailedWrites:
    """Test that a failed file write leaves memory and disk in agreement."""

    def test_failed_insert_keeps_previous_record(self, tmp_path):
        path = tmp_path / "collection_1.json"
        store = JsonFileStore(path)
        store.insert("a", {"balance": Decimal("20")})

        with patch("storage.os.replace", side_effect=OSError("disk full")):
            with pytest.raises(OSError):
                store.insert("a", {"balance": Decimal("25")})
            with pytest.raises(OSError):
                store.insert("b", {"balance": Decimal("1")})

        assert store.get("a") == {"balance": Decimal("20")}
        assert store.get("b") is None
        assert JsonFileStore(path).get("a") == {"balance": "20"}

    def test_failed_delete_keeps_record(self, tmp_path):
        store = JsonFileStore(tmp_path / "collection_2.json")
        store.insert("a", {"n": 1})

        with patch("storage.os.replace", side_effect=OSError("disk full")):
            with pytest.raises(OSError):
                store.delete("a")

        assert store.get("a") == {"n": 1}

    @pytest.mark.asyncio
    async def test_failed_balance_write_leaves_balance_and_history(self, tmp_path):
        repos = Repositories(str(tmp_path))
        service = LedgerService(
            repos.customers, repos.accounts, repos.transactions, repos.loans, repos.idempotency,
            TestingSettings()
        )
        await repos.accounts.insert(Account(accountId="acc_1", customerId="cust_1"))
        await service.deposit("acc_1", Decimal("20"))

        real_replace = os.replace

        def replace_failing_for_accounts(src, dst):
            if Path(dst).name == "collection_1.json":
                raise OSError("disk full")
            return real_replace(src, dst)

        with patch("storage.os.replace", side_effect=replace_failing_for_accounts):
            with pytest.raises(OSError):
                await service.deposit("acc_1", Decimal("5"))

        assert (await repos.accounts.get("acc_1")).balance == Decimal("20")
        assert len(await repos.transactions.scan_by_account("acc_1")) == 1

        restarted = Repositories(str(tmp_path))
        assert (await restarted.accounts.get("acc_1")).balance == Decimal("20")
        assert len(await restarted.transactions.scan_by_account("acc_1")) == 1
