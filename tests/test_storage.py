"""
Tests for account store backends and transaction support
"""

import pytest
import threading
from decimal import Decimal

from account_ledger.config import LedgerConfig
from account_ledger.errors import InvalidOperation, PersistenceError
from account_ledger.storage import (
    AccountRecord, InMemoryAccountStore, SQLiteAccountStore, create_store
)


class TestAccountStore:
    """Behaviour shared by every backend (runs once per backend)"""

    def test_create_and_load(self, store):
        created = store.create_account("1001", "hash-a", Decimal("25.50"))
        assert created.version == 0

        loaded = store.load_account("1001")
        assert isinstance(loaded, AccountRecord)
        assert loaded.balance == Decimal("25.50")
        assert isinstance(loaded.balance, Decimal)
        assert loaded.credential_hash == "hash-a"
        assert loaded.version == 0

    def test_missing_account(self, store):
        assert store.load_account("nope") is None
        assert store.get_balance("nope") is None
        assert store.get_credential_hash("nope") is None
        assert not store.exists("nope")

    def test_exists(self, store):
        store.create_account("1001", "hash-a")
        assert store.exists("1001")
        assert store.get_balance("1001") == Decimal("0")

    def test_duplicate_account_rejected(self, store):
        store.create_account("1001", "hash-a")
        with pytest.raises(InvalidOperation):
            store.create_account("1001", "hash-b")
        assert store.get_credential_hash("1001") == "hash-a"

    def test_negative_balance_rejected(self, store):
        with pytest.raises(ValueError):
            store.create_account("1001", "hash-a", Decimal("-1"))
        store.create_account("1002", "hash-a", Decimal("5"))
        with pytest.raises(ValueError):
            store.set_balance("1002", Decimal("-0.01"))
        assert store.get_balance("1002") == Decimal("5")

    def test_set_balance_bumps_version(self, store):
        store.create_account("1001", "hash-a")
        assert store.set_balance("1001", Decimal("10.00")) == 1
        assert store.set_balance("1001", Decimal("12.00")) == 1

        record = store.load_account("1001")
        assert record.balance == Decimal("12.00")
        assert record.version == 2

    def test_set_balance_compare_and_swap(self, store):
        store.create_account("1001", "hash-a", Decimal("100"))

        assert store.set_balance("1001", Decimal("90"), expected_version=0) == 1
        # Stale version: the write must not land
        assert store.set_balance("1001", Decimal("80"), expected_version=0) == 0
        assert store.get_balance("1001") == Decimal("90")

    def test_set_balance_missing_account(self, store):
        assert store.set_balance("nope", Decimal("1")) == 0

    def test_credit_balance(self, store):
        store.create_account("1001", "hash-a", Decimal("1.10"))
        assert store.credit_balance("1001", Decimal("2.20")) == 1

        record = store.load_account("1001")
        assert record.balance == Decimal("3.30")
        assert record.version == 1
        assert store.credit_balance("nope", Decimal("1")) == 0

    def test_credit_balance_requires_positive_amount(self, store):
        store.create_account("1001", "hash-a")
        with pytest.raises(ValueError):
            store.credit_balance("1001", Decimal("0"))

    def test_credential_hash_compare_and_swap(self, store):
        store.create_account("1001", "hash-a", Decimal("7"))

        assert store.set_credential_hash("1001", "hash-b", expected_hash="hash-a") == 1
        assert store.set_credential_hash("1001", "hash-c", expected_hash="hash-a") == 0
        assert store.get_credential_hash("1001") == "hash-b"
        # Credential writes do not touch the balance version
        assert store.load_account("1001").version == 0

    def test_transfer_records(self, store):
        store.save_transfer("t1", {"id": "t1", "state": "initiated", "amount": "5.00"})
        store.save_transfer("t2", {"id": "t2", "state": "completed", "amount": "1.00"})
        store.save_transfer("t1", {"id": "t1", "state": "debited", "amount": "5.00"})

        assert store.load_transfer("t1")["state"] == "debited"
        assert store.load_transfer("missing") is None

        open_ids = [item["id"] for item in store.find_transfers(["initiated", "debited"])]
        assert open_ids == ["t1"]
        assert store.find_transfers([]) == []

    def test_loaded_transfer_is_a_copy(self, store):
        store.save_transfer("t1", {"id": "t1", "state": "initiated"})
        loaded = store.load_transfer("t1")
        loaded["state"] = "completed"
        assert store.load_transfer("t1")["state"] == "initiated"

    def test_atomic_is_reentrant(self, store):
        store.create_account("1001", "hash-a")
        with store.atomic("1001", "1002"):
            with store.atomic("1001"):
                store.set_balance("1001", Decimal("3"))
            store.credit_balance("1001", Decimal("1"))
        assert store.get_balance("1001") == Decimal("4")


class TestInMemoryAccountStore:
    """In-memory specifics"""

    def test_no_transaction_support(self):
        store = InMemoryAccountStore()
        store.create_account("1001", "hash-a", Decimal("10"))
        assert not store.supports_transactions

        with pytest.raises(RuntimeError):
            with store.atomic("1001"):
                store.set_balance("1001", Decimal("5"))
                raise RuntimeError("boom")
        # Writes made before the error stay applied
        assert store.get_balance("1001") == Decimal("5")

    def test_atomic_excludes_other_threads(self):
        store = InMemoryAccountStore()
        store.create_account("1001", "hash-a", Decimal("0"))
        entered = threading.Event()
        release = threading.Event()
        order = []

        def holder():
            with store.atomic("1001"):
                entered.set()
                release.wait(timeout=5)
                order.append("holder")

        def waiter():
            entered.wait(timeout=5)
            with store.atomic("1001"):
                order.append("waiter")

        threads = [threading.Thread(target=holder), threading.Thread(target=waiter)]
        for thread in threads:
            thread.start()
        entered.wait(timeout=5)
        release.set()
        for thread in threads:
            thread.join(timeout=5)

        assert order == ["holder", "waiter"]


class TestSQLiteAccountStore:
    """SQLite specifics"""

    def setup_method(self):
        self.store = SQLiteAccountStore()
        self.store.create_account("1001", "hash-a", Decimal("100.00"))
        self.store.create_account("1002", "hash-b", Decimal("0.00"))

    def teardown_method(self):
        self.store.close()

    def test_transaction_support(self):
        assert self.store.supports_transactions

    def test_atomic_rolls_back_on_error(self):
        with pytest.raises(RuntimeError):
            with self.store.atomic("1001", "1002"):
                self.store.set_balance("1001", Decimal("60.00"))
                self.store.credit_balance("1002", Decimal("40.00"))
                raise RuntimeError("crash between writes")

        assert self.store.get_balance("1001") == Decimal("100.00")
        assert self.store.get_balance("1002") == Decimal("0.00")
        assert self.store.load_account("1001").version == 0

    def test_nested_atomic_rolls_back_with_outer(self):
        with pytest.raises(RuntimeError):
            with self.store.atomic("1001"):
                with self.store.atomic("1001"):
                    self.store.set_balance("1001", Decimal("1.00"))
                raise RuntimeError("outer failure")
        assert self.store.get_balance("1001") == Decimal("100.00")

    def test_atomic_commits(self):
        with self.store.atomic("1001", "1002"):
            self.store.set_balance("1001", Decimal("60.00"), expected_version=0)
            self.store.credit_balance("1002", Decimal("40.00"))

        assert self.store.get_balance("1001") == Decimal("60.00")
        assert self.store.get_balance("1002") == Decimal("40.00")

    def test_decimal_precision_preserved(self):
        self.store.set_balance("1002", Decimal("0.10"))
        self.store.credit_balance("1002", Decimal("0.20"))
        assert self.store.get_balance("1002") == Decimal("0.30")

    def test_closed_store_raises_persistence_error(self):
        store = SQLiteAccountStore()
        store.close()
        with pytest.raises(PersistenceError):
            store.load_account("1001")


def test_sqlite_persists_across_connections(tmp_path):
    path = tmp_path / "ledger.db"
    store = SQLiteAccountStore(path)
    store.create_account("1001", "hash-a", Decimal("12.34"))
    store.close()

    reopened = SQLiteAccountStore(path)
    try:
        assert reopened.get_balance("1001") == Decimal("12.34")
    finally:
        reopened.close()


def test_unusable_database_path_raises_persistence_error(tmp_path):
    with pytest.raises(PersistenceError):
        SQLiteAccountStore(tmp_path / "missing-dir" / "ledger.db")


def test_create_store(tmp_path):
    memory = create_store(LedgerConfig(store_backend="memory"))
    assert isinstance(memory, InMemoryAccountStore)

    sqlite = create_store(LedgerConfig(store_backend="sqlite",
                                       database_path=str(tmp_path / "x.db")))
    assert isinstance(sqlite, SQLiteAccountStore)
    sqlite.close()

    with pytest.raises(InvalidOperation):
        create_store(LedgerConfig(store_backend="postgres"))
