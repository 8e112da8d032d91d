"""
Storage Backend Module

Provides the abstract account store interface and implementations for
in-memory (testing) and SQLite (persistence). All monetary values are stored
as Decimal strings.

Every balance write bumps the account's version so that stale writes can be
rejected with a compare-and-swap; ``atomic()`` gives exclusive access to a set
of accounts, acquired in ascending id order.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, Iterator, List, Optional, Union
from decimal import Decimal
from datetime import datetime, timezone
import sqlite3
import json
import threading
from dataclasses import dataclass, asdict
from pathlib import Path
from contextlib import contextmanager

from .config import LedgerConfig, get_config
from .errors import InvalidOperation, PersistenceError, RollbackError


@dataclass
class AccountRecord:
    """Stored state of one account"""
    id: str
    balance: Decimal
    credential_hash: str
    version: int
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage"""
        result = asdict(self)
        result['balance'] = str(self.balance)
        result['created_at'] = self.created_at.isoformat()
        result['updated_at'] = self.updated_at.isoformat()
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AccountRecord':
        """Create instance from dictionary"""
        return cls(
            id=data['id'],
            balance=Decimal(data['balance']),
            credential_hash=data['credential_hash'],
            version=int(data['version']),
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at'])
        )


class AccountStore(ABC):
    """Abstract interface for account storage backends"""

    # True when atomic() rolls back every write made inside it on error
    supports_transactions = False

    @abstractmethod
    def create_account(self, account_id: str, credential_hash: str,
                       balance: Decimal = Decimal("0")) -> AccountRecord:
        """Provision a new account"""
        pass

    @abstractmethod
    def load_account(self, account_id: str) -> Optional[AccountRecord]:
        """Load the full account record"""
        pass

    @abstractmethod
    def exists(self, account_id: str) -> bool:
        """Check if an account exists"""
        pass

    @abstractmethod
    def set_balance(self, account_id: str, new_balance: Decimal,
                    expected_version: Optional[int] = None) -> int:
        """
        Overwrite the balance, returning rows affected.

        When expected_version is given the write only lands if the stored
        version still matches it.
        """
        pass

    @abstractmethod
    def credit_balance(self, account_id: str, amount: Decimal) -> int:
        """Atomically add a positive amount to the balance, returning rows affected"""
        pass

    @abstractmethod
    def set_credential_hash(self, account_id: str, new_hash: str,
                            expected_hash: Optional[str] = None) -> int:
        """Replace the credential hash, returning rows affected"""
        pass

    @abstractmethod
    def save_transfer(self, transfer_id: str, data: Dict[str, Any]) -> None:
        """Save a transfer journal record"""
        pass

    @abstractmethod
    def load_transfer(self, transfer_id: str) -> Optional[Dict[str, Any]]:
        """Load a transfer journal record"""
        pass

    @abstractmethod
    def find_transfers(self, states: Iterable[str]) -> List[Dict[str, Any]]:
        """Find transfer journal records in any of the given states"""
        pass

    @abstractmethod
    def atomic(self, *account_ids: str):
        """Context manager giving exclusive access to the given accounts"""
        pass

    @abstractmethod
    def close(self) -> None:
        """Close storage connection"""
        pass

    def get_balance(self, account_id: str) -> Optional[Decimal]:
        """Current balance, or None if the account does not exist"""
        record = self.load_account(account_id)
        return record.balance if record else None

    def get_credential_hash(self, account_id: str) -> Optional[str]:
        """Stored credential hash, or None if the account does not exist"""
        record = self.load_account(account_id)
        return record.credential_hash if record else None

    @staticmethod
    def _check_balance(balance: Decimal) -> None:
        if balance < Decimal("0"):
            raise ValueError(f"Balance cannot be negative: {balance}")


class InMemoryAccountStore(AccountStore):
    """In-memory storage implementation for testing"""

    def __init__(self):
        self._accounts: Dict[str, Dict[str, Any]] = {}
        self._transfers: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.RLock()
        self._account_locks: Dict[str, threading.RLock] = {}

    def create_account(self, account_id: str, credential_hash: str,
                       balance: Decimal = Decimal("0")) -> AccountRecord:
        """Provision a new account in memory"""
        self._check_balance(balance)
        now = datetime.now(timezone.utc)
        record = AccountRecord(
            id=account_id,
            balance=balance,
            credential_hash=credential_hash,
            version=0,
            created_at=now,
            updated_at=now
        )
        with self._lock:
            if account_id in self._accounts:
                raise InvalidOperation(f"Account {account_id} already exists")
            self._accounts[account_id] = record.to_dict()
        return record

    def load_account(self, account_id: str) -> Optional[AccountRecord]:
        """Load an account from memory"""
        with self._lock:
            data = self._accounts.get(account_id)
            if data:
                return AccountRecord.from_dict(data)
            return None

    def exists(self, account_id: str) -> bool:
        """Check if an account exists"""
        with self._lock:
            return account_id in self._accounts

    def set_balance(self, account_id: str, new_balance: Decimal,
                    expected_version: Optional[int] = None) -> int:
        """Compare-and-swap the balance in memory"""
        self._check_balance(new_balance)
        with self._lock:
            data = self._accounts.get(account_id)
            if not data:
                return 0
            if expected_version is not None and data['version'] != expected_version:
                return 0
            data['balance'] = str(new_balance)
            self._touch(data)
            return 1

    def credit_balance(self, account_id: str, amount: Decimal) -> int:
        """Add to the balance in memory"""
        if amount <= Decimal("0"):
            raise ValueError(f"Credit amount must be positive: {amount}")
        with self._lock:
            data = self._accounts.get(account_id)
            if not data:
                return 0
            data['balance'] = str(Decimal(data['balance']) + amount)
            self._touch(data)
            return 1

    def set_credential_hash(self, account_id: str, new_hash: str,
                            expected_hash: Optional[str] = None) -> int:
        """Replace the credential hash in memory"""
        with self._lock:
            data = self._accounts.get(account_id)
            if not data:
                return 0
            if expected_hash is not None and data['credential_hash'] != expected_hash:
                return 0
            data['credential_hash'] = new_hash
            data['updated_at'] = datetime.now(timezone.utc).isoformat()
            return 1

    def save_transfer(self, transfer_id: str, data: Dict[str, Any]) -> None:
        """Save a transfer record to memory"""
        with self._lock:
            # Deep copy to prevent external mutation
            self._transfers[transfer_id] = json.loads(json.dumps(data, default=str))

    def load_transfer(self, transfer_id: str) -> Optional[Dict[str, Any]]:
        """Load a transfer record from memory"""
        with self._lock:
            record = self._transfers.get(transfer_id)
            if record:
                return json.loads(json.dumps(record))
            return None

    def find_transfers(self, states: Iterable[str]) -> List[Dict[str, Any]]:
        """Find transfer records by state"""
        wanted = set(states)
        with self._lock:
            return [
                json.loads(json.dumps(record))
                for record in self._transfers.values()
                if record.get('state') in wanted
            ]

    @contextmanager
    def atomic(self, *account_ids: str) -> Iterator[None]:
        """Hold the per-account locks, taken in ascending id order"""
        locks = [self._account_lock(account_id) for account_id in sorted(set(account_ids))]
        acquired = []
        try:
            for lock in locks:
                lock.acquire()
                acquired.append(lock)
            yield
        finally:
            for lock in reversed(acquired):
                lock.release()

    def close(self) -> None:
        """Close storage (no-op for in-memory)"""
        pass

    def _account_lock(self, account_id: str) -> threading.RLock:
        with self._lock:
            if account_id not in self._account_locks:
                self._account_locks[account_id] = threading.RLock()
            return self._account_locks[account_id]

    @staticmethod
    def _touch(data: Dict[str, Any]) -> None:
        data['version'] += 1
        data['updated_at'] = datetime.now(timezone.utc).isoformat()


class SQLiteAccountStore(AccountStore):
    """SQLite storage implementation for persistence"""

    supports_transactions = True

    def __init__(self, db_path: Union[str, Path] = ":memory:", timeout: float = 5.0):
        self.db_path = str(db_path)
        self._lock = threading.RLock()
        self._depth = 0

        with self._lock, self._translate_errors():
            # Autocommit mode; transactions are opened explicitly with BEGIN IMMEDIATE
            self._connection = sqlite3.connect(
                self.db_path, check_same_thread=False, isolation_level=None, timeout=timeout
            )
            self._connection.row_factory = sqlite3.Row
            # Enable WAL mode for better concurrent access
            if self.db_path != ":memory:":
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = NORMAL")
            self._create_schema()

    def _create_schema(self) -> None:
        """Ensure tables exist with proper schema"""
        self._connection.execute("""
            CREATE TABLE IF NOT EXISTS accounts (
                id TEXT PRIMARY KEY,
                balance TEXT NOT NULL,
                credential_hash TEXT NOT NULL,
                version INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)
        self._connection.execute("""
            CREATE TABLE IF NOT EXISTS transfers (
                id TEXT PRIMARY KEY,
                state TEXT NOT NULL,
                data TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)
        self._connection.execute("""
            CREATE INDEX IF NOT EXISTS idx_transfers_state
            ON transfers(state)
        """)

    @contextmanager
    def _translate_errors(self) -> Iterator[None]:
        try:
            yield
        except sqlite3.OperationalError as e:
            if "locked" in str(e) or "busy" in str(e):
                raise PersistenceError(f"Timed out waiting for the database: {e}") from e
            raise PersistenceError(f"Database error: {e}") from e
        except sqlite3.Error as e:
            raise PersistenceError(f"Database error: {e}") from e

    def create_account(self, account_id: str, credential_hash: str,
                       balance: Decimal = Decimal("0")) -> AccountRecord:
        """Provision a new account row"""
        self._check_balance(balance)
        now = datetime.now(timezone.utc)
        record = AccountRecord(
            id=account_id,
            balance=balance,
            credential_hash=credential_hash,
            version=0,
            created_at=now,
            updated_at=now
        )
        with self._lock:
            try:
                self._execute("""
                    INSERT INTO accounts (id, balance, credential_hash, version, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                """, (record.id, str(record.balance), record.credential_hash, record.version,
                      record.created_at.isoformat(), record.updated_at.isoformat()))
            except PersistenceError as e:
                if isinstance(e.__cause__, sqlite3.IntegrityError):
                    raise InvalidOperation(f"Account {account_id} already exists") from e
                raise
        return record

    def load_account(self, account_id: str) -> Optional[AccountRecord]:
        """Load an account row"""
        with self._lock:
            row = self._execute("""
                SELECT * FROM accounts WHERE id = ?
            """, (account_id,)).fetchone()
            if row:
                return AccountRecord.from_dict(dict(row))
            return None

    def exists(self, account_id: str) -> bool:
        """Check if an account exists"""
        with self._lock:
            row = self._execute("""
                SELECT 1 FROM accounts WHERE id = ? LIMIT 1
            """, (account_id,)).fetchone()
            return row is not None

    def set_balance(self, account_id: str, new_balance: Decimal,
                    expected_version: Optional[int] = None) -> int:
        """Compare-and-swap the balance column"""
        self._check_balance(new_balance)
        now = datetime.now(timezone.utc).isoformat()
        with self._lock:
            if expected_version is None:
                cursor = self._execute("""
                    UPDATE accounts SET balance = ?, version = version + 1, updated_at = ?
                    WHERE id = ?
                """, (str(new_balance), now, account_id))
            else:
                cursor = self._execute("""
                    UPDATE accounts SET balance = ?, version = version + 1, updated_at = ?
                    WHERE id = ? AND version = ?
                """, (str(new_balance), now, account_id, expected_version))
            return cursor.rowcount

    def credit_balance(self, account_id: str, amount: Decimal) -> int:
        """Read-modify-write the balance inside an immediate transaction"""
        if amount <= Decimal("0"):
            raise ValueError(f"Credit amount must be positive: {amount}")
        with self.atomic(account_id):
            record = self.load_account(account_id)
            if not record:
                return 0
            return self.set_balance(account_id, record.balance + amount, record.version)

    def set_credential_hash(self, account_id: str, new_hash: str,
                            expected_hash: Optional[str] = None) -> int:
        """Replace the credential hash column"""
        now = datetime.now(timezone.utc).isoformat()
        with self._lock:
            if expected_hash is None:
                cursor = self._execute("""
                    UPDATE accounts SET credential_hash = ?, updated_at = ?
                    WHERE id = ?
                """, (new_hash, now, account_id))
            else:
                cursor = self._execute("""
                    UPDATE accounts SET credential_hash = ?, updated_at = ?
                    WHERE id = ? AND credential_hash = ?
                """, (new_hash, now, account_id, expected_hash))
            return cursor.rowcount

    def save_transfer(self, transfer_id: str, data: Dict[str, Any]) -> None:
        """Upsert a transfer journal row"""
        now = datetime.now(timezone.utc).isoformat()
        data_json = json.dumps(data, default=str)
        with self._lock:
            self._execute("""
                INSERT INTO transfers (id, state, data, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    state = excluded.state,
                    data = excluded.data,
                    updated_at = excluded.updated_at
            """, (transfer_id, data.get('state', ''), data_json, now, now))

    def load_transfer(self, transfer_id: str) -> Optional[Dict[str, Any]]:
        """Load a transfer journal row"""
        with self._lock:
            row = self._execute("""
                SELECT data FROM transfers WHERE id = ?
            """, (transfer_id,)).fetchone()
            if row:
                return json.loads(row['data'])
            return None

    def find_transfers(self, states: Iterable[str]) -> List[Dict[str, Any]]:
        """Find transfer journal rows by state"""
        states = list(states)
        if not states:
            return []
        placeholders = ", ".join("?" for _ in states)
        with self._lock:
            rows = self._execute(f"""
                SELECT data FROM transfers WHERE state IN ({placeholders})
                ORDER BY created_at
            """, tuple(states)).fetchall()
            return [json.loads(row['data']) for row in rows]

    @contextmanager
    def atomic(self, *account_ids: str) -> Iterator[None]:
        """
        Run the block inside one immediate transaction.

        BEGIN IMMEDIATE takes the database write lock up front, which covers
        every account at once, so lock ordering cannot deadlock. Nested calls
        join the outer transaction.
        """
        with self._lock:
            if self._depth:
                self._depth += 1
                try:
                    yield
                finally:
                    self._depth -= 1
                return

            self._execute("BEGIN IMMEDIATE")
            self._depth = 1
            try:
                yield
            except Exception:
                self._depth = 0
                self._rollback()
                raise
            self._depth = 0
            try:
                self._execute("COMMIT")
            except PersistenceError:
                self._rollback()
                raise

    def _rollback(self) -> None:
        # SQLite may already have rolled back on its own after some errors
        if not self._connection.in_transaction:
            return
        try:
            self._connection.execute("ROLLBACK")
        except sqlite3.Error as e:
            raise RollbackError(f"Rollback failed: {e}") from e

    def close(self) -> None:
        """Close SQLite connection"""
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None

    def _execute(self, sql: str, params: tuple = ()) -> sqlite3.Cursor:
        if self._connection is None:
            raise PersistenceError("Store is closed")
        with self._translate_errors():
            return self._connection.execute(sql, params)


def create_store(config: Optional[LedgerConfig] = None) -> AccountStore:
    """Build the store backend selected in configuration"""
    config = config or get_config()
    backend = config.store_backend.lower()
    if backend == "memory":
        return InMemoryAccountStore()
    if backend == "sqlite":
        return SQLiteAccountStore(config.database_path, timeout=config.database_timeout)
    raise InvalidOperation(f"Unknown store backend: {config.store_backend}")
