"""
Shared fixtures for the ledger test suite
"""

import logging
from decimal import Decimal

import pytest

from account_ledger.config import LedgerConfig
from account_ledger.credentials import CredentialHasher
from account_ledger.storage import InMemoryAccountStore, SQLiteAccountStore


# Cheap scrypt parameters so tests do not spend seconds hashing
FAST_SCRYPT = {"scrypt_n": 16, "scrypt_r": 1, "scrypt_p": 1}


@pytest.fixture
def config():
    """Configuration with fast hashing and in-memory storage"""
    return LedgerConfig(store_backend="memory", **FAST_SCRYPT)


@pytest.fixture
def hasher(config):
    return CredentialHasher.from_config(config)


@pytest.fixture(params=["memory", "sqlite"])
def store(request, tmp_path):
    """Every store backend, so engine behaviour is checked against both"""
    if request.param == "memory":
        backend = InMemoryAccountStore()
    else:
        backend = SQLiteAccountStore(tmp_path / "ledger.db")
    yield backend
    backend.close()


@pytest.fixture
def open_account(hasher):
    """Provision accounts directly in a store, bypassing the credential policy"""
    def _open(store, account_id, pin="1234", balance="0"):
        return store.create_account(account_id, hasher.hash(pin), Decimal(balance))
    return _open


@pytest.fixture(autouse=True)
def reset_ledger_logger():
    """setup_logging() disables propagation; restore it so caplog keeps working"""
    yield
    ledger_logger = logging.getLogger("ledger")
    for handler in ledger_logger.handlers[:]:
        ledger_logger.removeHandler(handler)
    ledger_logger.propagate = True
    ledger_logger.setLevel(logging.NOTSET)
