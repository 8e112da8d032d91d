"""
Tests for configuration, structured logging and the error taxonomy
"""

import json
import logging
import os
from unittest.mock import patch

from account_ledger.config import LedgerConfig
from account_ledger.errors import (
    AccountNotFound, ErrorKind, InvalidAmount, Outcome, OperationResult,
    TransferFailed, describe
)
from account_ledger.logging_config import JSONFormatter, log_action, setup_logging


class TestLedgerConfig:

    def test_defaults(self):
        with patch.dict(os.environ, {}, clear=True):
            config = LedgerConfig(_env_file=None)
        assert config.store_backend == "sqlite"
        assert config.minor_units == 2
        assert config.credential_min_length == 6
        assert config.max_transaction_amount == "100000.00"

    def test_environment_overrides(self):
        env = {
            "LEDGER_STORE_BACKEND": "memory",
            "LEDGER_MINOR_UNITS": "0",
            "LEDGER_CREDENTIAL_DIGITS_ONLY": "false",
            "LEDGER_API_PORT": "9000",
        }
        with patch.dict(os.environ, env):
            config = LedgerConfig(_env_file=None)
        assert config.store_backend == "memory"
        assert config.minor_units == 0
        assert config.credential_digits_only is False
        assert config.api_port == 9000


class TestStructuredLogging:

    def test_json_formatter(self):
        logger = logging.getLogger("ledger.test.formatter")
        record = logger.makeRecord(logger.name, logging.INFO, __name__, 0, "deposit applied", (), None)
        record.user_id = "1001"
        record.action = "deposit"
        record.extra = {"amount": "5.00"}

        entry = json.loads(JSONFormatter().format(record))

        assert entry["level"] == "INFO"
        assert entry["message"] == "deposit applied"
        assert entry["user_id"] == "1001"
        assert entry["extra"] == {"amount": "5.00"}
        # None fields are dropped
        assert "correlation_id" not in entry

    def test_setup_logging_writes_json_lines(self, tmp_path):
        log_file = tmp_path / "ledger.log"
        logger = setup_logging("INFO", "ledger-test-file", log_file=str(log_file))

        log_action(logger, "info", "transfer applied", user_id="1001",
                   action="transfer", resource="transfer:t1")
        log_action(logger, "debug", "not emitted", user_id="1001")
        for handler in logger.handlers:
            handler.flush()

        lines = log_file.read_text().splitlines()
        assert len(lines) == 1
        entry = json.loads(lines[0])
        assert entry["action"] == "transfer"
        assert entry["resource"] == "transfer:t1"

        for handler in logger.handlers[:]:
            logger.removeHandler(handler)
            handler.close()

    def test_setup_logging_is_idempotent(self):
        logger = setup_logging("WARNING", "ledger-test-idempotent", log_format="text")
        setup_logging("WARNING", "ledger-test-idempotent", log_format="text")
        assert len(logger.handlers) == 1
        assert logger.level == logging.WARNING
        assert not logger.propagate
        logger.removeHandler(logger.handlers[0])


class TestErrorTaxonomy:

    def test_every_kind_has_a_message(self):
        for kind in ErrorKind:
            assert describe(kind)

    def test_exception_kinds(self):
        assert InvalidAmount("bad").kind == ErrorKind.INVALID_AMOUNT
        assert isinstance(InvalidAmount("bad"), ValueError)
        assert AccountNotFound("1001").kind == ErrorKind.ACCOUNT_NOT_FOUND
        assert TransferFailed("t1", True, "x").kind == ErrorKind.TRANSFER_FAILED
        assert TransferFailed("t1", False, "x").kind == ErrorKind.TRANSFER_UNRECONCILED

    def test_operation_result(self):
        success = OperationResult(Outcome.SUCCESS, 0)
        assert success.ok
        assert success.message is None

        refused = OperationResult(Outcome.RECIPIENT_NOT_FOUND, 0)
        assert not refused.ok
        assert refused.outcome.error_kind == ErrorKind.RECIPIENT_NOT_FOUND
        assert "Recipient account not found" in refused.message
