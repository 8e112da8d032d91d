"""
Ledger Engine Module

The account mutation engine. An engine is bound to one authenticated account
and applies deposits, withdrawals, transfers and credential changes against an
injected AccountStore, keeping its cached balance in step with the store.

Expected business refusals come back as an OperationResult; caller-input
errors raise InvalidAmount / InvalidOperation before the store is touched;
store failures raise PersistenceError and are never retried here.
"""

from contextlib import contextmanager
from decimal import Decimal
from typing import Iterator, Optional
import hmac
import uuid

from .config import LedgerConfig, get_config
from .credentials import CredentialHasher, CredentialPolicy
from .errors import (
    InvalidOperation, LedgerError, OperationResult, Outcome,
    PersistenceError, RollbackError, TransferFailed, AccountNotFound
)
from .logging_config import get_logger, log_action
from .money import AmountLike, ZERO, to_decimal, validate_amount
from .storage import AccountRecord, AccountStore
from .transfers import TransferJournal, TransferRecord, TransferState

logger = get_logger("ledger.engine")


@contextmanager
def store_errors(action: str) -> Iterator[None]:
    """Surface any non-ledger failure from a store call as PersistenceError"""
    try:
        yield
    except LedgerError:
        raise
    except Exception as e:
        raise PersistenceError(f"Store failure during {action}: {e}") from e


class LedgerEngine:
    """
    Business logic for one authenticated account session.

    Usage:
        if LedgerEngine.authenticate(store, account_id, pin):
            engine = LedgerEngine(store, account_id)
            engine.deposit("25.00")
    """

    def __init__(
        self,
        store: AccountStore,
        account_id: str,
        config: Optional[LedgerConfig] = None,
        hasher: Optional[CredentialHasher] = None,
        policy: Optional[CredentialPolicy] = None
    ):
        self.store = store
        self.account_id = account_id
        self.config = config or get_config()
        self.hasher = hasher or CredentialHasher.from_config(self.config)
        self.policy = policy or CredentialPolicy.from_config(self.config)
        self.minor_units = self.config.minor_units
        self.max_amount = Decimal(self.config.max_transaction_amount)
        self.journal = TransferJournal(store)

        self._balance = ZERO
        self._version = 0
        self._credential_hash = ""
        self._load()

    # Existence / authentication

    @staticmethod
    def exists(store: AccountStore, account_id: str) -> bool:
        """True iff an account record exists; store failures raise PersistenceError"""
        with store_errors("exists"):
            return store.exists(account_id)

    @staticmethod
    def authenticate(store: AccountStore, account_id: str, credential: str,
                     hasher: Optional[CredentialHasher] = None) -> bool:
        """True iff the account exists and the credential verifies"""
        hasher = hasher or CredentialHasher.from_config()
        with store_errors("authenticate"):
            stored_hash = store.get_credential_hash(account_id)

        # verify() burns a hash computation when stored_hash is None
        verified = hasher.verify(str(credential), stored_hash)

        log_action(
            logger, "info" if verified else "warning",
            "Authentication succeeded" if verified else "Authentication failed",
            user_id=account_id, action="authenticate", resource=f"account:{account_id}"
        )
        return verified

    # Queries

    @property
    def balance(self) -> Decimal:
        """Cached balance; never touches the store"""
        return self._balance

    def refresh(self) -> Decimal:
        """Re-read balance and credential after a concurrent modification"""
        self._load()
        return self._balance

    # Mutations

    def deposit(self, amount: AmountLike) -> OperationResult:
        """Add funds to the bound account"""
        amount = self._validate(amount)
        return self._write_balance("deposit", amount, self._balance + amount)

    def withdraw(self, amount: AmountLike) -> OperationResult:
        """Remove funds if the balance covers them"""
        amount = self._validate(amount)
        if amount > self._balance:
            return self._refuse("withdraw", Outcome.INSUFFICIENT_FUNDS, amount)
        return self._write_balance("withdraw", amount, self._balance - amount)

    def transfer(self, amount: AmountLike, recipient_id: str) -> OperationResult:
        """
        Move funds to another account.

        Gates, in order: self-transfer, amount rules, sufficient funds,
        recipient existence. Nothing is written unless all pass.

        Raises:
            TransferFailed: the sender was debited but the recipient credit
                failed; ``reconciled`` tells whether the debit was undone
        """
        if recipient_id == self.account_id:
            raise InvalidOperation("Cannot transfer to the same account")
        amount = self._validate(amount)
        if amount > self._balance:
            return self._refuse("transfer", Outcome.INSUFFICIENT_FUNDS, amount, recipient_id)
        if not self.exists(self.store, recipient_id):
            return self._refuse("transfer", Outcome.RECIPIENT_NOT_FOUND, amount, recipient_id)

        if self.store.supports_transactions:
            return self._transfer_in_transaction(amount, recipient_id)
        return self._transfer_with_compensation(amount, recipient_id)

    def change_credential(self, old_credential: str, new_credential: str) -> OperationResult:
        """Replace the account credential after verifying the old one"""
        old_credential, new_credential = str(old_credential), str(new_credential)

        if not self.hasher.verify(old_credential, self._credential_hash):
            return self._refuse("change_credential", Outcome.CREDENTIAL_MISMATCH)

        violations = self.policy.violations(new_credential)
        if violations:
            raise InvalidOperation(f"New credential rejected: {', '.join(violations)}")
        if hmac.compare_digest(new_credential.encode(), old_credential.encode()):
            raise InvalidOperation("New credential must differ from the old one")

        new_hash = self.hasher.hash(new_credential)
        with store_errors("change_credential"):
            rows = self.store.set_credential_hash(
                self.account_id, new_hash, expected_hash=self._credential_hash
            )
        if rows == 0:
            return self._refuse("change_credential", Outcome.CONCURRENT_MODIFICATION)

        self._credential_hash = new_hash
        log_action(
            logger, "info", "Credential changed",
            user_id=self.account_id, action="change_credential",
            resource=f"account:{self.account_id}"
        )
        return OperationResult(Outcome.SUCCESS, self._balance)

    # Internals

    def _load(self) -> None:
        with store_errors("load"):
            record = self.store.load_account(self.account_id)
        if record is None:
            raise AccountNotFound(self.account_id)
        self._apply(record)

    def _apply(self, record: AccountRecord) -> None:
        self._balance = record.balance
        self._version = record.version
        self._credential_hash = record.credential_hash

    def _validate(self, amount: AmountLike) -> Decimal:
        return validate_amount(amount, self.minor_units, self.max_amount)

    def _write_balance(self, action: str, amount: Decimal, new_balance: Decimal) -> OperationResult:
        """Single compare-and-swap write; the cache only moves once the store has"""
        try:
            with store_errors(action):
                rows = self.store.set_balance(self.account_id, new_balance, self._version)
        except PersistenceError as e:
            log_action(
                logger, "error", f"{action} not applied: {e}",
                user_id=self.account_id, action=action,
                resource=f"account:{self.account_id}", extra={"amount": str(amount)}
            )
            raise

        if rows == 0:
            return self._refuse(action, Outcome.CONCURRENT_MODIFICATION, amount)

        self._balance = new_balance
        self._version += 1
        log_action(
            logger, "info", f"{action} applied",
            user_id=self.account_id, action=action,
            resource=f"account:{self.account_id}",
            extra={"amount": str(amount), "balance": str(new_balance)}
        )
        return OperationResult(Outcome.SUCCESS, new_balance)

    def _refuse(self, action: str, outcome: Outcome, amount: Optional[Decimal] = None,
                recipient_id: Optional[str] = None) -> OperationResult:
        extra = {"outcome": outcome.value}
        if amount is not None:
            extra["amount"] = str(amount)
        if recipient_id is not None:
            extra["recipient_id"] = recipient_id
        log_action(
            logger, "warning", f"{action} refused: {outcome.value}",
            user_id=self.account_id, action=action,
            resource=f"account:{self.account_id}", extra=extra
        )
        return OperationResult(outcome, self._balance)

    def _transfer_in_transaction(self, amount: Decimal, recipient_id: str) -> OperationResult:
        """Both writes in one store transaction; any failure rolls both back"""
        transfer_id = str(uuid.uuid4())
        new_balance = self._balance - amount
        debited = False

        try:
            with self.store.atomic(self.account_id, recipient_id):
                with store_errors("transfer"):
                    rows = self.store.set_balance(self.account_id, new_balance, self._version)
                    if rows == 0:
                        return self._refuse("transfer", Outcome.CONCURRENT_MODIFICATION,
                                            amount, recipient_id)
                    debited = True
                    if self.store.credit_balance(recipient_id, amount) == 0:
                        raise PersistenceError(f"Recipient {recipient_id} vanished during transfer")
        except RollbackError as e:
            if not debited:
                raise
            self._sync_after_failure()
            self._report_unreconciled(transfer_id, amount, recipient_id, e)
            raise TransferFailed(
                transfer_id, reconciled=False,
                message=f"Transfer {transfer_id} rollback failed: {e}"
            ) from e
        except PersistenceError as e:
            if not debited:
                raise
            log_action(
                logger, "error", f"Transfer {transfer_id} rolled back: {e}",
                user_id=self.account_id, action="transfer",
                resource=f"transfer:{transfer_id}",
                extra={"amount": str(amount), "recipient_id": recipient_id, "reconciled": True}
            )
            raise TransferFailed(
                transfer_id, reconciled=True,
                message=f"Transfer {transfer_id} failed and was rolled back: {e}"
            ) from e

        self._balance = new_balance
        self._version += 1
        return self._transfer_succeeded(transfer_id, amount, recipient_id, new_balance)

    def _transfer_with_compensation(self, amount: Decimal, recipient_id: str) -> OperationResult:
        """Journaled debit then credit, with a compensating credit if the second write fails"""
        previous = self._balance
        new_balance = previous - amount

        with self.store.atomic(self.account_id, recipient_id):
            with store_errors("transfer"):
                recipient = self.store.load_account(recipient_id)
                if recipient is None:
                    return self._refuse("transfer", Outcome.RECIPIENT_NOT_FOUND, amount, recipient_id)
                record = self.journal.begin(
                    self.account_id, recipient_id, amount,
                    sender_version=self._version, recipient_version=recipient.version
                )

            try:
                with store_errors("transfer"):
                    rows = self.store.set_balance(self.account_id, new_balance, self._version)
            except PersistenceError as e:
                # Whether the debit landed is unknown; the INITIATED record lets recovery decide
                log_action(
                    logger, "error", f"Transfer {record.id} debit failed: {e}",
                    user_id=self.account_id, action="transfer", resource=f"transfer:{record.id}"
                )
                raise

            if rows == 0:
                self._journal_quietly(record, TransferState.ABANDONED, "Sender modified concurrently")
                return self._refuse("transfer", Outcome.CONCURRENT_MODIFICATION, amount, recipient_id)

            self._balance = new_balance
            self._version += 1

            try:
                with store_errors("transfer"):
                    self.journal.advance(record, TransferState.DEBITED)
                    if self.store.credit_balance(recipient_id, amount) == 0:
                        raise PersistenceError(f"Recipient {recipient_id} vanished during transfer")
            except PersistenceError as e:
                self._compensate(record, previous, e)

            self._journal_quietly(record, TransferState.COMPLETED)

        return self._transfer_succeeded(record.id, amount, recipient_id, new_balance)

    def _compensate(self, record: TransferRecord, previous: Decimal, cause: Exception) -> None:
        """Re-credit the sender after a failed recipient credit; always raises TransferFailed"""
        try:
            with store_errors("compensate"):
                rows = self.store.credit_balance(self.account_id, record.amount)
        except PersistenceError as e:
            rows = 0
            cause = e

        if rows == 1:
            self._balance = previous
            self._version += 1
            self._journal_quietly(record, TransferState.COMPENSATED, str(cause))
            log_action(
                logger, "error", f"Transfer {record.id} failed, sender re-credited: {cause}",
                user_id=self.account_id, action="transfer", resource=f"transfer:{record.id}",
                extra={"amount": str(record.amount), "recipient_id": record.recipient_id,
                       "reconciled": True}
            )
            raise TransferFailed(
                record.id, reconciled=True,
                message=f"Transfer {record.id} failed and the sender was re-credited: {cause}"
            ) from cause

        self._journal_quietly(record, TransferState.RECONCILIATION_REQUIRED, str(cause))
        self._report_unreconciled(record.id, record.amount, record.recipient_id, cause)
        raise TransferFailed(
            record.id, reconciled=False,
            message=f"Transfer {record.id} failed and could not be compensated: {cause}"
        ) from cause

    def _transfer_succeeded(self, transfer_id: str, amount: Decimal,
                            recipient_id: str, new_balance: Decimal) -> OperationResult:
        log_action(
            logger, "info", "transfer applied",
            user_id=self.account_id, action="transfer", resource=f"transfer:{transfer_id}",
            extra={"amount": str(amount), "recipient_id": recipient_id, "balance": str(new_balance)}
        )
        return OperationResult(Outcome.SUCCESS, new_balance, transfer_id=transfer_id)

    def _journal_quietly(self, record: TransferRecord, state: TransferState,
                         error_message: Optional[str] = None) -> None:
        """Journal a state whose loss only costs a later reconciliation check"""
        try:
            with store_errors("journal"):
                self.journal.advance(record, state, error_message)
        except PersistenceError as e:
            log_action(
                logger, "error", f"Could not journal transfer {record.id} as {state.value}: {e}",
                user_id=self.account_id, action="transfer", resource=f"transfer:{record.id}"
            )

    def _sync_after_failure(self) -> None:
        try:
            self._load()
        except LedgerError as e:
            log_action(
                logger, "error", f"Could not re-read account after failed transfer: {e}",
                user_id=self.account_id, action="transfer",
                resource=f"account:{self.account_id}"
            )

    def _report_unreconciled(self, transfer_id: str, amount: Decimal,
                             recipient_id: str, cause: Exception) -> None:
        log_action(
            logger, "critical",
            f"RECONCILIATION REQUIRED: transfer {transfer_id} left funds in an indeterminate state: {cause}",
            user_id=self.account_id, action="transfer", resource=f"transfer:{transfer_id}",
            extra={"amount": str(amount), "sender_id": self.account_id,
                   "recipient_id": recipient_id, "reconciled": False}
        )


def provision_account(
    store: AccountStore,
    account_id: str,
    credential: str,
    initial_balance: AmountLike = ZERO,
    config: Optional[LedgerConfig] = None,
    hasher: Optional[CredentialHasher] = None,
    policy: Optional[CredentialPolicy] = None
) -> AccountRecord:
    """
    Create an account with a hashed credential.

    Account provisioning sits outside the engine; this helper exists for
    administration tooling and tests.
    """
    config = config or get_config()
    hasher = hasher or CredentialHasher.from_config(config)
    policy = policy or CredentialPolicy.from_config(config)

    violations = policy.violations(str(credential))
    if violations:
        raise InvalidOperation(f"Credential rejected: {', '.join(violations)}")

    balance = to_decimal(initial_balance)
    if balance != ZERO:
        balance = validate_amount(balance, config.minor_units)

    with store_errors("provision"):
        record = store.create_account(account_id, hasher.hash(str(credential)), balance)

    log_action(
        logger, "info", "Account provisioned",
        user_id=account_id, action="open_account", resource=f"account:{account_id}",
        extra={"balance": str(balance)}
    )
    return record
