"""
Transfer Journal Module

Durable record of transfers made against stores without real transactions.
Each transfer is journaled before any balance moves and advanced as each
write lands, so a recovery pass can finish, undo or flag transfers that a
crash left half-applied.
"""

from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional
import uuid

from .errors import LedgerError
from .logging_config import get_logger, log_action
from .storage import AccountStore


class TransferState(Enum):
    """Lifecycle of a journaled transfer"""
    INITIATED = "initiated"      # Journaled, no balance written yet
    DEBITED = "debited"          # Sender debited, recipient credit pending
    COMPLETED = "completed"
    COMPENSATED = "compensated"  # Sender re-credited after a failed credit
    ABANDONED = "abandoned"      # Nothing was moved
    RECONCILIATION_REQUIRED = "reconciliation_required"


OPEN_STATES = (TransferState.INITIATED, TransferState.DEBITED)


@dataclass
class TransferRecord:
    """
    Journal entry for one transfer.

    The versions are the sender's and recipient's balance versions observed
    before any write; recovery compares them with the current versions to
    tell whether a write landed.
    """
    id: str
    sender_id: str
    recipient_id: str
    amount: Decimal
    state: TransferState
    sender_version: int
    recipient_version: int
    created_at: datetime
    updated_at: datetime
    error_message: Optional[str] = None

    @property
    def is_open(self) -> bool:
        return self.state in OPEN_STATES

    def to_dict(self) -> Dict[str, Any]:
        result = asdict(self)
        result['amount'] = str(self.amount)
        result['state'] = self.state.value
        result['created_at'] = self.created_at.isoformat()
        result['updated_at'] = self.updated_at.isoformat()
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'TransferRecord':
        return cls(
            id=data['id'],
            sender_id=data['sender_id'],
            recipient_id=data['recipient_id'],
            amount=Decimal(data['amount']),
            state=TransferState(data['state']),
            sender_version=int(data['sender_version']),
            recipient_version=int(data['recipient_version']),
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            error_message=data.get('error_message')
        )


class TransferJournal:
    """Reads and writes transfer records through the account store"""

    def __init__(self, store: AccountStore):
        self.store = store

    def begin(self, sender_id: str, recipient_id: str, amount: Decimal,
              sender_version: int, recipient_version: int) -> TransferRecord:
        """Journal a new transfer in the INITIATED state"""
        now = datetime.now(timezone.utc)
        record = TransferRecord(
            id=str(uuid.uuid4()),
            sender_id=sender_id,
            recipient_id=recipient_id,
            amount=amount,
            state=TransferState.INITIATED,
            sender_version=sender_version,
            recipient_version=recipient_version,
            created_at=now,
            updated_at=now
        )
        self.store.save_transfer(record.id, record.to_dict())
        return record

    def advance(self, record: TransferRecord, state: TransferState,
                error_message: Optional[str] = None) -> TransferRecord:
        """Move a transfer to a new state"""
        record.state = state
        record.updated_at = datetime.now(timezone.utc)
        if error_message:
            record.error_message = error_message
        self.store.save_transfer(record.id, record.to_dict())
        return record

    def get(self, transfer_id: str) -> Optional[TransferRecord]:
        data = self.store.load_transfer(transfer_id)
        if data:
            return TransferRecord.from_dict(data)
        return None

    def open_transfers(self) -> List[TransferRecord]:
        """Transfers a crash may have left half-applied"""
        data = self.store.find_transfers(state.value for state in OPEN_STATES)
        return [TransferRecord.from_dict(item) for item in data]

    def needing_reconciliation(self) -> List[TransferRecord]:
        data = self.store.find_transfers([TransferState.RECONCILIATION_REQUIRED.value])
        return [TransferRecord.from_dict(item) for item in data]


@dataclass
class RecoveryReport:
    """What a recovery pass did with each open transfer"""
    abandoned: List[str]
    compensated: List[str]
    reconciliation_required: List[str]
    failed: List[str]

    @property
    def clean(self) -> bool:
        return not self.reconciliation_required and not self.failed


def recover_transfers(store: AccountStore) -> RecoveryReport:
    """
    Resolve transfers left open by a crash.

    Must run while no engine is transferring against the same store, e.g. at
    startup. INITIATED transfers whose sender is untouched are abandoned;
    DEBITED transfers whose recipient is untouched get the sender re-credited.
    Anything else cannot be decided safely and is flagged for reconciliation.
    """
    logger = get_logger("ledger.recovery")
    journal = TransferJournal(store)
    report = RecoveryReport(abandoned=[], compensated=[], reconciliation_required=[], failed=[])

    for record in journal.open_transfers():
        try:
            with store.atomic(record.sender_id, record.recipient_id):
                resolved = _resolve(store, journal, record)
        except LedgerError as e:
            report.failed.append(record.id)
            log_action(
                logger, "error", f"Could not recover transfer {record.id}: {e}",
                action="recover_transfer", resource=f"transfer:{record.id}"
            )
            continue

        if resolved == TransferState.ABANDONED:
            report.abandoned.append(record.id)
        elif resolved == TransferState.COMPENSATED:
            report.compensated.append(record.id)
        else:
            report.reconciliation_required.append(record.id)

        level = "critical" if resolved == TransferState.RECONCILIATION_REQUIRED else "info"
        log_action(
            logger, level, f"Transfer {record.id} recovered as {resolved.value}",
            action="recover_transfer", resource=f"transfer:{record.id}",
            extra={
                "sender_id": record.sender_id,
                "recipient_id": record.recipient_id,
                "amount": str(record.amount),
                "state": resolved.value
            }
        )

    return report


def _resolve(store: AccountStore, journal: TransferJournal,
             record: TransferRecord) -> TransferState:
    sender = store.load_account(record.sender_id)
    recipient = store.load_account(record.recipient_id)

    if record.state == TransferState.INITIATED:
        if sender and sender.version == record.sender_version:
            journal.advance(record, TransferState.ABANDONED, "Recovered: no funds moved")
            return TransferState.ABANDONED
        journal.advance(record, TransferState.RECONCILIATION_REQUIRED,
                        "Recovered: sender changed after the transfer started")
        return TransferState.RECONCILIATION_REQUIRED

    # DEBITED: the recipient's version only stays put if the credit never landed
    if recipient and recipient.version == record.recipient_version:
        if store.credit_balance(record.sender_id, record.amount) == 1:
            journal.advance(record, TransferState.COMPENSATED, "Recovered: sender re-credited")
            return TransferState.COMPENSATED
    journal.advance(record, TransferState.RECONCILIATION_REQUIRED,
                    "Recovered: recipient credit could not be ruled out")
    return TransferState.RECONCILIATION_REQUIRED
