"""
Command Line Interface

Thin transport over LedgerEngine: one subcommand per operation, exiting with
a distinct non-zero status for every error kind.

    ledger --db ledger.db --account 1001 deposit 25.00
    ledger --db ledger.db --account 1001 transfer 10.00 1002
"""

import argparse
import getpass
import os
import sys
from typing import List, Optional

from . import __version__
from .config import LedgerConfig, get_config
from .credentials import CredentialHasher
from .engine import LedgerEngine, provision_account
from .errors import ErrorKind, LedgerError, OperationResult, TransferFailed, describe
from .logging_config import setup_logging
from .money import format_amount
from .storage import AccountStore, create_store
from .transfers import recover_transfers

EXIT_OK = 0
EXIT_CODES = {
    ErrorKind.INVALID_AMOUNT: 3,
    ErrorKind.INSUFFICIENT_FUNDS: 4,
    ErrorKind.RECIPIENT_NOT_FOUND: 5,
    ErrorKind.ACCOUNT_NOT_FOUND: 6,
    ErrorKind.INVALID_OPERATION: 7,
    ErrorKind.CREDENTIAL_MISMATCH: 8,
    ErrorKind.CONCURRENT_MODIFICATION: 9,
    ErrorKind.PERSISTENCE_ERROR: 10,
    ErrorKind.TRANSFER_FAILED: 11,
    ErrorKind.TRANSFER_UNRECONCILED: 12,
}

BANNER = "!" * 72


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ledger",
        description="Account ledger: deposits, withdrawals, transfers and PIN changes.",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--db", help="SQLite database path (overrides LEDGER_DATABASE_PATH)")
    parser.add_argument("--account", help="Account id to act on")
    parser.add_argument("--credential",
                        help="Account PIN (default: LEDGER_CREDENTIAL or an interactive prompt)")
    parser.add_argument("--log-level", help="Log level (overrides LEDGER_LOG_LEVEL)")

    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("balance", help="Show the current balance")

    deposit = sub.add_parser("deposit", help="Deposit funds")
    deposit.add_argument("amount")

    withdraw = sub.add_parser("withdraw", help="Withdraw funds")
    withdraw.add_argument("amount")

    transfer = sub.add_parser("transfer", help="Transfer funds to another account")
    transfer.add_argument("amount")
    transfer.add_argument("recipient")

    change = sub.add_parser("change-credential", help="Change the account PIN")
    change.add_argument("--old", help="Current PIN (prompted when omitted)")
    change.add_argument("--new", help="New PIN (prompted when omitted)")

    open_account = sub.add_parser("open-account", help="Provision a new account (admin)")
    open_account.add_argument("account_id")
    open_account.add_argument("--initial-balance", default="0")

    sub.add_parser(
        "recover-transfers",
        help="Resolve journaled transfers left open by a crash (admin)",
        description=(
            "Resolve journaled transfers left open by a crash. Only stores without "
            "transactions journal transfers; SQLite rolls failed transfers back "
            "instead, so on a SQLite database this normally finds nothing."
        ),
    )

    serve = sub.add_parser("serve", help="Run the HTTP service")
    serve.add_argument("--host")
    serve.add_argument("--port", type=int)

    return parser


def main(argv: Optional[List[str]] = None, config: Optional[LedgerConfig] = None) -> int:
    """Run one CLI command and return the process exit status"""
    args = build_parser().parse_args(argv)
    config = config or get_config()
    if args.db:
        config = config.model_copy(update={"database_path": args.db, "store_backend": "sqlite"})
    if args.log_level:
        config = config.model_copy(update={"log_level": args.log_level})

    setup_logging(config.log_level, "ledger", config.log_format, config.log_file)

    if args.command == "serve":
        from .api import run_server
        run_server(host=args.host or config.api_host, port=args.port or config.api_port, config=config)
        return EXIT_OK

    try:
        store = create_store(config)
    except LedgerError as e:
        return _fail(e.kind, str(e))

    try:
        if args.command == "open-account":
            return _open_account(store, args, config)
        if args.command == "recover-transfers":
            return _recover(store)
        return _run_session(store, args, config)
    except TransferFailed as e:
        return _fail(e.kind, str(e), transfer_id=e.transfer_id)
    except LedgerError as e:
        return _fail(e.kind, str(e))
    finally:
        store.close()


def run() -> None:
    """Console script entry point"""
    sys.exit(main())


def _run_session(store: AccountStore, args: argparse.Namespace, config: LedgerConfig) -> int:
    if not args.account:
        return _fail(ErrorKind.INVALID_OPERATION, "--account is required for this command")

    hasher = CredentialHasher.from_config(config)
    credential = _credential(args)
    if not LedgerEngine.authenticate(store, args.account, credential, hasher):
        return _fail(ErrorKind.CREDENTIAL_MISMATCH, "Authentication failed")

    engine = LedgerEngine(store, args.account, config=config, hasher=hasher)

    if args.command == "balance":
        print(f"Balance: {format_amount(engine.balance, config.minor_units)}")
        return EXIT_OK

    if args.command == "deposit":
        result = engine.deposit(args.amount)
        return _report(result, f"Deposited {args.amount}", config)

    if args.command == "withdraw":
        result = engine.withdraw(args.amount)
        return _report(result, f"Withdrew {args.amount}", config)

    if args.command == "transfer":
        result = engine.transfer(args.amount, args.recipient)
        return _report(result, f"Transferred {args.amount} to {args.recipient}", config)

    if args.command == "change-credential":
        old = args.old if args.old is not None else credential
        new = args.new
        if new is None:
            new = getpass.getpass("New PIN: ")
            if getpass.getpass("Confirm new PIN: ") != new:
                return _fail(ErrorKind.INVALID_OPERATION, "PIN confirmation does not match")
        result = engine.change_credential(old, new)
        return _report(result, "PIN changed", config)

    return _fail(ErrorKind.INVALID_OPERATION, f"Unknown command: {args.command}")


def _open_account(store: AccountStore, args: argparse.Namespace, config: LedgerConfig) -> int:
    record = provision_account(store, args.account_id, _credential(args),
                               args.initial_balance, config=config)
    print(f"Opened account {record.id} with balance {format_amount(record.balance, config.minor_units)}")
    return EXIT_OK


def _recover(store: AccountStore) -> int:
    report = recover_transfers(store)
    print(f"Abandoned: {len(report.abandoned)}")
    print(f"Compensated: {len(report.compensated)}")
    print(f"Failed: {len(report.failed)}")
    print(f"Reconciliation required: {len(report.reconciliation_required)}")
    if report.clean:
        return EXIT_OK
    for transfer_id in report.reconciliation_required + report.failed:
        print(f"  needs attention: {transfer_id}", file=sys.stderr)
    return EXIT_CODES[ErrorKind.TRANSFER_UNRECONCILED]


def _credential(args: argparse.Namespace) -> str:
    if args.credential:
        return args.credential
    if os.environ.get("LEDGER_CREDENTIAL"):
        return os.environ["LEDGER_CREDENTIAL"]
    return getpass.getpass("PIN: ")


def _report(result: OperationResult, success_message: str, config: LedgerConfig) -> int:
    if result.ok:
        print(success_message)
        print(f"Balance: {format_amount(result.balance, config.minor_units)}")
        return EXIT_OK
    kind = result.outcome.error_kind
    return _fail(kind, describe(kind))


def _fail(kind: ErrorKind, detail: str, transfer_id: Optional[str] = None) -> int:
    if kind == ErrorKind.TRANSFER_UNRECONCILED:
        print(BANNER, file=sys.stderr)
        print(describe(kind), file=sys.stderr)
        print(f"Transfer reference: {transfer_id}", file=sys.stderr)
        print(f"Detail: {detail}", file=sys.stderr)
        print(BANNER, file=sys.stderr)
    else:
        print(f"Error ({kind.value}): {describe(kind)}", file=sys.stderr)
        if detail and detail != describe(kind):
            print(f"Detail: {detail}", file=sys.stderr)
    return EXIT_CODES[kind]


if __name__ == "__main__":
    run()
