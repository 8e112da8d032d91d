"""
Account Ledger

A single-balance-per-account ledger core: deposits, withdrawals, transfers
and PIN changes with exact Decimal arithmetic, optimistic concurrency and
journaled, compensating transfers.
"""

__version__ = "1.0.0"
