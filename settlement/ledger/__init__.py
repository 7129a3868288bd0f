"""
Ledger package.

Durable wallet, seller and transaction records.
"""

from settlement.ledger.store import (
    LISTINGS,
    TRANSACTIONS,
    USERS,
    WALLETS,
    InMemoryBackend,
    JsonFileBackend,
    LedgerBackend,
    LedgerStore,
)

__all__ = [
    "InMemoryBackend",
    "JsonFileBackend",
    "LISTINGS",
    "LedgerBackend",
    "LedgerStore",
    "TRANSACTIONS",
    "USERS",
    "WALLETS",
]
