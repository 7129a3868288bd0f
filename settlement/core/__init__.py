"""
Core package.

This package contains the data model, error taxonomy, fee split and unit
conversion helpers.
"""

from settlement.core.errors import (
    AccountNotFound,
    BalanceUnavailable,
    ChainError,
    ChainUnavailable,
    ConfigurationError,
    EmptyBalance,
    InvalidSecret,
    LedgerError,
    LedgerUnavailable,
    MessageRejected,
    SettlementError,
)
from settlement.core.models import (
    EscrowWallet,
    ReleaseStatus,
    ReleaseStatusValue,
    SellerDestination,
    SplitResult,
    TransactionRecord,
    TransactionType,
    WalletKind,
    now_ms,
)
from settlement.core.split import DEFAULT_FEE_PERCENT, SplitCalculator, split

__all__ = [
    "AccountNotFound",
    "BalanceUnavailable",
    "ChainError",
    "ChainUnavailable",
    "ConfigurationError",
    "DEFAULT_FEE_PERCENT",
    "EmptyBalance",
    "EscrowWallet",
    "InvalidSecret",
    "LedgerError",
    "LedgerUnavailable",
    "MessageRejected",
    "ReleaseStatus",
    "ReleaseStatusValue",
    "SellerDestination",
    "SettlementError",
    "SplitCalculator",
    "SplitResult",
    "TransactionRecord",
    "TransactionType",
    "WalletKind",
    "now_ms",
    "split",
]
