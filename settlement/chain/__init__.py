"""
Chain package.

This package contains the chain API client, balance probing and transfer
submission.
"""

from settlement.chain.balance_probe import BalanceProbe, ProbeResult, ProbeStatus
from settlement.chain.client import (
    AccountState,
    ChainClient,
    ChainTransaction,
    GetMethodResult,
    HttpChainClient,
)
from settlement.chain.transfer_executor import (
    DEFAULT_GAS_ALLOWANCE,
    MIN_NATIVE_FOR_MESSAGE,
    FailureReason,
    TransferExecutor,
    TransferOutcome,
)

__all__ = [
    "AccountState",
    "BalanceProbe",
    "ChainClient",
    "ChainTransaction",
    "DEFAULT_GAS_ALLOWANCE",
    "FailureReason",
    "GetMethodResult",
    "HttpChainClient",
    "MIN_NATIVE_FOR_MESSAGE",
    "ProbeResult",
    "ProbeStatus",
    "TransferExecutor",
    "TransferOutcome",
]
