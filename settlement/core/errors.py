"""
Error taxonomy for the settlement engine.

Exceptions are reserved for configuration problems, programming errors and
low-level collaborator failures. Expected business outcomes of a release
(empty balance, missing seller wallet) travel as typed results instead,
see `settlement.execution.release_orchestrator.ReleaseResult`.
"""

from __future__ import annotations

import asyncio
from typing import Optional


class SettlementError(Exception):
    """Base class for all settlement errors."""

    code = "settlement_error"


class ConfigurationError(SettlementError):
    """Missing or invalid configuration. Fatal at construction, never retried."""

    code = "configuration_error"


class InvalidSecret(SettlementError):
    """Secret phrase has the wrong word count or does not decode."""

    code = "invalid_secret"


class EmptyBalance(SettlementError):
    """Nothing to split: the escrow holds zero token units."""

    code = "empty_balance"


class AccountNotFound(SettlementError):
    """Token sub-account for an owner is not deployed yet."""

    code = "account_not_found"

    def __init__(self, address: str, message: Optional[str] = None) -> None:
        super().__init__(message or f"token account not deployed: {address}")
        self.address = address


class BalanceUnavailable(SettlementError):
    """Every balance read strategy failed with a real error."""

    code = "balance_unavailable"


class LedgerError(SettlementError):
    code = "ledger_error"


class LedgerUnavailable(LedgerError):
    """Transient ledger condition (offline, timeout, service unavailable)."""

    code = "ledger_unavailable"


class ChainError(SettlementError):
    """Error reported by the chain API."""

    code = "chain_error"

    def __init__(self, message: str, status: Optional[int] = None, exit_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status = status
        self.exit_code = exit_code


class ChainUnavailable(ChainError):
    """Transport-level failure talking to the chain API (retryable)."""

    code = "chain_unavailable"


class MessageRejected(ChainError):
    """The network refused to accept an external message."""

    code = "message_rejected"


# Substrings the chain API uses when it refuses an inbound external message.
REJECTION_MARKERS = (
    "inbound external message rejected",
    "cannot apply external message",
)


def is_rejection_message(text: str) -> bool:
    lowered = (text or "").lower()
    return any(marker in lowered for marker in REJECTION_MARKERS)


def is_transient(exc: BaseException) -> bool:
    """Default retry predicate: offline/unavailable/timeout conditions."""
    if isinstance(exc, (LedgerUnavailable, ChainUnavailable, asyncio.TimeoutError, TimeoutError)):
        return True
    text = str(exc).lower()
    return "unavailable" in text or "offline" in text or "timeout" in text
