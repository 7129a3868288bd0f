"""
TransferExecutor: one outbound transfer per call, classified.

Each call checks the sender can pay for the message, signs exactly one
envelope and submits it. The executor never retries and never hides a
failure: every outcome comes back as a TransferOutcome with a reason the
orchestrator can act on.

    INSUFFICIENT_GAS   pre-check found native balance below the minimum;
                       nothing was submitted
    REJECTED_MESSAGE   the network refused the message; low_native tells
                       whether a follow-up probe shows the minimum unmet
    TIMEOUT            the submission did not complete in time
    UNKNOWN            any other chain error
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Optional

from settlement.chain.balance_probe import BalanceProbe
from settlement.chain.client import ChainClient
from settlement.core.errors import BalanceUnavailable, ChainError, ChainUnavailable, MessageRejected
from settlement.core.models import now_ms
from settlement.custody.wallet_custody import WalletCustody

log = logging.getLogger("settlement")

# 0.1 native: the wallet contract refuses external messages below this.
MIN_NATIVE_FOR_MESSAGE = 100_000_000
# 0.038 native attached to each token transfer for the sub-account hops.
DEFAULT_GAS_ALLOWANCE = 38_000_000
# Native units forwarded to the recipient so the transfer notification fires.
FORWARD_AMOUNT = 1

DEFAULT_SUBMIT_TIMEOUT = 10.0
MESSAGE_TTL_SEC = 60


class FailureReason(Enum):
    INSUFFICIENT_GAS = "insufficient_gas"
    REJECTED_MESSAGE = "rejected_message"
    TIMEOUT = "timeout"
    UNKNOWN = "unknown"


@dataclass
class TransferOutcome:
    success: bool
    from_address: str
    to_address: str
    amount: int
    kind: str = "token"
    memo: Optional[str] = None
    reason: Optional[FailureReason] = None
    low_native: bool = False
    submitted: bool = False
    error: Optional[str] = None
    tx_hash: Optional[str] = None
    token_wallet: Optional[str] = None
    sent_at_ms: int = field(default_factory=now_ms)

    @property
    def needs_funding(self) -> bool:
        return self.reason is FailureReason.INSUFFICIENT_GAS or (
            self.reason is FailureReason.REJECTED_MESSAGE and self.low_native
        )


class TransferExecutor:
    def __init__(
        self,
        chain: ChainClient,
        probe: BalanceProbe,
        min_native: int = MIN_NATIVE_FOR_MESSAGE,
        submit_timeout: float = DEFAULT_SUBMIT_TIMEOUT,
        sign: Callable[[Any, Dict[str, Any]], Dict[str, Any]] = WalletCustody.sign_envelope,
        log_event: Optional[Callable[..., None]] = None,
    ) -> None:
        self.chain = chain
        self.probe = probe
        self.min_native = min_native
        self.submit_timeout = submit_timeout
        self._sign = sign
        self._log_event = log_event or self._default_log

    def _default_log(self, event: str, **kwargs: Any) -> None:
        log.info(json.dumps({"event": event, **kwargs}, default=str))

    async def transfer(
        self,
        signer: Any,
        from_address: str,
        to_address: str,
        amount: int,
        gas_allowance: int = DEFAULT_GAS_ALLOWANCE,
        memo: Optional[str] = None,
    ) -> TransferOutcome:
        """Move `amount` token units from `from_address` to `to_address`."""
        outcome = TransferOutcome(
            success=False, from_address=from_address, to_address=to_address, amount=amount, memo=memo
        )
        if amount <= 0:
            raise ValueError(f"transfer amount must be positive, got {amount}")
        if not await self._precheck(outcome):
            return outcome

        try:
            outcome.token_wallet = await self.probe.token_wallet_address(from_address)
        except ChainError as exc:
            return self._fail(outcome, _classify_unsent(exc), str(exc))

        envelope = {
            "kind": "token_transfer",
            "from": from_address,
            "token_wallet": outcome.token_wallet,
            "destination": to_address,
            "amount": str(amount),
            "gas_allowance": str(gas_allowance),
            "forward_amount": str(FORWARD_AMOUNT),
            "response_destination": from_address,
            "memo": memo,
            "query_id": outcome.sent_at_ms,
            "valid_until": outcome.sent_at_ms // 1000 + MESSAGE_TTL_SEC,
        }
        return await self._submit(signer, envelope, outcome)

    async def send_native(
        self,
        signer: Any,
        from_address: str,
        to_address: str,
        amount: int,
        memo: Optional[str] = None,
    ) -> TransferOutcome:
        """Send plain native currency, used to top up escrow accounts for gas."""
        outcome = TransferOutcome(
            success=False,
            from_address=from_address,
            to_address=to_address,
            amount=amount,
            kind="native",
            memo=memo,
        )
        if amount <= 0:
            raise ValueError(f"transfer amount must be positive, got {amount}")
        if not await self._precheck(outcome):
            return outcome
        envelope = {
            "kind": "native_transfer",
            "from": from_address,
            "destination": to_address,
            "amount": str(amount),
            "memo": memo,
            "query_id": outcome.sent_at_ms,
            "valid_until": outcome.sent_at_ms // 1000 + MESSAGE_TTL_SEC,
        }
        return await self._submit(signer, envelope, outcome)

    async def _precheck(self, outcome: TransferOutcome) -> bool:
        try:
            native = await self.probe.native_balance(outcome.from_address)
        except BalanceUnavailable as exc:
            self._fail(outcome, FailureReason.UNKNOWN, str(exc))
            return False
        if native < self.min_native:
            outcome.low_native = True
            self._fail(
                outcome,
                FailureReason.INSUFFICIENT_GAS,
                f"native balance {native} below minimum {self.min_native}",
            )
            return False
        return True

    async def _submit(self, signer: Any, envelope: Dict[str, Any], outcome: TransferOutcome) -> TransferOutcome:
        signed = self._sign(signer, envelope)
        outcome.submitted = True
        try:
            outcome.tx_hash = await asyncio.wait_for(self.chain.send_message(signed), timeout=self.submit_timeout)
        except MessageRejected as exc:
            outcome.low_native = await self._native_below_minimum(outcome.from_address)
            return self._fail(outcome, FailureReason.REJECTED_MESSAGE, str(exc))
        except (asyncio.TimeoutError, ChainUnavailable) as exc:
            return self._fail(outcome, FailureReason.TIMEOUT, str(exc) or "submission timed out")
        except ChainError as exc:
            return self._fail(outcome, FailureReason.UNKNOWN, str(exc))

        outcome.success = True
        self._log_event(
            "transfer_submitted",
            kind=envelope["kind"],
            from_address=outcome.from_address,
            to_address=outcome.to_address,
            amount=outcome.amount,
            memo=outcome.memo,
            tx_hash=outcome.tx_hash,
        )
        return outcome

    async def _native_below_minimum(self, address: str) -> bool:
        try:
            return await self.probe.native_balance(address) < self.min_native
        except BalanceUnavailable:
            return False

    def _fail(self, outcome: TransferOutcome, reason: FailureReason, error: str) -> TransferOutcome:
        outcome.success = False
        outcome.reason = reason
        outcome.error = error
        self._log_event(
            "transfer_failed",
            reason=reason.value,
            low_native=outcome.low_native,
            submitted=outcome.submitted,
            from_address=outcome.from_address,
            to_address=outcome.to_address,
            amount=outcome.amount,
            memo=outcome.memo,
            error=error,
        )
        return outcome


def _classify_unsent(exc: ChainError) -> FailureReason:
    if isinstance(exc, ChainUnavailable):
        return FailureReason.TIMEOUT
    return FailureReason.UNKNOWN
