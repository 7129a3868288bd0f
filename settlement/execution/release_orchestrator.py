"""
ReleaseOrchestrator: drives one order's escrow from deposit to payout.

Steps, in fixed order, under the order's lock:

    1. resolve the wallet record and the seller's payout address
    2. top up the escrow with native currency if it cannot pay for a message
    3. read the escrow's token balance
    4. split it into platform fee and seller amount
    5. transfer the fee, then the seller amount (a zero share skips its leg)

Expected business outcomes (no wallet, no seller address, empty escrow,
rejected transfer) come back as a ReleaseResult with a FailureReason; the
orchestrator does not raise for them.

Release progress is written to the wallet record after every leg. A retry
of an order whose fee already went out sends the whole remaining balance
to the seller and skips the fee leg.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from settlement.chain.balance_probe import BalanceProbe
from settlement.chain.transfer_executor import FailureReason as TransferFailure
from settlement.chain.transfer_executor import TransferExecutor, TransferOutcome
from settlement.config.config import Settings
from settlement.core.errors import (
    AccountNotFound,
    BalanceUnavailable,
    ChainError,
    ConfigurationError,
    InvalidSecret,
    LedgerError,
    LedgerUnavailable,
    SettlementError,
)
from settlement.core.models import (
    EscrowWallet,
    ReleaseStatus,
    ReleaseStatusValue,
    SellerDestination,
    SplitResult,
    TransactionType,
)
from settlement.core.split import SplitCalculator
from settlement.custody.wallet_custody import WalletCustody
from settlement.execution.recorder import TransactionRecorder
from settlement.execution.release_state_machine import ReleaseAttempt, ReleaseState, ReleaseStateMachine
from settlement.infra.locks import OrderLockRegistry
from settlement.infra.logging_cfg import log_event
from settlement.infra.retry import RetryPolicy, retry_async
from settlement.ledger.store import LedgerStore

log = logging.getLogger("settlement")

FEE_MEMO = "Order {order_id} - Server fee"
SELLER_MEMO = "Order {order_id} - Seller payment"
FUNDING_MEMO = "Order {order_id} - Gas top-up"


class FailureReason(Enum):
    WALLET_NOT_FOUND = "WALLET_NOT_FOUND"
    INVALID_SECRET = "INVALID_SECRET"
    SELLER_WALLET_MISSING = "SELLER_WALLET_MISSING"
    EMPTY_BALANCE = "EMPTY_BALANCE"
    NO_TOKEN_ACCOUNT = "NO_TOKEN_ACCOUNT"
    TRANSFER_REJECTED = "TRANSFER_REJECTED"
    TRANSFER_FAILED = "TRANSFER_FAILED"
    LEDGER_UNAVAILABLE = "LEDGER_UNAVAILABLE"
    CHAIN_UNAVAILABLE = "CHAIN_UNAVAILABLE"


@dataclass
class ReleaseResult:
    order_id: str
    attempt: ReleaseAttempt
    success: bool = False
    reason: Optional[FailureReason] = None
    error: Optional[str] = None
    split: Optional[SplitResult] = None
    seller: Optional[SellerDestination] = None
    transfers: List[TransferOutcome] = field(default_factory=list)
    previous_status: Optional[ReleaseStatusValue] = None
    duration_sec: float = 0.0

    @property
    def state(self) -> ReleaseState:
        return self.attempt.state

    @property
    def is_noop(self) -> bool:
        """A late invocation against an order that was already paid out."""
        return (
            self.reason is FailureReason.EMPTY_BALANCE
            and self.previous_status is ReleaseStatusValue.RELEASED
        )

    def token_transfers(self) -> List[TransferOutcome]:
        return [t for t in self.transfers if t.kind == "token"]

    def to_response(self) -> Dict[str, Any]:
        if self.success and self.split is not None:
            return {"success": True, **self.split.to_dict()}
        code = self.reason.value if self.reason else "UNKNOWN"
        return {"success": False, "error": {"code": code, "message": self.error or code}}


class _NeedsFunding(SettlementError):
    def __init__(self, outcome: TransferOutcome) -> None:
        super().__init__(outcome.error or "transfer needs funding")
        self.outcome = outcome


class _FundingFailed(SettlementError):
    def __init__(self, outcome: TransferOutcome) -> None:
        super().__init__(f"funding top-up failed: {outcome.reason.value if outcome.reason else 'unknown'}: {outcome.error}")
        self.outcome = outcome


class ReleaseOrchestrator:
    def __init__(
        self,
        settings: Settings,
        ledger: LedgerStore,
        custody: WalletCustody,
        probe: BalanceProbe,
        executor: TransferExecutor,
        recorder: Optional[TransactionRecorder] = None,
        locks: Optional[OrderLockRegistry] = None,
        metrics: Optional[Any] = None,
        alerts: Optional[Any] = None,
        state_machine: Optional[ReleaseStateMachine] = None,
        log_event: Optional[Callable[..., None]] = None,
        funding_poll_interval: float = 1.0,
    ) -> None:
        if not settings.fee_wallet_address:
            raise ConfigurationError("fee wallet address is not configured")
        try:
            self.calculator = SplitCalculator(settings.fee_percent)
        except (TypeError, ValueError) as exc:
            raise ConfigurationError(str(exc)) from exc
        try:
            self.funding_signer, self.funding_address = custody.restore(settings.funding_wallet_mnemonic)
        except InvalidSecret as exc:
            raise ConfigurationError(f"funding wallet secret is unusable: {exc}") from None
        self.funding_address_matches = custody.verify_configured_address(
            self.funding_address, settings.funding_wallet_address
        )

        self.settings = settings
        self.ledger = ledger
        self.custody = custody
        self.probe = probe
        self.executor = executor
        self.recorder = recorder
        self.locks = locks if locks is not None else OrderLockRegistry()
        self.metrics = metrics
        self.alerts = alerts
        self.state_machine = state_machine or ReleaseStateMachine()
        self._log_event = log_event or self._default_log
        self.funding_poll_interval = funding_poll_interval
        # the funding signer is shared across orders; one top-up at a time
        self._funding_lock = asyncio.Lock()
        self.resubmit_policy = RetryPolicy(
            max_attempts=2,
            delay_sec=0.0,
            retry_on=lambda exc: isinstance(exc, _NeedsFunding),
        )

    def _default_log(self, event: str, **kwargs: Any) -> None:
        log_event(log, event, **kwargs)

    async def release(self, order_id: str, listing_id: Optional[str] = None, trigger: str = "manual") -> ReleaseResult:
        """Run one release attempt. Concurrent calls for one order run one at a time."""
        started = time.monotonic()
        async with self.locks.hold(order_id):
            result = ReleaseResult(order_id=order_id, attempt=self.state_machine.start(order_id))
            await self._run(result, listing_id)
        result.duration_sec = time.monotonic() - started

        if self.metrics:
            outcome = "released" if result.success else ("noop" if result.is_noop else result.reason.value)
            self.metrics.record_release(outcome, trigger, result.duration_sec)
        self._log_event(
            "release_completed" if result.success else "release_failed",
            order_id=order_id,
            trigger=trigger,
            state=result.state.name,
            reason=result.reason.value if result.reason else None,
            error=result.error,
            split=result.split.to_dict() if result.split else None,
            history=result.attempt.history(),
            duration_sec=round(result.duration_sec, 3),
        )
        return result

    async def _run(self, result: ReleaseResult, listing_id: Optional[str]) -> ReleaseResult:
        order_id = result.order_id
        attempt = result.attempt

        # 1. wallet and seller
        try:
            wallet = await self.ledger.get_wallet(order_id)
        except LedgerUnavailable as exc:
            return self._fail(result, FailureReason.LEDGER_UNAVAILABLE, str(exc))
        if wallet is None:
            return self._fail(result, FailureReason.WALLET_NOT_FOUND, f"no escrow wallet for order {order_id}")
        result.previous_status = wallet.release_status.status

        try:
            seller = await self.ledger.resolve_seller_destination(listing_id or wallet.listing_id)
        except LedgerUnavailable as exc:
            return self._fail(result, FailureReason.LEDGER_UNAVAILABLE, str(exc))
        if seller is None:
            return await self._fail_and_persist(
                result, wallet, FailureReason.SELLER_WALLET_MISSING,
                "seller has no payout address on the listing or profile",
            )
        result.seller = seller

        try:
            return await self._settle(result, wallet, seller)
        finally:
            self.custody.forget(wallet.secret_phrase)

    async def _settle(self, result: ReleaseResult, wallet: EscrowWallet, seller: SellerDestination) -> ReleaseResult:
        order_id = result.order_id
        attempt = result.attempt
        try:
            signer, escrow_address = self.custody.restore(wallet.secret_phrase)
        except InvalidSecret as exc:
            return await self._fail_and_persist(result, wallet, FailureReason.INVALID_SECRET, str(exc))
        if wallet.public_address and wallet.public_address.lower() != escrow_address.lower():
            log.warning(json.dumps({
                "event": "escrow_address_mismatch",
                "order_id": order_id,
                "stored": wallet.public_address,
                "restored": escrow_address,
            }))
        self.state_machine.transition(attempt, ReleaseState.WALLET_RESOLVED, seller_source=seller.source)

        # 2. gas
        if wallet.release_status.status is ReleaseStatusValue.RELEASED:
            self.state_machine.transition(attempt, ReleaseState.FUNDED, reason="already_released")
        else:
            try:
                await self._ensure_funded(result, escrow_address)
            except _FundingFailed as exc:
                return await self._fail_and_persist(result, wallet, FailureReason.TRANSFER_FAILED, str(exc))
            except (BalanceUnavailable, ChainError) as exc:
                return await self._fail_and_persist(result, wallet, FailureReason.CHAIN_UNAVAILABLE, str(exc))
            self.state_machine.transition(attempt, ReleaseState.FUNDED)

        # 3. balance
        try:
            total = await self.probe.token_balance(escrow_address)
        except AccountNotFound as exc:
            return await self._fail_and_persist(result, wallet, FailureReason.NO_TOKEN_ACCOUNT, str(exc))
        except ChainError as exc:
            return await self._fail_and_persist(result, wallet, FailureReason.CHAIN_UNAVAILABLE, str(exc))
        if total <= 0:
            return await self._fail_and_persist(
                result, wallet, FailureReason.EMPTY_BALANCE, "escrow holds no tokens"
            )
        self.state_machine.transition(attempt, ReleaseState.BALANCE_PROBED, total=total)

        # 4. split
        resumed = wallet.release_status.status is ReleaseStatusValue.FEE_TRANSFERRED
        split = self.calculator.seller_only(total) if resumed else self.calculator.split(total)
        result.split = split
        self.state_machine.transition(
            attempt, ReleaseState.SPLIT_COMPUTED,
            fee=split.fee_amount, seller=split.seller_amount, resumed=resumed,
        )

        # 5. fee, then seller
        fee_done = resumed
        if split.fee_amount > 0:
            memo = FEE_MEMO.format(order_id=order_id)
            outcome = await self._transfer_leg(
                result, signer, escrow_address, self.settings.fee_wallet_address, split.fee_amount, memo, "fee"
            )
            if not outcome.success:
                return await self._fail_transfer(result, wallet, outcome, fee_done)
            fee_done = True
            self._record(TransactionType.CUSTODY_TO_FEE, result, escrow_address, outcome)
            # a released order stays released, even across a second deposit
            if wallet.release_status.status is not ReleaseStatusValue.RELEASED:
                await self._persist(order_id, ReleaseStatus(
                    status=ReleaseStatusValue.FEE_TRANSFERRED,
                    fee_amount=split.fee_amount,
                    seller_amount=split.seller_amount,
                    total_amount=split.total_amount,
                ))
            self.state_machine.transition(attempt, ReleaseState.FEE_TRANSFERRED)
        else:
            self.state_machine.transition(
                attempt, ReleaseState.FEE_TRANSFERRED, reason="resumed" if resumed else "zero_fee"
            )

        if split.seller_amount > 0:
            memo = SELLER_MEMO.format(order_id=order_id)
            outcome = await self._transfer_leg(
                result, signer, escrow_address, seller.wallet_address, split.seller_amount, memo, "seller"
            )
            if not outcome.success:
                return await self._fail_transfer(result, wallet, outcome, fee_done)
            self._record(TransactionType.CUSTODY_TO_SELLER, result, escrow_address, outcome)
            self.state_machine.transition(attempt, ReleaseState.SELLER_TRANSFERRED)
        else:
            self.state_machine.transition(attempt, ReleaseState.SELLER_TRANSFERRED, reason="zero_seller")

        previous = wallet.release_status
        await self._persist(order_id, ReleaseStatus(
            status=ReleaseStatusValue.RELEASED,
            fee_amount=previous.fee_amount if resumed else split.fee_amount,
            seller_amount=split.seller_amount,
            total_amount=(previous.total_amount or total) if resumed else total,
        ))
        self.state_machine.transition(attempt, ReleaseState.RELEASED)
        result.success = True
        return result

    # ------------------------------------------------------------------
    # Funding
    # ------------------------------------------------------------------

    async def _ensure_funded(self, result: ReleaseResult, address: str) -> Optional[TransferOutcome]:
        """Top up `address` from the funding account if it is below the message minimum."""
        native = await self.probe.native_balance(address)
        if native >= self.settings.min_native_for_message:
            return None

        async with self._funding_lock:
            outcome = await self.executor.send_native(
                self.funding_signer,
                self.funding_address,
                address,
                self.settings.funding_topup_amount,
                memo=FUNDING_MEMO.format(order_id=result.order_id),
            )
        result.transfers.append(outcome)
        if self.metrics:
            self.metrics.record_funding("ok" if outcome.success else outcome.reason.value)
        if not outcome.success:
            raise _FundingFailed(outcome)

        self._log_event(
            "escrow_funded",
            order_id=result.order_id,
            address=address,
            previous_balance=native,
            amount=self.settings.funding_topup_amount,
        )
        await self._await_native(address)
        return outcome

    async def _await_native(self, address: str) -> bool:
        """Poll until the top-up is visible or the confirm timeout passes."""
        deadline = time.monotonic() + self.settings.funding_confirm_timeout_sec
        while True:
            try:
                if await self.probe.native_balance(address) >= self.settings.min_native_for_message:
                    return True
            except BalanceUnavailable:
                pass
            if time.monotonic() >= deadline:
                log.warning(json.dumps({"event": "funding_not_confirmed", "address": address}))
                return False
            await asyncio.sleep(self.funding_poll_interval)

    # ------------------------------------------------------------------
    # Transfers
    # ------------------------------------------------------------------

    async def _transfer_leg(
        self,
        result: ReleaseResult,
        signer: Any,
        escrow_address: str,
        to_address: str,
        amount: int,
        memo: str,
        leg: str,
    ) -> TransferOutcome:
        """One transfer; a gas shortfall triggers one re-funding and one resubmission."""
        attempts: List[TransferOutcome] = []

        async def _attempt() -> TransferOutcome:
            if attempts and attempts[-1].needs_funding:
                await self._ensure_funded(result, escrow_address)
            outcome = await self.executor.transfer(
                signer, escrow_address, to_address, amount, self.settings.gas_allowance, memo
            )
            attempts.append(outcome)
            result.transfers.append(outcome)
            if self.metrics:
                self.metrics.record_transfer(leg, "ok" if outcome.success else outcome.reason.value)
            if outcome.needs_funding:
                raise _NeedsFunding(outcome)
            return outcome

        try:
            return await retry_async(
                _attempt, self.resubmit_policy, label=f"{leg}_transfer", order_id=result.order_id
            )
        except _NeedsFunding as exc:
            return exc.outcome
        except (_FundingFailed, BalanceUnavailable, ChainError) as exc:
            last = attempts[-1]
            last.error = f"{last.error}; re-funding failed: {exc}"
            return last

    def _record(
        self, tx_type: TransactionType, result: ReleaseResult, escrow_address: str, outcome: TransferOutcome
    ) -> None:
        if self.recorder is None:
            return
        self.recorder.dispatch(
            tx_type,
            result.order_id,
            escrow_address,
            outcome.to_address,
            outcome.amount,
            memo=outcome.memo,
            hash_hint=outcome.tx_hash,
            metadata={"tokenWallet": outcome.token_wallet},
        )

    # ------------------------------------------------------------------
    # Failure and status bookkeeping
    # ------------------------------------------------------------------

    def _fail(self, result: ReleaseResult, reason: FailureReason, error: str) -> ReleaseResult:
        result.success = False
        result.reason = reason
        result.error = error
        self.state_machine.transition(result.attempt, ReleaseState.FAILED, reason=reason.value)
        return result

    async def _fail_transfer(
        self, result: ReleaseResult, wallet: EscrowWallet, outcome: TransferOutcome, fee_done: bool
    ) -> ReleaseResult:
        if outcome.reason in (TransferFailure.INSUFFICIENT_GAS, TransferFailure.REJECTED_MESSAGE):
            reason = FailureReason.TRANSFER_REJECTED
        else:
            reason = FailureReason.TRANSFER_FAILED
        return await self._fail_and_persist(result, wallet, reason, outcome.error or reason.value, fee_done)

    async def _fail_and_persist(
        self,
        result: ReleaseResult,
        wallet: EscrowWallet,
        reason: FailureReason,
        error: str,
        fee_done: bool = False,
    ) -> ReleaseResult:
        self._fail(result, reason, error)
        previous = wallet.release_status
        if previous.status is ReleaseStatusValue.RELEASED:
            return result
        if fee_done or previous.status is ReleaseStatusValue.FEE_TRANSFERRED:
            split = result.split
            status = ReleaseStatus(
                status=ReleaseStatusValue.FEE_TRANSFERRED,
                fee_amount=previous.fee_amount if previous.fee_amount is not None else (split.fee_amount if split else None),
                seller_amount=split.seller_amount if split else previous.seller_amount,
                total_amount=previous.total_amount if previous.total_amount is not None else (split.total_amount if split else None),
                reason=reason.value,
            )
        else:
            status = ReleaseStatus(status=ReleaseStatusValue.FAILED, reason=reason.value)
        await self._persist(result.order_id, status)
        return result

    async def _persist(self, order_id: str, status: ReleaseStatus) -> bool:
        try:
            await self.ledger.update_release_status(order_id, status)
            return True
        except LedgerError as exc:
            log.error(json.dumps({
                "event": "release_status_write_failed",
                "order_id": order_id,
                "status": status.status.value,
                "error": str(exc),
            }))
            if self.metrics:
                self.metrics.ledger_write_failures_total.inc()
            if self.alerts is not None:
                await self.alerts.alert_ledger_write_failed(order_id, str(exc))
            return False
