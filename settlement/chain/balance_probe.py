"""
BalanceProbe: resilient balance reads against an eventually-consistent chain.

Native balance goes through an ordered list of strategies, each returning a
ProbeResult instead of raising:

    1. direct balance query
    2. account-state query
    3. contract-level `balance` get-method

The first OK result wins. An undeployed account is not an error: when no
strategy succeeds but at least one saw the not-deployed condition, the
balance is zero. Only when every strategy failed for real is
BalanceUnavailable raised.

Token balance reads the owner's token sub-account, resolved through the
token-issuer contract. A sub-account that does not exist yet raises
AccountNotFound so callers can tell "never funded" from "spent".
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from enum import Enum, auto
from typing import Any, Awaitable, Callable, List, Optional, Sequence, Tuple

from settlement.chain.client import ChainClient
from settlement.core.errors import AccountNotFound, BalanceUnavailable, ChainError, ChainUnavailable

log = logging.getLogger("settlement")


class ProbeStatus(Enum):
    OK = auto()
    NOT_FOUND = auto()
    ERROR = auto()


@dataclass(frozen=True)
class ProbeResult:
    status: ProbeStatus
    strategy: str
    balance: int = 0
    error: Optional[str] = None

    @classmethod
    def ok(cls, strategy: str, balance: int) -> "ProbeResult":
        return cls(ProbeStatus.OK, strategy, balance=balance)

    @classmethod
    def not_found(cls, strategy: str) -> "ProbeResult":
        return cls(ProbeStatus.NOT_FOUND, strategy)

    @classmethod
    def failed(cls, strategy: str, error: str) -> "ProbeResult":
        return cls(ProbeStatus.ERROR, strategy, error=error)


Strategy = Tuple[str, Callable[[str], Awaitable[ProbeResult]]]


class BalanceProbe:
    def __init__(
        self,
        chain: ChainClient,
        token_master_address: str,
        log_event: Optional[Callable[..., None]] = None,
        on_fallback: Optional[Callable[[str], None]] = None,
    ) -> None:
        self.chain = chain
        self.token_master_address = token_master_address
        self._log_event = log_event or self._default_log
        self._on_fallback = on_fallback
        self.strategies: List[Strategy] = [
            ("direct", self._direct),
            ("account_state", self._account_state),
            ("contract", self._contract),
        ]

    def _default_log(self, event: str, **kwargs: Any) -> None:
        log.info(json.dumps({"event": event, **kwargs}, default=str))

    # ------------------------------------------------------------------
    # Native balance
    # ------------------------------------------------------------------

    async def native_balance(self, address: str) -> int:
        results: List[ProbeResult] = []
        for name, strategy in self.strategies:
            result = await strategy(address)
            results.append(result)
            if result.status is ProbeStatus.OK:
                if len(results) > 1:
                    self._log_event("balance_probe_fallback", address=address, strategy=name)
                    if self._on_fallback:
                        self._on_fallback(name)
                return result.balance
            self._log_event(
                "balance_probe_strategy_failed",
                address=address,
                strategy=name,
                status=result.status.name,
                error=result.error,
            )
        return self.resolve(address, results)

    def resolve(self, address: str, results: Sequence[ProbeResult]) -> int:
        """Fold strategy results into a balance once none returned OK."""
        for result in results:
            if result.status is ProbeStatus.OK:
                return result.balance
        if any(r.status is ProbeStatus.NOT_FOUND for r in results):
            self._log_event("balance_probe_not_deployed", address=address)
            return 0
        errors = "; ".join(f"{r.strategy}: {r.error}" for r in results)
        raise BalanceUnavailable(f"all balance strategies failed for {address}: {errors}")

    async def _direct(self, address: str) -> ProbeResult:
        try:
            return ProbeResult.ok("direct", await self.chain.get_balance(address))
        except ChainError as exc:
            return ProbeResult.failed("direct", str(exc))

    async def _account_state(self, address: str) -> ProbeResult:
        try:
            state = await self.chain.get_account_state(address)
        except ChainError as exc:
            return ProbeResult.failed("account_state", str(exc))
        if not state.is_initialized:
            return ProbeResult.not_found("account_state")
        return ProbeResult.ok("account_state", state.balance)

    async def _contract(self, address: str) -> ProbeResult:
        try:
            result = await self.chain.run_get_method(address, "balance")
        except ChainError as exc:
            if exc.exit_code is not None and int(exc.exit_code) == -13:
                return ProbeResult.not_found("contract")
            return ProbeResult.failed("contract", str(exc))
        if result.not_deployed:
            return ProbeResult.not_found("contract")
        if result.exit_code != 0:
            return ProbeResult.failed("contract", f"exit code {result.exit_code}")
        try:
            return ProbeResult.ok("contract", result.read_int(0))
        except (ChainError, IndexError, ValueError) as exc:
            return ProbeResult.failed("contract", str(exc))

    # ------------------------------------------------------------------
    # Token balance
    # ------------------------------------------------------------------

    async def token_wallet_address(self, owner: str) -> str:
        """Address of `owner`'s token sub-account, derived by the issuer contract."""
        result = await self.chain.run_get_method(
            self.token_master_address,
            "get_wallet_address",
            [["address", owner]],
        )
        if result.exit_code != 0:
            raise ChainError(
                f"get_wallet_address failed with exit code {result.exit_code}",
                exit_code=result.exit_code,
            )
        return result.read_address(0)

    async def token_balance(self, owner: str) -> int:
        """
        Token units held by `owner`.

        Raises AccountNotFound when the sub-account is not deployed,
        ChainUnavailable on transport failure.
        """
        token_wallet = await self.token_wallet_address(owner)
        try:
            result = await self.chain.run_get_method(token_wallet, "get_wallet_data")
        except ChainUnavailable:
            raise
        except ChainError as exc:
            if exc.exit_code is not None and int(exc.exit_code) == -13:
                raise AccountNotFound(token_wallet) from exc
            raise
        if result.not_deployed:
            raise AccountNotFound(token_wallet)
        if result.exit_code != 0:
            raise ChainError(
                f"get_wallet_data failed with exit code {result.exit_code}",
                exit_code=result.exit_code,
            )
        balance = result.read_int(0)
        self._log_event("token_balance", owner=owner, token_wallet=token_wallet, balance=balance)
        return balance
