"""
Release State Machine - explicit lifecycle for one release attempt.

    IDLE -> WALLET_RESOLVED -> FUNDED -> BALANCE_PROBED -> SPLIT_COMPUTED
         -> FEE_TRANSFERRED -> SELLER_TRANSFERRED -> RELEASED

Any non-terminal state may move to FAILED. RELEASED and FAILED are
terminal. Each attempt keeps its own audit trail of transitions so a
ReleaseResult can show exactly how far an attempt got.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Any, Callable, Dict, List, Optional

from settlement.core.models import now_ms

log = logging.getLogger("settlement")


class ReleaseState(Enum):
    IDLE = auto()
    WALLET_RESOLVED = auto()
    FUNDED = auto()
    BALANCE_PROBED = auto()
    SPLIT_COMPUTED = auto()
    FEE_TRANSFERRED = auto()
    SELLER_TRANSFERRED = auto()
    RELEASED = auto()  # terminal
    FAILED = auto()  # terminal


@dataclass
class StateTransition:
    from_state: ReleaseState
    to_state: ReleaseState
    timestamp_ms: int
    reason: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ReleaseAttempt:
    """Transient record of one pass through the state machine."""
    order_id: str
    started_at_ms: int = field(default_factory=now_ms)
    state: ReleaseState = ReleaseState.IDLE
    reason: Optional[str] = None
    transitions: List[StateTransition] = field(default_factory=list)

    @property
    def is_terminal(self) -> bool:
        return self.state in (ReleaseState.RELEASED, ReleaseState.FAILED)

    def history(self) -> List[str]:
        return [ReleaseState.IDLE.name] + [t.to_state.name for t in self.transitions]


VALID_TRANSITIONS: Dict[ReleaseState, List[ReleaseState]] = {
    ReleaseState.IDLE: [ReleaseState.WALLET_RESOLVED, ReleaseState.FAILED],
    ReleaseState.WALLET_RESOLVED: [ReleaseState.FUNDED, ReleaseState.FAILED],
    ReleaseState.FUNDED: [ReleaseState.BALANCE_PROBED, ReleaseState.FAILED],
    ReleaseState.BALANCE_PROBED: [ReleaseState.SPLIT_COMPUTED, ReleaseState.FAILED],
    ReleaseState.SPLIT_COMPUTED: [ReleaseState.FEE_TRANSFERRED, ReleaseState.FAILED],
    ReleaseState.FEE_TRANSFERRED: [ReleaseState.SELLER_TRANSFERRED, ReleaseState.FAILED],
    # funds have left the escrow; only the bookkeeping step remains
    ReleaseState.SELLER_TRANSFERRED: [ReleaseState.RELEASED],
    ReleaseState.RELEASED: [],
    ReleaseState.FAILED: [],
}


class InvalidTransition(RuntimeError):
    pass


class ReleaseStateMachine:
    def __init__(self, log_event: Optional[Callable[..., None]] = None) -> None:
        self._log_event = log_event or self._default_log
        self._stats = {
            "attempts": 0,
            "released": 0,
            "failed": 0,
            "invalid_transitions_blocked": 0,
        }

    def _default_log(self, event: str, **kwargs: Any) -> None:
        log.debug(json.dumps({"event": event, **kwargs}, default=str))

    def start(self, order_id: str) -> ReleaseAttempt:
        self._stats["attempts"] += 1
        return ReleaseAttempt(order_id=order_id)

    @staticmethod
    def is_valid_transition(from_state: ReleaseState, to_state: ReleaseState) -> bool:
        return to_state in VALID_TRANSITIONS.get(from_state, [])

    def transition(
        self,
        attempt: ReleaseAttempt,
        to_state: ReleaseState,
        reason: Optional[str] = None,
        **metadata: Any,
    ) -> None:
        """Advance `attempt`; raises InvalidTransition if the move is not allowed."""
        from_state = attempt.state
        if not self.is_valid_transition(from_state, to_state):
            self._stats["invalid_transitions_blocked"] += 1
            self._log_event(
                "release_state_invalid_transition",
                order_id=attempt.order_id,
                from_state=from_state.name,
                to_state=to_state.name,
                reason=reason,
            )
            raise InvalidTransition(f"{attempt.order_id}: {from_state.name} -> {to_state.name} not allowed")

        attempt.transitions.append(
            StateTransition(
                from_state=from_state,
                to_state=to_state,
                timestamp_ms=now_ms(),
                reason=reason,
                metadata=metadata,
            )
        )
        attempt.state = to_state
        if to_state is ReleaseState.FAILED:
            attempt.reason = reason
            self._stats["failed"] += 1
        elif to_state is ReleaseState.RELEASED:
            self._stats["released"] += 1

        self._log_event(
            "release_state_transition",
            order_id=attempt.order_id,
            from_state=from_state.name,
            to_state=to_state.name,
            reason=reason,
        )

    def get_stats(self) -> Dict[str, int]:
        return dict(self._stats)
