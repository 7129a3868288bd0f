"""
Execution package.

This package contains the release state machine, orchestration, scheduling
and background transaction recording.
"""

from settlement.execution.recorder import TransactionRecorder
from settlement.execution.release_orchestrator import FailureReason, ReleaseOrchestrator, ReleaseResult
from settlement.execution.release_state_machine import (
    VALID_TRANSITIONS,
    InvalidTransition,
    ReleaseAttempt,
    ReleaseState,
    ReleaseStateMachine,
)
from settlement.execution.scheduler import ReleaseScheduler

__all__ = [
    "FailureReason",
    "InvalidTransition",
    "ReleaseAttempt",
    "ReleaseOrchestrator",
    "ReleaseResult",
    "ReleaseScheduler",
    "ReleaseState",
    "ReleaseStateMachine",
    "TransactionRecorder",
    "VALID_TRANSITIONS",
]
