"""
Infrastructure package.

This package contains logging configuration, retry policies and per-order
locks.
"""

from settlement.infra.locks import OrderLockRegistry
from settlement.infra.logging_cfg import build_logger, log_event, register_secret, unregister_secret
from settlement.infra.retry import NO_RETRY, RetryPolicy, retry_async

__all__ = [
    "NO_RETRY",
    "OrderLockRegistry",
    "RetryPolicy",
    "build_logger",
    "log_event",
    "register_secret",
    "retry_async",
    "unregister_secret",
]
