"""
ReleaseScheduler: one delayed release per order, plus a manual trigger.

Timers and manual triggers both go through ReleaseOrchestrator.release,
which serializes them on the order's lock; a timer that fires after a
manual release finds an empty escrow and does nothing. There is no cancel:
shutdown() stops the timers that have not fired yet.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Callable, Dict, Optional, Set

from settlement.core.models import now_ms
from settlement.execution.release_orchestrator import ReleaseOrchestrator, ReleaseResult
from settlement.infra.logging_cfg import log_event
from settlement.ledger.store import LedgerStore

log = logging.getLogger("settlement")


class ReleaseScheduler:
    def __init__(
        self,
        orchestrator: ReleaseOrchestrator,
        ledger: LedgerStore,
        default_delay_sec: float = 30.0,
        alerts: Optional[Any] = None,
        metrics: Optional[Any] = None,
        log_event: Optional[Callable[..., None]] = None,
    ) -> None:
        self.orchestrator = orchestrator
        self.ledger = ledger
        self.default_delay_sec = default_delay_sec
        self.alerts = alerts
        self.metrics = metrics
        self._log_event = log_event or self._default_log
        self._timers: Dict[str, asyncio.Task] = {}
        self._firing: Set[str] = set()
        self._closed = False

    def _default_log(self, event: str, **kwargs: Any) -> None:
        log_event(log, event, **kwargs)

    def is_armed(self, order_id: str) -> bool:
        task = self._timers.get(order_id)
        return task is not None and not task.done()

    @property
    def armed_count(self) -> int:
        return sum(1 for t in self._timers.values() if not t.done())

    def arm(self, order_id: str, delay_sec: Optional[float] = None, listing_id: Optional[str] = None) -> bool:
        """
        Schedule one release of `order_id` after `delay_sec`.

        Returns False without scheduling when a timer is already armed for
        the order or the scheduler has shut down.
        """
        if self._closed:
            self._log_event("release_arm_after_shutdown", order_id=order_id)
            return False
        if self.is_armed(order_id):
            self._log_event("release_already_armed", order_id=order_id)
            return False
        delay = self.default_delay_sec if delay_sec is None else max(0.0, delay_sec)
        self._timers[order_id] = asyncio.create_task(
            self._fire(order_id, delay, listing_id), name=f"release-timer-{order_id}"
        )
        self._update_gauge()
        self._log_event("release_armed", order_id=order_id, delay_sec=delay)
        return True

    async def trigger(self, order_id: str, listing_id: Optional[str] = None) -> ReleaseResult:
        """Release now. Safe to call while a timer for the same order is pending or firing."""
        return await self.orchestrator.release(order_id, listing_id, trigger="manual")

    async def _fire(self, order_id: str, delay: float, listing_id: Optional[str]) -> Optional[ReleaseResult]:
        try:
            await asyncio.sleep(delay)
            self._firing.add(order_id)
            result = await self.orchestrator.release(order_id, listing_id, trigger="timer")
            if not result.success and not result.is_noop:
                await self._alert_failure(order_id, result.reason.value if result.reason else "UNKNOWN", result.error)
            return result
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            log.exception(json.dumps({"event": "release_timer_error", "order_id": order_id, "error": str(exc)}))
            await self._alert_failure(order_id, "UNEXPECTED_ERROR", str(exc))
            return None
        finally:
            self._firing.discard(order_id)
            if self._timers.get(order_id) is asyncio.current_task():
                del self._timers[order_id]
            self._update_gauge()

    async def _alert_failure(self, order_id: str, reason: str, error: Optional[str]) -> None:
        log.error(json.dumps({
            "event": "automatic_release_failed",
            "order_id": order_id,
            "reason": reason,
            "error": error,
        }))
        if self.alerts is not None:
            await self.alerts.alert_release_failed(order_id, reason, error)

    async def rearm_pending(self) -> int:
        """
        Re-arm unreleased orders that have a recorded deposit.

        The deadline counts from the latest deposit, so an order that was
        opened but never paid is left alone.
        """
        wallets = await self.ledger.list_pending_wallets()
        deposits = await self.ledger.latest_deposits()
        now = now_ms()
        armed = 0
        for wallet in wallets:
            deposit = deposits.get(wallet.order_id)
            if deposit is None:
                continue
            remaining = (deposit.created_at_ms + self.default_delay_sec * 1000 - now) / 1000
            if self.arm(wallet.order_id, delay_sec=max(0.0, remaining), listing_id=wallet.listing_id):
                armed += 1
        self._log_event(
            "release_rearmed", pending=len(wallets), deposited=sum(1 for w in wallets if w.order_id in deposits),
            armed=armed,
        )
        return armed

    async def shutdown(self) -> None:
        """Cancel timers still waiting; let releases already under way finish."""
        self._closed = True
        waiting = [t for oid, t in self._timers.items() if oid not in self._firing]
        running = [t for oid, t in self._timers.items() if oid in self._firing]
        for task in waiting:
            task.cancel()
        if waiting or running:
            await asyncio.gather(*waiting, *running, return_exceptions=True)
        self._timers.clear()
        self._update_gauge()
        self._log_event("scheduler_shutdown", cancelled=len(waiting), completed=len(running))

    def _update_gauge(self) -> None:
        if self.metrics:
            self.metrics.releases_armed.set(self.armed_count)
