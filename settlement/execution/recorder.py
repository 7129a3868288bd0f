"""
Transaction recorder that resolves and persists transfer hashes in the background.

A submitted message has no final identifier until the chain includes it,
so each dispatch starts an asyncio.Task that waits out the propagation
delay, lists the sender's recent transactions and picks the one carrying
the transfer's memo (else the newest one not yet claimed). The record is
keyed by its hash, falling back to "{address}_{lt}" when the API omits it.

Recording is best effort: failures are logged and counted, never raised
into the release path. aclose() cancels outstanding tasks; drain() waits
for them.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections import OrderedDict
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from settlement.chain.client import ChainClient, ChainTransaction
from settlement.core.models import TransactionRecord, TransactionType
from settlement.infra.logging_cfg import log_event
from settlement.ledger.store import LedgerStore

log = logging.getLogger("settlement")

DEFAULT_LOOKUP_LIMIT = 5
MAX_CLAIMED = 1024


class TransactionRecorder:
    def __init__(
        self,
        chain: ChainClient,
        ledger: LedgerStore,
        delay_sec: float = 2.0,
        lookup_limit: int = DEFAULT_LOOKUP_LIMIT,
        metrics: Optional[Any] = None,
        max_claimed: int = MAX_CLAIMED,
        log_event: Optional[Callable[..., None]] = None,
    ) -> None:
        self.chain = chain
        self.ledger = ledger
        self.delay_sec = delay_sec
        self.lookup_limit = lookup_limit
        self.metrics = metrics
        self._log_event = log_event or self._default_log
        self._tasks: Set[asyncio.Task] = set()
        # recently claimed hashes, oldest first
        self._claimed: "OrderedDict[str, None]" = OrderedDict()
        self.max_claimed = max_claimed
        self._closed = False

    def _default_log(self, event: str, **kwargs: Any) -> None:
        log_event(log, event, **kwargs)

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def dispatch(
        self,
        tx_type: TransactionType,
        order_id: str,
        from_address: str,
        to_address: str,
        amount: int,
        memo: Optional[str] = None,
        hash_hint: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Optional[asyncio.Task]:
        """Schedule a background record; returns the task, or None once closed."""
        if self._closed:
            self._log_event("recorder_dispatch_after_close", order_id=order_id, type=tx_type.value)
            return None
        task = asyncio.create_task(
            self._run(tx_type, order_id, from_address, to_address, amount, memo, hash_hint, metadata or {}),
            name=f"record-{order_id}-{tx_type.value}",
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run(self, *args: Any) -> Optional[TransactionRecord]:
        try:
            if self.delay_sec > 0:
                await asyncio.sleep(self.delay_sec)
            return await self.record_now(*args)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            tx_type, order_id = args[0], args[1]
            log.error(json.dumps({
                "event": "recorder_failed",
                "order_id": order_id,
                "type": tx_type.value,
                "error": str(exc) or type(exc).__name__,
            }))
            if self.metrics:
                self.metrics.record_recorder("failed")
            return None

    async def record_now(
        self,
        tx_type: TransactionType,
        order_id: str,
        from_address: str,
        to_address: str,
        amount: int,
        memo: Optional[str] = None,
        hash_hint: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Optional[TransactionRecord]:
        """Resolve the hash and persist the record immediately. Raises on failure."""
        txs = await self.chain.get_transactions(from_address, limit=self.lookup_limit)
        chosen, source = self._pick(txs, memo, from_address)

        if chosen is not None:
            tx_hash = chosen.hash or f"{from_address}_{chosen.lt}"
        elif hash_hint:
            tx_hash, source = hash_hint, "submission"
        else:
            self._log_event("recorder_no_transaction", order_id=order_id, type=tx_type.value, address=from_address)
            if self.metrics:
                self.metrics.record_recorder("unresolved")
            return None
        self._claim(tx_hash)

        record = TransactionRecord(
            type=tx_type,
            transaction_hash=tx_hash,
            order_id=order_id,
            from_address=from_address,
            to_address=to_address,
            amount=amount,
            metadata={**(metadata or {}), "memo": memo, "hashSource": source},
        )
        created = await self.ledger.put_transaction(record)
        if self.metrics:
            self.metrics.record_recorder("recorded" if created else "duplicate")
        self._log_event(
            "transaction_recorded" if created else "transaction_already_recorded",
            order_id=order_id,
            type=tx_type.value,
            tx_hash=tx_hash,
            source=source,
        )
        return record

    def _claim(self, tx_hash: str) -> None:
        self._claimed[tx_hash] = None
        self._claimed.move_to_end(tx_hash)
        while len(self._claimed) > self.max_claimed:
            self._claimed.popitem(last=False)

    def _pick(
        self, txs: List[ChainTransaction], memo: Optional[str], address: str
    ) -> Tuple[Optional[ChainTransaction], str]:
        if memo:
            for tx in txs:
                if tx.memo == memo:
                    return tx, "memo"
        for tx in txs:
            if (tx.hash or f"{address}_{tx.lt}") not in self._claimed:
                return tx, "latest"
        return None, "none"

    async def drain(self) -> None:
        """Wait for every outstanding record task to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def aclose(self) -> None:
        """Stop accepting dispatches and cancel outstanding tasks."""
        self._closed = True
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            self._log_event("recorder_closed", cancelled=len(tasks))
