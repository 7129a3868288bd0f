"""
LedgerStore: durable records for wallets, sellers and transactions.

Backends are plain key/value collections. The store layers the settlement
semantics on top:

- wallet records are written to a primary and an optional replica, each
  under its own timeout; the write succeeds if either store accepts it
- reads retry transient failures under a RetryPolicy and fall back from
  the primary to the replica
- transaction records are keyed by hash and never overwritten

Collections mirror the storefront's: orderWallets, transactions,
shopItems, users.
"""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, TypeVar

from settlement.core.errors import LedgerError, LedgerUnavailable
from settlement.core.models import (
    EscrowWallet,
    ReleaseStatus,
    ReleaseStatusValue,
    SellerDestination,
    TransactionRecord,
    TransactionType,
)
from settlement.infra.retry import RetryPolicy, retry_async

log = logging.getLogger("settlement")

WALLETS = "orderWallets"
TRANSACTIONS = "transactions"
LISTINGS = "shopItems"
USERS = "users"

UNRELEASED = {ReleaseStatusValue.PENDING, ReleaseStatusValue.FEE_TRANSFERRED}

T = TypeVar("T")


class LedgerBackend(Protocol):
    name: str

    async def get(self, collection: str, key: str) -> Optional[Dict[str, Any]]: ...

    async def put(self, collection: str, key: str, record: Dict[str, Any], create_only: bool = False) -> bool: ...

    async def update(self, collection: str, key: str, fields: Dict[str, Any]) -> None: ...

    async def list(self, collection: str) -> List[Dict[str, Any]]: ...


class InMemoryBackend:
    """Process-local backend for tests and single-shot tools."""

    def __init__(self, name: str = "memory") -> None:
        self.name = name
        self.data: Dict[str, Dict[str, Dict[str, Any]]] = {}

    async def get(self, collection: str, key: str) -> Optional[Dict[str, Any]]:
        record = self.data.get(collection, {}).get(key)
        return dict(record) if record is not None else None

    async def put(self, collection: str, key: str, record: Dict[str, Any], create_only: bool = False) -> bool:
        bucket = self.data.setdefault(collection, {})
        if create_only and key in bucket:
            return False
        bucket[key] = dict(record)
        return True

    async def update(self, collection: str, key: str, fields: Dict[str, Any]) -> None:
        bucket = self.data.setdefault(collection, {})
        if key not in bucket:
            raise LedgerError(f"{collection}/{key} does not exist")
        bucket[key].update(fields)

    async def list(self, collection: str) -> List[Dict[str, Any]]:
        return [dict(r) for r in self.data.get(collection, {}).values()]


class JsonFileBackend:
    """
    One JSON file per collection under `root`.

    File IO runs in the default executor and every operation holds one
    asyncio.Lock, so read-modify-write sequences never interleave. Writes
    go to a temp file that replaces the original.
    """

    def __init__(self, root: str, name: str = "file") -> None:
        self.name = name
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)
        self._lock = asyncio.Lock()

    def _path(self, collection: str) -> Path:
        safe = collection.replace("/", "_").replace(":", "_")
        return self.root / f"{safe}.json"

    def _load(self, collection: str) -> Dict[str, Dict[str, Any]]:
        path = self._path(collection)
        if not path.exists():
            return {}
        try:
            return json.loads(path.read_text())
        except json.JSONDecodeError as exc:
            raise LedgerError(f"corrupt ledger file {path}: {exc}") from exc
        except OSError as exc:
            raise LedgerUnavailable(f"ledger read failed for {path}: {exc}") from exc

    def _save(self, collection: str, data: Dict[str, Dict[str, Any]]) -> None:
        path = self._path(collection)
        tmp = path.with_suffix(".tmp")
        try:
            tmp.write_text(json.dumps(data, indent=2, default=str))
            tmp.replace(path)
        except OSError as exc:
            raise LedgerUnavailable(f"ledger write failed for {path}: {exc}") from exc

    async def _run(self, fn: Callable[[], T]) -> T:
        async with self._lock:
            loop = asyncio.get_running_loop()
            return await loop.run_in_executor(None, fn)

    async def get(self, collection: str, key: str) -> Optional[Dict[str, Any]]:
        return await self._run(lambda: self._load(collection).get(key))

    async def put(self, collection: str, key: str, record: Dict[str, Any], create_only: bool = False) -> bool:
        def _put() -> bool:
            data = self._load(collection)
            if create_only and key in data:
                return False
            data[key] = record
            self._save(collection, data)
            return True

        return await self._run(_put)

    async def update(self, collection: str, key: str, fields: Dict[str, Any]) -> None:
        def _update() -> None:
            data = self._load(collection)
            if key not in data:
                raise LedgerError(f"{collection}/{key} does not exist")
            data[key].update(fields)
            self._save(collection, data)

        await self._run(_update)

    async def list(self, collection: str) -> List[Dict[str, Any]]:
        return await self._run(lambda: list(self._load(collection).values()))


class LedgerStore:
    def __init__(
        self,
        primary: LedgerBackend,
        replica: Optional[LedgerBackend] = None,
        write_timeout: float = 3.0,
        read_timeout: float = 5.0,
        retry_policy: Optional[RetryPolicy] = None,
        log_event: Optional[Callable[..., None]] = None,
    ) -> None:
        self.primary = primary
        self.replica = replica
        self.write_timeout = write_timeout
        self.read_timeout = read_timeout
        self.retry_policy = retry_policy or RetryPolicy(max_attempts=3, delay_sec=1.0, timeout_sec=read_timeout)
        self._log_event = log_event or self._default_log

    def _default_log(self, event: str, **kwargs: Any) -> None:
        log.info(json.dumps({"event": event, **kwargs}, default=str))

    def _backends(self) -> List[LedgerBackend]:
        return [b for b in (self.primary, self.replica) if b is not None]

    async def _read(self, fn: Callable[[], Awaitable[T]], label: str, **context: Any) -> T:
        try:
            return await retry_async(
                fn, self.retry_policy, label=label, log_event=self._retry_log, **context
            )
        except asyncio.TimeoutError as exc:
            raise LedgerUnavailable(f"{label} timed out") from exc

    def _retry_log(self, event: str, **kwargs: Any) -> None:
        self._log_event("ledger_retry", **kwargs)

    async def _write_everywhere(self, label: str, op: Callable[[LedgerBackend], Awaitable[Any]], **context: Any) -> List[str]:
        """Run `op` against every backend; succeed if at least one accepts it."""
        backends = self._backends()

        async def _one(backend: LedgerBackend) -> Any:
            return await asyncio.wait_for(op(backend), timeout=self.write_timeout)

        results = await asyncio.gather(*(_one(b) for b in backends), return_exceptions=True)
        written: List[str] = []
        for backend, result in zip(backends, results):
            if isinstance(result, BaseException):
                if isinstance(result, asyncio.CancelledError):
                    raise result
                self._log_event(
                    "ledger_write_failed",
                    label=label,
                    backend=backend.name,
                    error=str(result) or type(result).__name__,
                    **context,
                )
            else:
                written.append(backend.name)
        if not written:
            raise LedgerUnavailable(f"{label}: no ledger accepted the write")
        return written

    # ------------------------------------------------------------------
    # Wallets
    # ------------------------------------------------------------------

    async def store_wallet(self, wallet: EscrowWallet) -> List[str]:
        """Dual-write a wallet record. Returns the names of the stores that took it."""
        record = wallet.to_record()
        written = await self._write_everywhere(
            "store_wallet",
            lambda b: b.put(WALLETS, wallet.order_id, record),
            order_id=wallet.order_id,
        )
        self._log_event("wallet_stored", order_id=wallet.order_id, address=wallet.public_address, stores=written)
        return written

    async def get_wallet(self, order_id: str) -> Optional[EscrowWallet]:
        """
        Primary first, replica on miss or outage.

        Returns None only when every reachable store says the record does
        not exist; raises LedgerUnavailable when no store could be read.
        """
        unavailable: Optional[BaseException] = None
        for backend in self._backends():
            try:
                record = await self._read(
                    lambda b=backend: b.get(WALLETS, order_id), "get_wallet", order_id=order_id, backend=backend.name
                )
            except LedgerUnavailable as exc:
                unavailable = exc
                continue
            if record is not None:
                return EscrowWallet.from_record(record)
        if unavailable is not None:
            raise LedgerUnavailable(f"wallet record for {order_id} unreadable: {unavailable}")
        return None

    async def update_release_status(self, order_id: str, status: ReleaseStatus) -> List[str]:
        fields = {"releaseStatus": status.to_record()}
        return await self._write_everywhere(
            "update_release_status",
            lambda b: b.update(WALLETS, order_id, fields),
            order_id=order_id,
            status=status.status.value,
        )

    async def list_pending_wallets(self) -> List[EscrowWallet]:
        """Wallets whose release has not completed, oldest first."""
        records = await self._read(lambda: self.primary.list(WALLETS), "list_wallets")
        wallets = [EscrowWallet.from_record(r) for r in records if r.get("orderId")]
        pending = [w for w in wallets if w.release_status.status in UNRELEASED]
        return sorted(pending, key=lambda w: w.created_at_ms)

    # ------------------------------------------------------------------
    # Listings and sellers
    # ------------------------------------------------------------------

    async def get_listing(self, listing_id: str) -> Optional[Dict[str, Any]]:
        return await self._read(lambda: self.primary.get(LISTINGS, listing_id), "get_listing", listing_id=listing_id)

    async def get_user_profile(self, user_id: str) -> Optional[Dict[str, Any]]:
        return await self._read(lambda: self.primary.get(USERS, user_id), "get_user_profile", user_id=user_id)

    async def resolve_seller_destination(
        self, listing_id: Optional[str], seller_id: Optional[str] = None
    ) -> Optional[SellerDestination]:
        """
        Seller payout address: the listing's own wallet first, then the
        seller's profile. None when neither carries one.
        """
        if listing_id:
            listing = await self.get_listing(listing_id)
            if listing:
                address = (listing.get("walletAddress") or "").strip()
                seller_id = listing.get("sellerId") or seller_id
                if address:
                    return SellerDestination(seller_id=seller_id, wallet_address=address, source="listing")
        if not seller_id:
            self._log_event("seller_unresolved", listing_id=listing_id, reason="no_seller_id")
            return None
        profile = await self.get_user_profile(seller_id)
        address = ((profile or {}).get("walletAddress") or "").strip()
        if address:
            return SellerDestination(seller_id=seller_id, wallet_address=address, source="profile")
        self._log_event("seller_unresolved", listing_id=listing_id, seller_id=seller_id, reason="no_wallet")
        return None

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    async def put_transaction(self, record: TransactionRecord) -> bool:
        """Append a record; False when the hash is already recorded."""
        created = await self._read(
            lambda: self.primary.put(TRANSACTIONS, record.transaction_hash, record.to_record(), create_only=True),
            "put_transaction",
            tx_hash=record.transaction_hash,
        )
        if not created:
            self._log_event("transaction_duplicate", tx_hash=record.transaction_hash, order_id=record.order_id)
        return created

    async def get_transaction(self, tx_hash: str) -> Optional[TransactionRecord]:
        record = await self._read(lambda: self.primary.get(TRANSACTIONS, tx_hash), "get_transaction", tx_hash=tx_hash)
        return TransactionRecord.from_record(record) if record else None

    async def list_transactions(
        self, tx_type: Optional[TransactionType] = None, limit: int = 100
    ) -> List[TransactionRecord]:
        """Newest first, optionally filtered by type."""
        records = await self._read(lambda: self.primary.list(TRANSACTIONS), "list_transactions")
        txs = [TransactionRecord.from_record(r) for r in records]
        if tx_type is not None:
            txs = [t for t in txs if t.type is tx_type]
        txs.sort(key=lambda t: t.created_at_ms, reverse=True)
        return txs[:limit]

    async def latest_deposits(self) -> Dict[str, TransactionRecord]:
        """Most recent buyer deposit per order id."""
        records = await self._read(lambda: self.primary.list(TRANSACTIONS), "list_transactions")
        latest: Dict[str, TransactionRecord] = {}
        for record in records:
            tx = TransactionRecord.from_record(record)
            if tx.type is not TransactionType.BUYER_TO_CUSTODY or not tx.order_id:
                continue
            seen = latest.get(tx.order_id)
            if seen is None or tx.created_at_ms > seen.created_at_ms:
                latest[tx.order_id] = tx
        return latest
