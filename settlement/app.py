"""
SettlementService: the wired-up settlement engine behind one facade.

Owns the component graph (ledger, chain client, custody, probe, executor,
recorder, orchestrator, scheduler) and exposes the operations the
storefront calls: open an escrow, confirm a deposit, release manually,
list transactions and read payment constants.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Dict, List, Optional

from settlement.chain.balance_probe import BalanceProbe
from settlement.chain.client import ChainClient, HttpChainClient
from settlement.chain.transfer_executor import TransferExecutor
from settlement.config.config import Settings
from settlement.core.models import TransactionRecord, TransactionType
from settlement.core.units import TOKEN_DECIMALS, from_nano
from settlement.custody.wallet_custody import WalletCustody
from settlement.execution.recorder import TransactionRecorder
from settlement.execution.release_orchestrator import ReleaseOrchestrator
from settlement.execution.scheduler import ReleaseScheduler
from settlement.infra.locks import OrderLockRegistry
from settlement.infra.retry import RetryPolicy
from settlement.ledger.store import JsonFileBackend, LedgerStore
from settlement.monitoring.alerting import AlertManager
from settlement.monitoring.metrics import SettlementMetrics

log = logging.getLogger("settlement")


class SettlementService:
    def __init__(
        self,
        settings: Settings,
        ledger: LedgerStore,
        chain: ChainClient,
        custody: Optional[WalletCustody] = None,
        metrics: Optional[SettlementMetrics] = None,
        alerts: Optional[AlertManager] = None,
        funding_poll_interval: float = 1.0,
    ) -> None:
        self.settings = settings
        self.ledger = ledger
        self.chain = chain
        self.custody = custody or WalletCustody()
        self.metrics = metrics
        self.alerts = alerts
        self.locks = OrderLockRegistry()

        self.probe = BalanceProbe(
            chain,
            settings.token_master_address,
            on_fallback=metrics.record_probe_fallback if metrics else None,
        )
        self.executor = TransferExecutor(
            chain,
            self.probe,
            min_native=settings.min_native_for_message,
            submit_timeout=settings.http_timeout * 2,
        )
        self.recorder = TransactionRecorder(chain, ledger, delay_sec=settings.recorder_delay_sec, metrics=metrics)
        self.orchestrator = ReleaseOrchestrator(
            settings,
            ledger,
            self.custody,
            self.probe,
            self.executor,
            recorder=self.recorder,
            locks=self.locks,
            metrics=metrics,
            alerts=alerts,
            funding_poll_interval=funding_poll_interval,
        )
        self.scheduler = ReleaseScheduler(
            self.orchestrator,
            ledger,
            default_delay_sec=settings.release_delay_sec,
            alerts=alerts,
            metrics=metrics,
        )

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        metrics: Optional[SettlementMetrics] = None,
        alerts: Optional[AlertManager] = None,
    ) -> "SettlementService":
        primary = JsonFileBackend(settings.ledger_dir, name="primary")
        replica = JsonFileBackend(settings.ledger_replica_dir, name="replica") if settings.ledger_replica_dir else None
        ledger = LedgerStore(
            primary,
            replica,
            write_timeout=settings.ledger_write_timeout,
            read_timeout=settings.ledger_read_timeout,
            retry_policy=RetryPolicy(
                max_attempts=settings.ledger_retry_attempts,
                delay_sec=settings.ledger_retry_delay_sec,
                timeout_sec=settings.ledger_read_timeout,
            ),
        )
        chain = HttpChainClient(settings.chain_api_url, settings.chain_api_key, timeout=settings.http_timeout)
        return cls(settings, ledger, chain, metrics=metrics, alerts=alerts)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> int:
        """Re-arm unreleased orders; returns how many timers were armed."""
        if self.alerts is not None:
            if not self.orchestrator.funding_address_matches:
                await self.alerts.alert_funding_mismatch(
                    self.orchestrator.funding_address, self.settings.funding_wallet_address
                )
            await self.alerts.alert_lifecycle(True, network=self.settings.chain_network)
        armed = await self.scheduler.rearm_pending()
        log.info(json.dumps({"event": "service_started", "rearmed": armed}))
        return armed

    async def stop(self, drain_timeout: Optional[float] = None) -> None:
        await self.scheduler.shutdown()
        timeout = drain_timeout if drain_timeout is not None else self.settings.recorder_delay_sec + self.settings.http_timeout * 2
        try:
            await asyncio.wait_for(self.recorder.drain(), timeout=timeout)
        except asyncio.TimeoutError:
            log.warning(json.dumps({"event": "recorder_drain_timeout", "pending": self.recorder.pending}))
        await self.recorder.aclose()
        if self.alerts is not None:
            await self.alerts.alert_lifecycle(False)
            await self.alerts.aclose()
        close = getattr(self.chain, "close", None)
        if close is not None:
            await close()
        log.info(json.dumps({"event": "service_stopped"}))

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def open_escrow(
        self, order_id: str, user_id: Optional[str] = None, listing_id: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Create the custodial wallet for an order and persist it.

        An order that already has a wallet keeps it; the existing address is
        returned. The secret phrase never leaves the ledger.
        """
        existing = await self.ledger.get_wallet(order_id)
        if existing is not None:
            return {
                "orderId": order_id,
                "walletAddress": existing.public_address,
                "walletType": existing.wallet_kind.value,
                "created": False,
            }
        wallet = self.custody.new_escrow_wallet(order_id, owner_user_id=user_id, listing_id=listing_id)
        try:
            stores = await self.ledger.store_wallet(wallet)
        finally:
            self.custody.forget(wallet.secret_phrase)
        return {
            "orderId": order_id,
            "walletAddress": wallet.public_address,
            "walletType": wallet.wallet_kind.value,
            "created": True,
            "stores": stores,
        }

    async def confirm_deposit(
        self,
        order_id: str,
        tx_hash: str,
        from_address: str,
        amount: int,
        delay_sec: Optional[float] = None,
    ) -> Dict[str, Any]:
        """Record the buyer's payment into escrow and arm the release timer."""
        wallet = await self.ledger.get_wallet(order_id)
        if wallet is None:
            return {"success": False, "error": {"code": "WALLET_NOT_FOUND", "message": f"no escrow wallet for order {order_id}"}}
        recorded = await self.ledger.put_transaction(TransactionRecord(
            type=TransactionType.BUYER_TO_CUSTODY,
            transaction_hash=tx_hash,
            order_id=order_id,
            from_address=from_address,
            to_address=wallet.public_address,
            amount=amount,
            metadata={"itemId": wallet.listing_id, "userId": wallet.owner_user_id},
        ))
        armed = self.scheduler.arm(order_id, delay_sec=delay_sec, listing_id=wallet.listing_id)
        return {"success": True, "recorded": recorded, "armed": armed}

    async def manual_release(self, order_id: str, listing_id: Optional[str] = None) -> Dict[str, Any]:
        if not order_id:
            return {"success": False, "error": {"code": "INVALID_REQUEST", "message": "orderId is required"}}
        result = await self.scheduler.trigger(order_id, listing_id)
        return result.to_response()

    async def list_transactions(self, tx_type: Optional[str] = None, limit: int = 100) -> List[Dict[str, Any]]:
        """Newest first. Raises ValueError for an unknown type."""
        kind = TransactionType(tx_type) if tx_type else None
        records = await self.ledger.list_transactions(kind, limit=limit)
        return [r.to_record() for r in records]

    def payment_constants(self) -> Dict[str, Any]:
        return {
            "gasAllowance": str(from_nano(self.settings.gas_allowance)),
            "minNativeForMessage": str(from_nano(self.settings.min_native_for_message)),
            "tokenMasterAddress": self.settings.token_master_address,
            "tokenDecimals": TOKEN_DECIMALS,
            "feeWalletAddress": self.settings.fee_wallet_address,
            "feePercent": self.settings.fee_percent,
        }
