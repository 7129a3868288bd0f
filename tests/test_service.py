"""
Tests for the SettlementService facade.
"""
from unittest.mock import AsyncMock

import pytest

from settlement.app import SettlementService
from settlement.chain.client import HttpChainClient
from settlement.core.models import TransactionType
from settlement.custody.wallet_custody import WalletCustody
from settlement.ledger.store import WALLETS, JsonFileBackend

from conftest import FEE_WALLET, TOKEN_MASTER, make_settings, record_deposit, seed_order


class TestOpenEscrow:
    @pytest.mark.asyncio
    async def test_created_phrase_is_not_kept_for_redaction(self, settings, ledger, chain):
        registered = set()
        custody = WalletCustody(on_secret=registered.add, on_forget=registered.discard)
        service = SettlementService(settings, ledger, chain, custody=custody)
        registered.clear()
        await service.open_escrow("order-1")
        assert registered == set()

    @pytest.mark.asyncio
    async def test_creates_and_stores_wallet(self, service, ledger):
        opened = await service.open_escrow("order-1", user_id="buyer-1", listing_id="item-1")

        assert opened["created"] is True
        assert opened["walletType"] == "fee-payable"
        assert opened["stores"] == ["primary", "replica"]
        assert "mnemonic" not in opened
        record = ledger.primary.data[WALLETS]["order-1"]
        assert record["walletAddress"] == opened["walletAddress"]
        assert len(record["mnemonic"].split()) == 24
        assert record["releaseStatus"]["status"] == "pending"

    @pytest.mark.asyncio
    async def test_existing_wallet_is_kept(self, service):
        first = await service.open_escrow("order-1")
        second = await service.open_escrow("order-1")
        assert second["created"] is False
        assert second["walletAddress"] == first["walletAddress"]

    @pytest.mark.asyncio
    async def test_restored_wallet_matches_stored_address(self, service, custody):
        opened = await service.open_escrow("order-1")
        wallet = await service.ledger.get_wallet("order-1")
        _, address = custody.restore(wallet.secret_phrase)
        assert address == opened["walletAddress"]


class TestConfirmDeposit:
    @pytest.mark.asyncio
    async def test_records_deposit_and_arms_timer(self, service):
        opened = await service.open_escrow("order-1", user_id="buyer-1", listing_id="item-1")

        result = await service.confirm_deposit("order-1", "dep-hash", "EQ-buyer", 1_000_000, delay_sec=30)

        assert result == {"success": True, "recorded": True, "armed": True}
        assert service.scheduler.is_armed("order-1")
        deposit = await service.ledger.get_transaction("dep-hash")
        assert deposit.type is TransactionType.BUYER_TO_CUSTODY
        assert deposit.to_address == opened["walletAddress"]
        assert deposit.metadata == {"itemId": "item-1", "userId": "buyer-1"}
        await service.stop()

    @pytest.mark.asyncio
    async def test_repeat_confirmation_is_idempotent(self, service):
        await service.open_escrow("order-1")
        await service.confirm_deposit("order-1", "dep-hash", "EQ-buyer", 1_000_000, delay_sec=30)
        again = await service.confirm_deposit("order-1", "dep-hash", "EQ-buyer", 1_000_000, delay_sec=30)
        assert again == {"success": True, "recorded": False, "armed": False}
        await service.stop()

    @pytest.mark.asyncio
    async def test_unknown_order(self, service):
        result = await service.confirm_deposit("ghost", "dep-hash", "EQ-buyer", 1)
        assert result["success"] is False
        assert result["error"]["code"] == "WALLET_NOT_FOUND"


class TestManualRelease:
    @pytest.mark.asyncio
    async def test_success_response(self, service, chain):
        await seed_order(service, chain)
        assert await service.manual_release("order-1") == {
            "success": True,
            "totalAmount": "1000000",
            "feeAmount": "50000",
            "sellerAmount": "950000",
        }

    @pytest.mark.asyncio
    async def test_missing_order_id(self, service):
        response = await service.manual_release("")
        assert response["error"]["code"] == "INVALID_REQUEST"

    @pytest.mark.asyncio
    async def test_failure_response(self, service, chain):
        await seed_order(service, chain, seller_wallet=None)
        response = await service.manual_release("order-1")
        assert response["success"] is False
        assert response["error"]["code"] == "SELLER_WALLET_MISSING"
        assert response["error"]["message"]


class TestQueries:
    @pytest.mark.asyncio
    async def test_list_transactions(self, service, chain):
        await seed_order(service, chain)
        await service.confirm_deposit("order-1", "dep-hash", "EQ-buyer", 1_000_000, delay_sec=30)
        await service.manual_release("order-1")
        await service.recorder.drain()

        everything = await service.list_transactions()
        deposits = await service.list_transactions("buyer_to_custody")
        assert {t["type"] for t in everything} == {"buyer_to_custody", "custody_to_fee", "custody_to_seller"}
        assert [t["transactionHash"] for t in deposits] == ["dep-hash"]
        assert deposits[0]["amount"] == "1000000"
        await service.stop()

    @pytest.mark.asyncio
    async def test_unknown_transaction_type(self, service):
        with pytest.raises(ValueError):
            await service.list_transactions("refund")

    def test_payment_constants(self, service):
        assert service.payment_constants() == {
            "gasAllowance": "0.038",
            "minNativeForMessage": "0.1",
            "tokenMasterAddress": TOKEN_MASTER,
            "tokenDecimals": 6,
            "feeWalletAddress": FEE_WALLET,
            "feePercent": 5,
        }


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_start_rearms_and_stop_drains(self, settings, ledger, chain, custody):
        alerts = AsyncMock()
        service = SettlementService(settings, ledger, chain, custody=custody, alerts=alerts,
                                    funding_poll_interval=0.01)
        await service.open_escrow("order-1")
        await record_deposit(service)

        assert await service.start() == 1
        alerts.alert_lifecycle.assert_awaited_once_with(True, network="testnet")
        alerts.alert_funding_mismatch.assert_not_awaited()

        await service.stop()
        assert service.scheduler.armed_count == 0
        alerts.alert_lifecycle.assert_awaited_with(False)
        alerts.aclose.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_start_alerts_on_funding_mismatch(self, funding_wallet, ledger, chain, custody):
        alerts = AsyncMock()
        settings = make_settings(funding_wallet, funding_wallet_address="0xConfiguredElsewhere")
        service = SettlementService(settings, ledger, chain, custody=custody, alerts=alerts)
        await service.start()
        alerts.alert_funding_mismatch.assert_awaited_once_with(funding_wallet.address, "0xConfiguredElsewhere")
        await service.stop()

    @pytest.mark.asyncio
    async def test_from_settings_builds_file_ledger_and_http_chain(self, funding_wallet, tmp_path):
        settings = make_settings(
            funding_wallet,
            ledger_dir=str(tmp_path / "primary"),
            ledger_replica_dir=str(tmp_path / "replica"),
        )
        service = SettlementService.from_settings(settings)
        assert isinstance(service.ledger.primary, JsonFileBackend)
        assert isinstance(service.ledger.replica, JsonFileBackend)
        assert isinstance(service.chain, HttpChainClient)

        opened = await service.open_escrow("order-1")
        assert opened["stores"] == ["primary", "replica"]
        assert (tmp_path / "replica" / f"{WALLETS}.json").exists()
        await service.chain.close()
