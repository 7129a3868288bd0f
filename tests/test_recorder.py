"""
Tests for TransactionRecorder hash resolution and task lifecycle.
"""
import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from settlement.chain.client import ChainTransaction
from settlement.core.errors import ChainUnavailable
from settlement.core.models import TransactionType
from settlement.execution.recorder import TransactionRecorder

from conftest import FakeChain

ESCROW = "0xEscrow"
SELLER_MEMO = "Order o-1 - Seller payment"


@pytest.fixture
def fake():
    chain = FakeChain()
    chain.txs[ESCROW] = [
        ChainTransaction(hash="h-3", lt=3, memo="Order o-2 - Seller payment"),
        ChainTransaction(hash="h-2", lt=2, memo=SELLER_MEMO),
        ChainTransaction(hash=None, lt=1, memo=None),
    ]
    return chain


@pytest.fixture
def metrics():
    return MagicMock()


@pytest.fixture
def recorder(fake, ledger, metrics):
    return TransactionRecorder(fake, ledger, delay_sec=0, metrics=metrics)


def record_args(memo=SELLER_MEMO, **kw):
    return dict(
        tx_type=TransactionType.CUSTODY_TO_SELLER,
        order_id="o-1",
        from_address=ESCROW,
        to_address="EQ-seller",
        amount=950_000,
        memo=memo,
        **kw,
    )


class TestRecordNow:
    @pytest.mark.asyncio
    async def test_matches_memo(self, recorder, ledger, metrics):
        record = await recorder.record_now(**record_args(metadata={"tokenWallet": "jw:x"}))
        assert record.transaction_hash == "h-2"
        assert record.metadata == {"tokenWallet": "jw:x", "memo": SELLER_MEMO, "hashSource": "memo"}
        stored = await ledger.get_transaction("h-2")
        assert stored.amount == 950_000
        metrics.record_recorder.assert_called_once_with("recorded")

    @pytest.mark.asyncio
    async def test_latest_unclaimed_without_memo_match(self, recorder):
        first = await recorder.record_now(**record_args(memo="no such memo"))
        second = await recorder.record_now(**record_args(memo=None))
        third = await recorder.record_now(**record_args(memo=None))
        assert first.transaction_hash == "h-3"
        assert second.transaction_hash == "h-2"
        assert third.transaction_hash == f"{ESCROW}_1"
        assert third.metadata["hashSource"] == "latest"

    @pytest.mark.asyncio
    async def test_submission_hash_when_chain_has_nothing(self, fake, recorder):
        fake.txs[ESCROW] = []
        record = await recorder.record_now(**record_args(hash_hint="submitted-hash"))
        assert record.transaction_hash == "submitted-hash"
        assert record.metadata["hashSource"] == "submission"

    @pytest.mark.asyncio
    async def test_unresolved(self, fake, recorder, ledger, metrics):
        fake.txs[ESCROW] = []
        assert await recorder.record_now(**record_args()) is None
        assert await ledger.list_transactions() == []
        metrics.record_recorder.assert_called_once_with("unresolved")

    @pytest.mark.asyncio
    async def test_duplicate_is_counted(self, fake, ledger, metrics):
        first = TransactionRecorder(fake, ledger, delay_sec=0, metrics=metrics)
        second = TransactionRecorder(fake, ledger, delay_sec=0, metrics=metrics)
        await first.record_now(**record_args())
        await second.record_now(**record_args())
        assert [c.args[0] for c in metrics.record_recorder.call_args_list] == ["recorded", "duplicate"]

    @pytest.mark.asyncio
    async def test_claimed_hashes_are_bounded(self, fake, ledger):
        recorder = TransactionRecorder(fake, ledger, delay_sec=0, max_claimed=2)
        picked = [(await recorder.record_now(**record_args(memo=None))).transaction_hash for _ in range(3)]
        assert picked == ["h-3", "h-2", f"{ESCROW}_1"]
        assert list(recorder._claimed) == ["h-2", f"{ESCROW}_1"]


class TestDispatch:
    @pytest.mark.asyncio
    async def test_dispatch_records_in_background(self, recorder, ledger):
        task = recorder.dispatch(**record_args())
        assert recorder.pending == 1
        record = await task
        assert record.transaction_hash == "h-2"
        assert recorder.pending == 0

    @pytest.mark.asyncio
    async def test_failures_are_logged_not_raised(self, fake, recorder, metrics):
        fake.get_transactions = AsyncMock(side_effect=ChainUnavailable("getTransactions: timeout"))
        assert await recorder.dispatch(**record_args()) is None
        metrics.record_recorder.assert_called_once_with("failed")

    @pytest.mark.asyncio
    async def test_drain_waits_for_delayed_records(self, fake, ledger):
        recorder = TransactionRecorder(fake, ledger, delay_sec=0.02)
        recorder.dispatch(**record_args())
        await recorder.drain()
        assert await ledger.get_transaction("h-2") is not None

    @pytest.mark.asyncio
    async def test_aclose_cancels_and_refuses_new_work(self, fake, ledger):
        recorder = TransactionRecorder(fake, ledger, delay_sec=10)
        task = recorder.dispatch(**record_args())
        await recorder.aclose()
        assert task.cancelled()
        assert recorder.dispatch(**record_args()) is None
        assert await ledger.list_transactions() == []
