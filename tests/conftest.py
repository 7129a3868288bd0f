"""
Pytest configuration and fixtures.

Adds the repo root to sys.path so tests can import `settlement` without an
install, and provides an in-memory chain that behaves like the real API:
native and token balances, undeployed accounts, signature checks and
rejection of senders below the message minimum.
"""

import sys
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest

repo_root = Path(__file__).parent.parent
if str(repo_root) not in sys.path:
    sys.path.insert(0, str(repo_root))

from eth_account import Account
from eth_account.messages import encode_defunct

from settlement.app import SettlementService
from settlement.chain.client import AccountState, ChainTransaction, GetMethodResult
from settlement.chain.transfer_executor import MIN_NATIVE_FOR_MESSAGE
from settlement.config.config import Settings
from settlement.core.errors import ChainError, ChainUnavailable, LedgerUnavailable, MessageRejected
from settlement.core.models import TransactionRecord, TransactionType
from settlement.custody.wallet_custody import WalletCustody, canonical_json
from settlement.infra.retry import RetryPolicy
from settlement.ledger.store import LISTINGS, USERS, InMemoryBackend, LedgerStore

Account.enable_unaudited_hdwallet_features()

TOKEN_MASTER = "EQ-token-master"
FEE_WALLET = "EQ-platform-fee"
SELLER_WALLET = "EQ-seller-wallet"
ONE_NATIVE = 1_000_000_000


class FakeChain:
    """In-memory chain implementing the ChainClient surface."""

    def __init__(self, min_native: int = MIN_NATIVE_FOR_MESSAGE, token_gas_cost: int = 0, native_fee: int = 0):
        self.min_native = min_native
        self.token_gas_cost = token_gas_cost
        self.native_fee = native_fee
        self.native: Dict[str, int] = {}
        self.tokens: Dict[str, int] = {}
        self.txs: Dict[str, List[ChainTransaction]] = {}
        self.sent: List[Dict[str, Any]] = []
        self.calls: List[str] = []
        self.lt = 1000
        self.direct_unavailable = False
        self.state_unavailable = False
        self.contract_unavailable = False
        self.reject_next = 0
        self.send_unavailable = False
        self.omit_hashes = False

    # -- helpers -------------------------------------------------------

    def fund_native(self, address: str, amount: int) -> None:
        self.native[address] = self.native.get(address, 0) + amount

    def mint(self, owner: str, amount: int) -> None:
        self.tokens[owner] = self.tokens.get(owner, 0) + amount

    def token_wallet_of(self, owner: str) -> str:
        return f"jw:{owner}"

    def sent_of_kind(self, kind: str) -> List[Dict[str, Any]]:
        return [s["message"] for s in self.sent if s["message"]["kind"] == kind]

    # -- ChainClient ---------------------------------------------------

    async def get_balance(self, address: str) -> int:
        self.calls.append(f"get_balance:{address}")
        if self.direct_unavailable:
            raise ChainUnavailable("getAddressBalance: service unavailable", status=503)
        return self.native.get(address, 0)

    async def get_account_state(self, address: str) -> AccountState:
        self.calls.append(f"get_account_state:{address}")
        if self.state_unavailable:
            raise ChainUnavailable("getAddressInformation: service unavailable", status=503)
        if address not in self.native:
            return AccountState(balance=0, status="uninitialized")
        return AccountState(balance=self.native[address], status="active")

    async def run_get_method(self, address: str, method: str, stack=None) -> GetMethodResult:
        self.calls.append(f"run_get_method:{method}:{address}")
        if method == "balance":
            if self.contract_unavailable:
                raise ChainUnavailable("runGetMethod: service unavailable", status=503)
            if address not in self.native:
                return GetMethodResult(exit_code=-13)
            return GetMethodResult(exit_code=0, stack=[["num", hex(self.native[address])]])
        if method == "get_wallet_address":
            owner = stack[0][1]
            return GetMethodResult(exit_code=0, stack=[["address", self.token_wallet_of(owner)]])
        if method == "get_wallet_data":
            owner = address.split(":", 1)[1]
            if owner not in self.tokens:
                return GetMethodResult(exit_code=-13)
            return GetMethodResult(exit_code=0, stack=[["num", hex(self.tokens[owner])]])
        raise ChainError(f"unknown get-method {method}", exit_code=11)

    async def get_transactions(self, address: str, limit: int = 5) -> List[ChainTransaction]:
        self.calls.append(f"get_transactions:{address}")
        return list(self.txs.get(address, []))[:limit]

    async def send_message(self, signed: Dict[str, Any]) -> Optional[str]:
        msg = signed["message"]
        sender = msg["from"]
        recovered = Account.recover_message(
            encode_defunct(text=canonical_json(msg)), signature=bytes.fromhex(signed["signature"].removeprefix("0x"))
        )
        if recovered.lower() != signed["signer"].lower() or recovered.lower() != sender.lower():
            raise ChainError("signature does not match sender", status=400)
        if self.send_unavailable:
            raise ChainUnavailable("sendMessage: timeout", status=504)
        if self.native.get(sender, 0) < self.min_native:
            raise MessageRejected("LITE_SERVER_UNKNOWN: inbound external message rejected by account", status=500)
        if self.reject_next > 0:
            self.reject_next -= 1
            raise MessageRejected("cannot apply external message to current state", status=500)

        self.sent.append(signed)
        amount = int(msg["amount"])
        destination = msg["destination"]
        if msg["kind"] == "native_transfer":
            self.native[sender] -= amount + self.native_fee
            self.fund_native(destination, amount)
        else:
            if self.tokens.get(sender, 0) < amount:
                raise ChainError("token wallet balance too low", status=500, exit_code=47)
            self.tokens[sender] -= amount
            self.mint(destination, amount)
            self.native[sender] -= self.token_gas_cost

        self.lt += 1
        tx_hash = f"hash-{self.lt}"
        tx = ChainTransaction(
            hash=None if self.omit_hashes else tx_hash,
            lt=self.lt,
            memo=msg.get("memo"),
            destination=destination,
            amount=amount,
        )
        self.txs.setdefault(sender, []).insert(0, tx)
        return tx_hash


class FlakyBackend(InMemoryBackend):
    """Raises LedgerUnavailable for the first `failures` calls."""

    def __init__(self, name: str = "flaky", failures: int = 0, message: str = "client is offline"):
        super().__init__(name)
        self.failures = failures
        self.message = message
        self.attempts = 0

    def _maybe_fail(self) -> None:
        self.attempts += 1
        if self.failures > 0:
            self.failures -= 1
            raise LedgerUnavailable(self.message)

    async def get(self, collection, key):
        self._maybe_fail()
        return await super().get(collection, key)

    async def put(self, collection, key, record, create_only=False):
        self._maybe_fail()
        return await super().put(collection, key, record, create_only)

    async def update(self, collection, key, fields):
        self._maybe_fail()
        return await super().update(collection, key, fields)

    async def list(self, collection):
        self._maybe_fail()
        return await super().list(collection)


@dataclass
class FundingWallet:
    phrase: str = field(repr=False)
    address: str


@pytest.fixture(scope="session")
def funding_wallet() -> FundingWallet:
    account, phrase = Account.create_with_mnemonic(num_words=24)
    return FundingWallet(phrase=phrase, address=account.address)


def make_settings(funding: FundingWallet, **overrides: Any) -> Settings:
    base = Settings(
        chain_api_url="https://chain.test/api/v2",
        chain_api_key=None,
        chain_network="testnet",
        token_master_address=TOKEN_MASTER,
        funding_wallet_address=funding.address,
        funding_wallet_mnemonic=funding.phrase,
        fee_wallet_address=FEE_WALLET,
        fee_percent=5,
        min_native_for_message=MIN_NATIVE_FOR_MESSAGE,
        gas_allowance=38_000_000,
        funding_topup_amount=100_000_000,
        funding_confirm_timeout_sec=0.2,
        release_delay_sec=30.0,
        recorder_delay_sec=0.0,
        http_timeout=1.0,
        ledger_dir="unused",
        ledger_replica_dir=None,
        ledger_write_timeout=1.0,
        ledger_read_timeout=1.0,
        ledger_retry_attempts=3,
        ledger_retry_delay_sec=0.0,
        metrics_port=0,
        alert_webhook_url=None,
        alert_webhook_type="generic",
        alert_enabled=False,
        log_file=None,
    )
    return replace(base, **overrides)


@pytest.fixture
def settings(funding_wallet) -> Settings:
    return make_settings(funding_wallet)


@pytest.fixture
def chain(funding_wallet) -> FakeChain:
    fake = FakeChain()
    fake.fund_native(funding_wallet.address, 10 * ONE_NATIVE)
    return fake


@pytest.fixture
def ledger() -> LedgerStore:
    return LedgerStore(
        InMemoryBackend("primary"),
        InMemoryBackend("replica"),
        write_timeout=1.0,
        read_timeout=1.0,
        retry_policy=RetryPolicy(max_attempts=3, delay_sec=0.0, timeout_sec=1.0),
    )


@pytest.fixture
def custody() -> WalletCustody:
    return WalletCustody()


@pytest.fixture
def service(settings, ledger, chain, custody) -> SettlementService:
    return SettlementService(settings, ledger, chain, custody=custody, funding_poll_interval=0.01)


async def seed_order(
    service: SettlementService,
    chain: FakeChain,
    order_id: str = "order-1",
    amount: int = 1_000_000,
    seller_wallet: Optional[str] = SELLER_WALLET,
    on_listing: bool = True,
) -> str:
    """Open an escrow, put a listing (and seller profile) in place and fund it with tokens."""
    listing_id = f"item-{order_id}"
    opened = await service.open_escrow(order_id, user_id="buyer-1", listing_id=listing_id)
    listing: Dict[str, Any] = {"sellerId": "seller-1", "price": "1 USDT"}
    if seller_wallet and on_listing:
        listing["walletAddress"] = seller_wallet
    await service.ledger.primary.put(LISTINGS, listing_id, listing)
    profile: Dict[str, Any] = {"displayName": "seller"}
    if seller_wallet and not on_listing:
        profile["walletAddress"] = seller_wallet
    await service.ledger.primary.put(USERS, "seller-1", profile)
    if amount:
        chain.mint(opened["walletAddress"], amount)
    return opened["walletAddress"]


async def record_deposit(service: SettlementService, order_id: str = "order-1", created_at_ms: Optional[int] = None) -> None:
    """Write the buyer's deposit row directly, without arming a timer."""
    wallet = await service.ledger.get_wallet(order_id)
    record = TransactionRecord(
        type=TransactionType.BUYER_TO_CUSTODY,
        transaction_hash=f"deposit-{order_id}",
        order_id=order_id,
        from_address="EQ-buyer",
        to_address=wallet.public_address,
        amount=1_000_000,
    )
    if created_at_ms is not None:
        record.created_at_ms = created_at_ms
    await service.ledger.put_transaction(record)
