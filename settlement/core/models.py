"""
Data model shared by the settlement components.

Persisted shapes (`to_record` / `from_record`) keep the field names the
storefront already writes, so records created by the checkout flow can be
read back unchanged.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional


def now_ms() -> int:
    return int(time.time() * 1000)


class WalletKind(Enum):
    """Custodial wallet contract kinds. Only one is issued today."""
    FEE_PAYABLE_BY_TOKEN = "fee-payable"


class TransactionType(Enum):
    BUYER_TO_CUSTODY = "buyer_to_custody"
    CUSTODY_TO_SELLER = "custody_to_seller"
    CUSTODY_TO_FEE = "custody_to_fee"


class ReleaseStatusValue(Enum):
    PENDING = "pending"
    FEE_TRANSFERRED = "fee_transferred"
    RELEASED = "released"
    FAILED = "failed"


@dataclass
class ReleaseStatus:
    """Release progress attached to a wallet record."""
    status: ReleaseStatusValue = ReleaseStatusValue.PENDING
    fee_amount: Optional[int] = None
    seller_amount: Optional[int] = None
    total_amount: Optional[int] = None
    reason: Optional[str] = None
    updated_at_ms: int = field(default_factory=now_ms)

    def to_record(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "feeAmount": None if self.fee_amount is None else str(self.fee_amount),
            "sellerAmount": None if self.seller_amount is None else str(self.seller_amount),
            "totalAmount": None if self.total_amount is None else str(self.total_amount),
            "reason": self.reason,
            "updatedAt": self.updated_at_ms,
        }

    @classmethod
    def from_record(cls, data: Optional[Dict[str, Any]]) -> "ReleaseStatus":
        if not data:
            return cls()

        def _opt_int(key: str) -> Optional[int]:
            raw = data.get(key)
            return None if raw in (None, "") else int(raw)

        return cls(
            status=ReleaseStatusValue(data.get("status", ReleaseStatusValue.PENDING.value)),
            fee_amount=_opt_int("feeAmount"),
            seller_amount=_opt_int("sellerAmount"),
            total_amount=_opt_int("totalAmount"),
            reason=data.get("reason"),
            updated_at_ms=int(data.get("updatedAt") or 0),
        )


@dataclass
class EscrowWallet:
    """
    Custodial wallet bound to one order.

    The secret phrase is kept out of repr() so the record can be logged
    or put in an exception message without leaking it.
    """
    order_id: str
    secret_phrase: str = field(repr=False)
    public_address: str
    wallet_kind: WalletKind = WalletKind.FEE_PAYABLE_BY_TOKEN
    owner_user_id: Optional[str] = None
    listing_id: Optional[str] = None
    created_at_ms: int = field(default_factory=now_ms)
    release_status: ReleaseStatus = field(default_factory=ReleaseStatus)

    def to_record(self) -> Dict[str, Any]:
        return {
            "orderId": self.order_id,
            "mnemonic": self.secret_phrase,
            "walletAddress": self.public_address,
            "walletType": self.wallet_kind.value,
            "userId": self.owner_user_id,
            "itemId": self.listing_id,
            "createdAt": self.created_at_ms,
            "createdAtTimestamp": self.created_at_ms,
            "releaseStatus": self.release_status.to_record(),
        }

    @classmethod
    def from_record(cls, data: Dict[str, Any]) -> "EscrowWallet":
        mnemonic = data.get("mnemonic") or ""
        if isinstance(mnemonic, (list, tuple)):
            mnemonic = " ".join(mnemonic)
        created = data.get("createdAtTimestamp") or data.get("createdAt") or 0
        return cls(
            order_id=str(data["orderId"]),
            secret_phrase=mnemonic,
            public_address=str(data.get("walletAddress") or ""),
            # Records written before the kind enum existed carry "w5".
            wallet_kind=WalletKind.FEE_PAYABLE_BY_TOKEN,
            owner_user_id=data.get("userId"),
            listing_id=data.get("itemId"),
            created_at_ms=int(created) if isinstance(created, (int, float)) else 0,
            release_status=ReleaseStatus.from_record(data.get("releaseStatus")),
        )


@dataclass(frozen=True)
class SellerDestination:
    seller_id: Optional[str]
    wallet_address: str
    source: str  # "listing" or "profile"


@dataclass(frozen=True)
class SplitResult:
    total_amount: int
    fee_amount: int
    seller_amount: int

    def to_dict(self) -> Dict[str, str]:
        return {
            "totalAmount": str(self.total_amount),
            "feeAmount": str(self.fee_amount),
            "sellerAmount": str(self.seller_amount),
        }


@dataclass
class TransactionRecord:
    """Append-only audit row, keyed by transaction hash."""
    type: TransactionType
    transaction_hash: str
    order_id: str
    from_address: str
    to_address: str
    amount: int
    created_at_ms: int = field(default_factory=now_ms)
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_record(self) -> Dict[str, Any]:
        return {
            **self.metadata,
            "type": self.type.value,
            "transactionHash": self.transaction_hash,
            "orderId": self.order_id,
            "fromAddress": self.from_address,
            "toAddress": self.to_address,
            "amount": str(self.amount),
            "createdAt": self.created_at_ms,
            "createdAtTimestamp": self.created_at_ms,
        }

    @classmethod
    def from_record(cls, data: Dict[str, Any]) -> "TransactionRecord":
        known = {
            "type", "transactionHash", "orderId", "fromAddress", "toAddress",
            "amount", "createdAt", "createdAtTimestamp",
        }
        return cls(
            type=TransactionType(data["type"]),
            transaction_hash=str(data["transactionHash"]),
            order_id=str(data.get("orderId", "")),
            from_address=str(data.get("fromAddress", "")),
            to_address=str(data.get("toAddress", "")),
            amount=int(data.get("amount") or 0),
            created_at_ms=int(data.get("createdAtTimestamp") or data.get("createdAt") or 0),
            metadata={k: v for k, v in data.items() if k not in known},
        )
