"""
Custody package.

Custodial wallet generation, restoration and envelope signing.
"""

from settlement.custody.wallet_custody import SECRET_WORD_COUNT, WalletCustody, normalize_phrase

__all__ = [
    "SECRET_WORD_COUNT",
    "WalletCustody",
    "normalize_phrase",
]
