"""
WalletCustody: custodial accounts derived from 24-word secret phrases.

Generates fresh escrow accounts, restores signing capability from a stored
phrase, and signs opaque message envelopes for the chain client.

Secret phrases never appear in logs or exception messages: every restored
phrase is registered with the log redactor until forget() is called, and
decoding failures are re-raised without the library's message (which
echoes the words).
"""

from __future__ import annotations

import json
import logging
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union

from eth_account import Account
from eth_account.messages import encode_defunct
from eth_account.signers.local import LocalAccount

from settlement.core.errors import InvalidSecret
from settlement.core.models import EscrowWallet, WalletKind
from settlement.infra.logging_cfg import log_event, register_secret, unregister_secret

log = logging.getLogger("settlement")

Account.enable_unaudited_hdwallet_features()

SECRET_WORD_COUNT = 24

SecretPhrase = Union[str, Sequence[str]]


def normalize_phrase(secret_phrase: SecretPhrase) -> List[str]:
    if isinstance(secret_phrase, str):
        words = secret_phrase.split()
    else:
        words = [str(w).strip() for w in secret_phrase if str(w).strip()]
    return [w.lower() for w in words]


def canonical_json(envelope: Dict[str, Any]) -> str:
    return json.dumps(envelope, sort_keys=True, separators=(",", ":"), default=str)


class WalletCustody:
    """
    Creates and restores custodial accounts.

    The signing handle returned by restore() is an eth-account LocalAccount;
    callers treat it as opaque and hand it back to sign_envelope().
    """

    def __init__(
        self,
        wallet_kind: WalletKind = WalletKind.FEE_PAYABLE_BY_TOKEN,
        on_secret: Callable[[str], None] = register_secret,
        on_forget: Callable[[str], None] = unregister_secret,
        log_event: Optional[Callable[..., None]] = None,
    ) -> None:
        self.wallet_kind = wallet_kind
        self._on_secret = on_secret
        self._on_forget = on_forget
        self._log_event = log_event or self._default_log

    def _default_log(self, event: str, **kwargs: Any) -> None:
        log_event(log, event, **kwargs)

    def create(self) -> Tuple[str, str]:
        """Generate a fresh phrase and return (secret_phrase, public_address)."""
        account, phrase = Account.create_with_mnemonic(num_words=SECRET_WORD_COUNT)
        self._on_secret(phrase)
        self._log_event("custody_wallet_created", address=account.address, kind=self.wallet_kind.value)
        return phrase, account.address

    def restore(self, secret_phrase: SecretPhrase) -> Tuple[LocalAccount, str]:
        """
        Rebuild signing capability from a stored phrase.

        Deterministic: the same phrase always yields the same address.
        Raises InvalidSecret on a wrong word count or undecodable phrase.
        """
        words = normalize_phrase(secret_phrase)
        if len(words) != SECRET_WORD_COUNT:
            raise InvalidSecret(
                f"invalid secret phrase length: expected {SECRET_WORD_COUNT} words, got {len(words)}"
            )
        phrase = " ".join(words)
        self._on_secret(phrase)
        try:
            account = Account.from_mnemonic(phrase)
        except Exception:
            # the library's message quotes the phrase; drop it and the chain
            raise InvalidSecret("secret phrase does not decode to a wallet") from None
        return account, account.address

    def forget(self, secret_phrase: SecretPhrase) -> None:
        """Drop a phrase from log redaction once its wallet is no longer in use."""
        words = normalize_phrase(secret_phrase)
        if words:
            self._on_forget(" ".join(words))

    def new_escrow_wallet(
        self,
        order_id: str,
        owner_user_id: Optional[str] = None,
        listing_id: Optional[str] = None,
    ) -> EscrowWallet:
        phrase, address = self.create()
        return EscrowWallet(
            order_id=order_id,
            secret_phrase=phrase,
            public_address=address,
            wallet_kind=self.wallet_kind,
            owner_user_id=owner_user_id,
            listing_id=listing_id,
        )

    def verify_configured_address(self, restored_address: str, configured_address: str) -> bool:
        """Warn, never fail, when a restored account differs from its configured address."""
        if restored_address.lower() == (configured_address or "").lower():
            return True
        log.warning(json.dumps({
            "event": "custody_address_mismatch",
            "restored": restored_address,
            "configured": configured_address,
            "using": restored_address,
        }))
        return False

    @staticmethod
    def sign_envelope(signer: LocalAccount, envelope: Dict[str, Any]) -> Dict[str, Any]:
        """Sign the canonical JSON form of `envelope`."""
        payload = canonical_json(envelope)
        signed = signer.sign_message(encode_defunct(text=payload))
        return {
            "message": envelope,
            "signer": signer.address,
            "signature": signed.signature.hex(),
        }
