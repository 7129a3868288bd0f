"""
Environment-driven configuration with validation.

Settings are loaded once at process start and passed by reference into the
components that need them; nothing else reads the environment.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, fields
from typing import Any, Dict, Optional

from dotenv import load_dotenv

from settlement.core.errors import ConfigurationError
from settlement.core.units import to_nano

log = logging.getLogger("settlement")

# Fields masked by dump(); everything else is safe to log.
SECRET_FIELDS = {"funding_wallet_mnemonic", "chain_api_key"}


def env_bool(key: str, default: bool) -> bool:
    val = os.getenv(key)
    if val is None:
        return default
    return val.lower() in {"1", "true", "yes", "y"}


def _int_env(key: str, default: int) -> int:
    raw = os.getenv(key)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ConfigurationError(f"{key} must be an integer, got {raw!r}") from exc


def _float_env(key: str, default: float) -> float:
    raw = os.getenv(key)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ConfigurationError(f"{key} must be a number, got {raw!r}") from exc


def _nano_env(key: str, default: str) -> int:
    """Native amounts are configured in whole units ("0.1") and kept in base units."""
    raw = os.getenv(key) or default
    try:
        return to_nano(raw)
    except ValueError as exc:
        raise ConfigurationError(f"{key} must be a native amount, got {raw!r}") from exc


@dataclass(frozen=True)
class Settings:
    chain_api_url: str
    chain_api_key: Optional[str]
    chain_network: str
    token_master_address: str
    funding_wallet_address: str
    funding_wallet_mnemonic: str
    fee_wallet_address: str
    fee_percent: int
    min_native_for_message: int  # base units
    gas_allowance: int  # base units per token transfer
    funding_topup_amount: int  # base units sent to an escrow before release
    funding_confirm_timeout_sec: float
    release_delay_sec: float
    recorder_delay_sec: float
    http_timeout: float
    ledger_dir: str
    ledger_replica_dir: Optional[str]
    ledger_write_timeout: float
    ledger_read_timeout: float
    ledger_retry_attempts: int
    ledger_retry_delay_sec: float
    metrics_port: int
    alert_webhook_url: Optional[str]
    alert_webhook_type: str
    alert_enabled: bool
    log_file: Optional[str]

    def dump(self) -> Dict[str, Any]:
        """Settings as a dict with secrets masked, for startup logging."""
        out: Dict[str, Any] = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if f.name in SECRET_FIELDS and value:
                value = "***CONFIGURED***"
            out[f.name] = value
        return out

    @classmethod
    def load(cls, env_file: Optional[str] = None) -> "Settings":
        load_dotenv(env_file)
        cfg = cls(
            chain_api_url=os.getenv("ESCROW_CHAIN_API_URL", "https://testnet.toncenter.com/api/v2"),
            chain_api_key=os.getenv("ESCROW_CHAIN_API_KEY"),
            chain_network=os.getenv("ESCROW_CHAIN_NETWORK", "testnet"),
            token_master_address=os.getenv(
                "ESCROW_TOKEN_MASTER_ADDRESS", "EQCxE6mUtQJKFnGfaROTKOt1lZbDiiX1kCixRv7Nw2Id_sDs"
            ),
            funding_wallet_address=os.getenv("ESCROW_FUNDING_WALLET_ADDRESS", ""),
            funding_wallet_mnemonic=os.getenv("ESCROW_FUNDING_WALLET_MNEMONIC", ""),
            fee_wallet_address=os.getenv("ESCROW_FEE_WALLET_ADDRESS")
            or os.getenv("ESCROW_FUNDING_WALLET_ADDRESS", ""),
            fee_percent=_int_env("ESCROW_FEE_PERCENT", 5),
            min_native_for_message=_nano_env("ESCROW_MIN_NATIVE_FOR_MESSAGE", "0.1"),
            gas_allowance=_nano_env("ESCROW_GAS_ALLOWANCE", "0.038"),
            funding_topup_amount=_nano_env("ESCROW_FUNDING_TOPUP_AMOUNT", "0.1"),
            funding_confirm_timeout_sec=_float_env("ESCROW_FUNDING_CONFIRM_TIMEOUT_SEC", 30.0),
            release_delay_sec=_float_env("ESCROW_RELEASE_DELAY_SEC", 30.0),
            recorder_delay_sec=_float_env("ESCROW_RECORDER_DELAY_SEC", 2.0),
            http_timeout=_float_env("ESCROW_HTTP_TIMEOUT", 5.0),
            ledger_dir=os.getenv("ESCROW_LEDGER_DIR", "state/ledger"),
            ledger_replica_dir=os.getenv("ESCROW_LEDGER_REPLICA_DIR") or None,
            ledger_write_timeout=_float_env("ESCROW_LEDGER_WRITE_TIMEOUT", 3.0),
            ledger_read_timeout=_float_env("ESCROW_LEDGER_READ_TIMEOUT", 5.0),
            ledger_retry_attempts=_int_env("ESCROW_LEDGER_RETRY_ATTEMPTS", 3),
            ledger_retry_delay_sec=_float_env("ESCROW_LEDGER_RETRY_DELAY_SEC", 1.0),
            metrics_port=_int_env("ESCROW_METRICS_PORT", 9105),
            alert_webhook_url=os.getenv("ESCROW_ALERT_WEBHOOK_URL"),
            alert_webhook_type=os.getenv("ESCROW_ALERT_WEBHOOK_TYPE", "generic"),
            alert_enabled=env_bool("ESCROW_ALERT_ENABLED", True),
            log_file=os.getenv("ESCROW_LOG_FILE", "settlement.log") or None,
        )
        cfg._validate()
        _sanity_check(cfg)
        return cfg

    def _validate(self) -> None:
        if not self.funding_wallet_address:
            raise ConfigurationError("ESCROW_FUNDING_WALLET_ADDRESS is not configured")
        if not self.funding_wallet_mnemonic:
            raise ConfigurationError("ESCROW_FUNDING_WALLET_MNEMONIC is not configured")
        if not self.fee_wallet_address:
            raise ConfigurationError("ESCROW_FEE_WALLET_ADDRESS is not configured")
        if not 0 <= self.fee_percent <= 100:
            raise ConfigurationError("ESCROW_FEE_PERCENT must be within [0, 100]")
        if self.min_native_for_message <= 0:
            raise ConfigurationError("ESCROW_MIN_NATIVE_FOR_MESSAGE must be > 0")
        if self.gas_allowance <= 0:
            raise ConfigurationError("ESCROW_GAS_ALLOWANCE must be > 0")
        if self.funding_topup_amount < self.min_native_for_message:
            raise ConfigurationError(
                "ESCROW_FUNDING_TOPUP_AMOUNT must cover ESCROW_MIN_NATIVE_FOR_MESSAGE"
            )
        if self.release_delay_sec < 0 or self.recorder_delay_sec < 0 or self.funding_confirm_timeout_sec < 0:
            raise ConfigurationError("Delays must be >= 0")
        if self.http_timeout <= 0 or self.ledger_read_timeout <= 0 or self.ledger_write_timeout <= 0:
            raise ConfigurationError("Timeouts must be > 0")
        if self.ledger_retry_attempts < 1:
            raise ConfigurationError("ESCROW_LEDGER_RETRY_ATTEMPTS must be >= 1")
        if self.alert_webhook_type not in {"generic", "slack", "discord"}:
            raise ConfigurationError(
                f"ESCROW_ALERT_WEBHOOK_TYPE={self.alert_webhook_type!r} is not one of generic, slack, discord"
            )

        if self.fee_percent > 20:
            log.warning(json.dumps({
                "event": "config_warning",
                "field": "fee_percent",
                "value": self.fee_percent,
                "message": "fee above 20% of the sale",
            }))
        if self.ledger_replica_dir is None:
            log.warning(json.dumps({
                "event": "config_warning",
                "field": "ledger_replica_dir",
                "message": "no replica ledger; wallet records are written to one store only",
            }))


def _sanity_check(cfg: Settings) -> None:
    """Log the critical settings once at startup so overrides are obvious."""
    log.info(json.dumps({
        "event": "config_loaded",
        "network": cfg.chain_network,
        "fee_percent": cfg.fee_percent,
        "release_delay_sec": cfg.release_delay_sec,
        "min_native_for_message": cfg.min_native_for_message,
        "gas_allowance": cfg.gas_allowance,
        "funding_wallet_address": cfg.funding_wallet_address,
    }))
