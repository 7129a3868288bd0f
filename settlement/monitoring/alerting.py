"""
Operator alerts for the settlement engine, delivered to a webhook.

Alerts are buffered for a short window and posted together; Slack and
Discord receive one attachment/embed per alert, anything else gets the
plain JSON form. Repeats of the same alert type for the same order are
suppressed for `rate_limit_seconds`.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

import httpx

log = logging.getLogger("settlement")


class AlertSeverity(Enum):
    # lower value is more urgent
    CRITICAL = 1
    WARNING = 2
    INFO = 3


class AlertType(Enum):
    RELEASE_FAILED = "release_failed"
    FUNDING_ADDRESS_MISMATCH = "funding_address_mismatch"
    LEDGER_WRITE_FAILED = "ledger_write_failed"
    STARTUP = "startup"
    SHUTDOWN = "shutdown"
    CUSTOM = "custom"


SEVERITY_COLORS: Dict[AlertSeverity, int] = {
    AlertSeverity.CRITICAL: 0xD32F2F,
    AlertSeverity.WARNING: 0xF9A825,
    AlertSeverity.INFO: 0x1976D2,
}
MAX_DETAIL_FIELDS = 5


def _iso(ts_ms: int) -> str:
    return time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime(ts_ms / 1000))


@dataclass
class Alert:
    alert_type: AlertType
    severity: AlertSeverity
    title: str
    message: str
    timestamp_ms: int = field(default_factory=lambda: int(time.time() * 1000))
    details: Dict[str, Any] = field(default_factory=dict)
    order_id: Optional[str] = None

    @property
    def rate_key(self) -> Tuple[AlertType, Optional[str]]:
        return self.alert_type, self.order_id

    def labelled_values(self, include_details: bool = True) -> List[Tuple[str, str]]:
        """Order, type, then up to MAX_DETAIL_FIELDS details, as (label, value)."""
        pairs = [("Order", self.order_id)] if self.order_id else []
        pairs.append(("Type", self.alert_type.name))
        if include_details:
            pairs.extend((k, str(v)) for k, v in list(self.details.items())[:MAX_DETAIL_FIELDS])
        return pairs

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.alert_type.name,
            "severity": self.severity.name,
            "title": self.title,
            "message": self.message,
            "order_id": self.order_id,
            "details": self.details,
            "timestamp_ms": self.timestamp_ms,
            "timestamp_iso": _iso(self.timestamp_ms),
        }


@dataclass
class AlertConfig:
    webhook_url: Optional[str] = None
    webhook_type: str = "generic"  # generic, slack, discord
    min_severity: AlertSeverity = AlertSeverity.WARNING
    rate_limit_seconds: int = 60
    batch_window_ms: int = 5000
    enabled: bool = True
    include_details: bool = True
    service_name: str = "EscrowSettlement"


def _render_generic(alerts: List[Alert], config: AlertConfig) -> Dict[str, Any]:
    if len(alerts) == 1:
        return alerts[0].to_dict()
    return {"alerts": [a.to_dict() for a in alerts]}


def _render_slack(alerts: List[Alert], config: AlertConfig) -> Dict[str, Any]:
    attachments = []
    for alert in alerts:
        attachments.append({
            "color": f"#{SEVERITY_COLORS[alert.severity]:06X}",
            "title": alert.title,
            "text": alert.message,
            "fields": [
                {"title": label, "value": value, "short": True}
                for label, value in alert.labelled_values(config.include_details)
            ],
            "footer": f"{config.service_name} | {alert.severity.name}",
            "ts": alert.timestamp_ms // 1000,
        })
    return {"username": config.service_name, "attachments": attachments}


def _render_discord(alerts: List[Alert], config: AlertConfig) -> Dict[str, Any]:
    embeds = []
    for alert in alerts:
        embeds.append({
            "title": alert.title,
            "description": alert.message,
            "color": SEVERITY_COLORS[alert.severity],
            "fields": [
                {"name": label, "value": value, "inline": True}
                for label, value in alert.labelled_values(config.include_details)
            ],
            "footer": {"text": f"{config.service_name} | {alert.severity.name}"},
            "timestamp": _iso(alert.timestamp_ms),
        })
    return {"username": config.service_name, "embeds": embeds}


RENDERERS: Dict[str, Callable[[List[Alert], AlertConfig], Dict[str, Any]]] = {
    "generic": _render_generic,
    "slack": _render_slack,
    "discord": _render_discord,
}


def render_payload(alerts: List[Alert], config: AlertConfig) -> Dict[str, Any]:
    """One webhook body for a batch of alerts; unknown webhook types get the generic form."""
    return RENDERERS.get(config.webhook_type, _render_generic)(alerts, config)


class AlertManager:
    """Buffers, rate-limits and posts alerts. Every public method is safe to await from the release path."""

    def __init__(self, config: Optional[AlertConfig] = None, client: Optional[httpx.AsyncClient] = None) -> None:
        self.config = config or AlertConfig()
        self._client = client
        self._buffer: List[Alert] = []
        self._flusher: Optional[asyncio.Task] = None
        # rate key -> monotonic time of the last accepted alert
        self._recent: Dict[Tuple[AlertType, Optional[str]], float] = {}

    def _accepts(self, alert: Alert) -> bool:
        if not self.config.enabled or not self.config.webhook_url:
            return False
        return alert.severity.value <= self.config.min_severity.value

    def _rate_limited(self, alert: Alert) -> bool:
        now = time.monotonic()
        window = self.config.rate_limit_seconds
        self._recent = {k: t for k, t in self._recent.items() if now - t < window}
        if alert.rate_key in self._recent:
            return True
        self._recent[alert.rate_key] = now
        return False

    async def send_alert(self, alert: Alert) -> bool:
        """Buffer `alert` for delivery. False when disabled, below severity or rate limited."""
        if not self._accepts(alert):
            return False
        if self._rate_limited(alert):
            log.debug(json.dumps({"event": "alert_rate_limited", "type": alert.alert_type.name, "order_id": alert.order_id}))
            return False
        self._buffer.append(alert)
        if self._flusher is None or self._flusher.done():
            self._flusher = asyncio.create_task(self._flush_after_window(), name="alert-flush")
        return True

    async def _flush_after_window(self) -> None:
        await asyncio.sleep(self.config.batch_window_ms / 1000)
        await self._deliver_buffer()

    async def _deliver_buffer(self) -> bool:
        batch, self._buffer = self._buffer, []
        if not batch:
            return True
        return await self._post(render_payload(batch, self.config))

    async def flush(self) -> None:
        """Post whatever is buffered now instead of at the end of the window."""
        flusher, self._flusher = self._flusher, None
        if flusher is not None and not flusher.done():
            flusher.cancel()
            await asyncio.gather(flusher, return_exceptions=True)
        await self._deliver_buffer()

    async def aclose(self) -> None:
        await self.flush()
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _post(self, payload: Dict[str, Any], retries: int = 2) -> bool:
        if not self.config.webhook_url:
            return False
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=10.0)
        for attempt in range(1, retries + 2):
            try:
                resp = await self._client.post(self.config.webhook_url, json=payload)
                resp.raise_for_status()
                return True
            except httpx.HTTPStatusError as exc:
                error = f"HTTP {exc.response.status_code}"
            except httpx.HTTPError as exc:
                error = str(exc) or type(exc).__name__
            log.warning(json.dumps({"event": "alert_delivery_failed", "attempt": attempt, "error": error}))
            if attempt <= retries:
                await asyncio.sleep(attempt)
        return False

    # ------------------------------------------------------------------
    # Settlement alerts
    # ------------------------------------------------------------------

    async def alert_release_failed(self, order_id: str, reason: str, error: Optional[str] = None, **details) -> bool:
        message = f"Order {order_id}: {reason}" + (f" ({error})" if error else "")
        return await self.send_alert(Alert(
            AlertType.RELEASE_FAILED, AlertSeverity.CRITICAL, "Escrow Release Failed", message,
            order_id=order_id, details={"reason": reason, **details},
        ))

    async def alert_funding_mismatch(self, restored: str, configured: str) -> bool:
        return await self.send_alert(Alert(
            AlertType.FUNDING_ADDRESS_MISMATCH, AlertSeverity.WARNING, "Funding Wallet Address Mismatch",
            "Restored funding wallet differs from the configured address; using the restored one",
            details={"restored": restored, "configured": configured},
        ))

    async def alert_ledger_write_failed(self, order_id: str, error: str) -> bool:
        return await self.send_alert(Alert(
            AlertType.LEDGER_WRITE_FAILED, AlertSeverity.CRITICAL, "Release Status Not Persisted", error,
            order_id=order_id,
        ))

    async def alert_lifecycle(self, started: bool, **details) -> bool:
        if started:
            kind, title = AlertType.STARTUP, "Settlement Service Started"
        else:
            kind, title = AlertType.SHUTDOWN, "Settlement Service Stopped"
        return await self.send_alert(Alert(kind, AlertSeverity.INFO, title, "", details=details))
