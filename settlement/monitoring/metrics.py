"""
Prometheus metrics for settlement observability.

Organized into: releases, transfers, chain reads, bookkeeping.
"""

from __future__ import annotations

import asyncio
import json
from typing import Optional
from urllib.parse import urlparse

from prometheus_client import CONTENT_TYPE_LATEST, CollectorRegistry, Counter, Gauge, Histogram, generate_latest


class SettlementMetrics:
    """Counters and histograms on a private registry."""

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        reg = registry or CollectorRegistry()
        self.registry = reg

        # === Release Metrics ===
        self.releases_total = Counter(
            'settlement_releases_total',
            'Release attempts by outcome',
            labelnames=['outcome', 'trigger'],
            registry=reg
        )
        self.release_duration_sec = Histogram(
            'settlement_release_duration_sec',
            'Wall time of one release attempt (seconds)',
            buckets=[0.5, 1, 2, 5, 10, 30, 60, 120],
            registry=reg
        )
        self.releases_armed = Gauge(
            'settlement_releases_armed',
            'Release timers currently armed',
            registry=reg
        )

        # === Transfer Metrics ===
        self.transfers_total = Counter(
            'settlement_transfers_total',
            'Outbound transfers by leg and result',
            labelnames=['leg', 'result'],
            registry=reg
        )
        self.funding_topups_total = Counter(
            'settlement_funding_topups_total',
            'Gas top-ups sent from the funding account',
            labelnames=['result'],
            registry=reg
        )

        # === Chain Read Metrics ===
        self.probe_fallbacks_total = Counter(
            'settlement_probe_fallbacks_total',
            'Balance reads answered by a fallback strategy',
            labelnames=['strategy'],
            registry=reg
        )

        # === Bookkeeping Metrics ===
        self.recorder_results_total = Counter(
            'settlement_recorder_results_total',
            'Background transaction record results',
            labelnames=['result'],
            registry=reg
        )
        self.ledger_write_failures_total = Counter(
            'settlement_ledger_write_failures_total',
            'Release status writes that no ledger accepted',
            registry=reg
        )

    def record_release(self, outcome: str, trigger: str, duration_sec: float) -> None:
        self.releases_total.labels(outcome=outcome, trigger=trigger).inc()
        self.release_duration_sec.observe(duration_sec)

    def record_transfer(self, leg: str, result: str) -> None:
        self.transfers_total.labels(leg=leg, result=result).inc()

    def record_funding(self, result: str) -> None:
        self.funding_topups_total.labels(result=result).inc()

    def record_probe_fallback(self, strategy: str) -> None:
        self.probe_fallbacks_total.labels(strategy=strategy).inc()

    def record_recorder(self, result: str) -> None:
        self.recorder_results_total.labels(result=result).inc()

    def render(self) -> bytes:
        return generate_latest(self.registry)


async def start_metrics_server(
    metrics: SettlementMetrics,
    port: int,
    host: str = "0.0.0.0",
) -> asyncio.AbstractServer:
    """
    Start HTTP server for metrics and liveness.

    Endpoints:
    - GET /metrics - Prometheus text format
    - GET /health - Liveness probe, always 200 while the loop runs
    """
    async def handle(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        req = await reader.read(2048)
        path_raw = b"/"
        first_line = req.split(b"\r\n", 1)[0]
        parts = first_line.split(b" ")
        if len(parts) >= 2:
            path_raw = parts[1]
        path = urlparse(path_raw.decode("utf-8", errors="ignore")).path

        if path == "/health":
            body = json.dumps({"healthy": True}).encode()
            content_type = b"application/json"
        else:
            body = metrics.render()
            content_type = CONTENT_TYPE_LATEST.encode()

        writer.write(
            b"HTTP/1.1 200 OK\r\n"
            b"Content-Type: " + content_type + b"\r\n"
            b"Connection: close\r\n\r\n"
            + body
        )
        await writer.drain()
        writer.close()

    return await asyncio.start_server(handle, host, port)
