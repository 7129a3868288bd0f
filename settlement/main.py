"""
Entry point wiring all components.

    python -m settlement.main
"""

from __future__ import annotations

import asyncio
import json
import signal
import sys

from settlement.app import SettlementService
from settlement.config.config import Settings
from settlement.core.errors import ConfigurationError
from settlement.infra.logging_cfg import add_file_handler, build_logger, register_secret
from settlement.monitoring.alerting import AlertConfig, AlertManager, AlertSeverity
from settlement.monitoring.metrics import SettlementMetrics, start_metrics_server

log = build_logger("settlement", file_path=None)


async def main() -> int:
    try:
        cfg = Settings.load()
    except ConfigurationError as exc:
        log.error(json.dumps({"event": "config_invalid", "error": str(exc)}))
        return 1

    register_secret(cfg.funding_wallet_mnemonic)
    if cfg.log_file:
        add_file_handler(log, cfg.log_file)
    log.info(json.dumps({"event": "settings", **cfg.dump()}, default=str))

    alerts = AlertManager(AlertConfig(
        webhook_url=cfg.alert_webhook_url,
        webhook_type=cfg.alert_webhook_type,
        min_severity=AlertSeverity.INFO,
        enabled=cfg.alert_enabled,
    ))
    metrics = SettlementMetrics()

    try:
        service = SettlementService.from_settings(cfg, metrics=metrics, alerts=alerts)
    except ConfigurationError as exc:
        log.error(json.dumps({"event": "config_invalid", "error": str(exc)}))
        await alerts.aclose()
        return 1

    srv = await start_metrics_server(metrics, cfg.metrics_port)
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            pass

    try:
        await service.start()
        log.info(json.dumps({"event": "startup", "metrics_port": cfg.metrics_port}))
        await stop_event.wait()
        log.info("Shutdown signal received, cleaning up...")
    finally:
        await service.stop()
        srv.close()
        await srv.wait_closed()
        log.info("Shutdown complete")
    return 0


def run() -> None:
    try:
        code = asyncio.run(main())
    except KeyboardInterrupt:
        code = 0
    sys.exit(code)


if __name__ == "__main__":
    run()
