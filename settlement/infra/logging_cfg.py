"""
Structured logging setup for the settlement engine.

- Async-safe queue handler so file logging never blocks the event loop
- Throttling for repetitive warnings (ledger retries, probe fallbacks)
- Secret redaction: registered secret phrases are scrubbed from every record
"""

from __future__ import annotations

import atexit
import json
import logging
import queue
import sys
import threading
import time
from datetime import datetime
from typing import Dict, Optional, Set

from rich.logging import RichHandler

REDACTED = "***REDACTED***"


class JsonFormatter(logging.Formatter):
    """Compact JSON formatter for structured log ingestion."""

    def format(self, record: logging.LogRecord) -> str:
        ts = time.time()
        payload = {
            "ts": ts,
            "ts_iso": datetime.fromtimestamp(ts).isoformat(timespec="milliseconds"),
            "level": record.levelname,
            "name": record.name,
            "msg": record.getMessage(),
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, separators=(",", ":"))


class SecretRedactingFilter(logging.Filter):
    """
    Replaces registered secrets with a placeholder.

    Secret phrases are registered by custody when they are restored; the
    filter renders the message once and rewrites it so formatting args
    cannot smuggle a phrase past it.
    """

    def __init__(self) -> None:
        super().__init__()
        self._secrets: Set[str] = set()
        self._lock = threading.Lock()

    def register(self, secret: str) -> None:
        secret = (secret or "").strip()
        if not secret:
            return
        with self._lock:
            self._secrets.add(secret)

    def unregister(self, secret: str) -> None:
        with self._lock:
            self._secrets.discard((secret or "").strip())

    def filter(self, record: logging.LogRecord) -> bool:
        if not self._secrets:
            return True
        msg = record.getMessage()
        with self._lock:
            secrets = list(self._secrets)
        changed = False
        for secret in secrets:
            if secret in msg:
                msg = msg.replace(secret, REDACTED)
                changed = True
        if changed:
            record.msg = msg
            record.args = None
        return True


_redactor = SecretRedactingFilter()


def register_secret(secret: str) -> None:
    """Register a secret phrase so no handler built here ever prints it."""
    _redactor.register(secret)


def unregister_secret(secret: str) -> None:
    """Stop redacting a phrase once nothing in the process holds it."""
    _redactor.unregister(secret)


class AsyncQueueHandler(logging.Handler):
    """
    Non-blocking handler that queues log records for background processing.

    Records are written by a dedicated daemon thread; when the queue is
    full the record is dropped and counted.
    """

    def __init__(self, target_handler: logging.Handler, max_queue_size: int = 10000):
        super().__init__()
        self._queue: queue.Queue = queue.Queue(maxsize=max_queue_size)
        self._target = target_handler
        self._shutdown = False
        self._dropped = 0
        self._thread = threading.Thread(target=self._worker, daemon=True, name="log-writer")
        self._thread.start()
        atexit.register(self.close)

    def emit(self, record: logging.LogRecord) -> None:
        if self._shutdown:
            return
        try:
            self._queue.put_nowait(record)
        except queue.Full:
            self._dropped += 1

    def _worker(self) -> None:
        while not self._shutdown or not self._queue.empty():
            try:
                record = self._queue.get(timeout=0.1)
            except queue.Empty:
                continue
            try:
                self._target.emit(record)
            except Exception:
                self._target.handleError(record)
            finally:
                self._queue.task_done()

    def close(self) -> None:
        self._shutdown = True
        if self._thread.is_alive():
            self._thread.join(timeout=2.0)
        if self._dropped > 0:
            sys.stderr.write(f"[logging] Dropped {self._dropped} log records due to queue overflow\n")
        self._target.close()
        super().close()


class ThrottledFilter(logging.Filter):
    """
    Allows the first occurrence of a throttled event, then suppresses
    duplicates for the same order for cooldown_sec.
    """

    def __init__(self, cooldown_sec: float = 30.0, throttled_events: Optional[Set[str]] = None):
        super().__init__()
        self._cooldown = cooldown_sec
        self._last_seen: Dict[str, float] = {}
        self._throttled_events = throttled_events or {
            "ledger_retry", "balance_probe_fallback", "chain_retry",
        }

    def filter(self, record: logging.LogRecord) -> bool:
        msg = record.getMessage()
        try:
            data = json.loads(msg)
            event = data.get("event", "")
        except (json.JSONDecodeError, TypeError, AttributeError):
            return True

        if event not in self._throttled_events:
            return True

        now = time.time()
        key = f"{event}:{data.get('order_id', '')}"
        if now - self._last_seen.get(key, 0) < self._cooldown:
            return False
        # expired keys would only ever pass; drop them
        self._last_seen = {k: t for k, t in self._last_seen.items() if now - t < self._cooldown}
        self._last_seen[key] = now
        return True


def build_logger(
    name: str = "settlement",
    level: int = logging.INFO,
    file_path: Optional[str] = "settlement.log",
    async_file: bool = True,
    throttle_warnings: bool = True,
) -> logging.Logger:
    """
    Build the process logger.

    Args:
        name: Logger name
        level: Minimum log level
        file_path: Path to JSON log file (None disables file logging)
        async_file: Write the file through the background queue handler
        throttle_warnings: Throttle repetitive console warnings

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(name)
    logger.setLevel(level)

    if logger.handlers:
        for h in logger.handlers:
            h.setLevel(level)
        return logger

    stream_handler = RichHandler(
        rich_tracebacks=False,
        show_time=True,
        show_level=True,
        show_path=False,
        markup=False,
    )
    stream_handler.setLevel(level)
    stream_handler.setFormatter(logging.Formatter("%(message)s"))
    stream_handler.addFilter(_redactor)
    if throttle_warnings:
        stream_handler.addFilter(ThrottledFilter(cooldown_sec=30.0))
    logger.addHandler(stream_handler)

    if file_path:
        add_file_handler(logger, file_path, level=level, async_file=async_file)

    logger.propagate = False
    return logger


def add_file_handler(
    logger: logging.Logger,
    file_path: str,
    level: int = logging.INFO,
    async_file: bool = True,
) -> logging.Handler:
    """Attach a redacted JSON file handler, optionally behind the queue handler."""
    file_handler = logging.FileHandler(file_path)
    file_handler.setFormatter(JsonFormatter())
    file_handler.setLevel(level)
    if async_file:
        async_handler = AsyncQueueHandler(file_handler, max_queue_size=10000)
        async_handler.setLevel(level)
        async_handler.addFilter(_redactor)
        logger.addHandler(async_handler)
        return async_handler
    file_handler.addFilter(_redactor)
    logger.addHandler(file_handler)
    return file_handler


def log_event(
    logger: logging.Logger,
    event: str,
    level: int = logging.INFO,
    **data,
) -> None:
    """
    Log a structured event.

    Usage:
        log_event(log, "release_completed", order_id="o-1", fee="50000")
    """
    payload = {"event": event, **data}
    logger.log(level, json.dumps(payload, default=str))
