"""
Structured logging setup for the quoter.

Console output goes through rich; the file sink receives one JSON object per
line and is written from a background thread so a slow disk never stalls the
event loop. Events that can fire every tick (price fetch failures, risk
denials) are throttled per (event, symbol).
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

DEFAULT_THROTTLED_EVENTS = frozenset({
    "price_fetch_failed",
    "risk_denied",
    "snapshot_unavailable",
    "tick_error",
})


class JsonFormatter(logging.Formatter):
    """Compact JSON formatter for structured log ingestion."""

    def format(self, record: logging.LogRecord) -> str:
        ts = record.created
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


class AsyncQueueHandler(logging.Handler):
    """
    Non-blocking handler that queues records for a background writer thread.
    Records are dropped (and counted) when the queue is full.
    """

    def __init__(self, target_handler: logging.Handler, max_queue_size: int = 10000):
        super().__init__()
        self._queue: queue.Queue = queue.Queue(maxsize=max_queue_size)
        self._target = target_handler
        self._shutdown = False
        self._dropped = 0
        self._thread = threading.Thread(target=self._worker, daemon=True, name="quoter-log-writer")
        self._thread.start()
        atexit.register(self.close)

    @property
    def dropped(self) -> int:
        return self._dropped

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
        if self._shutdown:
            return
        self._shutdown = True
        if self._thread.is_alive():
            self._thread.join(timeout=2.0)
        if self._dropped > 0:
            sys.stderr.write(f"[logging] Dropped {self._dropped} log records due to queue overflow\n")
        self._target.close()
        super().close()


class ThrottledFilter(logging.Filter):
    """
    Lets the first occurrence of a throttled event through, then suppresses
    repeats for the same (event, symbol) for cooldown_sec.
    """

    def __init__(
        self,
        cooldown_sec: float = 30.0,
        throttled_events: Optional[Set[str]] = None,
        clock=time.monotonic,
    ):
        super().__init__()
        self._cooldown = cooldown_sec
        self._last_seen: Dict[str, float] = {}
        self._throttled_events = set(throttled_events or DEFAULT_THROTTLED_EVENTS)
        self._clock = clock

    def filter(self, record: logging.LogRecord) -> bool:
        msg = record.getMessage()
        try:
            data = json.loads(msg)
        except (json.JSONDecodeError, TypeError):
            return True
        if not isinstance(data, dict):
            return True

        event = data.get("event", "")
        if event not in self._throttled_events:
            return True

        now = self._clock()
        key = f"{event}:{data.get('symbol', '')}"
        last = self._last_seen.get(key)
        if last is not None and now - last < self._cooldown:
            return False
        self._last_seen[key] = now
        return True


def build_logger(
    name: str = "quoter",
    level: int | str = logging.INFO,
    file_path: Optional[str] = "quoter.log",
    async_file: bool = True,
    throttle_warnings: bool = True,
) -> logging.Logger:
    """
    Build the process logger.

    Args:
        name: Logger name
        level: Minimum log level (int or name such as "DEBUG")
        file_path: Path to JSON log file (None to disable file logging)
        async_file: Write the file from a background thread
        throttle_warnings: Throttle repetitive per-tick events on the console

    Returns:
        Configured logger instance
    """
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO

    logger = logging.getLogger(name)
    logger.setLevel(level)

    # Idempotent handler setup
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
    if throttle_warnings:
        stream_handler.addFilter(ThrottledFilter(cooldown_sec=30.0))
    logger.addHandler(stream_handler)

    if file_path:
        file_handler = logging.FileHandler(file_path)
        file_handler.setFormatter(JsonFormatter())
        file_handler.setLevel(level)
        if async_file:
            async_handler = AsyncQueueHandler(file_handler, max_queue_size=10000)
            async_handler.setLevel(level)
            logger.addHandler(async_handler)
        else:
            logger.addHandler(file_handler)

    logger.propagate = False
    return logger


def log_event(
    logger: logging.Logger,
    event: str,
    level: int = logging.INFO,
    **data
) -> None:
    """
    Log a structured event.

    Usage:
        log_event(log, "orders_placed", symbol="BTC-USD", accepted=6)
    """
    payload = {"event": event, **data}
    logger.log(level, json.dumps(payload, default=str))
