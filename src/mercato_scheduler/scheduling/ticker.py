"""Thread-based poll timer for the single-instance runner.

┌──────────────────────────────────────────────────────────────────────────────┐
│  POLL TICKER                                                                 │
│                                                                              │
│   start(tick, interval)                                                      │
│      │                                                                       │
│      ▼                                                                       │
│   ┌────────────────────────────────────────────────────────────────────┐    │
│   │  Daemon Thread                                                     │    │
│   │                                                                    │    │
│   │   asyncio.run(tick())             first cycle immediately          │    │
│   │   while not stop_event.wait(interval):                             │    │
│   │       asyncio.run(tick())                                          │    │
│   └────────────────────────────────────────────────────────────────────┘    │
│                                                                              │
│   stop()  →  stop_event.set(); thread.join(timeout)                          │
│   An in-progress tick runs to completion; no further ticks start.            │
└──────────────────────────────────────────────────────────────────────────────┘
"""

from __future__ import annotations

import asyncio
import threading
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import Any

from mercato_scheduler.logging import get_logger

logger = get_logger(__name__)

TickCallback = Callable[[], Awaitable[Any]]


class PollTicker:
    """Runs an async callback on a fixed interval in a daemon thread.

    Example:
        >>> ticker = PollTicker()
        >>> ticker.start(runner.run_cycle, interval_seconds=30.0)
        >>> ticker.stop()
    """

    def __init__(self, *, name: str = "mercato-scheduler", join_timeout: float = 5.0) -> None:
        self._name = name
        self._join_timeout = join_timeout
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._lock = threading.Lock()
        self._tick_count = 0
        self._last_tick: datetime | None = None
        self._interval = 0.0

    def start(self, tick_callback: TickCallback, interval_seconds: float) -> None:
        if self.is_running:
            logger.warning("ticker_already_running", ticker=self._name)
            return

        self._interval = interval_seconds
        self._stop_event.clear()

        def _run_tick() -> None:
            with self._lock:
                self._tick_count += 1
                self._last_tick = datetime.now(UTC)
            try:
                asyncio.run(tick_callback())
            except Exception:
                logger.exception("tick_failed", ticker=self._name)

        def _loop() -> None:
            logger.info("ticker_started", ticker=self._name, interval_seconds=interval_seconds)
            _run_tick()
            while not self._stop_event.wait(interval_seconds):
                _run_tick()
            logger.info("ticker_stopped", ticker=self._name)

        self._thread = threading.Thread(target=_loop, daemon=True, name=self._name)
        self._thread.start()

    def stop(self) -> bool:
        """Signal the loop and wait for the current tick to finish.

        Returns True once the loop thread has exited. If the tick outlives
        ``join_timeout`` (or ``stop`` is called from the tick itself) the
        thread is kept and ``is_running`` stays True until it exits.
        """
        thread = self._thread
        if thread is None:
            return True

        self._stop_event.set()
        if thread is threading.current_thread():
            return False

        thread.join(timeout=self._join_timeout)
        if thread.is_alive():
            logger.warning("ticker_stop_timeout", ticker=self._name)
            return False
        self._thread = None
        return True

    def wait(self, timeout: float | None = None) -> bool:
        """Block until :meth:`stop` is called. Returns True once stopped."""
        return self._stop_event.wait(timeout)

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def tick_count(self) -> int:
        return self._tick_count

    @property
    def last_tick(self) -> datetime | None:
        return self._last_tick

    @property
    def interval_seconds(self) -> float:
        return self._interval
