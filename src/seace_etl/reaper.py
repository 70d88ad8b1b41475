"""Background liveness check that fails operations which stopped reporting progress."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from threading import Event, Lock, Thread
from typing import Callable, List, Optional

from .operations import OperationRegistry

logger = logging.getLogger(__name__)


def parse_interval_seconds(value: str) -> int:
    """Parse an interval setting ("minutely", "hourly" or raw seconds) into seconds."""
    normalized = (value or "").strip().lower()
    named = {
        "minutely": 60,
        "hourly": 60 * 60,
        "daily": 24 * 60 * 60,
    }
    if normalized in named:
        return named[normalized]
    try:
        seconds = int(normalized)
    except ValueError as exc:
        raise ValueError(f"Unsupported interval: {value}") from exc
    if seconds <= 0:
        raise ValueError("Interval seconds must be greater than zero.")
    return seconds


@dataclass
class ReaperStatus:
    running: bool
    interval_seconds: int
    max_idle_seconds: int
    started_at: Optional[str] = None
    last_sweep_at: Optional[str] = None
    next_sweep_at: Optional[str] = None
    last_error: Optional[str] = None
    reaped_total: int = 0
    last_reaped: List[str] = field(default_factory=list)


class StaleOperationReaper:
    """In-process interval loop calling `OperationRegistry.reap_stale`."""

    def __init__(
        self,
        registry: OperationRegistry,
        interval_seconds: int,
        max_idle_seconds: int,
        is_queued: Optional[Callable[[str], bool]] = None,
    ):
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        if max_idle_seconds <= 0:
            raise ValueError("max_idle_seconds must be positive")
        self.registry = registry
        self.interval_seconds = interval_seconds
        self.max_idle_seconds = max_idle_seconds
        self.is_queued = is_queued
        self._stop_event = Event()
        self._thread: Optional[Thread] = None
        self._lock = Lock()
        self._started_at: Optional[str] = None
        self._last_sweep_at: Optional[str] = None
        self._next_sweep_at: Optional[datetime] = None
        self._last_error: Optional[str] = None
        self._reaped_total = 0
        self._last_reaped: List[str] = []

    def start(self) -> None:
        with self._lock:
            if self._thread and self._thread.is_alive():
                return
            self._stop_event.clear()
            self._started_at = datetime.now().isoformat()
            self._next_sweep_at = datetime.now() + timedelta(seconds=self.interval_seconds)
            self._thread = Thread(target=self._loop, name="operation-reaper", daemon=True)
            self._thread.start()
        logger.info(
            "Stale operation reaper started (every %ss, idle limit %ss)",
            self.interval_seconds, self.max_idle_seconds,
        )

    def stop(self, timeout_seconds: float = 5.0) -> None:
        self._stop_event.set()
        with self._lock:
            thread = self._thread
        if thread:
            thread.join(timeout=timeout_seconds)
        with self._lock:
            self._thread = None
            self._next_sweep_at = None

    def is_running(self) -> bool:
        with self._lock:
            return bool(self._thread and self._thread.is_alive())

    def get_status(self) -> ReaperStatus:
        with self._lock:
            return ReaperStatus(
                running=bool(self._thread and self._thread.is_alive()),
                interval_seconds=self.interval_seconds,
                max_idle_seconds=self.max_idle_seconds,
                started_at=self._started_at,
                last_sweep_at=self._last_sweep_at,
                next_sweep_at=self._next_sweep_at.isoformat() if self._next_sweep_at else None,
                last_error=self._last_error,
                reaped_total=self._reaped_total,
                last_reaped=list(self._last_reaped),
            )

    def sweep(self) -> List[str]:
        """Run one reap pass now and record its outcome."""
        try:
            reaped = self.registry.reap_stale(self.max_idle_seconds, is_queued=self.is_queued)
        except Exception as exc:
            logger.exception("Stale operation sweep failed")
            with self._lock:
                self._last_error = str(exc)
                self._last_sweep_at = datetime.now().isoformat()
            return []
        if reaped:
            logger.warning("Reaped %d stale operation(s): %s", len(reaped), ", ".join(reaped))
        with self._lock:
            self._last_error = None
            self._last_sweep_at = datetime.now().isoformat()
            self._reaped_total += len(reaped)
            self._last_reaped = list(reaped)
        return reaped

    def _loop(self) -> None:
        # Short waits keep stop() responsive.
        while not self._stop_event.wait(timeout=min(1.0, self.interval_seconds)):
            with self._lock:
                due = self._next_sweep_at
            if due is None or datetime.now() < due:
                continue
            self.sweep()
            with self._lock:
                self._next_sweep_at = datetime.now() + timedelta(seconds=self.interval_seconds)
