from __future__ import annotations

import logging
from datetime import datetime
from threading import Lock
from typing import Iterable, Optional

from ..core.timeutil import now_utc
from ..domain.interfaces import SampleCallback
from ..domain.models import RawSample

logger = logging.getLogger(__name__)


class SimulatedGpio:
    """In-memory GPIO platform. Pins idle low, like a pull-down input."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._levels: dict[int, bool] = {}
        self._callbacks: dict[int, list[SampleCallback]] = {}
        self._fail_reads: set[int] = set()

    def setup(self, pins: Iterable[int]) -> None:
        with self._lock:
            for pin in pins:
                self._levels.setdefault(pin, False)
                self._callbacks.setdefault(pin, [])
        logger.info("Simulated GPIO ready (pins=%s)", sorted(self._levels))

    def read(self, pin: int) -> bool:
        with self._lock:
            if pin not in self._levels:
                raise KeyError(f"Pin {pin} not set up")
            if pin in self._fail_reads:
                raise RuntimeError(f"Simulated read failure on pin {pin}")
            return self._levels[pin]

    def subscribe(self, pin: int, callback: SampleCallback) -> None:
        with self._lock:
            if pin not in self._levels:
                raise KeyError(f"Pin {pin} not set up")
            self._callbacks[pin].append(callback)

    def set_level(self, pin: int, level: bool, ts_utc: Optional[datetime] = None) -> None:
        """Drive a pin and notify subscribers, as an edge interrupt would."""
        with self._lock:
            if pin not in self._levels:
                raise KeyError(f"Pin {pin} not set up")
            self._levels[pin] = bool(level)
            callbacks = list(self._callbacks[pin])
        sample = RawSample(pin=pin, level=bool(level), ts_utc=ts_utc or now_utc())
        for cb in callbacks:
            cb(sample)

    def set_read_failure(self, pin: int, failing: bool = True) -> None:
        with self._lock:
            if failing:
                self._fail_reads.add(pin)
            else:
                self._fail_reads.discard(pin)

    def levels(self) -> dict[int, bool]:
        with self._lock:
            return dict(self._levels)

    def close(self) -> None:
        with self._lock:
            for cbs in self._callbacks.values():
                cbs.clear()
