from __future__ import annotations
import logging
from datetime import datetime, timedelta
from typing import AsyncIterator, Optional

from .models import LogicalState, RawSample, StableTransition
from ..core.timeutil import seconds_between

logger = logging.getLogger(__name__)


class Debouncer:
    """
    Turns a noisy stream of raw pin levels into stable logical transitions.

    A new level is confirmed once it has been seen continuously for at least
    ``debounce_s`` seconds. Because a held button produces no further change
    notifications, callers re-sample the pin at ``deadline()`` so the window
    can close. The very first sample sets the baseline without emitting,
    unless ``initial_quiet`` asks for the first level to be debounced too.
    """

    def __init__(self, pin: int, debounce_s: float, initial_quiet: bool = False) -> None:
        if debounce_s < 0:
            raise ValueError(f"debounce_s must be >= 0, got {debounce_s}")
        self.pin = pin
        self.debounce_s = float(debounce_s)
        self.initial_quiet = initial_quiet

        self._last_confirmed: Optional[bool] = None
        self._pending_level: Optional[bool] = None
        self._pending_since: Optional[datetime] = None
        self._last_ts: Optional[datetime] = None
        self.dropped = 0

    @property
    def state(self) -> Optional[LogicalState]:
        if self._last_confirmed is None:
            return None
        return LogicalState.from_level(self._last_confirmed)

    def deadline(self) -> Optional[datetime]:
        if self._pending_since is None:
            return None
        return self._pending_since + timedelta(seconds=self.debounce_s)

    def _drop(self, sample: RawSample, why: str) -> None:
        self.dropped += 1
        logger.warning("pin %s: dropping sample (%s): %s", self.pin, why, sample)

    def _clear_pending(self) -> None:
        self._pending_level = None
        self._pending_since = None

    def feed(self, sample: RawSample) -> Optional[StableTransition]:
        if sample.pin != self.pin:
            self._drop(sample, "wrong pin")
            return None
        if sample.ts_utc is None:
            self._drop(sample, "missing timestamp")
            return None
        if self._last_ts is not None and sample.ts_utc < self._last_ts:
            self._drop(sample, "out-of-order timestamp")
            return None
        self._last_ts = sample.ts_utc

        level = bool(sample.level)

        if self._last_confirmed is None and not self.initial_quiet:
            self._last_confirmed = level
            logger.debug("pin %s: baseline level=%s", self.pin, level)
            return None

        if level == self._last_confirmed:
            # glitch that returned to the confirmed level
            self._clear_pending()
            return None

        if level != self._pending_level:
            self._pending_level = level
            self._pending_since = sample.ts_utc

        held = seconds_between(self._pending_since, sample.ts_utc)
        if held < self.debounce_s:
            return None

        self._last_confirmed = level
        self._clear_pending()
        transition = StableTransition(
            pin=self.pin,
            state=LogicalState.from_level(level),
            ts_utc=sample.ts_utc,
        )
        logger.debug("pin %s: confirmed %s after %.3fs", self.pin, transition.state.value, held)
        return transition

    async def stream(self, samples: AsyncIterator[RawSample]) -> AsyncIterator[StableTransition]:
        async for sample in samples:
            transition = self.feed(sample)
            if transition is not None:
                yield transition
