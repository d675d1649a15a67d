from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional


class LogicalState(str, Enum):
    ASSERTED = "asserted"      # pin high
    DEASSERTED = "deasserted"  # pin low (pull-down idle)

    @classmethod
    def from_level(cls, level: bool) -> "LogicalState":
        return cls.ASSERTED if level else cls.DEASSERTED


class Polarity(str, Enum):
    NORMAL = "normal"      # asserted -> occupied
    INVERTED = "inverted"  # asserted -> vacated


class EventKind(str, Enum):
    # Values are the wire literals expected by the occupancy endpoint
    OCCUPIED = "OCCUPY"
    VACATED = "VACATE"


class AttemptOutcome(str, Enum):
    SUCCESS = "success"
    TRANSIENT_FAILURE = "transient_failure"
    PERMANENT_FAILURE = "permanent_failure"


class DeliveryOutcome(str, Enum):
    DELIVERED = "delivered"
    RETRIES_EXHAUSTED = "retries_exhausted"
    ABANDONED = "abandoned"


@dataclass(frozen=True)
class MonitoredInput:
    pin: int
    label: str
    debounce_s: float = 0.05
    polarity: Polarity = Polarity.NORMAL


@dataclass(frozen=True)
class RawSample:
    pin: int
    level: bool
    ts_utc: Optional[datetime]


@dataclass(frozen=True)
class StableTransition:
    pin: int
    state: LogicalState
    ts_utc: datetime


@dataclass(frozen=True)
class DomainEvent:
    lot_name: str
    spot_label: str
    kind: EventKind
    ts_utc: datetime


@dataclass(frozen=True)
class RetryPolicy:
    timeout_s: float = 5.0
    max_attempts: int = 5
    backoff_base_s: float = 0.5
    backoff_max_s: float = 8.0
    max_total_wait_s: float = 30.0
    jitter: float = 0.2


@dataclass(frozen=True)
class DeliveryAttempt:
    event: DomainEvent
    attempt: int
    outcome: AttemptOutcome
    elapsed_s: float
    status_code: Optional[int] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class DeliveryResult:
    event: DomainEvent
    outcome: DeliveryOutcome
    attempts: tuple[DeliveryAttempt, ...]
    elapsed_s: float
    response_text: Optional[str] = None

    @property
    def attempt_count(self) -> int:
        return len(self.attempts)


@dataclass
class PipelineStats:
    samples: int = 0
    dropped_samples: int = 0
    transitions: int = 0
    delivered: int = 0
    retries_exhausted: int = 0
    abandoned: int = 0
    dropped_events: int = 0
    restarts: int = 0
    state: Optional[LogicalState] = None
    last_event_kind: Optional[EventKind] = None
    last_outcome: Optional[DeliveryOutcome] = None
    last_error: Optional[str] = None
    last_change_utc: Optional[datetime] = None
