from __future__ import annotations

from .models import DomainEvent, EventKind, LogicalState, MonitoredInput, Polarity, StableTransition
from ..core.config import ConfigurationError


_KIND_BY_POLARITY = {
    Polarity.NORMAL: {
        LogicalState.ASSERTED: EventKind.OCCUPIED,
        LogicalState.DEASSERTED: EventKind.VACATED,
    },
    Polarity.INVERTED: {
        LogicalState.ASSERTED: EventKind.VACATED,
        LogicalState.DEASSERTED: EventKind.OCCUPIED,
    },
}


def kind_for(state: LogicalState, polarity: Polarity) -> EventKind:
    try:
        return _KIND_BY_POLARITY[polarity][state]
    except KeyError:
        raise ConfigurationError(f"No event mapping for state={state!r} polarity={polarity!r}") from None


def map_transition(transition: StableTransition, monitored: MonitoredInput, lot_name: str) -> DomainEvent:
    return DomainEvent(
        lot_name=lot_name,
        spot_label=monitored.label,
        kind=kind_for(transition.state, monitored.polarity),
        ts_utc=transition.ts_utc,
    )
