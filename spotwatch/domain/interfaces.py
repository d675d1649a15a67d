from __future__ import annotations
from typing import Callable, Iterable, Protocol, runtime_checkable
from .models import DeliveryResult, DomainEvent, RawSample


SampleCallback = Callable[[RawSample], None]


@runtime_checkable
class GpioPlatform(Protocol):
    """Hardware-watching collaborator. Callbacks may fire on any thread."""

    def setup(self, pins: Iterable[int]) -> None:
        ...

    def read(self, pin: int) -> bool:
        ...

    def subscribe(self, pin: int, callback: SampleCallback) -> None:
        ...

    def close(self) -> None:
        ...


@runtime_checkable
class EventSink(Protocol):
    async def deliver(self, event: DomainEvent) -> DeliveryResult:
        ...
