from __future__ import annotations

import logging
from typing import Iterable

from gpiozero import Device, DigitalInputDevice

from ..core.config import ConfigurationError
from ..core.timeutil import now_utc
from ..domain.interfaces import SampleCallback
from ..domain.models import RawSample

logger = logging.getLogger(__name__)


def configure_pin_factory(name: str) -> None:
    """
    Select the process-wide gpiozero pin factory. Must run once, before any
    input device is created. An empty name keeps gpiozero's default choice.
    """
    if not name:
        return
    name = name.lower()
    if name == "lgpio":
        from gpiozero.pins.lgpio import LGPIOFactory
        Device.pin_factory = LGPIOFactory()
    elif name == "rpigpio":
        from gpiozero.pins.rpigpio import RPiGPIOFactory
        Device.pin_factory = RPiGPIOFactory()
    elif name == "mock":
        from gpiozero.pins.mock import MockFactory
        Device.pin_factory = MockFactory()
    else:
        raise ConfigurationError(f"Unsupported gpio pin factory: {name}")
    logger.info("gpiozero pin factory: %s", type(Device.pin_factory).__name__)


class GpiozeroGpio:
    """
    GPIO platform backed by gpiozero input devices (BCM numbering).

    Inputs are provisioned with the internal pull-down enabled, so an idle
    button reads low. gpiozero's own bounce filtering is left off; debouncing
    happens downstream.
    """

    def __init__(self) -> None:
        self._devices: dict[int, DigitalInputDevice] = {}

    def setup(self, pins: Iterable[int]) -> None:
        for pin in pins:
            if pin in self._devices:
                continue
            self._devices[pin] = DigitalInputDevice(pin, pull_up=False)
        logger.info("gpiozero inputs provisioned: %s", sorted(self._devices))

    def _device(self, pin: int) -> DigitalInputDevice:
        try:
            return self._devices[pin]
        except KeyError:
            raise KeyError(f"Pin {pin} not set up") from None

    def read(self, pin: int) -> bool:
        return bool(self._device(pin).is_active)

    def subscribe(self, pin: int, callback: SampleCallback) -> None:
        dev = self._device(pin)

        def on_high() -> None:
            callback(RawSample(pin=pin, level=True, ts_utc=now_utc()))

        def on_low() -> None:
            callback(RawSample(pin=pin, level=False, ts_utc=now_utc()))

        # gpiozero keeps one handler per edge
        dev.when_activated = on_high
        dev.when_deactivated = on_low

    def close(self) -> None:
        for pin, dev in self._devices.items():
            try:
                dev.close()
            except Exception:
                logger.warning("Failed closing gpio pin %s", pin, exc_info=True)
        self._devices.clear()
