from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException

from .core.config import load_inputs, retry_policy, settings, validate_endpoint
from .core.log import configure_logging

from .api.routes import router as api_router
import spotwatch.api.routes as routes_module

from .domain.interfaces import GpioPlatform
from .domain.models import MonitoredInput
from .drivers.gpio_sim import SimulatedGpio
from .services.delivery import DeliveryClient
from .services.dispatcher import PinDispatcher


logger = logging.getLogger(__name__)


gpio: GpioPlatform
sim_gpio: SimulatedGpio | None = None


def build_gpio() -> GpioPlatform:
    global sim_gpio

    if settings.gpio_mode == "gpiozero":
        from .drivers.gpio_gpiozero import GpiozeroGpio, configure_pin_factory

        # process-wide hardware access mode, chosen once before any pin is provisioned
        configure_pin_factory(settings.gpio_pin_factory)
        return GpiozeroGpio()

    # default to sim
    sim_gpio = SimulatedGpio()
    return sim_gpio


# --- Startup configuration (fatal if invalid) ---
validate_endpoint()
inputs: list[MonitoredInput] = load_inputs()
policy = retry_policy()
gpio = build_gpio()

dispatcher: PinDispatcher | None = None


def get_dispatcher() -> PinDispatcher:
    assert dispatcher is not None
    return dispatcher


def get_inputs() -> list[MonitoredInput]:
    return inputs


def get_sim_gpio() -> SimulatedGpio:
    if sim_gpio is None:
        raise HTTPException(status_code=404, detail="Sim GPIO not available (gpio_mode is not 'sim').")
    return sim_gpio


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    logger.info(
        "Starting %s (gpio=%s, lot=%r, endpoint=%s%s, inputs=%d)",
        settings.app_name, settings.gpio_mode, settings.lot_name,
        settings.endpoint_base_url, settings.endpoint_path, len(inputs),
    )

    client = DeliveryClient(settings.endpoint_base_url, settings.endpoint_path, policy)

    global dispatcher
    dispatcher = PinDispatcher(
        inputs,
        gpio,
        client,
        settings.lot_name,
        outbox_size=settings.outbox_size,
        initial_quiet=settings.initial_quiet,
        restart_delay_s=settings.restart_delay_seconds,
    )
    await dispatcher.start()

    try:
        yield
    finally:
        if dispatcher:
            await dispatcher.stop()

        await client.aclose()
        gpio.close()

        logger.info("Shutdown complete")


app = FastAPI(title=settings.app_name, lifespan=lifespan)

# Make the dependency functions in routes resolve to the real ones
app.dependency_overrides[routes_module.get_dispatcher] = get_dispatcher
app.dependency_overrides[routes_module.get_inputs] = get_inputs
app.dependency_overrides[routes_module.get_sim_gpio] = get_sim_gpio

app.include_router(api_router, prefix="/api")
