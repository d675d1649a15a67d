from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException

from ..core.config import settings
from ..core.timeutil import now_utc
from ..domain.models import MonitoredInput
from ..drivers.gpio_sim import SimulatedGpio
from ..services.dispatcher import PinDispatcher
from .schemas import SimLevelRequest

logger = logging.getLogger(__name__)

router = APIRouter()


# --- Dependency getters ---
# Placeholders; main.py binds the real objects through app.dependency_overrides.
def get_dispatcher() -> PinDispatcher:  # overridden in main
    raise RuntimeError("Dispatcher dependency not configured")

def get_inputs() -> list[MonitoredInput]:  # overridden in main
    raise RuntimeError("Inputs dependency not configured")

def get_sim_gpio() -> SimulatedGpio:  # overridden in main
    raise RuntimeError("Simulated GPIO dependency not configured")


def _input_or_404(pin: int, inputs: list[MonitoredInput]) -> MonitoredInput:
    for i in inputs:
        if i.pin == pin:
            return i
    raise HTTPException(status_code=404, detail=f"Unknown pin: {pin}")


@router.get("/health")
async def health(svc: PinDispatcher = Depends(get_dispatcher)):
    return {
        "app": settings.app_name,
        "now_utc": now_utc().isoformat(),
        "running": svc.running,
        "pipelines": len(svc.pipelines),
    }


@router.get("/inputs")
async def list_inputs(svc: PinDispatcher = Depends(get_dispatcher)):
    return {
        "lot_name": settings.lot_name,
        "inputs": svc.stats(),
    }


@router.get("/inputs/{pin}")
async def get_input(
    pin: int,
    svc: PinDispatcher = Depends(get_dispatcher),
    inputs: list[MonitoredInput] = Depends(get_inputs),
):
    _input_or_404(pin, inputs)
    return svc.pipelines[pin].snapshot()


# --- Simulation endpoints ---
@router.post("/sim/pins/{pin}")
async def sim_set_level(
    pin: int,
    req: SimLevelRequest,
    inputs: list[MonitoredInput] = Depends(get_inputs),
    gpio: SimulatedGpio = Depends(get_sim_gpio),
):
    monitored = _input_or_404(pin, inputs)
    gpio.set_level(pin, req.level)
    logger.info("Sim: pin %s (%s) driven %s", pin, monitored.label, "high" if req.level else "low")
    return {"ok": True, "pin": pin, "label": monitored.label, "level": req.level}
