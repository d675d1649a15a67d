#!/usr/bin/env python3
"""
Standalone parking spot monitor.

Watches the configured GPIO buttons, debounces them and PUTs OCCUPY/VACATE
updates to the parking space map, without starting the status API.

Usage:
    python spot_monitor.py                              # settings from env/.env
    python spot_monitor.py --gpio gpiozero --pin-factory lgpio
    python spot_monitor.py --inputs my_pins.json --debounce-ms 80

Dependencies:
    pip install httpx pydantic-settings gpiozero lgpio
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys

from pydantic import ValidationError

from spotwatch.core.config import ConfigurationError, Settings, load_inputs, retry_policy, validate_endpoint
from spotwatch.domain.interfaces import GpioPlatform
from spotwatch.drivers.gpio_sim import SimulatedGpio
from spotwatch.services.delivery import DeliveryClient
from spotwatch.services.dispatcher import PinDispatcher


# ---------------------------------------------------------------------------
# Main loop
# ---------------------------------------------------------------------------

def build_gpio(cfg: Settings) -> GpioPlatform:
    if cfg.gpio_mode == "gpiozero":
        from spotwatch.drivers.gpio_gpiozero import GpiozeroGpio, configure_pin_factory

        configure_pin_factory(cfg.gpio_pin_factory)
        return GpiozeroGpio()
    return SimulatedGpio()


async def run(cfg: Settings) -> None:
    log = logging.getLogger("spot_monitor")

    validate_endpoint(cfg)
    inputs = load_inputs(cfg)
    policy = retry_policy(cfg)
    gpio = build_gpio(cfg)

    log.info("Starting spot monitor")
    log.info("  Endpoint:  PUT %s%s (lot %r)", cfg.endpoint_base_url, cfg.endpoint_path, cfg.lot_name)
    log.info("  Inputs:    %s", ", ".join(f"{i.label}@{i.pin}" for i in inputs))
    log.info("  Retry:     %d attempts, backoff %.2fs..%.2fs, budget %.0fs, timeout %.1fs",
             policy.max_attempts, policy.backoff_base_s, policy.backoff_max_s,
             policy.max_total_wait_s, policy.timeout_s)

    async with DeliveryClient(cfg.endpoint_base_url, cfg.endpoint_path, policy) as client:
        dispatcher = PinDispatcher(
            inputs,
            gpio,
            client,
            cfg.lot_name,
            outbox_size=cfg.outbox_size,
            initial_quiet=cfg.initial_quiet,
            restart_delay_s=cfg.restart_delay_seconds,
        )
        await dispatcher.start()
        try:
            await asyncio.Event().wait()
        finally:
            await dispatcher.stop()
            gpio.close()
            log.info("Shutting down")


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

def main() -> None:
    p = argparse.ArgumentParser(description="GPIO parking spot monitor")

    p.add_argument("--gpio", choices=["sim", "gpiozero"], help="GPIO platform (default: settings)")
    p.add_argument("--pin-factory", help="gpiozero pin factory, e.g. lgpio")
    p.add_argument("--inputs", help="Pin map JSON file")
    p.add_argument("--endpoint", help="Endpoint base URL")
    p.add_argument("--lot", help="Parking lot name")
    p.add_argument("--debounce-ms", type=int, help="Default debounce window in ms")
    p.add_argument("--max-attempts", type=int, help="Delivery attempt ceiling")

    p.add_argument("--verbose", "-v", action="store_true", help="Debug logging")

    args = p.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    logging.getLogger("httpx").setLevel(logging.WARNING)

    overrides = {
        "gpio_mode": args.gpio,
        "gpio_pin_factory": args.pin_factory,
        "inputs_path": args.inputs,
        "endpoint_base_url": args.endpoint,
        "lot_name": args.lot,
        "debounce_ms": args.debounce_ms,
        "max_attempts": args.max_attempts,
    }
    try:
        cfg = Settings(**{k: v for k, v in overrides.items() if v is not None})
        asyncio.run(run(cfg))
    except (ConfigurationError, ValidationError) as e:
        logging.getLogger("spot_monitor").error("Configuration error: %s", e)
        sys.exit(2)
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
