from __future__ import annotations

import json
from pathlib import Path
from typing import List, Literal, Optional

from pydantic import BaseModel, Field, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from ..domain.models import MonitoredInput, Polarity, RetryPolicy


DEFAULT_INPUTS_PATH = Path(__file__).resolve().parent.parent / "config" / "default_inputs.json"


class ConfigurationError(ValueError):
    """Invalid startup configuration. Fatal before any pipeline starts."""


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    app_name: str = "Spotwatch Parking Sensors"

    # Remote occupancy endpoint
    lot_name: str = "Parking Lot One"
    endpoint_base_url: str = "http://parking.my-dog-spot.com"
    endpoint_path: str = "/space-map/update"

    # Delivery / retry policy
    request_timeout_seconds: float = 5.0
    max_attempts: int = 5
    backoff_base_seconds: float = 0.5
    backoff_max_seconds: float = 8.0
    max_total_wait_seconds: float = 30.0
    backoff_jitter: float = 0.2  # fraction of each wait that may be shaved off

    # Sensing
    debounce_ms: int = 50
    initial_quiet: bool = False
    outbox_size: int = 16
    restart_delay_seconds: float = 1.0

    # GPIO platform: "sim" for development, "gpiozero" on the Pi
    gpio_mode: Literal["sim", "gpiozero"] = "sim"
    gpio_pin_factory: str = ""  # e.g. "lgpio"; empty = gpiozero default
    inputs_path: str = Field(default=str(DEFAULT_INPUTS_PATH))

    # Logging
    log_file: str = "spotwatch.log"  # empty disables the file handler
    log_level: str = "INFO"


settings = Settings()


# --- Pin map file ---

class InputSpec(BaseModel):
    pin: int = Field(ge=0)
    label: str = Field(min_length=1)
    polarity: Literal["normal", "inverted"] = "normal"
    debounce_ms: Optional[int] = Field(default=None, ge=0)


class InputsFile(BaseModel):
    inputs: List[InputSpec]


def validate_polarity(value: object) -> Polarity:
    try:
        return Polarity(value)
    except ValueError:
        raise ConfigurationError(f"Unknown polarity: {value!r}") from None


def parse_inputs(data: object, default_debounce_ms: int) -> list[MonitoredInput]:
    """Validate a decoded pin map and build the static input list.

    Raises ConfigurationError on schema errors, duplicate pins or labels.
    """
    try:
        parsed = InputsFile.model_validate(data)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid inputs configuration: {e}") from e

    if not parsed.inputs:
        raise ConfigurationError("No inputs configured")

    seen_pins: set[int] = set()
    seen_labels: set[str] = set()
    out: list[MonitoredInput] = []
    for entry in parsed.inputs:
        if entry.pin in seen_pins:
            raise ConfigurationError(f"Duplicate pin id: {entry.pin}")
        if entry.label in seen_labels:
            raise ConfigurationError(f"Duplicate spot label: {entry.label}")
        seen_pins.add(entry.pin)
        seen_labels.add(entry.label)

        debounce_ms = entry.debounce_ms if entry.debounce_ms is not None else default_debounce_ms
        out.append(MonitoredInput(
            pin=entry.pin,
            label=entry.label,
            debounce_s=debounce_ms / 1000.0,
            polarity=validate_polarity(entry.polarity),
        ))
    return out


def load_inputs(cfg: Settings = settings) -> list[MonitoredInput]:
    path = Path(cfg.inputs_path)
    try:
        data = json.loads(path.read_text())
    except (OSError, ValueError) as e:
        raise ConfigurationError(f"Cannot read inputs file {path}: {e}") from e
    if cfg.debounce_ms < 0:
        raise ConfigurationError("debounce_ms must be >= 0")
    return parse_inputs(data, cfg.debounce_ms)


def validate_endpoint(cfg: Settings = settings) -> None:
    if not cfg.endpoint_base_url.strip():
        raise ConfigurationError("endpoint_base_url is required")
    if not cfg.endpoint_base_url.startswith(("http://", "https://")):
        raise ConfigurationError(f"endpoint_base_url must be http(s): {cfg.endpoint_base_url}")
    if not cfg.endpoint_path.startswith("/"):
        raise ConfigurationError(f"endpoint_path must start with '/': {cfg.endpoint_path}")
    if not cfg.lot_name.strip():
        raise ConfigurationError("lot_name is required")


def retry_policy(cfg: Settings = settings) -> RetryPolicy:
    if cfg.max_attempts < 1:
        raise ConfigurationError("max_attempts must be >= 1")
    if cfg.request_timeout_seconds <= 0:
        raise ConfigurationError("request_timeout_seconds must be > 0")
    if cfg.backoff_base_seconds < 0 or cfg.backoff_max_seconds < cfg.backoff_base_seconds:
        raise ConfigurationError("backoff must satisfy 0 <= base <= max")
    if not 0.0 <= cfg.backoff_jitter <= 1.0:
        raise ConfigurationError("backoff_jitter must be within [0, 1]")
    if cfg.max_total_wait_seconds < 0:
        raise ConfigurationError("max_total_wait_seconds must be >= 0")
    return RetryPolicy(
        timeout_s=cfg.request_timeout_seconds,
        max_attempts=cfg.max_attempts,
        backoff_base_s=cfg.backoff_base_seconds,
        backoff_max_s=cfg.backoff_max_seconds,
        max_total_wait_s=cfg.max_total_wait_seconds,
        jitter=cfg.backoff_jitter,
    )
