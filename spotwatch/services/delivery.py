from __future__ import annotations

import asyncio
import logging
import random
import time
from typing import Awaitable, Callable, Optional

import httpx

from ..domain.models import (
    AttemptOutcome,
    DeliveryAttempt,
    DeliveryOutcome,
    DeliveryResult,
    DomainEvent,
    RetryPolicy,
)

logger = logging.getLogger(__name__)


# 4xx statuses that still mean "try again later"
RETRYABLE_CLIENT_STATUSES = frozenset({408, 429})


def classify_status(status_code: int) -> AttemptOutcome:
    if 200 <= status_code < 300:
        return AttemptOutcome.SUCCESS
    if status_code >= 500 or status_code in RETRYABLE_CLIENT_STATUSES:
        return AttemptOutcome.TRANSIENT_FAILURE
    return AttemptOutcome.PERMANENT_FAILURE


def backoff_delay(attempt: int, policy: RetryPolicy, previous: float = 0.0, rand: float = 0.0) -> float:
    """
    Wait before retrying after failed attempt ``attempt`` (1-based).

    ``base * 2**(attempt-1)`` capped at ``backoff_max_s``, shortened by up to
    ``jitter`` of itself (``rand`` in [0, 1)), and never below ``previous``.
    """
    raw = min(policy.backoff_base_s * (2 ** (attempt - 1)), policy.backoff_max_s)
    jittered = raw * (1.0 - policy.jitter * rand)
    return max(previous, jittered)


def form_fields(event: DomainEvent) -> dict[str, str]:
    return {
        "parkingLotName": event.lot_name,
        "parkingSpaceName": event.spot_label,
        "parkingSpaceEvent": event.kind.value,
    }


class DeliveryClient:
    """
    Sends occupancy events to the remote space map with a PUT.

    Transient failures (network errors, timeouts, 5xx, 408/429) are retried with
    capped exponential backoff; anything else non-2xx abandons the event after
    one attempt. ``deliver`` reports the terminal outcome and does not raise for
    delivery failures.
    """

    def __init__(
        self,
        base_url: str,
        path: str,
        policy: RetryPolicy = RetryPolicy(),
        client: Optional[httpx.AsyncClient] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: Callable[[], float] = random.random,
    ) -> None:
        self._url = base_url.rstrip("/") + path
        self._policy = policy
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=policy.timeout_s)
        self._sleep = sleep
        self._rng = rng

    @property
    def url(self) -> str:
        return self._url

    @property
    def policy(self) -> RetryPolicy:
        return self._policy

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "DeliveryClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    async def _attempt(self, event: DomainEvent, n: int) -> tuple[DeliveryAttempt, Optional[str]]:
        t0 = time.monotonic()
        try:
            resp = await self._client.put(
                self._url,
                data=form_fields(event),
                timeout=self._policy.timeout_s,
            )
        except httpx.TimeoutException as e:
            attempt = DeliveryAttempt(event, n, AttemptOutcome.TRANSIENT_FAILURE, time.monotonic() - t0,
                                      error=f"timeout: {type(e).__name__}")
            return attempt, None
        except httpx.TransportError as e:
            attempt = DeliveryAttempt(event, n, AttemptOutcome.TRANSIENT_FAILURE, time.monotonic() - t0,
                                      error=f"network: {e!r}")
            return attempt, None
        except httpx.HTTPError as e:
            attempt = DeliveryAttempt(event, n, AttemptOutcome.TRANSIENT_FAILURE, time.monotonic() - t0,
                                      error=f"http: {e!r}")
            return attempt, None
        except Exception as e:
            logger.exception("Unexpected error sending %s %s", event.spot_label, event.kind.value)
            attempt = DeliveryAttempt(event, n, AttemptOutcome.PERMANENT_FAILURE, time.monotonic() - t0,
                                      error=f"unexpected: {e!r}")
            return attempt, None

        outcome = classify_status(resp.status_code)
        error = None if outcome is AttemptOutcome.SUCCESS else f"HTTP {resp.status_code}: {resp.text[:200]}"
        attempt = DeliveryAttempt(event, n, outcome, time.monotonic() - t0,
                                  status_code=resp.status_code, error=error)
        return attempt, resp.text

    async def deliver(self, event: DomainEvent) -> DeliveryResult:
        policy = self._policy
        attempts: list[DeliveryAttempt] = []
        waited = 0.0
        delay = 0.0
        t0 = time.monotonic()

        def result(outcome: DeliveryOutcome, text: Optional[str] = None) -> DeliveryResult:
            return DeliveryResult(event, outcome, tuple(attempts), time.monotonic() - t0, text)

        try:
            for n in range(1, policy.max_attempts + 1):
                attempt, text = await self._attempt(event, n)
                attempts.append(attempt)

                if attempt.outcome is AttemptOutcome.SUCCESS:
                    logger.info(
                        "Delivered %s %s (attempt %d, %.2fs): %s",
                        event.spot_label, event.kind.value, n, attempt.elapsed_s, (text or "").strip()[:200],
                    )
                    return result(DeliveryOutcome.DELIVERED, text)

                if attempt.outcome is AttemptOutcome.PERMANENT_FAILURE:
                    logger.error(
                        "Abandoned delivery: lot=%r spot=%r kind=%s ts=%s url=%s error=%s",
                        event.lot_name, event.spot_label, event.kind.value,
                        event.ts_utc.isoformat(), self._url, attempt.error,
                    )
                    return result(DeliveryOutcome.ABANDONED, text)

                logger.warning(
                    "Delivery attempt %d/%d for %s %s failed: %s",
                    n, policy.max_attempts, event.spot_label, event.kind.value, attempt.error,
                )
                if n == policy.max_attempts:
                    break

                delay = backoff_delay(n, policy, previous=delay, rand=self._rng())
                if waited + delay > policy.max_total_wait_s:
                    logger.warning(
                        "Retry budget exhausted for %s %s (waited %.2fs, next %.2fs, max %.2fs)",
                        event.spot_label, event.kind.value, waited, delay, policy.max_total_wait_s,
                    )
                    break
                await self._sleep(delay)
                waited += delay

        except asyncio.CancelledError:
            logger.warning(
                "Delivery of %s %s abandoned at shutdown after %d attempt(s)",
                event.spot_label, event.kind.value, len(attempts),
            )
            raise

        logger.error(
            "Retries exhausted for %s %s after %d attempt(s): %s",
            event.spot_label, event.kind.value, len(attempts), attempts[-1].error if attempts else None,
        )
        return result(DeliveryOutcome.RETRIES_EXHAUSTED)
