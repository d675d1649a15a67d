from __future__ import annotations
import asyncio
import logging
from dataclasses import asdict
from typing import AsyncIterator, Optional, Sequence

from ..core.timeutil import now_utc, seconds_between
from ..domain.debounce import Debouncer
from ..domain.interfaces import EventSink, GpioPlatform
from ..domain.mapper import map_transition
from ..domain.models import (
    DeliveryOutcome,
    DomainEvent,
    MonitoredInput,
    PipelineStats,
    RawSample,
)


logger = logging.getLogger(__name__)


class InputPipeline:
    """
    Sensing and delivery for one monitored input.

    The sensing task debounces samples and queues domain events; a separate
    delivery task drains the queue one event at a time, so deliveries for this
    input stay in confirmation order and a slow endpoint never stalls sensing.
    """

    def __init__(
        self,
        monitored: MonitoredInput,
        gpio: GpioPlatform,
        sink: EventSink,
        lot_name: str,
        outbox_size: int = 16,
        initial_quiet: bool = False,
    ) -> None:
        self.input = monitored
        self._gpio = gpio
        self._sink = sink
        self._lot_name = lot_name
        self._outbox_size = max(1, outbox_size)
        self.stats = PipelineStats()

        self.debouncer = Debouncer(monitored.pin, monitored.debounce_s, initial_quiet)
        self._samples: Optional[asyncio.Queue[RawSample]] = None
        self._outbox: Optional[asyncio.Queue[DomainEvent]] = None
        self._subscribed = False

    # --- sample source ---

    def _on_sample(self, loop: asyncio.AbstractEventLoop, sample: RawSample) -> None:
        # Called from the platform's callback thread
        queue = self._samples
        if queue is None or loop.is_closed():
            return
        loop.call_soon_threadsafe(queue.put_nowait, sample)

    async def _read_level(self) -> RawSample:
        loop = asyncio.get_running_loop()
        # stamped before the read so an edge arriving mid-read sorts after it
        ts = now_utc()
        level = await loop.run_in_executor(None, self._gpio.read, self.input.pin)
        return RawSample(pin=self.input.pin, level=bool(level), ts_utc=ts)

    async def samples(self) -> AsyncIterator[RawSample]:
        """Change notifications, plus a re-read whenever a debounce window closes quietly."""
        assert self._samples is not None
        try:
            yield await self._read_level()
        except Exception as e:
            self.stats.last_error = f"initial read failed: {e}"
            logger.warning("Initial read of pin %s (%s) failed: %s", self.input.pin, self.input.label, e)

        while True:
            deadline = self.debouncer.deadline()
            if deadline is None:
                yield await self._samples.get()
                continue

            timeout = max(0.0, seconds_between(now_utc(), deadline))
            try:
                yield await asyncio.wait_for(self._samples.get(), timeout=timeout)
            except asyncio.TimeoutError:
                try:
                    yield await self._read_level()
                except Exception as e:
                    self.stats.last_error = f"read failed: {e}"
                    logger.warning("Read of pin %s (%s) failed: %s", self.input.pin, self.input.label, e)
                    # wait for the next edge instead of spinning on a dead pin
                    yield await self._samples.get()

    # --- tasks ---

    def _enqueue(self, event: DomainEvent) -> None:
        assert self._outbox is not None
        if self._outbox.full():
            # Queued events alternate, so dropping the oldest pair keeps the
            # next delivery different from the one before it.
            stale = [self._outbox.get_nowait()]
            self._outbox.task_done()
            if self._outbox.empty():
                stale.append(event)
            else:
                stale.append(self._outbox.get_nowait())
                self._outbox.task_done()
            self.stats.dropped_events += 2
            logger.warning(
                "Outbox full for %s; dropping %s",
                self.input.label, " + ".join(e.kind.value for e in stale),
            )
            if stale[-1] is event:
                return
        self._outbox.put_nowait(event)

    async def sense(self) -> None:
        async for transition in self.debouncer.stream(self._counted(self.samples())):
            event = map_transition(transition, self.input, self._lot_name)
            self.stats.transitions += 1
            self.stats.state = transition.state
            self.stats.last_event_kind = event.kind
            self.stats.last_change_utc = transition.ts_utc
            logger.info(
                "GPIO trigger %s (pin %s) -> %s [%s]",
                self.input.label, self.input.pin, transition.state.value, event.kind.value,
            )
            self._enqueue(event)

    async def _counted(self, source: AsyncIterator[RawSample]) -> AsyncIterator[RawSample]:
        async for sample in source:
            self.stats.samples += 1
            yield sample

    async def deliver_forever(self) -> None:
        assert self._outbox is not None
        while True:
            event = await self._outbox.get()
            try:
                result = await self._sink.deliver(event)
            except Exception as e:
                self.stats.abandoned += 1
                self.stats.last_error = f"delivery crashed: {e!r}"
                logger.exception("Delivery of %s %s crashed", event.spot_label, event.kind.value)
                continue
            finally:
                self._outbox.task_done()

            self.stats.last_outcome = result.outcome
            if result.outcome is DeliveryOutcome.DELIVERED:
                self.stats.delivered += 1
            elif result.outcome is DeliveryOutcome.RETRIES_EXHAUSTED:
                self.stats.retries_exhausted += 1
                self.stats.last_error = result.attempts[-1].error if result.attempts else None
            else:
                self.stats.abandoned += 1
                self.stats.last_error = result.attempts[-1].error if result.attempts else None

    async def run(self) -> None:
        loop = asyncio.get_running_loop()
        if self._samples is None:
            self._samples = asyncio.Queue()
            self._outbox = asyncio.Queue(maxsize=self._outbox_size)
        if not self._subscribed:
            self._gpio.subscribe(self.input.pin, lambda s: self._on_sample(loop, s))
            self._subscribed = True

        logger.info(
            "Pipeline started: %s (pin %s, debounce=%.3fs, polarity=%s)",
            self.input.label, self.input.pin, self.input.debounce_s, self.input.polarity.value,
        )
        delivery = asyncio.create_task(self.deliver_forever(), name=f"deliver:{self.input.label}")
        try:
            await self.sense()
        finally:
            delivery.cancel()
            try:
                await delivery
            except asyncio.CancelledError:
                pass
            if self._outbox is not None and not self._outbox.empty():
                logger.warning(
                    "Pipeline %s stopped with %d undelivered event(s) discarded",
                    self.input.label, self._outbox.qsize(),
                )
                while not self._outbox.empty():
                    self._outbox.get_nowait()
                    self._outbox.task_done()

    def snapshot(self) -> dict:
        self.stats.dropped_samples = self.debouncer.dropped
        self.stats.state = self.debouncer.state
        out = asdict(self.stats)
        out.update(pin=self.input.pin, label=self.input.label, polarity=self.input.polarity.value,
                   debounce_s=self.input.debounce_s)
        return out


class PinDispatcher:
    """Runs one isolated InputPipeline per configured input for the process lifetime."""

    def __init__(
        self,
        inputs: Sequence[MonitoredInput],
        gpio: GpioPlatform,
        sink: EventSink,
        lot_name: str,
        outbox_size: int = 16,
        initial_quiet: bool = False,
        restart_delay_s: float = 1.0,
    ) -> None:
        self._gpio = gpio
        self._restart_delay_s = restart_delay_s
        self.pipelines: dict[int, InputPipeline] = {
            i.pin: InputPipeline(i, gpio, sink, lot_name, outbox_size=outbox_size, initial_quiet=initial_quiet)
            for i in inputs
        }
        self._tasks: dict[int, asyncio.Task] = {}

    @property
    def running(self) -> bool:
        return any(not t.done() for t in self._tasks.values())

    async def start(self) -> None:
        self._gpio.setup(list(self.pipelines))
        for pin, pipeline in self.pipelines.items():
            self._tasks[pin] = asyncio.create_task(
                self._supervise(pipeline), name=f"pipeline:{pipeline.input.label}"
            )
        logger.info("Dispatcher started %d pipeline(s)", len(self._tasks))

    async def _supervise(self, pipeline: InputPipeline) -> None:
        while True:
            try:
                await pipeline.run()
                logger.warning("Pipeline %s ended; restarting", pipeline.input.label)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                pipeline.stats.last_error = f"pipeline crashed: {e!r}"
                logger.exception("Pipeline %s crashed", pipeline.input.label)
            pipeline.stats.restarts += 1
            await asyncio.sleep(self._restart_delay_s)

    async def cancel(self, pin: int) -> None:
        task = self._tasks.pop(pin, None)
        if task is None:
            raise KeyError(f"No running pipeline for pin {pin}")
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        logger.info("Pipeline for pin %s cancelled", pin)

    async def stop(self) -> None:
        tasks = list(self._tasks.values())
        self._tasks.clear()
        for t in tasks:
            t.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("Dispatcher stopped")

    def stats(self) -> list[dict]:
        return [p.snapshot() for p in self.pipelines.values()]
