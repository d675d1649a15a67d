import asyncio
from urllib.parse import parse_qsl

import httpx
import pytest

from spotwatch.domain.models import (
    DeliveryOutcome,
    DeliveryResult,
    EventKind,
    LogicalState,
    MonitoredInput,
    Polarity,
    RetryPolicy,
)
from spotwatch.drivers.gpio_sim import SimulatedGpio
from spotwatch.services.delivery import DeliveryClient
from spotwatch.services import dispatcher as dispatcher_module
from spotwatch.services.dispatcher import PinDispatcher


LOT = "Parking Lot One"
WINDOW = 0.03

R1_1 = MonitoredInput(pin=17, label="R1-1", debounce_s=WINDOW)
R1_2 = MonitoredInput(pin=27, label="R1-2", debounce_s=WINDOW)


async def wait_until(predicate, timeout=2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


async def baselined(dispatcher):
    await wait_until(lambda: all(p.debouncer.state is not None for p in dispatcher.pipelines.values()))


class GatedSink:
    """Records deliveries; each one blocks until the gate opens."""

    def __init__(self):
        self.log = []
        self.gate = asyncio.Event()

    async def deliver(self, event):
        self.log.append(("start", event.spot_label, event.kind))
        await self.gate.wait()
        self.log.append(("end", event.spot_label, event.kind))
        return DeliveryResult(event, DeliveryOutcome.DELIVERED, (), 0.0)


def test_blip_is_filtered_and_held_press_delivers_one_put():
    requests = []

    def handler(request):
        requests.append(parse_qsl(request.content.decode()))
        return httpx.Response(200, text="ok")

    async def go():
        gpio = SimulatedGpio()
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
            client = DeliveryClient("http://parking.example", "/space-map/update", RetryPolicy(), client=http)
            dispatcher = PinDispatcher([R1_1], gpio, client, LOT)
            await dispatcher.start()
            await baselined(dispatcher)

            gpio.set_level(17, True)
            gpio.set_level(17, False)
            await asyncio.sleep(WINDOW * 4)
            assert requests == []

            gpio.set_level(17, True)
            await wait_until(lambda: len(requests) == 1)
            await asyncio.sleep(WINDOW * 3)

            stats = dispatcher.pipelines[17].stats
            await dispatcher.stop()
            return stats

    stats = asyncio.run(go())

    assert requests == [[
        ("parkingLotName", "Parking Lot One"),
        ("parkingSpaceName", "R1-1"),
        ("parkingSpaceEvent", "OCCUPY"),
    ]]
    assert stats.transitions == 1
    assert stats.delivered == 1
    assert stats.state is LogicalState.ASSERTED


def test_retrying_input_does_not_delay_other_input():
    attempts = {"R1-1": 0, "R1-2": 0}

    def handler(request):
        label = dict(parse_qsl(request.content.decode()))["parkingSpaceName"]
        attempts[label] += 1
        if label == "R1-1":
            return httpx.Response(503, text="down")
        return httpx.Response(200, text="ok")

    async def go():
        backing_off = asyncio.Event()

        async def slow_sleep(delay):
            backing_off.set()
            await asyncio.Event().wait()

        gpio = SimulatedGpio()
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
            client = DeliveryClient("http://parking.example", "/space-map/update",
                                    RetryPolicy(max_total_wait_s=1000.0), client=http, sleep=slow_sleep)
            dispatcher = PinDispatcher([R1_1, R1_2], gpio, client, LOT)
            await dispatcher.start()
            await baselined(dispatcher)

            gpio.set_level(17, True)
            gpio.set_level(27, True)
            await wait_until(lambda: attempts["R1-2"] == 1)
            await backing_off.wait()

            a, b = dispatcher.pipelines[17].stats, dispatcher.pipelines[27].stats
            await wait_until(lambda: b.delivered == 1)
            assert a.delivered == 0 and a.retries_exhausted == 0

            await dispatcher.stop()
            assert not dispatcher.running

    asyncio.run(go())
    assert attempts == {"R1-1": 1, "R1-2": 1}


def test_deliveries_for_one_input_stay_in_order():
    async def go():
        gpio = SimulatedGpio()
        sink = GatedSink()
        dispatcher = PinDispatcher([R1_1], gpio, sink, LOT)
        await dispatcher.start()
        await baselined(dispatcher)
        stats = dispatcher.pipelines[17].stats

        gpio.set_level(17, True)
        await wait_until(lambda: stats.transitions == 1)
        gpio.set_level(17, False)
        await wait_until(lambda: stats.transitions == 2)

        # the second event waits behind the first
        assert sink.log == [("start", "R1-1", EventKind.OCCUPIED)]

        sink.gate.set()
        await wait_until(lambda: len(sink.log) == 4)
        await dispatcher.stop()
        return sink.log

    log = asyncio.run(go())
    assert log == [
        ("start", "R1-1", EventKind.OCCUPIED),
        ("end", "R1-1", EventKind.OCCUPIED),
        ("start", "R1-1", EventKind.VACATED),
        ("end", "R1-1", EventKind.VACATED),
    ]


@pytest.mark.parametrize("outbox_size, delivered, dropped", [
    (1, [EventKind.OCCUPIED], 4),
    (2, [EventKind.OCCUPIED, EventKind.VACATED, EventKind.OCCUPIED], 2),
])
def test_full_outbox_drops_oldest_pair_and_keeps_alternation(outbox_size, delivered, dropped):
    async def go():
        gpio = SimulatedGpio()
        sink = GatedSink()
        dispatcher = PinDispatcher([R1_1], gpio, sink, LOT, outbox_size=outbox_size)
        await dispatcher.start()
        await baselined(dispatcher)
        stats = dispatcher.pipelines[17].stats

        gpio.set_level(17, True)
        await wait_until(lambda: len(sink.log) == 1)  # first event in flight
        for n, level in enumerate([False, True, False, True], start=2):
            gpio.set_level(17, level)
            await wait_until(lambda: stats.transitions == n)

        sink.gate.set()
        await wait_until(lambda: stats.delivered == len(delivered))
        await asyncio.sleep(WINDOW * 3)
        await dispatcher.stop()
        return sink.log, stats

    log, stats = asyncio.run(go())
    kinds = [k for step, _, k in log if step == "end"]
    assert kinds == delivered
    assert all(a != b for a, b in zip(kinds, kinds[1:]))
    assert stats.dropped_events == dropped


def test_inverted_polarity_reports_vacate_on_press():
    inverted = MonitoredInput(pin=22, label="R1-3", debounce_s=WINDOW, polarity=Polarity.INVERTED)

    async def go():
        gpio = SimulatedGpio()
        sink = GatedSink()
        sink.gate.set()
        dispatcher = PinDispatcher([inverted], gpio, sink, LOT)
        await dispatcher.start()
        await baselined(dispatcher)
        gpio.set_level(22, True)
        await wait_until(lambda: len(sink.log) == 2)
        await dispatcher.stop()
        return sink.log

    assert asyncio.run(go())[-1] == ("end", "R1-3", EventKind.VACATED)


def test_crashing_pipeline_is_restarted_without_affecting_others(monkeypatch):
    real_map = dispatcher_module.map_transition
    crashed = []

    def flaky_map(transition, monitored, lot_name):
        if monitored.label == "R1-1" and not crashed:
            crashed.append(transition)
            raise RuntimeError("mapper blew up")
        return real_map(transition, monitored, lot_name)

    monkeypatch.setattr(dispatcher_module, "map_transition", flaky_map)

    async def go():
        gpio = SimulatedGpio()
        sink = GatedSink()
        sink.gate.set()
        dispatcher = PinDispatcher([R1_1, R1_2], gpio, sink, LOT, restart_delay_s=0.01)
        await dispatcher.start()
        await baselined(dispatcher)

        gpio.set_level(17, True)
        gpio.set_level(27, True)
        await wait_until(lambda: dispatcher.pipelines[17].stats.restarts >= 1)
        await wait_until(lambda: len(sink.log) == 2)

        # the restarted pipeline keeps watching its pin
        await asyncio.sleep(0.05)
        gpio.set_level(17, False)
        await wait_until(lambda: len(sink.log) == 4)
        assert dispatcher.running
        snapshot = {s["label"]: s for s in dispatcher.stats()}
        await dispatcher.stop()
        return sink.log, snapshot

    log, snapshot = asyncio.run(go())
    assert log[1] == ("end", "R1-2", EventKind.OCCUPIED)
    assert log[-1] == ("end", "R1-1", EventKind.VACATED)
    assert "pipeline crashed" in snapshot["R1-1"]["last_error"]
    assert snapshot["R1-2"]["transitions"] == 1


def test_failed_pin_read_is_logged_and_notifications_still_flow():
    async def go():
        gpio = SimulatedGpio()
        gpio.setup([17])
        gpio.set_read_failure(17)
        sink = GatedSink()
        sink.gate.set()
        dispatcher = PinDispatcher([MonitoredInput(pin=17, label="R1-1", debounce_s=0.0)], gpio, sink, LOT)
        await dispatcher.start()
        stats = dispatcher.pipelines[17].stats
        await wait_until(lambda: stats.last_error is not None)

        gpio.set_level(17, False)  # notification sets the baseline
        gpio.set_level(17, True)
        await wait_until(lambda: len(sink.log) == 2)
        await dispatcher.stop()
        return sink.log

    assert asyncio.run(go())[-1] == ("end", "R1-1", EventKind.OCCUPIED)


class ReleasedDuringRead(SimulatedGpio):
    """Drops a held pin low while a read of it is still in progress."""

    def __init__(self):
        super().__init__()
        self.release_on_read = False

    def read(self, pin):
        level = super().read(pin)
        if self.release_on_read and level:
            self.release_on_read = False
            self.set_level(pin, False)
        return level


def test_release_during_window_reread_is_not_lost():
    async def go():
        gpio = ReleasedDuringRead()
        sink = GatedSink()
        sink.gate.set()
        dispatcher = PinDispatcher([R1_1], gpio, sink, LOT)
        await dispatcher.start()
        await baselined(dispatcher)
        pipeline = dispatcher.pipelines[17]

        gpio.release_on_read = True
        gpio.set_level(17, True)
        await wait_until(lambda: not gpio.release_on_read)
        await wait_until(lambda: pipeline.debouncer.deadline() is None)
        await asyncio.sleep(WINDOW * 3)
        await dispatcher.stop()
        return sink.log, pipeline.debouncer

    log, debouncer = asyncio.run(go())
    kinds = [k for step, _, k in log if step == "end"]
    assert debouncer.dropped == 0
    assert debouncer.state is LogicalState.DEASSERTED
    assert kinds in ([], [EventKind.OCCUPIED, EventKind.VACATED])


def test_cancel_single_pipeline():
    async def go():
        gpio = SimulatedGpio()
        sink = GatedSink()
        sink.gate.set()
        dispatcher = PinDispatcher([R1_1, R1_2], gpio, sink, LOT)
        await dispatcher.start()
        await baselined(dispatcher)

        await dispatcher.cancel(17)
        with pytest.raises(KeyError):
            await dispatcher.cancel(17)

        gpio.set_level(17, True)
        gpio.set_level(27, True)
        await wait_until(lambda: len(sink.log) == 2)
        await asyncio.sleep(WINDOW * 3)
        await dispatcher.stop()
        return sink.log

    log = asyncio.run(go())
    assert [label for _, label, _ in log] == ["R1-2", "R1-2"]
