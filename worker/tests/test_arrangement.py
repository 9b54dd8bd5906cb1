from __future__ import annotations

import asyncio
import random

import pytest

from maqam_worker.app.models import InstrumentSelection
from maqam_worker.services.arrangement import ArrangementController
from maqam_worker.services.patterns import PATTERN_SCHEDULERS, PatternContext, PatternHandle
from maqam_worker.services.transport import ManualClock, Transport
from maqam_worker.services.types import TriggerEvent, measure_count_for


def _selections(*names: str, disabled: tuple[str, ...] = ()) -> dict[str, InstrumentSelection]:
    selections = {name: InstrumentSelection(instrument_id=name) for name in names}
    for name in disabled:
        selections[name] = InstrumentSelection(instrument_id=name, enabled=False)
    return selections


@pytest.mark.parametrize(
    ("duration", "tempo", "expected"),
    [(60.0, 80.0, 20), (10.0, 120.0, 5), (9.0, 120.0, 5), (0.1, 60.0, 1), (180.0, 60.0, 45)],
)
def test_measure_count_rounds_up(duration: float, tempo: float, expected: int) -> None:
    assert measure_count_for(duration, tempo) == expected


def test_create_normalises_and_falls_back() -> None:
    controller = ArrangementController()
    arrangement = controller.create(
        "unknown",
        80,
        60,
        {"OUD": InstrumentSelection(instrument_id="Oud", volume=0.4)},
        seed=5,
    )
    assert arrangement.scale.id == "rast"
    assert arrangement.measure_count == 20
    assert list(arrangement.selections) == ["oud"]
    assert arrangement.stop_bound_seconds == pytest.approx(60.0)
    assert arrangement.seed == 5


def test_start_skips_disabled_and_unknown_voices() -> None:
    controller = ArrangementController()
    arrangement = controller.create(
        "saba",
        90,
        20,
        _selections("oud", "theremin", disabled=("daf",)),
    )
    assert arrangement.enabled_instruments() == ["oud", "theremin"]
    assert "theremin" not in controller.known_instruments()
    transport = Transport(90, clock=ManualClock())
    handles = controller.start(arrangement, transport, lambda _event: None, random.Random(1))
    assert {handle.voice_id for handle in handles} == {"oud"}
    assert controller.failures == []


def test_failing_scheduler_is_dropped() -> None:
    def _broken(_ctx: PatternContext) -> PatternHandle:
        raise RuntimeError("sample missing")

    schedulers = dict(PATTERN_SCHEDULERS)
    schedulers["qanun"] = _broken
    controller = ArrangementController(schedulers=schedulers)
    arrangement = controller.create("rast", 120, 8, _selections("qanun", "daf"))
    transport = Transport(120, clock=ManualClock())
    handles = controller.start(arrangement, transport, lambda _event: None)
    assert {handle.voice_id for handle in handles} == {"daf"}
    assert [failure.instrument_id for failure in controller.failures] == ["qanun"]


def test_volume_flows_into_triggers() -> None:
    controller = ArrangementController()
    arrangement = controller.create(
        "bayati",
        120,
        4,
        {"ambient": InstrumentSelection(instrument_id="ambient", volume=0.25)},
    )
    clock = ManualClock()
    transport = Transport(120, clock=clock)
    events: list[TriggerEvent] = []
    controller.start(arrangement, transport, events.append, random.Random(0))
    transport.start()
    transport.pump()
    assert events
    assert all(event.volume == 0.25 for event in events)


def test_same_seed_gives_same_triggers() -> None:
    def _render(seed: int) -> list[tuple[str, str, float]]:
        controller = ArrangementController()
        arrangement = controller.create("hijaz", 100, 12, _selections("oud", "ney", "qanun", "daf"))
        clock = ManualClock()
        transport = Transport(100, clock=clock)
        events: list[TriggerEvent] = []
        controller.start(arrangement, transport, events.append, random.Random(seed))
        transport.start()
        clock.advance(20.0)
        transport.pump()
        return [(event.voice_id, event.sound, round(event.at_time, 6)) for event in events]

    assert _render(3) == _render(3)


@pytest.mark.asyncio
async def test_auto_stop_fires_after_duration_and_guard() -> None:
    controller = ArrangementController(auto_stop_guard_seconds=0.02)
    arrangement = controller.create("rast", 120, 0.05, _selections("oud"))
    fired = asyncio.Event()
    controller.arm_auto_stop(arrangement, fired.set)
    await asyncio.wait_for(fired.wait(), timeout=1.0)


@pytest.mark.asyncio
async def test_disarmed_auto_stop_never_fires() -> None:
    controller = ArrangementController(auto_stop_guard_seconds=0.0)
    arrangement = controller.create("rast", 120, 0.02, _selections("oud"))
    fired: list[bool] = []
    controller.arm_auto_stop(arrangement, lambda: fired.append(True))
    controller.disarm_auto_stop()
    await asyncio.sleep(0.08)
    assert fired == []
