"""Arrangement construction and per-voice scheduler wiring."""

from __future__ import annotations

import asyncio
import random
from typing import Callable, Dict, Mapping, Optional, Set

from loguru import logger

from ..app.models import InstrumentSelection
from .exceptions import SchedulingFailure
from .patterns import PATTERN_SCHEDULERS, PatternContext, PatternHandle, PatternScheduler, TriggerSink
from .scales import DEFAULT_CATALOG, ScaleCatalog
from .transport import Transport
from .types import Arrangement, measure_count_for

DEFAULT_AUTO_STOP_GUARD_SECONDS = 0.5


class ArrangementController:
    """Builds arrangements, starts their pattern schedulers and owns the stop timer."""

    def __init__(
        self,
        catalog: Optional[ScaleCatalog] = None,
        *,
        schedulers: Optional[Mapping[str, PatternScheduler]] = None,
        auto_stop_guard_seconds: float = DEFAULT_AUTO_STOP_GUARD_SECONDS,
    ) -> None:
        self._catalog = catalog or DEFAULT_CATALOG
        self._schedulers: Dict[str, PatternScheduler] = dict(schedulers or PATTERN_SCHEDULERS)
        self._guard_seconds = auto_stop_guard_seconds
        self._auto_stop: Optional[asyncio.TimerHandle] = None
        self.failures: list[SchedulingFailure] = []

    @property
    def catalog(self) -> ScaleCatalog:
        return self._catalog

    @property
    def auto_stop_guard_seconds(self) -> float:
        return self._guard_seconds

    def known_instruments(self) -> list[str]:
        return list(self._schedulers)

    def create(
        self,
        scale_id: Optional[str],
        tempo_bpm: float,
        duration_seconds: float,
        selections: Mapping[str, InstrumentSelection],
        *,
        seed: Optional[int] = None,
        mode_label: str = "synthesized",
    ) -> Arrangement:
        normalised: Dict[str, InstrumentSelection] = {}
        for key, selection in selections.items():
            name = (selection.instrument_id or key).strip().lower()
            normalised[name] = selection
        return Arrangement(
            scale=self._catalog.lookup(scale_id),
            tempo_bpm=float(tempo_bpm),
            duration_seconds=float(duration_seconds),
            selections=normalised,
            measure_count=measure_count_for(duration_seconds, tempo_bpm),
            seed=seed,
            mode_label=mode_label,
        )

    def start(
        self,
        arrangement: Arrangement,
        transport: Transport,
        sink: TriggerSink,
        rng: Optional[random.Random] = None,
    ) -> Set[PatternHandle]:
        """Start one scheduler per enabled, known instrument.

        A scheduler that raises during setup is logged and dropped; the
        remaining voices still start.
        """

        source = rng or random.Random(arrangement.seed)
        handles: Set[PatternHandle] = set()
        self.failures = []
        for name in arrangement.enabled_instruments():
            selection = arrangement.selections[name]
            scheduler = self._schedulers.get(name)
            if scheduler is None:
                logger.debug("skipping unknown instrument {}", name)
                continue
            context = PatternContext(
                voice_id=name,
                transport=transport,
                scale=arrangement.scale,
                measure_count=arrangement.measure_count,
                tempo_bpm=arrangement.tempo_bpm,
                sink=sink,
                rng=source,
                volume=selection.volume,
            )
            try:
                handles.add(scheduler(context))
            except Exception as exc:  # noqa: BLE001
                failure = SchedulingFailure(name, str(exc))
                self.failures.append(failure)
                logger.opt(exception=exc).error("scheduler for {} failed; dropping voice", name)
        logger.info(
            "Started {} voice(s) over {} measures in {} at {:.0f} BPM",
            len(handles),
            arrangement.measure_count,
            arrangement.scale.display_name,
            arrangement.tempo_bpm,
        )
        return handles

    def stop(self, handles: Set[PatternHandle]) -> None:
        for handle in list(handles):
            handle.cancel()

    def arm_auto_stop(
        self,
        arrangement: Arrangement,
        callback: Callable[[], None],
    ) -> asyncio.TimerHandle:
        self.disarm_auto_stop()
        loop = asyncio.get_running_loop()
        delay = arrangement.duration_seconds + self._guard_seconds
        self._auto_stop = loop.call_later(delay, callback)
        return self._auto_stop

    def disarm_auto_stop(self) -> None:
        if self._auto_stop is not None:
            self._auto_stop.cancel()
            self._auto_stop = None
