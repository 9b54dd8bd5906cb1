"""Shared logical clock that maps musical time onto seconds and fires scheduled work."""

from __future__ import annotations

import asyncio
import heapq
import itertools
import re
import time
from dataclasses import dataclass
from typing import Callable, List, Optional, Set, Tuple, Union

from loguru import logger

from .exceptions import TransportDisposedError
from .types import BEATS_PER_MEASURE

EPSILON = 1e-9
SIXTEENTHS_PER_BEAT = 4

TransportCallback = Callable[[float], None]

_MEASURE_RE = re.compile(r"^(\d+(?:\.\d+)?)m$")
_NOTE_RE = re.compile(r"^(\d+)n(\.?)$")
_POSITION_RE = re.compile(r"^(\d+):(\d+)(?::(\d+(?:\.\d+)?))?$")


@dataclass(frozen=True)
class MusicalPosition:
    """Bars/beats/sixteenths position, 4 beats per measure."""

    measures: int = 0
    beats: int = 0
    subdivisions: float = 0.0

    def total_beats(self) -> float:
        return (
            self.measures * BEATS_PER_MEASURE
            + self.beats
            + self.subdivisions / SIXTEENTHS_PER_BEAT
        )

    @classmethod
    def from_beats(cls, beats: float) -> "MusicalPosition":
        measures = int(beats // BEATS_PER_MEASURE)
        remainder = beats - measures * BEATS_PER_MEASURE
        whole_beats = int(remainder)
        subdivisions = round((remainder - whole_beats) * SIXTEENTHS_PER_BEAT, 6)
        return cls(measures=measures, beats=whole_beats, subdivisions=subdivisions)

    def __str__(self) -> str:
        return f"{self.measures}:{self.beats}:{self.subdivisions:g}"


TimeValue = Union[float, int, str, MusicalPosition]


class ManualClock:
    """Clock that only moves when told to; used for offline renders and tests."""

    def __init__(self, start: float = 0.0) -> None:
        self.now = float(start)

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now


class ScheduledEvent:
    """Cancellable handle for one-shot or repeating transport work."""

    def __init__(
        self,
        transport: "Transport",
        callback: TransportCallback,
        origin: float,
        *,
        interval: Optional[float] = None,
        stop: Optional[float] = None,
    ) -> None:
        self._transport = transport
        self._callback = callback
        self.origin = origin
        self.interval = interval
        self.stop = stop
        self.occurrences = 0
        self._cancelled = False
        self._finished = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def done(self) -> bool:
        return self._cancelled or self._finished

    def cancel(self) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        self._transport._forget(self)

    def next_time(self) -> Optional[float]:
        if self.interval is None:
            return None
        candidate = self.origin + self.occurrences * self.interval
        if self.stop is not None and candidate >= self.stop - EPSILON:
            return None
        return candidate

    def _fire(self, at_time: float) -> None:
        self.occurrences += 1
        try:
            self._callback(at_time)
        except Exception:  # noqa: BLE001
            logger.exception("transport callback failed at {:.3f}s", at_time)


class Transport:
    """Logical clock for one session.

    Work is kept in a heap keyed by logical time. ``pump`` fires everything
    that is due at the current position; ``run`` is the asyncio driver that
    pumps on a fixed tick while the transport is started.
    """

    def __init__(
        self,
        tempo_bpm: float = 120.0,
        *,
        clock: Optional[Callable[[], float]] = None,
        tick_seconds: float = 0.01,
    ) -> None:
        if tempo_bpm <= 0:
            raise ValueError("tempo must be positive")
        self._tempo_bpm = float(tempo_bpm)
        self._clock = clock or time.monotonic
        self._tick_seconds = tick_seconds
        self._position = 0.0
        self._anchor: Optional[float] = None
        self._queue: List[Tuple[float, int, ScheduledEvent]] = []
        self._sequence = itertools.count()
        self._events: Set[ScheduledEvent] = set()
        self._generation = 0
        self._disposed = False

    @property
    def tempo_bpm(self) -> float:
        return self._tempo_bpm

    @property
    def seconds_per_beat(self) -> float:
        return 60.0 / self._tempo_bpm

    @property
    def seconds_per_measure(self) -> float:
        return BEATS_PER_MEASURE * self.seconds_per_beat

    @property
    def running(self) -> bool:
        return self._anchor is not None

    @property
    def disposed(self) -> bool:
        return self._disposed

    @property
    def state(self) -> str:
        if self._disposed:
            return "disposed"
        if self.running:
            return "started"
        return "paused" if self._position > 0 else "stopped"

    def pending(self) -> int:
        return len(self._events)

    def start(self) -> None:
        self._ensure_alive()
        if self.running:
            return
        self._anchor = self._clock()

    def pause(self) -> None:
        if not self.running:
            return
        self._position = self.now_seconds()
        self._anchor = None

    def stop(self) -> None:
        self.pause()
        self._position = 0.0

    def cancel_all(self) -> None:
        for event in list(self._events):
            event._cancelled = True
        self._events.clear()
        self._queue.clear()
        self._generation += 1

    def dispose(self) -> None:
        if self._disposed:
            return
        self.cancel_all()
        self._anchor = None
        self._disposed = True

    def now_seconds(self) -> float:
        self._ensure_alive()
        if self._anchor is None:
            return self._position
        return self._position + max(0.0, self._clock() - self._anchor)

    def now_musical_position(self) -> MusicalPosition:
        return MusicalPosition.from_beats(self.now_seconds() / self.seconds_per_beat)

    def to_seconds(self, value: TimeValue) -> float:
        """Convert seconds, a ``MusicalPosition`` or notation (``"2m"``, ``"8n"``,
        ``"2n."``, ``"1:2:0"``, ``"+4m"``) into transport seconds."""

        if isinstance(value, MusicalPosition):
            return value.total_beats() * self.seconds_per_beat
        if isinstance(value, (int, float)):
            return float(value)
        token = value.strip()
        if token.startswith("+"):
            return self.now_seconds() + self.to_seconds(token[1:])
        match = _MEASURE_RE.match(token)
        if match:
            return float(match.group(1)) * self.seconds_per_measure
        match = _NOTE_RE.match(token)
        if match:
            division = int(match.group(1))
            if division <= 0:
                raise ValueError(f"invalid note value {value!r}")
            beats = BEATS_PER_MEASURE / division
            if match.group(2):
                beats *= 1.5
            return beats * self.seconds_per_beat
        match = _POSITION_RE.match(token)
        if match:
            position = MusicalPosition(
                measures=int(match.group(1)),
                beats=int(match.group(2)),
                subdivisions=float(match.group(3) or 0.0),
            )
            return position.total_beats() * self.seconds_per_beat
        try:
            return float(token)
        except ValueError as exc:
            raise ValueError(f"unrecognised transport time {value!r}") from exc

    def schedule_at(self, offset: TimeValue, callback: TransportCallback) -> ScheduledEvent:
        self._ensure_alive()
        at_time = max(0.0, self.to_seconds(offset))
        event = ScheduledEvent(self, callback, at_time)
        self._enqueue(event, at_time)
        return event

    def schedule_repeating(
        self,
        callback: TransportCallback,
        interval: TimeValue,
        *,
        start: TimeValue = 0.0,
        stop: Optional[TimeValue] = None,
    ) -> ScheduledEvent:
        """Fire ``callback`` at ``start + k * interval`` for every time below ``stop``."""

        self._ensure_alive()
        step = self.to_seconds(interval)
        if step <= 0:
            raise ValueError("repeat interval must be positive")
        origin = max(0.0, self.to_seconds(start))
        stop_seconds = self.to_seconds(stop) if stop is not None else None
        event = ScheduledEvent(self, callback, origin, interval=step, stop=stop_seconds)
        first = event.next_time()
        if first is None:
            event._finished = True
            return event
        self._enqueue(event, first)
        return event

    def pump(self) -> int:
        """Fire every event due at the current position; return how many fired."""

        if self._disposed:
            return 0
        now = self.now_seconds()
        generation = self._generation
        fired = 0
        while self._queue and self._queue[0][0] <= now + EPSILON:
            at_time, _, event = heapq.heappop(self._queue)
            if event.cancelled:
                continue
            event._fire(at_time)
            fired += 1
            if self._generation != generation:
                break
            if event.cancelled:
                continue
            following = event.next_time()
            if following is None:
                event._finished = True
                self._events.discard(event)
            else:
                heapq.heappush(self._queue, (following, next(self._sequence), event))
        return fired

    async def run(self) -> None:
        while not self._disposed:
            if self.running:
                self.pump()
            await asyncio.sleep(self._tick_seconds)

    def _enqueue(self, event: ScheduledEvent, at_time: float) -> None:
        self._events.add(event)
        heapq.heappush(self._queue, (at_time, next(self._sequence), event))

    def _forget(self, event: ScheduledEvent) -> None:
        self._events.discard(event)

    def _ensure_alive(self) -> None:
        if self._disposed:
            raise TransportDisposedError("transport has been torn down")
