"""Per-voice stochastic pattern schedulers.

Each scheduler only decides *when* and *what* to trigger; the sink decides how
it sounds. All of them register work on the shared transport, stop at
``measure_count`` measures and hand back a :class:`PatternHandle` that cancels
only their own work.
"""

from __future__ import annotations

import random
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from .transport import EPSILON, MusicalPosition, ScheduledEvent, Transport
from .types import Scale, TriggerEvent

TriggerSink = Callable[[TriggerEvent], None]

OUD_PROBABILITY = 0.7
NEY_PROBABILITY = 0.6
NATURE_PROBABILITY = 0.4
DAF_ACCENT_PROBABILITY = 0.3
QANUN_MIN_REPEATS = 2
QANUN_MAX_REPEATS = 5
QANUN_SPACING_SECONDS = 0.1
DAF_STEPS = 8

DAF_PATTERNS: Tuple[Tuple[int, ...], ...] = (
    (1, 0, 0, 1, 0, 1, 0, 0),
    (1, 0, 1, 0, 1, 0, 1, 0),
    (1, 1, 0, 1, 0, 0, 1, 0),
)
NATURE_SOUNDS = ("water", "wind")


class PatternHandle:
    """Groups the transport events a single voice registered."""

    def __init__(self, voice_id: str) -> None:
        self.voice_id = voice_id
        self.details: Dict[str, Any] = {}
        self._events: List[ScheduledEvent] = []
        self._cancelled = False

    def __repr__(self) -> str:
        return f"PatternHandle({self.voice_id!r}, cancelled={self._cancelled})"

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def active(self) -> bool:
        return not self._cancelled and any(not event.done for event in self._events)

    def track(self, event: ScheduledEvent) -> ScheduledEvent:
        if self._cancelled:
            event.cancel()
            return event
        self._events = [existing for existing in self._events if not existing.done]
        self._events.append(event)
        return event

    def cancel(self) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        for event in self._events:
            event.cancel()
        self._events.clear()


@dataclass
class PatternContext:
    voice_id: str
    transport: Transport
    scale: Scale
    measure_count: int
    tempo_bpm: float
    sink: TriggerSink
    rng: random.Random = field(default_factory=random.Random)
    volume: float = 0.7

    @property
    def stop_offset(self) -> MusicalPosition:
        return MusicalPosition(measures=self.measure_count)

    @property
    def stop_seconds(self) -> float:
        return self.transport.to_seconds(self.stop_offset)

    def emit(
        self,
        sound: str,
        at_time: float,
        duration_token: Optional[str],
        *,
        kind: str = "note",
        loop: bool = False,
    ) -> None:
        duration = self.transport.to_seconds(duration_token) if duration_token else None
        self.sink(
            TriggerEvent(
                voice_id=self.voice_id,
                sound=sound,
                at_time=at_time,
                duration_token=duration_token,
                duration_seconds=duration,
                kind=kind,
                volume=self.volume,
                loop=loop,
            )
        )


PatternScheduler = Callable[[PatternContext], PatternHandle]


def _walk_step(index: int, size: int, rng: random.Random) -> int:
    if size <= 1:
        return 0
    candidate = index + rng.choice((-1, 1))
    if candidate < 0:
        return 1
    if candidate >= size:
        return size - 2
    return candidate


def schedule_melodic_walk(ctx: PatternContext) -> PatternHandle:
    """Oud: eighth-note random walk over the scale, 70% of ticks sound."""

    handle = PatternHandle(ctx.voice_id)
    pitches = ctx.scale.pitch_sequence
    index = ctx.rng.randrange(len(pitches))

    def _tick(at_time: float) -> None:
        nonlocal index
        if ctx.rng.random() >= OUD_PROBABILITY:
            return
        ctx.emit(pitches[index], at_time, "8n")
        index = _walk_step(index, len(pitches), ctx.rng)

    handle.track(ctx.transport.schedule_repeating(_tick, "8n", start=0.0, stop=ctx.stop_offset))
    return handle


class RandomOnce:
    """Draws every item once per pass before reshuffling."""

    def __init__(self, items: Sequence[str], rng: random.Random) -> None:
        if not items:
            raise ValueError("random-once selection needs at least one item")
        self._items = list(items)
        self._rng = rng
        self._remaining: List[str] = []

    def next(self) -> str:
        if not self._remaining:
            self._remaining = list(self._items)
            self._rng.shuffle(self._remaining)
        return self._remaining.pop()


def schedule_sparse_sustained(ctx: PatternContext) -> PatternHandle:
    """Ney: long notes from the even-indexed pitches, entering after one measure."""

    handle = PatternHandle(ctx.voice_id)
    subset = ctx.scale.pitch_sequence[::2]
    chooser = RandomOnce(subset, ctx.rng)

    def _tick(at_time: float) -> None:
        if ctx.rng.random() >= NEY_PROBABILITY:
            return
        ctx.emit(chooser.next(), at_time, "2n")

    handle.track(ctx.transport.schedule_repeating(_tick, "2n.", start="1m", stop=ctx.stop_offset))
    return handle


def schedule_arpeggio_burst(ctx: PatternContext) -> PatternHandle:
    """Qanun: every two measures, one pitch repeated 2-5 times 100ms apart."""

    handle = PatternHandle(ctx.voice_id)
    pitches = ctx.scale.pitch_sequence
    stop_seconds = ctx.stop_seconds

    def _hit(pitch: str) -> Callable[[float], None]:
        return lambda at_time: ctx.emit(pitch, at_time, "16n")

    def _burst(at_time: float) -> None:
        pitch = ctx.rng.choice(pitches)
        repeats = ctx.rng.randint(QANUN_MIN_REPEATS, QANUN_MAX_REPEATS)
        ctx.emit(pitch, at_time, "16n")
        for step in range(1, repeats):
            hit_time = at_time + step * QANUN_SPACING_SECONDS
            if hit_time >= stop_seconds - EPSILON:
                break
            handle.track(ctx.transport.schedule_at(hit_time, _hit(pitch)))

    handle.track(ctx.transport.schedule_repeating(_burst, "2m", start=0.0, stop=ctx.stop_offset))
    return handle


def schedule_rhythmic_gate(
    ctx: PatternContext,
    pattern: Optional[Sequence[int]] = None,
) -> PatternHandle:
    """Daf: an 8-step binary rhythm on eighth notes, 30% accented hits.

    The step is the number of ticks since the pattern started, so a
    pause/resume cycle never shifts the rhythm.
    """

    handle = PatternHandle(ctx.voice_id)
    steps = tuple(pattern) if pattern is not None else ctx.rng.choice(DAF_PATTERNS)
    if len(steps) != DAF_STEPS:
        raise ValueError(f"rhythm pattern must have {DAF_STEPS} steps")
    handle.details["pattern"] = steps
    tick = 0

    def _tick(at_time: float) -> None:
        nonlocal tick
        step = tick % DAF_STEPS
        tick += 1
        if not steps[step]:
            return
        variant = "accent" if ctx.rng.random() < DAF_ACCENT_PROBABILITY else "regular"
        ctx.emit(variant, at_time, "32n", kind="percussion")

    handle.track(ctx.transport.schedule_repeating(_tick, "8n", start=0.0, stop=ctx.stop_offset))
    return handle


def schedule_drone(ctx: PatternContext) -> PatternHandle:
    """Ambient: tonic + fifth held from the downbeat, released a measure early."""

    handle = PatternHandle(ctx.voice_id)
    pitches = ctx.scale.pitch_sequence
    tonic = pitches[0]
    fifth = pitches[4] if len(pitches) > 4 else pitches[0]
    chord = (tonic, fifth)
    handle.details["chord"] = chord
    stop_seconds = ctx.stop_seconds
    release_at = max(0.0, stop_seconds - ctx.transport.seconds_per_measure)

    def _attack(at_time: float) -> None:
        for pitch in chord:
            ctx.emit(pitch, at_time, None, kind="attack", loop=True)

    def _release(at_time: float) -> None:
        for pitch in chord:
            ctx.emit(pitch, at_time, None, kind="release")

    def _pulse(at_time: float) -> None:
        ctx.emit("pulse", at_time, "4n", kind="pulse")

    handle.track(ctx.transport.schedule_at(0.0, _attack))
    handle.track(ctx.transport.schedule_at(release_at, _release))
    handle.track(ctx.transport.schedule_repeating(_pulse, "4n", start=0.0, stop=ctx.stop_offset))
    return handle


def schedule_ambient_one_shot(ctx: PatternContext) -> PatternHandle:
    """Nature: every two measures, 40% chance of water or wind."""

    handle = PatternHandle(ctx.voice_id)

    def _tick(at_time: float) -> None:
        if ctx.rng.random() >= NATURE_PROBABILITY:
            return
        ctx.emit(ctx.rng.choice(NATURE_SOUNDS), at_time, "2m", kind="one_shot")

    handle.track(ctx.transport.schedule_repeating(_tick, "2m", start=0.0, stop=ctx.stop_offset))
    return handle


PATTERN_SCHEDULERS: Dict[str, PatternScheduler] = {
    "oud": schedule_melodic_walk,
    "ney": schedule_sparse_sustained,
    "qanun": schedule_arpeggio_burst,
    "daf": schedule_rhythmic_gate,
    "ambient": schedule_drone,
    "nature": schedule_ambient_one_shot,
}
