"""Shared service data structures."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Dict, Mapping, Optional, Tuple

import numpy as np

from ..app.models import InstrumentSelection

BEATS_PER_MEASURE = 4


@dataclass(frozen=True)
class Scale:
    id: str
    display_name: str
    pitch_sequence: Tuple[str, ...]
    interval_steps: Tuple[int, ...]
    tonic_pitch: str
    character_tag: str
    description: str = ""

    def __post_init__(self) -> None:
        if not self.pitch_sequence:
            raise ValueError(f"scale {self.id} has no pitches")

    def __len__(self) -> int:
        return len(self.pitch_sequence)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.display_name,
            "pitches": list(self.pitch_sequence),
            "intervals": list(self.interval_steps),
            "tonic": self.tonic_pitch,
            "character": self.character_tag,
            "description": self.description,
        }


def seconds_per_measure(tempo_bpm: float) -> float:
    return BEATS_PER_MEASURE * 60.0 / tempo_bpm


def measure_count_for(duration_seconds: float, tempo_bpm: float) -> int:
    """Number of whole measures needed to cover ``duration_seconds``."""

    # duration * tempo / 240 computed before dividing keeps exact inputs exact
    return int(math.ceil(duration_seconds * tempo_bpm / (BEATS_PER_MEASURE * 60.0)))


@dataclass(frozen=True)
class Arrangement:
    scale: Scale
    tempo_bpm: float
    duration_seconds: float
    selections: Mapping[str, InstrumentSelection]
    measure_count: int
    seed: Optional[int] = None
    mode_label: str = "synthesized"

    @property
    def stop_bound_seconds(self) -> float:
        return self.measure_count * seconds_per_measure(self.tempo_bpm)

    def enabled_instruments(self) -> list[str]:
        return [name for name, selection in self.selections.items() if selection.enabled]


@dataclass(frozen=True)
class TriggerEvent:
    voice_id: str
    sound: str
    at_time: float
    duration_token: Optional[str]
    duration_seconds: Optional[float]
    kind: str = "note"
    volume: float = 0.7
    loop: bool = False


@dataclass
class CapturedArtifact:
    raw_signal: np.ndarray
    sample_rate: int
    duration_seconds: float
    loop_start_seconds: float
    loop_end_seconds: float
    scale_id: str
    mode_label: str
    created_at: datetime = field(default_factory=lambda: datetime.now(tz=UTC))

    def render_seconds(self) -> float:
        if self.raw_signal.size == 0 or self.sample_rate <= 0:
            return 0.0
        return float(self.raw_signal.shape[0] / self.sample_rate)
