"""Maqam definitions approximated on the twelve-tone grid."""

from __future__ import annotations

import random
from typing import Dict, Iterable, List, Mapping, Optional

from .types import Scale

DEFAULT_SCALE_ID = "rast"

_BUILTIN_SCALES = (
    Scale(
        id="rast",
        display_name="Rast",
        pitch_sequence=(
            "C4", "D4", "E4", "F4", "G4", "A4", "Bb4", "C5",
            "D5", "E5", "F5", "G5", "A5", "Bb5", "C6",
        ),
        interval_steps=(2, 2, 1, 2, 2, 1, 2),
        tonic_pitch="C4",
        character_tag="peaceful",
        description="Peaceful and balanced scale, similar to Western major",
    ),
    Scale(
        id="hijaz",
        display_name="Hijaz",
        pitch_sequence=(
            "D4", "Eb4", "F#4", "G4", "A4", "Bb4", "C5", "D5",
            "Eb5", "F#5", "G5", "A5", "Bb5", "C6", "D6",
        ),
        interval_steps=(1, 3, 1, 2, 1, 2, 2),
        tonic_pitch="D4",
        character_tag="meditative",
        description="Mystical scale with a distinctive augmented second",
    ),
    Scale(
        id="saba",
        display_name="Saba",
        pitch_sequence=(
            "D4", "Eb4", "F4", "Gb4", "A4", "Bb4", "C5", "D5",
            "Eb5", "F5", "Gb5", "A5", "Bb5", "C6", "D6",
        ),
        interval_steps=(1, 2, 1, 3, 1, 2, 2),
        tonic_pitch="D4",
        character_tag="melancholic",
        description="Melancholic and contemplative scale",
    ),
    Scale(
        id="nahawand",
        display_name="Nahawand",
        pitch_sequence=(
            "C4", "D4", "Eb4", "F4", "G4", "Ab4", "Bb4", "C5",
            "D5", "Eb5", "F5", "G5", "Ab5", "Bb5", "C6",
        ),
        interval_steps=(2, 1, 2, 2, 1, 2, 2),
        tonic_pitch="C4",
        character_tag="emotional",
        description="Emotional scale similar to Western minor",
    ),
    Scale(
        id="bayati",
        display_name="Bayati",
        pitch_sequence=(
            "D4", "Eb4", "F4", "G4", "A4", "Bb4", "C5", "D5",
            "Eb5", "F5", "G5", "A5", "Bb5", "C6", "D6",
        ),
        interval_steps=(1, 2, 2, 2, 1, 2, 2),
        tonic_pitch="D4",
        character_tag="traditional",
        description="Traditional scale often used in devotional music",
    ),
)


class ScaleCatalog:
    """Immutable lookup of maqam definitions keyed by id."""

    def __init__(
        self,
        scales: Optional[Iterable[Scale]] = None,
        *,
        default_id: str = DEFAULT_SCALE_ID,
    ) -> None:
        entries = tuple(scales) if scales is not None else _BUILTIN_SCALES
        self._scales: Dict[str, Scale] = {scale.id.lower(): scale for scale in entries}
        if default_id.lower() not in self._scales:
            raise ValueError(f"default scale {default_id!r} missing from catalog")
        self._default = self._scales[default_id.lower()]

    @property
    def default(self) -> Scale:
        return self._default

    @property
    def scales(self) -> Mapping[str, Scale]:
        return dict(self._scales)

    def ids(self) -> List[str]:
        return list(self._scales)

    def all(self) -> List[Scale]:
        return list(self._scales.values())

    def lookup(self, scale_id: Optional[str]) -> Scale:
        """Return the scale for ``scale_id``; unknown ids yield the default."""

        if not scale_id:
            return self._default
        token = scale_id.strip().lower().replace(" ", "_")
        return self._scales.get(token, self._default)

    def random_pitches(
        self,
        scale_id: Optional[str],
        count: int,
        rng: Optional[random.Random] = None,
    ) -> List[str]:
        source = rng or random.Random()
        pitches = self.lookup(scale_id).pitch_sequence
        return [source.choice(pitches) for _ in range(max(0, count))]

    def contiguous_run(self, scale_id: Optional[str], start_index: int, length: int) -> List[str]:
        pitches = self.lookup(scale_id).pitch_sequence
        size = len(pitches)
        return [pitches[(start_index + offset) % size] for offset in range(max(0, length))]


DEFAULT_CATALOG = ScaleCatalog()
