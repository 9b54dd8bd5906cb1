"""Named arrangement presets."""

from __future__ import annotations

from typing import Dict, Optional

from ..app.models import InstrumentSelection, PresetDescriptor


def _preset(
    name: str,
    scale_id: str,
    tempo_bpm: float,
    duration_seconds: float,
    volumes: Dict[str, float],
) -> PresetDescriptor:
    return PresetDescriptor(
        name=name,
        scale_id=scale_id,
        tempo_bpm=tempo_bpm,
        duration_seconds=duration_seconds,
        selections={
            instrument: InstrumentSelection(instrument_id=instrument, volume=volume)
            for instrument, volume in volumes.items()
        },
    )


PRESETS: Dict[str, PresetDescriptor] = {
    preset.name: preset
    for preset in (
        _preset("meditation", "hijaz", 60, 180, {"ney": 0.8, "ambient": 0.7, "nature": 0.5}),
        _preset("relaxation", "bayati", 70, 120, {"oud": 0.6, "ney": 0.7, "ambient": 0.5}),
        _preset("uplifting", "rast", 90, 90, {"oud": 0.8, "qanun": 0.7, "daf": 0.6}),
    )
}


def get_preset(name: str) -> Optional[PresetDescriptor]:
    return PRESETS.get(name.strip().lower())
