"""Reference voice provider: a small additive synth that renders into a mix buffer."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Dict, Iterable, Optional, Tuple

import numpy as np
from loguru import logger

from ..app.models import InstrumentId
from .audio_utils import soft_limiter

_PITCH_RE = re.compile(r"^([A-Ga-g])([#b]*)(-?\d+)$")
_SEMITONES = {"C": 0, "D": 2, "E": 4, "F": 5, "G": 7, "A": 9, "B": 11}

MAX_NOTE_SECONDS = 30.0


def pitch_to_frequency(pitch: str) -> float:
    """Convert scientific pitch notation (``"F#4"``, ``"Bb5"``) to Hz."""

    match = _PITCH_RE.match(pitch.strip())
    if match is None:
        raise ValueError(f"unrecognised pitch {pitch!r}")
    letter, accidentals, octave = match.groups()
    semitone = _SEMITONES[letter.upper()] + accidentals.count("#") - accidentals.count("b")
    midi = 12 * (int(octave) + 1) + semitone
    return 440.0 * 2.0 ** ((midi - 69) / 12.0)


@dataclass(frozen=True)
class VoiceTimbre:
    harmonics: Tuple[float, ...]
    attack_seconds: float
    decay_rate: float
    breath: float = 0.0


TIMBRES: Dict[str, VoiceTimbre] = {
    InstrumentId.OUD.value: VoiceTimbre(harmonics=(1.0, 0.5, 0.25, 0.12), attack_seconds=0.005, decay_rate=3.5),
    InstrumentId.NEY.value: VoiceTimbre(harmonics=(1.0, 0.2, 0.05), attack_seconds=0.12, decay_rate=0.3, breath=0.04),
    InstrumentId.QANUN.value: VoiceTimbre(harmonics=(1.0, 0.6, 0.35, 0.2, 0.1), attack_seconds=0.002, decay_rate=6.0),
    InstrumentId.AMBIENT.value: VoiceTimbre(harmonics=(1.0, 0.3), attack_seconds=1.5, decay_rate=0.0),
}
_DEFAULT_TIMBRE = VoiceTimbre(harmonics=(1.0,), attack_seconds=0.01, decay_rate=1.0)


class SynthVoiceBank:
    """Renders triggers for the six voices into a mono float32 mix buffer.

    ``attack`` triggers are held until the matching ``release`` (or until
    :meth:`release_all`), everything else is rendered immediately at its
    logical transport time.
    """

    def __init__(
        self,
        sample_rate: int = 48_000,
        *,
        loaded: Optional[Iterable[str]] = None,
        seed: Optional[int] = None,
    ) -> None:
        self.sample_rate = sample_rate
        self._loaded = set(loaded) if loaded is not None else {voice.value for voice in InstrumentId}
        self._rng = np.random.default_rng(seed)
        self._buffer = np.zeros(0, dtype=np.float32)
        self._length = 0
        self._held: Dict[Tuple[str, str], Tuple[float, float]] = {}

    def is_loaded(self, instrument_id: str) -> bool:
        return instrument_id in self._loaded

    def loaded_instruments(self) -> set[str]:
        return set(self._loaded)

    def unload(self, instrument_id: str) -> None:
        self._loaded.discard(instrument_id)

    @property
    def capacity(self) -> int:
        return int(self._buffer.shape[0])

    def reset(self) -> None:
        self._buffer = np.zeros(0, dtype=np.float32)
        self._length = 0
        self._held.clear()

    def held_voices(self) -> list[Tuple[str, str]]:
        return list(self._held)

    def trigger(
        self,
        instrument_id: str,
        sound: str,
        at_time: float,
        duration_seconds: Optional[float],
        *,
        volume: float = 1.0,
        loop: bool = False,
        kind: str = "note",
    ) -> None:
        if not self.is_loaded(instrument_id):
            logger.warning("voice {} not loaded; dropping {}", instrument_id, sound)
            return
        if kind == "attack":
            self._held[(instrument_id, sound)] = (at_time, volume)
            return
        if kind == "release":
            self._release(instrument_id, sound, at_time)
            return
        length = min(duration_seconds or 0.25, MAX_NOTE_SECONDS)
        if kind == "percussion":
            self._mix(at_time, self._drum(sound, length) * volume)
        elif kind == "one_shot":
            self._mix(at_time, self._texture(sound, length) * volume)
        else:
            self._mix(at_time, self._tone(instrument_id, sound, length) * volume)

    def release_all(self, at_time: float) -> None:
        for instrument_id, sound in list(self._held):
            self._release(instrument_id, sound, at_time)

    def mixdown(self, until_seconds: Optional[float] = None) -> np.ndarray:
        data = self._buffer[: self._length]
        if until_seconds is not None:
            samples = max(0, int(round(until_seconds * self.sample_rate)))
            if data.shape[0] < samples:
                data = np.concatenate((data, np.zeros(samples - data.shape[0], dtype=np.float32)))
            data = data[:samples]
        return soft_limiter(data.copy())

    def _release(self, instrument_id: str, sound: str, at_time: float) -> None:
        held = self._held.pop((instrument_id, sound), None)
        if held is None:
            return
        started, volume = held
        length = min(max(0.0, at_time - started), MAX_NOTE_SECONDS)
        if length <= 0.0:
            return
        self._mix(started, self._tone(instrument_id, sound, length) * volume)

    def _mix(self, at_time: float, samples: np.ndarray) -> None:
        if samples.size == 0:
            return
        start = max(0, int(round(at_time * self.sample_rate)))
        end = start + samples.shape[0]
        if end > self._buffer.shape[0]:
            # capacity doubles; everything past _length stays zero
            grown = np.zeros(max(end, 2 * self._buffer.shape[0]), dtype=np.float32)
            grown[: self._length] = self._buffer[: self._length]
            self._buffer = grown
        self._length = max(self._length, end)
        self._buffer[start:end] += samples.astype(np.float32)

    def _envelope(self, count: int, timbre: VoiceTimbre) -> np.ndarray:
        t = np.arange(count, dtype=np.float32) / self.sample_rate
        attack = max(timbre.attack_seconds, 1.0 / self.sample_rate)
        env = np.minimum(1.0, t / attack)
        if timbre.decay_rate > 0:
            env = env * np.exp(-timbre.decay_rate * t)
        tail = min(count, int(0.02 * self.sample_rate))
        if tail > 1:
            env[-tail:] *= np.linspace(1.0, 0.0, tail, dtype=np.float32)
        return env.astype(np.float32)

    def _tone(self, instrument_id: str, pitch: str, seconds: float) -> np.ndarray:
        count = int(seconds * self.sample_rate)
        if count <= 0:
            return np.zeros(0, dtype=np.float32)
        timbre = TIMBRES.get(instrument_id, _DEFAULT_TIMBRE)
        frequency = pitch_to_frequency(pitch)
        t = np.arange(count, dtype=np.float32) / self.sample_rate
        wave = np.zeros(count, dtype=np.float32)
        for order, weight in enumerate(timbre.harmonics, start=1):
            if frequency * order >= self.sample_rate / 2:
                break
            wave += weight * np.sin(2.0 * np.pi * frequency * order * t).astype(np.float32)
        wave /= max(sum(timbre.harmonics), 1.0)
        if timbre.breath > 0:
            wave += timbre.breath * self._rng.standard_normal(count).astype(np.float32)
        return 0.3 * wave * self._envelope(count, timbre)

    def _drum(self, variant: str, seconds: float) -> np.ndarray:
        count = max(1, int(max(seconds, 0.08) * self.sample_rate))
        t = np.arange(count, dtype=np.float32) / self.sample_rate
        body_hz = 70.0 if variant == "accent" else 140.0
        body = np.sin(2.0 * np.pi * body_hz * t) * np.exp(-18.0 * t)
        skin = self._rng.standard_normal(count) * np.exp(-45.0 * t) * 0.4
        level = 0.5 if variant == "accent" else 0.3
        return (level * (body + skin)).astype(np.float32)

    def _texture(self, sound: str, seconds: float) -> np.ndarray:
        count = max(1, int(seconds * self.sample_rate))
        noise = self._rng.standard_normal(count).astype(np.float32)
        width = 64 if sound == "wind" else 8
        kernel = np.ones(width, dtype=np.float32) / width
        smooth = np.convolve(noise, kernel, mode="same")
        t = np.arange(count, dtype=np.float32) / self.sample_rate
        if sound == "water":
            smooth *= 0.5 + 0.5 * np.sin(2.0 * np.pi * 3.0 * t)
        fade = np.minimum(1.0, np.minimum(t, t[-1] - t) / 0.5 + 1e-3)
        return (0.08 * smooth * fade).astype(np.float32)
