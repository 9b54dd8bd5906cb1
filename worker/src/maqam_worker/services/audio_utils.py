"""Signal helpers for the mix buffer and the exporter."""

from __future__ import annotations

from pathlib import Path

import numpy as np
import soundfile as sf
from loguru import logger

_CONTAINERS = {"wav": "WAV", "flac": "FLAC", "ogg": "OGG"}
# token -> (bits used for dither, soundfile subtype)
_BIT_DEPTHS = {
    "pcm16": (16, "PCM_16"),
    "pcm24": (24, "PCM_24"),
    "pcm32": (32, "PCM_32"),
    "float32": (0, "FLOAT"),
}


def as_frames(signal: np.ndarray) -> np.ndarray:
    """Return float32 audio shaped (samples,) or (samples, channels), clipped to [-1, 1]."""

    data = np.clip(np.asarray(signal, dtype=np.float32), -1.0, 1.0)
    if data.ndim == 2 and data.shape[0] < data.shape[1] and data.shape[0] <= 2:
        data = data.T
    return np.ascontiguousarray(data)


def rms_level(signal: np.ndarray) -> float:
    data = np.asarray(signal, dtype=np.float32)
    if data.size == 0:
        return 0.0
    return float(np.sqrt(np.mean(np.square(data))))


def normalise_loudness(
    signal: np.ndarray,
    target_rms: float = 0.18,
    *,
    max_gain: float = 4.0,
) -> np.ndarray:
    """Scale the signal toward ``target_rms``; silent input is returned untouched."""

    current = rms_level(signal)
    if current <= 1e-6:
        return signal
    gain = min(target_rms / current, max_gain)
    return (np.asarray(signal, dtype=np.float32) * gain).astype(np.float32)


def soft_limiter(signal: np.ndarray, *, threshold: float = 0.9) -> np.ndarray:
    """tanh-compress every sample above ``threshold``."""

    data = np.asarray(signal, dtype=np.float32)
    if threshold <= 0.0:
        return np.clip(data, -1.0, 1.0)
    hot = np.abs(data) > threshold
    if not np.any(hot):
        return data
    limited = data.copy()
    limited[hot] = threshold * np.tanh(data[hot] / threshold)
    return limited


def _tpdf_dither(data: np.ndarray, bits: int) -> np.ndarray:
    if bits <= 0:
        return data
    lsb = 1.0 / float(2 ** (bits - 1))
    rng = np.random.default_rng()
    noise = rng.random(data.shape, dtype=np.float32) - rng.random(data.shape, dtype=np.float32)
    return np.clip(data + noise * lsb, -1.0, 1.0).astype(np.float32)


def write_waveform(
    path: Path,
    signal: np.ndarray,
    sample_rate: int,
    *,
    bit_depth: str = "pcm24",
    audio_format: str = "wav",
    dither: bool = True,
) -> None:
    """Write ``signal`` through soundfile in the requested container."""

    container = _CONTAINERS.get(audio_format.lower())
    if container is None:
        logger.warning("Unsupported export format {}; writing WAV instead", audio_format)
        container = "WAV"
    bits, subtype = _BIT_DEPTHS.get(bit_depth.lower(), _BIT_DEPTHS["pcm16"])
    if container == "OGG":
        subtype, bits = "VORBIS", 0
    elif container == "FLAC" and bits in (0, 32):
        subtype, bits = "PCM_24", 24

    frames = as_frames(signal)
    if dither:
        frames = _tpdf_dither(frames, bits)
    sf.write(str(path), frames, sample_rate, format=container, subtype=subtype)
