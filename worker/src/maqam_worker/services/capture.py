"""Session capture handles and the artifact exporter."""

from __future__ import annotations

import asyncio
import threading
import time
from pathlib import Path
from typing import Optional, Protocol

import numpy as np
from loguru import logger

from ..app.settings import Settings
from .audio_utils import normalise_loudness, soft_limiter, write_waveform
from .exceptions import CaptureTimeout
from .synth import SynthVoiceBank
from .types import CapturedArtifact

CROSSFADE_RESERVE_SECONDS = 0.5


class CaptureHandle(Protocol):
    sample_rate: int

    def start(self) -> None: ...

    async def stop(self, end_seconds: float) -> np.ndarray: ...


class MixdownCapture:
    """Records the synth voice bank's output for one session."""

    def __init__(self, bank: SynthVoiceBank) -> None:
        self._bank = bank
        self.sample_rate = bank.sample_rate
        self.recording = False

    def start(self) -> None:
        self._bank.reset()
        self.recording = True

    async def stop(self, end_seconds: float) -> np.ndarray:
        if not self.recording:
            return np.zeros(0, dtype=np.float32)
        self.recording = False
        await asyncio.sleep(0)
        self._bank.release_all(end_seconds)
        return self._bank.mixdown(end_seconds)


async def stop_capture(handle: CaptureHandle, end_seconds: float, *, timeout: float) -> np.ndarray:
    try:
        return await asyncio.wait_for(handle.stop(end_seconds), timeout=timeout)
    except asyncio.TimeoutError as exc:
        raise CaptureTimeout(f"capture did not stop within {timeout:.1f}s") from exc


_timestamp_lock = threading.Lock()
_last_timestamp_ms = 0


def _next_timestamp_ms() -> int:
    global _last_timestamp_ms
    with _timestamp_lock:
        candidate = int(time.time() * 1000)
        if candidate <= _last_timestamp_ms:
            candidate = _last_timestamp_ms + 1
        _last_timestamp_ms = candidate
        return candidate


def _clean_token(value: str) -> str:
    return "_".join(value.split()).lower()


class CaptureExporter:
    """Turns a stopped session's signal into a loopable artifact and files."""

    def __init__(self, settings: Settings) -> None:
        self._root = settings.artifact_root
        self._scope = settings.export_scope
        self._format = settings.export_format
        self._bit_depth = settings.export_bit_depth

    def finalize(
        self,
        raw_signal: np.ndarray,
        duration_seconds: float,
        *,
        sample_rate: int,
        scale_id: str = "",
        mode_label: str = "",
    ) -> CapturedArtifact:
        loop_end = max(0.0, duration_seconds - CROSSFADE_RESERVE_SECONDS)
        return CapturedArtifact(
            raw_signal=np.asarray(raw_signal, dtype=np.float32),
            sample_rate=sample_rate,
            duration_seconds=duration_seconds,
            loop_start_seconds=0.0,
            loop_end_seconds=loop_end,
            scale_id=scale_id,
            mode_label=mode_label,
        )

    def build_filename(self, scale_id: str, mode_label: str, timestamp_ms: int) -> str:
        return (
            f"{self._scope}_{_clean_token(scale_id)}_{_clean_token(mode_label)}"
            f"_{timestamp_ms}.{self._format}"
        )

    def export_to_file(
        self,
        artifact: CapturedArtifact,
        scale_id: Optional[str] = None,
        mode_label: Optional[str] = None,
    ) -> Path:
        self._root.mkdir(parents=True, exist_ok=True)
        filename = self.build_filename(
            scale_id or artifact.scale_id or "unknown",
            mode_label or artifact.mode_label or "synthesized",
            _next_timestamp_ms(),
        )
        path = self._root / filename
        waveform = soft_limiter(normalise_loudness(artifact.raw_signal))
        write_waveform(
            path,
            waveform,
            artifact.sample_rate,
            bit_depth=self._bit_depth,
            audio_format=self._format,
        )
        logger.info("Exported {:.1f}s capture to {}", artifact.render_seconds(), path)
        return path
