"""Contracts for the voice provider and visual feedback collaborators."""

from __future__ import annotations

from typing import Iterable, List, Optional, Protocol

from loguru import logger

from .types import TriggerEvent

NOTE_KINDS = frozenset({"note", "attack", "release"})


class VoiceProvider(Protocol):
    def is_loaded(self, instrument_id: str) -> bool: ...

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
    ) -> None: ...


class VisualSink(Protocol):
    def notify(self, event_kind: str, at_time: float, instrument_id: str) -> None: ...


def loaded_voices(provider: VoiceProvider, instrument_ids: Iterable[str]) -> List[str]:
    return [name for name in instrument_ids if provider.is_loaded(name)]


class VoiceRouter:
    """Trigger sink handed to pattern schedulers.

    Sound-producing events go to the provider; every event is mirrored to the
    visual sink, whose failures are logged and otherwise ignored.
    """

    def __init__(self, provider: VoiceProvider, visual: Optional[VisualSink] = None) -> None:
        self._provider = provider
        self._visual = visual
        self.triggered = 0

    def __call__(self, event: TriggerEvent) -> None:
        if event.kind != "pulse":
            self._provider.trigger(
                event.voice_id,
                event.sound,
                event.at_time,
                event.duration_seconds,
                volume=event.volume,
                loop=event.loop,
                kind=event.kind,
            )
            self.triggered += 1
        self._notify(event)

    def _notify(self, event: TriggerEvent) -> None:
        if self._visual is None:
            return
        label = event.sound if event.kind in NOTE_KINDS else event.kind
        try:
            self._visual.notify(label, event.at_time, event.voice_id)
        except Exception:  # noqa: BLE001
            logger.opt(exception=True).debug("visual sink rejected {} event", event.voice_id)
