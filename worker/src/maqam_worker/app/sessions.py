from __future__ import annotations

import asyncio
import contextlib
import random
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Callable, Coroutine, Dict, Optional, Set

import numpy as np
from loguru import logger

from ..services.arrangement import ArrangementController
from ..services.capture import CaptureExporter, CaptureHandle, MixdownCapture, stop_capture
from ..services.exceptions import (
    ArtifactUnavailable,
    CaptureTimeout,
    ResourceUnavailable,
)
from ..services.patterns import PatternHandle
from ..services.scales import DEFAULT_CATALOG, ScaleCatalog
from ..services.synth import SynthVoiceBank
from ..services.transport import MusicalPosition, Transport
from ..services.types import Arrangement, CapturedArtifact
from ..services.voices import VisualSink, VoiceProvider, VoiceRouter, loaded_voices
from .models import (
    ArtifactSummary,
    InstrumentSelection,
    SessionStartRequest,
    SessionState,
    SessionStatus,
)
from .settings import Settings
from .state_machine import Effect, SessionEvent, transition

StateListener = Callable[[SessionStatus], None]
ErrorListener = Callable[[str], None]
TransportFactory = Callable[[float], Transport]
CaptureFactory = Callable[[], CaptureHandle]

_ACTIVE_STATES = {SessionState.GENERATING, SessionState.PLAYING, SessionState.PAUSED}


@dataclass
class SessionRecord:
    state: SessionState = SessionState.IDLE
    arrangement: Optional[Arrangement] = None
    transport: Optional[Transport] = None
    transport_position_at_pause: Optional[MusicalPosition] = None
    paused_at_seconds: Optional[float] = None
    capture_handle: Optional[CaptureHandle] = None
    capture_sample_rate: int = 0
    captured_signal: Optional[np.ndarray] = None
    active_pattern_handles: Set[PatternHandle] = field(default_factory=set)
    driver: Optional[asyncio.Task[None]] = None
    warnings: list[str] = field(default_factory=list)
    error: Optional[str] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(tz=UTC))


class PlaybackSession:
    """Owns the single active arrangement session and serialises its lifecycle.

    State changes come from the pure table in :mod:`state_machine`; this class
    only executes the effects each transition lists.
    """

    def __init__(
        self,
        settings: Settings,
        provider: VoiceProvider,
        *,
        controller: Optional[ArrangementController] = None,
        exporter: Optional[CaptureExporter] = None,
        capture_factory: Optional[CaptureFactory] = None,
        transport_factory: Optional[TransportFactory] = None,
        visual: Optional[VisualSink] = None,
    ) -> None:
        self._settings = settings
        self._provider = provider
        self._controller = controller or ArrangementController(
            ScaleCatalog(DEFAULT_CATALOG.all(), default_id=settings.default_scale_id),
            auto_stop_guard_seconds=settings.auto_stop_guard_seconds,
        )
        self._exporter = exporter or CaptureExporter(settings)
        if capture_factory is None:
            if not isinstance(provider, SynthVoiceBank):
                raise ValueError("a capture factory is required for this voice provider")
            bank = provider
            capture_factory = lambda: MixdownCapture(bank)  # noqa: E731
        self._capture_factory = capture_factory
        self._transport_factory = transport_factory or self._default_transport
        self._visual = visual
        self._record = SessionRecord()
        self._lock = asyncio.Lock()
        self._artifact: Optional[CapturedArtifact] = None
        self._last_export: Optional[Path] = None
        self._message: Optional[str] = "Ready to generate music."
        self._state_listeners: list[StateListener] = []
        self._error_listeners: list[ErrorListener] = []
        self._background: Set[asyncio.Task[Any]] = set()

    @property
    def state(self) -> SessionState:
        return self._record.state

    @property
    def record(self) -> SessionRecord:
        return self._record

    @property
    def active_pattern_handles(self) -> frozenset[PatternHandle]:
        return frozenset(self._record.active_pattern_handles)

    @property
    def transport(self) -> Optional[Transport]:
        return self._record.transport

    @property
    def artifact(self) -> Optional[CapturedArtifact]:
        return self._artifact

    @property
    def controller(self) -> ArrangementController:
        return self._controller

    def add_state_listener(self, listener: StateListener) -> None:
        self._state_listeners.append(listener)

    def add_error_listener(self, listener: ErrorListener) -> None:
        self._error_listeners.append(listener)

    async def request_start(self, request: SessionStartRequest) -> SessionStatus:
        async with self._lock:
            await self._stop_locked(SessionEvent.STOP)
            record = SessionRecord()
            self._record = record

            selections = self._resolve_selections(request, record)
            if not any(selection.enabled for selection in selections.values()):
                message = "No instrument voices are loaded; cannot start."
                await self._apply(record, SessionEvent.START_REJECTED, error=message)
                raise ResourceUnavailable(message)

            record.arrangement = self._controller.create(
                request.scale_id,
                request.tempo_bpm,
                request.duration_seconds,
                selections,
                seed=request.seed,
                mode_label=request.mode.value,
            )
            try:
                await self._apply(record, SessionEvent.REQUEST_START)
                await self._apply(record, SessionEvent.SCHEDULED)
            except Exception as exc:  # noqa: BLE001
                logger.opt(exception=exc).error("session start failed")
                await self._apply(
                    record,
                    SessionEvent.FATAL_ERROR,
                    error="Error generating music. Please try again.",
                )
                raise
            arrangement = record.arrangement
            self._message = (
                f"Playing {arrangement.duration_seconds:g} seconds of {arrangement.mode_label} "
                f"music in {arrangement.scale.id} scale..."
            )
            return self._notify()

    async def pause(self) -> SessionStatus:
        async with self._lock:
            await self._apply(self._record, SessionEvent.PAUSE)
            self._message = "Music paused."
            return self._notify()

    async def resume(self) -> SessionStatus:
        async with self._lock:
            await self._apply(self._record, SessionEvent.RESUME)
            self._message = "Music resumed."
            return self._notify()

    async def stop(self) -> SessionStatus:
        async with self._lock:
            return await self._stop_locked(SessionEvent.STOP)

    async def fail(self, message: str) -> SessionStatus:
        async with self._lock:
            await self._apply(self._record, SessionEvent.FATAL_ERROR, error=message)
            self._record = SessionRecord(error=message)
            self._message = message
            return self._notify()

    async def export(self, mode_label: Optional[str] = None) -> Path:
        artifact = self._artifact
        if artifact is None:
            raise ArtifactUnavailable("Please generate music before exporting.")
        path = await asyncio.to_thread(
            self._exporter.export_to_file,
            artifact,
            artifact.scale_id,
            mode_label or artifact.mode_label,
        )
        self._last_export = path
        self._message = "Music exported successfully."
        return path

    async def close(self) -> None:
        await self.stop()
        for task in list(self._background):
            task.cancel()

    def status(self) -> SessionStatus:
        record = self._record
        arrangement = record.arrangement
        position: Optional[float] = None
        if record.transport is not None and not record.transport.disposed:
            position = record.transport.now_seconds()
        return SessionStatus(
            state=record.state,
            message=self._message,
            scale_id=arrangement.scale.id if arrangement else None,
            tempo_bpm=arrangement.tempo_bpm if arrangement else None,
            duration_seconds=arrangement.duration_seconds if arrangement else None,
            measure_count=arrangement.measure_count if arrangement else None,
            active_instruments=sorted(handle.voice_id for handle in record.active_pattern_handles),
            position_seconds=position,
            paused_at_seconds=record.paused_at_seconds,
            warnings=list(record.warnings),
            artifact=self._artifact_summary(),
        )

    def _default_transport(self, tempo_bpm: float) -> Transport:
        return Transport(tempo_bpm, tick_seconds=self._settings.transport_tick_seconds)

    def _resolve_selections(
        self,
        request: SessionStartRequest,
        record: SessionRecord,
    ) -> Dict[str, InstrumentSelection]:
        resolved: Dict[str, InstrumentSelection] = {}
        for key, selection in request.selections.items():
            name = (selection.instrument_id or key).strip().lower()
            resolved[name] = selection.model_copy(update={"instrument_id": name})
        enabled = [name for name, selection in resolved.items() if selection.enabled]
        available = set(loaded_voices(self._provider, enabled))
        missing = [name for name in enabled if name not in available]
        if missing and available:
            warning = f"voices not loaded, skipping: {', '.join(sorted(missing))}"
            logger.warning(warning)
            record.warnings.append(warning)
        for name in missing:
            resolved[name] = resolved[name].model_copy(update={"enabled": False})
        return resolved

    async def _stop_locked(self, event: SessionEvent) -> SessionStatus:
        record = self._record
        if record.state not in _ACTIVE_STATES:
            return self.status()
        await self._apply(record, event)
        await self._apply(record, SessionEvent.TEARDOWN_COMPLETE)
        self._record = SessionRecord(warnings=list(record.warnings))
        if event == SessionEvent.DURATION_ELAPSED:
            self._message = "Music generation complete. Use the player controls to listen or export."
        else:
            self._message = "Music stopped."
        return self._notify()

    async def _on_duration_elapsed(self, record: SessionRecord) -> None:
        async with self._lock:
            if self._record is not record or record.state not in _ACTIVE_STATES:
                return
            logger.info("Arrangement duration elapsed; stopping session")
            await self._stop_locked(SessionEvent.DURATION_ELAPSED)

    async def _apply(
        self,
        record: SessionRecord,
        event: SessionEvent,
        *,
        error: Optional[str] = None,
    ) -> None:
        new_state, effects = transition(record.state, event)
        logger.debug("session {} --{}--> {}", record.state.value, event.value, new_state.value)
        record.state = new_state
        if error is not None:
            record.error = error
            self._message = error
        for effect in effects:
            await self._run_effect(record, effect)
        self._notify()

    async def _run_effect(self, record: SessionRecord, effect: Effect) -> None:
        arrangement = record.arrangement
        transport = record.transport
        live_transport = transport if transport is not None and not transport.disposed else None

        if effect is Effect.START_PATTERNS:
            assert arrangement is not None
            transport = self._transport_factory(arrangement.tempo_bpm)
            record.transport = transport
            router = VoiceRouter(self._provider, self._visual)
            rng = random.Random(arrangement.seed)
            record.active_pattern_handles = self._controller.start(arrangement, transport, router, rng)
            record.warnings.extend(str(failure) for failure in self._controller.failures)
            if not record.active_pattern_handles:
                raise ResourceUnavailable("no instrument voice could be scheduled")
        elif effect is Effect.START_TRANSPORT:
            assert transport is not None
            transport.start()
            if record.driver is None:
                record.driver = asyncio.create_task(transport.run())
                record.driver.add_done_callback(self._on_driver_done)
        elif effect is Effect.START_CAPTURE:
            capture = self._capture_factory()
            capture.start()
            record.capture_handle = capture
            record.capture_sample_rate = capture.sample_rate
            self._artifact = None
        elif effect is Effect.ARM_AUTO_STOP:
            assert arrangement is not None
            self._controller.arm_auto_stop(
                arrangement,
                lambda: self._spawn(self._on_duration_elapsed(record)),
            )
        elif effect is Effect.RECORD_PAUSE_POSITION:
            if live_transport is not None:
                record.transport_position_at_pause = live_transport.now_musical_position()
                record.paused_at_seconds = live_transport.now_seconds()
        elif effect is Effect.PAUSE_TRANSPORT:
            if live_transport is not None:
                live_transport.pause()
        elif effect is Effect.DISARM_AUTO_STOP:
            self._controller.disarm_auto_stop()
        elif effect is Effect.CANCEL_PATTERNS:
            self._controller.stop(record.active_pattern_handles)
            record.active_pattern_handles = set()
        elif effect is Effect.CANCEL_TRANSPORT:
            if live_transport is not None:
                live_transport.cancel_all()
        elif effect is Effect.STOP_CAPTURE:
            await self._stop_capture(record, live_transport)
        elif effect is Effect.DISPOSE_TRANSPORT:
            await self._dispose_transport(record)
        elif effect is Effect.FINALIZE_ARTIFACT:
            if arrangement is not None and record.captured_signal is not None:
                self._artifact = self._exporter.finalize(
                    record.captured_signal,
                    arrangement.duration_seconds,
                    sample_rate=record.capture_sample_rate,
                    scale_id=arrangement.scale.id,
                    mode_label=arrangement.mode_label,
                )
        elif effect is Effect.REPORT_ERROR:
            self._report_error(record.error or "unexpected session error")

    async def _stop_capture(self, record: SessionRecord, transport: Optional[Transport]) -> None:
        capture = record.capture_handle
        if capture is None:
            return
        record.capture_handle = None
        end_seconds = transport.now_seconds() if transport is not None else 0.0
        try:
            record.captured_signal = await stop_capture(
                capture,
                end_seconds,
                timeout=self._settings.capture_stop_timeout_seconds,
            )
        except CaptureTimeout as exc:
            logger.warning("capture stop timed out: {}", exc)
            record.warnings.append(str(exc))
            record.captured_signal = None
        except Exception:  # noqa: BLE001
            logger.exception("capture stop failed")
            record.captured_signal = None

    async def _dispose_transport(self, record: SessionRecord) -> None:
        driver = record.driver
        record.driver = None
        if driver is not None and not driver.done():
            driver.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await driver
        if record.transport is not None:
            record.transport.dispose()

    def _on_driver_done(self, task: asyncio.Task[None]) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.opt(exception=exc).error("transport driver crashed")
            self._spawn(self.fail("Playback stopped unexpectedly."))

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> None:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    def _report_error(self, message: str) -> None:
        logger.error("session error: {}", message)
        for listener in list(self._error_listeners):
            try:
                listener(message)
            except Exception:  # noqa: BLE001
                logger.exception("error listener failed")

    def _notify(self) -> SessionStatus:
        status = self.status()
        for listener in list(self._state_listeners):
            try:
                listener(status)
            except Exception:  # noqa: BLE001
                logger.exception("state listener failed")
        return status

    def _artifact_summary(self) -> Optional[ArtifactSummary]:
        artifact = self._artifact
        if artifact is None:
            return None
        return ArtifactSummary(
            scale_id=artifact.scale_id,
            mode_label=artifact.mode_label,
            duration_seconds=artifact.duration_seconds,
            loop_start_seconds=artifact.loop_start_seconds,
            loop_end_seconds=artifact.loop_end_seconds,
            created_at=artifact.created_at,
            exported_path=str(self._last_export) if self._last_export else None,
        )
