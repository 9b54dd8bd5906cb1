from __future__ import annotations

import asyncio
from pathlib import Path

import numpy as np
import pytest

from maqam_worker.app.models import SessionStartRequest, SessionState, SessionStatus
from maqam_worker.app.sessions import PlaybackSession
from maqam_worker.app.settings import Settings
from maqam_worker.services.arrangement import ArrangementController
from maqam_worker.services.exceptions import (
    ArtifactUnavailable,
    InvalidTransition,
    ResourceUnavailable,
)
from maqam_worker.services.patterns import PATTERN_SCHEDULERS, PatternContext, PatternHandle
from maqam_worker.services.synth import SynthVoiceBank
from maqam_worker.services.transport import ManualClock, Transport


def _settings(tmp_path: Path, **overrides: object) -> Settings:
    values: dict[str, object] = {
        "artifact_root": tmp_path / "exports",
        "config_dir": tmp_path / "config",
        "sample_rate": 8_000,
        "transport_tick_seconds": 0.005,
    }
    values.update(overrides)
    return Settings(**values)


def _manual_transports(clock: ManualClock, created: list[Transport]):
    def _factory(tempo_bpm: float) -> Transport:
        transport = Transport(tempo_bpm, clock=clock, tick_seconds=0.005)
        created.append(transport)
        return transport

    return _factory


def _request(*instruments: str, **kwargs: object) -> SessionStartRequest:
    return SessionStartRequest.with_instruments({name: None for name in instruments}, **kwargs)


class _StuckCapture:
    sample_rate = 8_000

    def start(self) -> None:
        return None

    async def stop(self, end_seconds: float) -> np.ndarray:
        await asyncio.sleep(10)
        return np.zeros(0, dtype=np.float32)


@pytest.mark.asyncio
async def test_start_then_stop_produces_loopable_artifact(tmp_path: Path) -> None:
    clock = ManualClock()
    transports: list[Transport] = []
    session = PlaybackSession(
        _settings(tmp_path),
        SynthVoiceBank(8_000, seed=1),
        transport_factory=_manual_transports(clock, transports),
    )
    status = await session.request_start(
        _request("oud", "ambient", scale_id="hijaz", tempo_bpm=120, duration_seconds=4, seed=3)
    )
    assert status.state is SessionState.PLAYING
    assert status.measure_count == 2
    assert status.active_instruments == ["ambient", "oud"]
    assert status.message == "Playing 4 seconds of synthesized music in hijaz scale..."

    transport = transports[-1]
    for _ in range(400):
        clock.advance(0.01)
        transport.pump()

    stopped = await session.stop()
    assert stopped.state is SessionState.IDLE
    assert stopped.active_instruments == []
    assert transport.disposed
    artifact = session.artifact
    assert artifact is not None
    assert artifact.loop_end_seconds == pytest.approx(3.5)
    assert artifact.scale_id == "hijaz"
    assert artifact.raw_signal.shape[0] == 4 * 8_000
    assert np.any(artifact.raw_signal)

    again = await session.stop()
    assert again.state is SessionState.IDLE
    assert session.artifact is artifact


@pytest.mark.asyncio
async def test_new_start_replaces_previous_session(tmp_path: Path) -> None:
    clock = ManualClock()
    transports: list[Transport] = []
    session = PlaybackSession(
        _settings(tmp_path),
        SynthVoiceBank(8_000),
        transport_factory=_manual_transports(clock, transports),
    )
    await session.request_start(_request("oud", "daf", duration_seconds=30))
    first_handles = session.active_pattern_handles
    first_transport = transports[-1]

    await session.request_start(_request("ney", duration_seconds=30))

    assert session.state is SessionState.PLAYING
    assert all(handle.cancelled for handle in first_handles)
    assert first_transport.disposed
    assert first_transport.pending() == 0
    assert {handle.voice_id for handle in session.active_pattern_handles} == {"ney"}
    assert session.transport is not first_transport
    await session.stop()


@pytest.mark.asyncio
async def test_start_without_loaded_voices_is_rejected(tmp_path: Path) -> None:
    errors: list[str] = []
    session = PlaybackSession(_settings(tmp_path), SynthVoiceBank(8_000, loaded=[]))
    session.add_error_listener(errors.append)
    with pytest.raises(ResourceUnavailable):
        await session.request_start(_request("oud", "ney"))
    assert session.state is SessionState.IDLE
    assert session.transport is None
    assert errors and "No instrument voices" in errors[0]


@pytest.mark.asyncio
async def test_missing_voices_are_skipped_with_warning(tmp_path: Path) -> None:
    session = PlaybackSession(
        _settings(tmp_path),
        SynthVoiceBank(8_000, loaded=["oud"]),
        transport_factory=_manual_transports(ManualClock(), []),
    )
    status = await session.request_start(_request("oud", "ney", "qanun"))
    assert status.active_instruments == ["oud"]
    assert any("ney" in warning and "qanun" in warning for warning in status.warnings)
    await session.stop()


@pytest.mark.asyncio
async def test_all_schedulers_failing_tears_down(tmp_path: Path) -> None:
    def _broken(_ctx: PatternContext) -> PatternHandle:
        raise RuntimeError("no samples")

    controller = ArrangementController(schedulers={name: _broken for name in PATTERN_SCHEDULERS})
    errors: list[str] = []
    transports: list[Transport] = []
    session = PlaybackSession(
        _settings(tmp_path),
        SynthVoiceBank(8_000),
        controller=controller,
        transport_factory=_manual_transports(ManualClock(), transports),
    )
    session.add_error_listener(errors.append)
    with pytest.raises(ResourceUnavailable):
        await session.request_start(_request("oud", "ney"))
    assert session.state is SessionState.IDLE
    assert transports and transports[-1].disposed
    assert errors
    assert session.artifact is None


@pytest.mark.asyncio
async def test_pause_and_resume(tmp_path: Path) -> None:
    clock = ManualClock()
    transports: list[Transport] = []
    session = PlaybackSession(
        _settings(tmp_path),
        SynthVoiceBank(8_000),
        transport_factory=_manual_transports(clock, transports),
    )
    with pytest.raises(InvalidTransition):
        await session.pause()

    await session.request_start(_request("daf", tempo_bpm=120, duration_seconds=30))
    transport = transports[-1]
    clock.advance(2.25)
    paused = await session.pause()
    assert paused.state is SessionState.PAUSED
    assert paused.paused_at_seconds == pytest.approx(2.25)
    assert paused.message == "Music paused."
    assert not transport.running
    assert session.record.transport_position_at_pause is not None
    assert session.record.transport_position_at_pause.measures == 1

    clock.advance(60.0)
    assert transport.now_seconds() == pytest.approx(2.25)
    again = await session.pause()
    assert again.state is SessionState.PAUSED

    resumed = await session.resume()
    assert resumed.state is SessionState.PLAYING
    assert resumed.message == "Music resumed."
    assert transport.running
    clock.advance(0.75)
    assert transport.now_seconds() == pytest.approx(3.0)
    await session.stop()
    with pytest.raises(InvalidTransition):
        await session.resume()


@pytest.mark.asyncio
async def test_stuck_capture_still_reaches_idle(tmp_path: Path) -> None:
    session = PlaybackSession(
        _settings(tmp_path, capture_stop_timeout_seconds=0.05),
        SynthVoiceBank(8_000),
        capture_factory=_StuckCapture,
        transport_factory=_manual_transports(ManualClock(), []),
    )
    await session.request_start(_request("oud"))
    status = await asyncio.wait_for(session.stop(), timeout=2.0)
    assert status.state is SessionState.IDLE
    assert any("capture" in warning for warning in status.warnings)
    assert session.artifact is None
    with pytest.raises(ArtifactUnavailable):
        await session.export()


@pytest.mark.asyncio
async def test_duration_elapsed_stops_session(tmp_path: Path) -> None:
    statuses: list[SessionStatus] = []
    session = PlaybackSession(
        _settings(tmp_path, auto_stop_guard_seconds=0.05),
        SynthVoiceBank(8_000),
    )
    session.add_state_listener(statuses.append)
    await session.request_start(_request("daf", "qanun", tempo_bpm=240, duration_seconds=0.2))
    for _ in range(100):
        await asyncio.sleep(0.02)
        if session.state is SessionState.IDLE:
            break
    assert session.state is SessionState.IDLE
    assert session.artifact is not None
    assert session.artifact.loop_end_seconds == 0.0
    assert session.status().message is not None
    assert session.status().message.startswith("Music generation complete")
    assert SessionState.STOPPED in {status.state for status in statuses}


@pytest.mark.asyncio
async def test_export_writes_named_file(tmp_path: Path) -> None:
    clock = ManualClock()
    transports: list[Transport] = []
    session = PlaybackSession(
        _settings(tmp_path),
        SynthVoiceBank(8_000, seed=4),
        transport_factory=_manual_transports(clock, transports),
    )
    with pytest.raises(ArtifactUnavailable):
        await session.export()
    await session.request_start(_request("ney", "nature", scale_id="saba", duration_seconds=3))
    clock.advance(3.0)
    transports[-1].pump()
    await session.stop()
    path = await session.export("sampled")
    assert path.exists()
    assert path.parent == tmp_path / "exports"
    assert path.name.startswith("maqam_ambience_saba_sampled_")
    assert session.status().artifact is not None
    assert session.status().artifact.exported_path == str(path)


@pytest.mark.asyncio
async def test_fail_tears_down_and_reports(tmp_path: Path) -> None:
    errors: list[str] = []
    transports: list[Transport] = []
    session = PlaybackSession(
        _settings(tmp_path),
        SynthVoiceBank(8_000),
        transport_factory=_manual_transports(ManualClock(), transports),
    )
    session.add_error_listener(errors.append)
    await session.request_start(_request("oud", "daf"))
    handles = session.active_pattern_handles
    status = await session.fail("audio device lost")
    assert status.state is SessionState.IDLE
    assert status.message == "audio device lost"
    assert errors == ["audio device lost"]
    assert all(handle.cancelled for handle in handles)
    assert transports[-1].disposed
    assert session.artifact is None


@pytest.mark.asyncio
async def test_unknown_scale_falls_back_to_configured_default(tmp_path: Path) -> None:
    session = PlaybackSession(
        _settings(tmp_path, default_scale_id="hijaz"),
        SynthVoiceBank(8_000),
        transport_factory=_manual_transports(ManualClock(), []),
    )
    status = await session.request_start(_request("oud", scale_id="no-such"))
    assert status.scale_id == "hijaz"
    assert session.controller.catalog.default.id == "hijaz"
    await session.stop()


class _RecordingVisual:
    def __init__(self) -> None:
        self.seen: list[tuple[str, float, str]] = []

    def notify(self, event_kind: str, at_time: float, instrument_id: str) -> None:
        self.seen.append((event_kind, at_time, instrument_id))


@pytest.mark.asyncio
async def test_hijaz_ney_session_plays_and_stops_itself(tmp_path: Path) -> None:
    guard = 0.05
    loop = asyncio.get_running_loop()
    chosen = None
    for seed in range(16):
        clock = ManualClock()
        transports: list[Transport] = []
        visual = _RecordingVisual()
        session = PlaybackSession(
            _settings(tmp_path, auto_stop_guard_seconds=guard),
            SynthVoiceBank(8_000),
            transport_factory=_manual_transports(clock, transports),
            visual=visual,
        )
        seen_states: list[tuple[float, SessionState]] = []
        session.add_state_listener(
            lambda status, seen=seen_states: seen.append((loop.time(), status.state))
        )
        started_at = loop.time()
        status = await session.request_start(
            _request("ney", scale_id="hijaz", tempo_bpm=60, duration_seconds=8, seed=seed)
        )
        assert status.scale_id == "hijaz"
        assert status.measure_count == 2
        handles = session.active_pattern_handles
        assert len(handles) == 1
        assert next(iter(handles)).voice_id == "ney"

        transport = transports[-1]
        while clock.now < 8.0:
            clock.advance(0.05)
            transport.pump()
        if visual.seen:
            chosen = (session, visual, seen_states, started_at)
            break
        await session.stop()
    assert chosen is not None
    session, visual, seen_states, started_at = chosen

    assert {instrument for _, _, instrument in visual.seen} == {"ney"}
    assert min(at_time for _, at_time, _ in visual.seen) >= 4.0
    assert max(at_time for _, at_time, _ in visual.seen) < 8.0
    hijaz = set(session.controller.catalog.lookup("hijaz").pitch_sequence)
    assert {label for label, _, _ in visual.seen} <= hijaz

    for _ in range(600):
        if session.state is SessionState.IDLE:
            break
        await asyncio.sleep(0.02)
    assert session.state is SessionState.IDLE
    stopped_at = [when for when, state in seen_states if state is SessionState.STOPPED]
    assert stopped_at
    # call_later may run up to one clock tick early
    assert stopped_at[0] - started_at >= 8.0 + guard - 1e-3
    assert session.status().message.startswith("Music generation complete")
    assert session.artifact is not None
    assert session.artifact.loop_end_seconds == pytest.approx(7.5)
