"""
CLI entry point to render one arrangement offline and export it.

Example:
    uv run --project worker python -m maqam_worker.generate --scale hijaz --tempo 60 --duration 8 --instruments ney
"""

from __future__ import annotations

import argparse
import asyncio
from pathlib import Path
from typing import Optional, Sequence

from .app.models import InstrumentMode, SessionStartRequest
from .app.sessions import PlaybackSession
from .app.settings import Settings
from .services.presets import PRESETS, get_preset
from .services.synth import SynthVoiceBank
from .services.transport import ManualClock, Transport


def _parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Render a maqam arrangement to an audio file.")
    parser.add_argument("--scale", default=None, help="Scale id (rast, hijaz, saba, nahawand, bayati).")
    parser.add_argument("--tempo", type=float, default=None, help="Tempo in BPM.")
    parser.add_argument("--duration", type=float, default=None, help="Duration in seconds.")
    parser.add_argument(
        "--instruments",
        default=None,
        help="Comma separated voices, optionally with volume (e.g. 'oud,ney=0.5').",
    )
    parser.add_argument("--seed", type=int, default=None, help="Seed for reproducible patterns.")
    parser.add_argument(
        "--mode",
        choices=[mode.value for mode in InstrumentMode],
        default=InstrumentMode.SYNTHESIZED.value,
        help="Instrument mode label used in the export file name.",
    )
    parser.add_argument(
        "--preset",
        choices=sorted(PRESETS),
        default=None,
        help="Start from a named preset; explicit flags override it.",
    )
    parser.add_argument(
        "--artifact-dir",
        type=Path,
        default=None,
        help="Override artifact directory (defaults to worker settings).",
    )
    return parser.parse_args(argv)


def _parse_instruments(value: str) -> dict[str, Optional[float]]:
    instruments: dict[str, Optional[float]] = {}
    for chunk in value.split(","):
        token = chunk.strip()
        if not token:
            continue
        name, _, volume = token.partition("=")
        instruments[name.strip().lower()] = float(volume) if volume else None
    return instruments


def build_request(
    settings: Settings,
    *,
    scale: Optional[str] = None,
    tempo: Optional[float] = None,
    duration: Optional[float] = None,
    instruments: Optional[str] = None,
    seed: Optional[int] = None,
    mode: str = InstrumentMode.SYNTHESIZED.value,
    preset: Optional[str] = None,
) -> SessionStartRequest:
    if preset is not None:
        descriptor = get_preset(preset)
        if descriptor is None:
            raise ValueError(f"unknown preset {preset!r}")
        base = descriptor.to_request(seed=seed)
    else:
        base = SessionStartRequest.with_instruments(
            {"oud": None, "ney": None, "ambient": None},
            default_volume=settings.default_volume,
            scale_id=settings.default_scale_id,
            tempo_bpm=settings.default_tempo_bpm,
            duration_seconds=settings.default_duration_seconds,
            seed=seed,
        )
    updates: dict[str, object] = {"mode": InstrumentMode(mode)}
    if scale is not None:
        updates["scale_id"] = scale
    if tempo is not None:
        updates["tempo_bpm"] = tempo
    if duration is not None:
        updates["duration_seconds"] = duration
    payload = base.model_dump()
    payload.update(updates)
    if instruments is not None:
        return SessionStartRequest.with_instruments(
            _parse_instruments(instruments),
            default_volume=settings.default_volume,
            **{key: value for key, value in payload.items() if key != "selections"},
        )
    return SessionStartRequest.model_validate(payload)


async def render(settings: Settings, request: SessionStartRequest) -> tuple[PlaybackSession, Path]:
    """Play ``request`` on a manual clock as fast as possible, then export it."""

    clock = ManualClock()
    transports: list[Transport] = []

    def _transport(tempo_bpm: float) -> Transport:
        transport = Transport(tempo_bpm, clock=clock, tick_seconds=settings.transport_tick_seconds)
        transports.append(transport)
        return transport

    bank = SynthVoiceBank(settings.sample_rate, seed=request.seed)
    session = PlaybackSession(settings, bank, transport_factory=_transport)
    await session.request_start(request)
    transport = transports[-1]
    step = settings.transport_tick_seconds
    while clock.now < request.duration_seconds:
        clock.advance(min(step, request.duration_seconds - clock.now))
        transport.pump()
    await session.stop()
    path = await session.export()
    return session, path


async def _run(args: argparse.Namespace) -> None:
    settings_kwargs: dict[str, object] = {}
    if args.artifact_dir is not None:
        settings_kwargs["artifact_root"] = args.artifact_dir
    settings = Settings(**settings_kwargs)
    settings.ensure_directories()

    request = build_request(
        settings,
        scale=args.scale,
        tempo=args.tempo,
        duration=args.duration,
        instruments=args.instruments,
        seed=args.seed,
        mode=args.mode,
        preset=args.preset,
    )
    session, path = await render(settings, request)
    artifact = session.artifact
    assert artifact is not None

    print(f"artifact_path : {path}")
    print(f"scale         : {artifact.scale_id}")
    print(f"mode          : {artifact.mode_label}")
    print(f"duration      : {artifact.duration_seconds:g}s")
    print(f"loop_end      : {artifact.loop_end_seconds:g}s")
    print(f"sample_rate   : {artifact.sample_rate}")
    warnings = session.status().warnings
    if warnings:
        print(f"warnings      : {'; '.join(warnings)}")


def main(argv: Optional[Sequence[str]] = None) -> None:
    args = _parse_args(argv)
    asyncio.run(_run(args))


if __name__ == "__main__":
    main()
