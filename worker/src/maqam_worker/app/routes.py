from __future__ import annotations

from typing import Optional, cast

from fastapi import APIRouter, HTTPException, Request

from ..services.exceptions import ArtifactUnavailable, InvalidTransition, ResourceUnavailable
from ..services.presets import PRESETS, get_preset
from ..services.scales import ScaleCatalog
from ..services.voices import loaded_voices
from .models import (
    ExportRequest,
    ExportResponse,
    PresetDescriptor,
    SessionStartRequest,
    SessionStatus,
)
from .sessions import PlaybackSession
from .settings import Settings

router = APIRouter()


def get_session(request: Request) -> PlaybackSession:
    return cast(PlaybackSession, request.app.state.session)


@router.get("/health")
async def health(request: Request) -> dict[str, object]:
    settings = cast(Settings, request.app.state.settings)
    session = get_session(request)
    provider = request.app.state.voice_provider
    instruments = session.controller.known_instruments()
    return {
        "status": "ok",
        "artifact_root": str(settings.artifact_root),
        "sample_rate": settings.sample_rate,
        "session_state": session.state.value,
        "instruments": instruments,
        "loaded_voices": loaded_voices(provider, instruments),
    }


@router.get("/scales")
async def scales(request: Request) -> list[dict[str, object]]:
    catalog = cast(ScaleCatalog, request.app.state.catalog)
    return [scale.as_dict() for scale in catalog.all()]


@router.get("/presets", response_model=list[PresetDescriptor])
async def presets() -> list[PresetDescriptor]:
    return list(PRESETS.values())


@router.get("/session", response_model=SessionStatus)
async def session_status(request: Request) -> SessionStatus:
    return get_session(request).status()


@router.post("/session/start", response_model=SessionStatus)
async def start_session(
    payload: SessionStartRequest,
    request: Request,
    preset: Optional[str] = None,
) -> SessionStatus:
    if preset is not None:
        descriptor = get_preset(preset)
        if descriptor is None:
            raise HTTPException(status_code=404, detail=f"preset {preset} not found")
        payload = descriptor.to_request(seed=payload.seed).model_copy(update={"mode": payload.mode})
    try:
        return await get_session(request).request_start(payload)
    except ResourceUnavailable as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc


@router.post("/session/pause", response_model=SessionStatus)
async def pause_session(request: Request) -> SessionStatus:
    try:
        return await get_session(request).pause()
    except InvalidTransition as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc


@router.post("/session/resume", response_model=SessionStatus)
async def resume_session(request: Request) -> SessionStatus:
    try:
        return await get_session(request).resume()
    except InvalidTransition as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc


@router.post("/session/stop", response_model=SessionStatus)
async def stop_session(request: Request) -> SessionStatus:
    return await get_session(request).stop()


@router.post("/session/export", response_model=ExportResponse)
async def export_session(payload: ExportRequest, request: Request) -> ExportResponse:
    session = get_session(request)
    try:
        path = await session.export(payload.mode_label)
    except ArtifactUnavailable as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    status = session.status()
    if status.artifact is None:
        raise HTTPException(status_code=404, detail="artifact not available")
    return ExportResponse(path=str(path), filename=path.name, artifact=status.artifact)
