from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

DEFAULT_VOLUME = 0.7


class InstrumentId(str, Enum):
    OUD = "oud"
    NEY = "ney"
    QANUN = "qanun"
    DAF = "daf"
    AMBIENT = "ambient"
    NATURE = "nature"


class InstrumentMode(str, Enum):
    SYNTHESIZED = "synthesized"
    SAMPLED = "sampled"


class SessionState(str, Enum):
    IDLE = "idle"
    GENERATING = "generating"
    PLAYING = "playing"
    PAUSED = "paused"
    STOPPED = "stopped"


class InstrumentSelection(BaseModel):
    instrument_id: str = Field(..., min_length=1, max_length=32)
    enabled: bool = True
    volume: float = Field(default=DEFAULT_VOLUME, ge=0.0, le=1.0)


class SessionStartRequest(BaseModel):
    scale_id: str = Field(default="rast", min_length=1, max_length=32)
    tempo_bpm: float = Field(default=80.0, gt=0.0, le=300.0)
    duration_seconds: float = Field(default=60.0, gt=0.0, le=3600.0)
    selections: dict[str, InstrumentSelection] = Field(default_factory=dict)
    seed: Optional[int] = Field(default=None, ge=0)
    mode: InstrumentMode = Field(default=InstrumentMode.SYNTHESIZED)

    @classmethod
    def with_instruments(
        cls,
        instruments: dict[str, float | None],
        default_volume: float = DEFAULT_VOLUME,
        **kwargs: object,
    ) -> "SessionStartRequest":
        """Build a request from ``{instrument_id: volume or None}``.

        ``None`` volumes take ``default_volume``.
        """

        selections = {
            name: InstrumentSelection(
                instrument_id=name,
                volume=default_volume if volume is None else volume,
            )
            for name, volume in instruments.items()
        }
        return cls(selections=selections, **kwargs)  # type: ignore[arg-type]


class PresetDescriptor(BaseModel):
    name: str
    scale_id: str
    tempo_bpm: float
    duration_seconds: float
    selections: dict[str, InstrumentSelection]

    def to_request(self, *, seed: Optional[int] = None) -> SessionStartRequest:
        return SessionStartRequest(
            scale_id=self.scale_id,
            tempo_bpm=self.tempo_bpm,
            duration_seconds=self.duration_seconds,
            selections={name: sel.model_copy() for name, sel in self.selections.items()},
            seed=seed,
        )


def _utc_now() -> datetime:
    return datetime.now(tz=UTC)


class ArtifactSummary(BaseModel):
    scale_id: str
    mode_label: str
    duration_seconds: float
    loop_start_seconds: float
    loop_end_seconds: float
    created_at: datetime
    exported_path: Optional[str] = None


class SessionStatus(BaseModel):
    state: SessionState
    message: Optional[str] = None
    scale_id: Optional[str] = None
    tempo_bpm: Optional[float] = None
    duration_seconds: Optional[float] = None
    measure_count: Optional[int] = None
    active_instruments: list[str] = Field(default_factory=list)
    position_seconds: Optional[float] = None
    paused_at_seconds: Optional[float] = None
    warnings: list[str] = Field(default_factory=list)
    artifact: Optional[ArtifactSummary] = None
    updated_at: datetime = Field(default_factory=_utc_now)


class ExportRequest(BaseModel):
    mode_label: Optional[str] = Field(default=None, max_length=32)


class ExportResponse(BaseModel):
    path: str
    filename: str
    artifact: ArtifactSummary
