from __future__ import annotations

from typing import Optional

from fastapi import FastAPI
from loguru import logger

from ..services.arrangement import ArrangementController
from ..services.scales import DEFAULT_CATALOG, ScaleCatalog
from ..services.synth import SynthVoiceBank
from .routes import router
from .sessions import PlaybackSession
from .settings import Settings, get_settings


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """Create and configure FastAPI instance."""
    settings = settings or get_settings()
    catalog = ScaleCatalog(DEFAULT_CATALOG.all(), default_id=settings.default_scale_id)
    voices = SynthVoiceBank(settings.sample_rate)
    controller = ArrangementController(
        catalog, auto_stop_guard_seconds=settings.auto_stop_guard_seconds
    )
    session = PlaybackSession(settings, voices, controller=controller)
    app = FastAPI(title="Maqam Worker", version="0.1.0")
    app.state.settings = settings
    app.state.catalog = catalog
    app.state.voice_provider = voices
    app.state.session = session

    async def _startup() -> None:
        settings.ensure_directories()
        logger.info(
            "Maqam worker ready: {} scale(s), voices {}",
            len(catalog.scales),
            sorted(voices.loaded_instruments()),
        )

    async def _shutdown() -> None:
        try:
            await session.close()
        except Exception:  # noqa: BLE001
            logger.exception("Session shutdown failed")

    app.add_event_handler("startup", _startup)
    app.add_event_handler("shutdown", _shutdown)
    app.include_router(router)
    return app


app = create_app()
