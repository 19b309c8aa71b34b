from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any

import httpx
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, ConfigDict, Field

from .scheduler import PLACEHOLDER_SRC, TILES_CACHE_KEY, TileLoader, build_scheduler
from .settings import AppSettings, TilesConfig, load_settings
from .storage.cache import get_cache_entry, get_cache_payload
from .storage.db import initialize_database

PLACEHOLDER_SVG = (
    '<svg xmlns="http://www.w3.org/2000/svg" width="320" height="240" viewBox="0 0 320 240">'
    '<rect width="320" height="240" fill="#111"/>'
    '<circle cx="160" cy="104" r="28" fill="none" stroke="#444" stroke-width="6"/>'
    '<path d="M60 200 L130 140 L170 176 L210 130 L260 200 Z" fill="#333"/>'
    "</svg>"
)


class RegisterRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    config: TilesConfig = Field(default_factory=TilesConfig)


def _get_settings(request: Request) -> AppSettings:
    return request.app.state.settings


def _get_loader(request: Request) -> TileLoader:
    return request.app.state.loader


def _tiles_payload(settings: AppSettings) -> dict[str, Any]:
    # Tiles stay on screen past their TTL until the next cycle replaces them.
    payload = get_cache_payload(settings.db_path, TILES_CACHE_KEY, allow_stale=True)
    if not isinstance(payload, dict):
        return {"images": []}
    images = payload.get("images")
    return {"images": images if isinstance(images, list) else []}


def create_app(
    settings: AppSettings | None = None,
    *,
    transport: httpx.BaseTransport | None = None,
    proxy_transport: httpx.AsyncBaseTransport | None = None,
    start_scheduler: bool = True,
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(application: FastAPI):
        app_settings = settings or load_settings()
        initialize_database(app_settings.db_path)
        loader = TileLoader(
            app_settings,
            application=application,
            transport=transport,
            proxy_transport=proxy_transport,
        )
        application.state.settings = app_settings
        application.state.loader = loader
        application.state.started_at_utc = datetime.now(timezone.utc)

        loader.register(app_settings.tiles)
        scheduler = build_scheduler(app_settings, loader)
        if start_scheduler:
            scheduler.start()
        application.state.scheduler = scheduler

        try:
            yield
        finally:
            if scheduler.running:
                scheduler.shutdown(wait=False)
            loader.close()

    application = FastAPI(title="Immich Tile Slideshow", version="0.1.0", lifespan=lifespan)

    @application.get("/health", response_class=JSONResponse)
    async def health(request: Request) -> JSONResponse:
        app_settings = _get_settings(request)
        loader = _get_loader(request)
        entry = get_cache_entry(app_settings.db_path, TILES_CACHE_KEY)
        summary = None
        if entry is not None and isinstance(entry.payload, dict):
            summary = {key: value for key, value in entry.payload.items() if key != "images"}

        return JSONResponse(
            {
                "status": "ok",
                "service": "immich-tiles",
                "environment": app_settings.env.tiles_env,
                "timezone": app_settings.env.tiles_timezone,
                "scheduler_running": request.app.state.scheduler.running,
                "generation": loader.generation,
                "tiles_refresh": summary,
                "tiles_stale": entry.is_stale() if entry is not None else None,
                "timestamp_utc": datetime.now(timezone.utc).isoformat(),
            }
        )

    @application.get("/api/tiles", response_class=JSONResponse)
    async def tiles(request: Request) -> JSONResponse:
        return JSONResponse(_tiles_payload(_get_settings(request)))

    @application.post("/api/tiles/register", response_class=JSONResponse)
    def register(request: Request, body: RegisterRequest) -> JSONResponse:
        loader = _get_loader(request)
        loader.register(body.config)
        return JSONResponse(_tiles_payload(_get_settings(request)))

    @application.get(PLACEHOLDER_SRC)
    async def placeholder() -> Response:
        return Response(content=PLACEHOLDER_SVG, media_type="image/svg+xml")

    return application


app = create_app()
