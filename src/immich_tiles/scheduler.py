from __future__ import annotations

import logging
import random
import threading
from datetime import datetime, timezone
from typing import Any

import httpx
from apscheduler.schedulers.background import BackgroundScheduler
from fastapi import FastAPI

from .adapters.immich import (
    FetchResult,
    FilterSettings,
    ImmichSession,
    NegotiationError,
    build_tiles,
)
from .domain.models import TileMedia
from .settings import AppSettings, ImmichRemoteConfig, TilesConfig
from .storage.cache import prune_expired_entries, set_cache_entry

LOGGER = logging.getLogger(__name__)

TILES_CACHE_KEY = "tiles.images"
PLACEHOLDER_SRC = "/placeholder.svg"


def placeholder_tiles(config: TilesConfig) -> list[TileMedia]:
    return [
        TileMedia(kind="image", src=PLACEHOLDER_SRC, title=f"Tile {index + 1}")
        for index in range(config.placeholder_count)
    ]


def filter_settings_for(config: TilesConfig) -> FilterSettings:
    return FilterSettings(
        image_extensions=config.image_extensions,
        video_extensions=config.video_extensions,
        enable_videos=config.enable_videos,
    )


class TileLoader:
    """Runs load cycles: negotiate, fetch one mode, build tiles, store the result.

    Every cycle gets a generation number. A cycle that finishes after a newer
    registration has been stored is discarded by the cache write.
    """

    def __init__(
        self,
        settings: AppSettings,
        *,
        application: FastAPI | None = None,
        transport: httpx.BaseTransport | None = None,
        proxy_transport: httpx.AsyncBaseTransport | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self._settings = settings
        self._config = settings.tiles
        self._application = application
        self._transport = transport
        self._proxy_transport = proxy_transport
        self._rng = rng
        self._sessions: dict[int, ImmichSession] = {}
        self._generation = 0
        self._lock = threading.Lock()

    @property
    def config(self) -> TilesConfig:
        return self._config

    @property
    def generation(self) -> int:
        return self._generation

    def session(self, index: int) -> ImmichSession | None:
        return self._sessions.get(index)

    def close(self) -> None:
        for session in self._sessions.values():
            session.close()

    def _next_generation(self, config: TilesConfig | None = None) -> tuple[TilesConfig, int]:
        with self._lock:
            if config is not None:
                self._config = config
            self._generation += 1
            return self._config, self._generation

    def register(self, config: TilesConfig) -> list[TileMedia]:
        remote = config.active_remote
        LOGGER.info("Register received")
        self._log(
            config,
            "Incoming config %s",
            {
                "mode": remote.mode if remote else None,
                "url": remote.url if remote else None,
                "hasApiKey": bool(remote and remote.api_key),
                "timeout": remote.timeout if remote else None,
                "albumName": remote.album_name if remote else None,
                "albumId": remote.album_id if remote else None,
                "querySize": remote.query_size if remote else None,
            },
        )
        active_config, generation = self._next_generation(config)
        return self._run_cycle(active_config, generation, force=True)

    def refresh(self) -> list[TileMedia]:
        active_config, generation = self._next_generation()
        return self._run_cycle(active_config, generation, force=False)

    def _log(self, config: TilesConfig, message: str, *args: Any) -> None:
        if config.debug:
            LOGGER.info("[debug] " + message, *args)
        else:
            LOGGER.debug(message, *args)

    def _session_for(self, config: TilesConfig, remote: ImmichRemoteConfig) -> ImmichSession:
        index = config.active_immich_config_index
        if index >= len(config.immich_configs):
            index = 0
        with self._lock:
            session = self._sessions.get(index)
            if session is None:
                session = ImmichSession(
                    remote,
                    debug=config.debug,
                    timezone_value=self._settings.timezone,
                    transport=self._transport,
                    proxy_transport=self._proxy_transport,
                )
                self._sessions[index] = session
                return session
            session.debug = config.debug
            if session.config != remote:
                # drops the negotiated client
                session.update_config(remote)
            return session

    def _run_cycle(self, config: TilesConfig, generation: int, *, force: bool) -> list[TileMedia]:
        remote = config.active_remote
        source = "immich"
        if remote is None:
            LOGGER.info("No Immich config present, sending placeholders")
            tiles = placeholder_tiles(config)
            source = "placeholder"
        else:
            try:
                tiles = self._load_from_immich(config, remote, force=force)
            except NegotiationError as exc:
                LOGGER.error("Immich load failed: %s", exc)
                tiles = placeholder_tiles(config)
                source = "placeholder"
            except Exception:  # pragma: no cover - defensive fallback
                LOGGER.exception("Immich load failed")
                tiles = placeholder_tiles(config)
                source = "placeholder"

        self._deliver(tiles, config=config, generation=generation, source=source)
        return tiles

    def _load_from_immich(
        self,
        config: TilesConfig,
        remote: ImmichRemoteConfig,
        *,
        force: bool,
    ) -> list[TileMedia]:
        session = self._session_for(config, remote)
        level = session.negotiate(self._application, force=force)
        self._log(config, "API level resolved %s", level.name.value)

        result = self._fetch(session, remote, config)
        if result.errors:
            LOGGER.warning(
                "Immich mode=%s finished with %s failed request(s)", remote.mode, len(result.errors)
            )
        tiles = build_tiles(
            result.assets,
            filter_settings_for(config),
            sort_by=remote.sort_images_by,
            descending=remote.sort_images_descending,
            rng=self._rng,
        )
        self._log(
            config,
            "Sorted tiles by %s descending=%s count=%s",
            remote.sort_images_by,
            remote.sort_images_descending,
            len(tiles),
        )
        LOGGER.info("Loaded %s image(s) for mode=%s", len(tiles), remote.mode)
        return tiles

    def _fetch(self, session: ImmichSession, remote: ImmichRemoteConfig, config: TilesConfig) -> FetchResult:
        if remote.mode == "album":
            return self._fetch_albums(session, remote, config)
        if remote.mode == "search":
            return session.search_assets(remote.query, remote.query_size)
        if remote.mode == "random":
            return session.random_assets(remote.query_size, remote.query)
        if remote.mode == "anniversary":
            return session.anniversary_assets(
                remote.anniversary_dates_back,
                remote.anniversary_dates_forward,
                remote.anniversary_start_year,
                remote.anniversary_end_year,
                remote.query_size,
                remote.query,
            )
        return session.memory_lane_assets(remote.num_days_to_include)

    def _fetch_albums(
        self,
        session: ImmichSession,
        remote: ImmichRemoteConfig,
        config: TilesConfig,
    ) -> FetchResult:
        album_ids = remote.album_id or []
        if not album_ids and remote.album_name:
            album_ids = session.find_album_ids(remote.album_name)
            self._log(config, "findAlbumIds %s => %s", remote.album_name, album_ids)

        if album_ids:
            return session.album_assets(album_ids)

        LOGGER.error("Album mode specified but no album found/selected.")
        self._log_available_albums(session)
        return FetchResult.failure("album: no album ids resolved")

    def _log_available_albums(self, session: ImmichSession) -> None:
        album_map = session.album_name_to_id_map()
        if not album_map:
            LOGGER.warning("No albums returned by Immich API.")
            return
        listing = "; ".join(f"{name} => {album_id}" for name, album_id in album_map.items())
        LOGGER.info("Available albums (%s): %s", len(album_map), listing)
        LOGGER.info('Set `albumName: ["<one of the names above>"]` or `albumId: ["<id>"]` in your config.')

    def _deliver(
        self,
        tiles: list[TileMedia],
        *,
        config: TilesConfig,
        generation: int,
        source: str,
    ) -> None:
        refreshed_at = datetime.now(timezone.utc)
        remote = config.active_remote
        payload = {
            "source": source,
            "mode": remote.mode if remote else None,
            "generation": generation,
            "count": len(tiles),
            "refreshed_at_utc": refreshed_at.isoformat(),
            "images": [tile.to_payload() for tile in tiles],
        }
        ttl_seconds = max(config.refresh.interval_minutes * 120, 300)
        stored = set_cache_entry(
            self._settings.db_path,
            TILES_CACHE_KEY,
            payload,
            ttl_seconds=ttl_seconds,
            fetched_at=refreshed_at,
            generation=generation,
        )
        if stored:
            LOGGER.info("Tiles load cycle %s updated '%s' at %s", generation, TILES_CACHE_KEY, refreshed_at)
        else:
            LOGGER.info("Discarding tiles from superseded load cycle %s", generation)


def run_tiles_refresh_job(loader: TileLoader, settings: AppSettings) -> None:
    try:
        loader.refresh()
    except Exception:  # pragma: no cover - defensive fallback
        LOGGER.exception("Tiles refresh job failed")
        return

    pruned = prune_expired_entries(settings.db_path)
    if pruned:
        LOGGER.info("Pruned %s expired cache entries", pruned)


def build_scheduler(settings: AppSettings, loader: TileLoader) -> BackgroundScheduler:
    scheduler = BackgroundScheduler(timezone=settings.timezone)
    scheduler.add_job(
        run_tiles_refresh_job,
        "interval",
        kwargs={"loader": loader, "settings": settings},
        minutes=settings.tiles.refresh.interval_minutes,
        jitter=settings.tiles.refresh.jitter_seconds,
        id="tiles_refresh_job",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
        misfire_grace_time=300,
    )
    return scheduler
