from __future__ import annotations

import random
import threading
import time

import httpx
from conftest import IMMICH_URL, ImmichStub, make_asset

from immich_tiles.scheduler import (
    PLACEHOLDER_SRC,
    TILES_CACHE_KEY,
    TileLoader,
    placeholder_tiles,
    run_tiles_refresh_job,
)
from immich_tiles.settings import ImmichRemoteConfig, TilesConfig
from immich_tiles.storage.cache import get_cache_entry, set_cache_entry


def _config(**remote_options) -> TilesConfig:
    remote = ImmichRemoteConfig.model_validate({"url": IMMICH_URL, "apiKey": "secret-key", **remote_options})
    return TilesConfig(immich_configs=[remote])


def test_memory_mode_end_to_end(app_settings, immich_stub: ImmichStub):
    immich_stub.add(
        "GET",
        "/memories",
        [{"assets": [make_asset("a1", "first.jpg"), make_asset("a2", "second.jpg")]}],
    )
    loader = TileLoader(app_settings, transport=immich_stub.transport)

    tiles = loader.register(_config(mode="memory", numDaysToInclude=1))

    assert [tile.kind for tile in tiles] == ["image", "image"]
    assert [tile.src for tile in tiles] == ["/immichtilesslideshow/a1", "/immichtilesslideshow/a2"]
    entry = get_cache_entry(app_settings.db_path, TILES_CACHE_KEY)
    assert entry.payload["source"] == "immich"
    assert entry.payload["images"] == [tile.to_payload() for tile in tiles]
    assert len(immich_stub.calls("GET", "/memories")) == 1


def test_album_mode_resolves_names(app_settings, immich_stub: ImmichStub):
    immich_stub.add("GET", "/albums", [{"albumName": "Trip", "id": "t1"}])
    immich_stub.add("GET", "/albums/t1", {"albumName": "Trip", "assets": [make_asset("a1", "beach.png")]})
    loader = TileLoader(app_settings, transport=immich_stub.transport)

    tiles = loader.register(_config(mode="album", albumName="Trip"))

    assert [(tile.title, tile.album_name) for tile in tiles] == [("beach", "Trip")]


def test_album_id_wins_over_album_name(app_settings, immich_stub: ImmichStub):
    immich_stub.add("GET", "/albums/direct", {"assets": [make_asset("a1", "x.jpg")]})
    loader = TileLoader(app_settings, transport=immich_stub.transport)

    tiles = loader.register(_config(mode="album", albumId=["direct"], albumName=["Trip"]))

    assert [tile.src for tile in tiles] == ["/immichtilesslideshow/a1"]
    assert immich_stub.calls("GET", "/albums") == []


def test_album_mode_without_match_is_empty(app_settings, immich_stub: ImmichStub):
    immich_stub.add("GET", "/albums", [{"albumName": "Family", "id": "f1"}])
    loader = TileLoader(app_settings, transport=immich_stub.transport)

    tiles = loader.register(_config(mode="album", albumName=["Trip"]))

    assert tiles == []
    entry = get_cache_entry(app_settings.db_path, TILES_CACHE_KEY)
    assert entry.payload["images"] == []
    # one lookup for resolution, one for the diagnostic listing
    assert len(immich_stub.calls("GET", "/albums")) == 2


def test_random_mode_sorts_and_filters(app_settings, immich_stub: ImmichStub):
    immich_stub.add(
        "POST",
        "/search/random",
        [
            make_asset("v1", "clip.mov", "VIDEO"),
            make_asset("b", "b.jpg"),
            make_asset("a", "a.jpg"),
        ],
    )
    loader = TileLoader(app_settings, transport=immich_stub.transport)
    config = _config(mode="random", sortImagesBy="name", sortImagesDescending=True)

    tiles = loader.register(config.model_copy(update={"enable_videos": True}))

    assert [tile.title for tile in tiles] == ["clip", "b", "a"]
    assert tiles[0].kind == "video"


def test_search_and_anniversary_modes_dispatch(app_settings, immich_stub: ImmichStub):
    immich_stub.add("POST", "/search/smart", {"assets": {"items": [make_asset("s", "s.jpg")]}})
    immich_stub.add("POST", "/search/random", [make_asset("r", "r.jpg")])
    loader = TileLoader(app_settings, transport=immich_stub.transport)

    search_tiles = loader.register(_config(mode="search", query={"query": "dogs"}))
    anniversary_tiles = loader.register(
        _config(mode="anniversary", anniversaryStartYear=2021, anniversaryEndYear=2023)
    )

    assert [tile.src for tile in search_tiles] == ["/immichtilesslideshow/s"]
    assert len(anniversary_tiles) == 3
    assert len(immich_stub.calls("POST", "/search/random")) == 3


def test_negotiation_failure_falls_back_to_placeholders(app_settings):
    stub = ImmichStub()
    loader = TileLoader(app_settings, transport=stub.transport)
    config = _config().model_copy(update={"tile_rows": 3, "tile_cols": 3})

    tiles = loader.register(config)

    assert len(tiles) == 27
    assert tiles[0].src == PLACEHOLDER_SRC
    assert tiles[0].title == "Tile 1"
    entry = get_cache_entry(app_settings.db_path, TILES_CACHE_KEY)
    assert entry.payload["source"] == "placeholder"


def test_missing_immich_config_sends_placeholders(app_settings):
    loader = TileLoader(app_settings)

    tiles = loader.register(TilesConfig())

    assert tiles == placeholder_tiles(TilesConfig())
    assert len(tiles) == 12


def test_refresh_reuses_negotiated_session(app_settings, immich_stub: ImmichStub):
    immich_stub.add("GET", "/memories", [])
    loader = TileLoader(app_settings, transport=immich_stub.transport)
    config = _config(numDaysToInclude=1)

    loader.register(config)
    loader.refresh()
    loader.refresh()

    assert len(immich_stub.calls("GET", "/server/version")) == 1
    assert loader.generation == 3


def test_changed_remote_config_renegotiates(app_settings, immich_stub: ImmichStub):
    immich_stub.add("GET", "/memories", [])
    loader = TileLoader(app_settings, transport=immich_stub.transport)

    loader.register(_config(numDaysToInclude=1))
    loader.register(_config(numDaysToInclude=2))

    assert len(immich_stub.calls("GET", "/server/version")) == 2
    assert loader.session(0).config.num_days_to_include == 2


def test_superseded_cycle_is_discarded(app_settings, immich_stub: ImmichStub):
    immich_stub.add("GET", "/memories", [{"assets": [make_asset("old", "old.jpg")]}])
    loader = TileLoader(app_settings, transport=immich_stub.transport)
    loader.register(_config(numDaysToInclude=1))

    newer = {"images": [{"kind": "image", "src": "/immichtilesslideshow/new"}]}
    assert set_cache_entry(app_settings.db_path, TILES_CACHE_KEY, newer, ttl_seconds=600, generation=99)

    loader.refresh()

    entry = get_cache_entry(app_settings.db_path, TILES_CACHE_KEY)
    assert entry.generation == 99
    assert entry.payload == newer


def test_refresh_job_keeps_running_on_remote_errors(app_settings):
    def refuse(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    loader = TileLoader(app_settings, transport=httpx.MockTransport(refuse), rng=random.Random(1))

    run_tiles_refresh_job(loader, app_settings)

    entry = get_cache_entry(app_settings.db_path, TILES_CACHE_KEY)
    assert entry.payload["source"] == "placeholder"


def test_concurrent_refreshes_share_one_negotiation(app_settings, immich_stub: ImmichStub):
    def slow_version(request: httpx.Request) -> httpx.Response:
        time.sleep(0.2)
        return httpx.Response(200, json={"major": 1, "minor": 135, "patch": 3})

    immich_stub.add_handler("GET", "/server/version", slow_version)
    immich_stub.add("GET", "/memories", [])
    loader = TileLoader(app_settings, transport=immich_stub.transport)

    threads = [threading.Thread(target=loader.refresh) for _ in range(2)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=5)

    assert len(immich_stub.calls("GET", "/server/version")) == 1
    assert loader.session(0).is_negotiated
    assert loader.generation == 2


def test_debug_flag_follows_each_register(app_settings, immich_stub: ImmichStub):
    immich_stub.add("GET", "/memories", [])
    loader = TileLoader(app_settings, transport=immich_stub.transport)

    loader.register(_config(numDaysToInclude=1))
    assert loader.session(0).debug is False

    loader.register(_config(numDaysToInclude=1).model_copy(update={"debug": True}))
    assert loader.session(0).debug is True
    assert len(immich_stub.calls("GET", "/server/version")) == 2
