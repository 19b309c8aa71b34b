from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Callable
from zoneinfo import ZoneInfo

import httpx
import pytest

from immich_tiles.settings import AppSettings, EnvSettings, ImmichRemoteConfig, TilesConfig

IMMICH_URL = "https://immich.test"

Handler = Callable[[httpx.Request], httpx.Response]


class ImmichStub:
    """Minimal fake Immich server routed by method and path."""

    def __init__(self) -> None:
        self._routes: dict[tuple[str, str], Handler] = {}
        self.requests: list[httpx.Request] = []

    def add(self, method: str, path: str, payload: Any = None, *, status: int = 200) -> None:
        self._routes[(method, "/api" + path)] = lambda request: httpx.Response(status, json=payload)

    def add_handler(self, method: str, path: str, handler: Handler) -> None:
        self._routes[(method, "/api" + path)] = handler

    def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        route = self._routes.get((request.method, request.url.path))
        if route is None:
            return httpx.Response(404, json={"message": "Not Found"})
        return route(request)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)

    def calls(self, method: str, path: str) -> list[httpx.Request]:
        return [
            request
            for request in self.requests
            if request.method == method and request.url.path == "/api" + path
        ]

    @staticmethod
    def body(request: httpx.Request) -> dict[str, Any]:
        return json.loads(request.content.decode("utf-8"))


def make_asset(asset_id: str, file_name: str, asset_type: str = "IMAGE", **extra: Any) -> dict[str, Any]:
    asset = {
        "id": asset_id,
        "originalFileName": file_name,
        "originalPath": f"/library/{file_name}",
        "type": asset_type,
    }
    asset.update(extra)
    return asset


@pytest.fixture
def immich_stub() -> ImmichStub:
    stub = ImmichStub()
    stub.add("GET", "/server/version", {"major": 1, "minor": 135, "patch": 3})
    return stub


@pytest.fixture
def remote_config() -> ImmichRemoteConfig:
    return ImmichRemoteConfig(url=IMMICH_URL, api_key="secret-key", timeout=2000)


@pytest.fixture
def tiles_config(remote_config: ImmichRemoteConfig) -> TilesConfig:
    return TilesConfig(immich_configs=[remote_config])


@pytest.fixture
def app_settings(tmp_path: Path, tiles_config: TilesConfig) -> AppSettings:
    return AppSettings(
        env=EnvSettings(tiles_env="test", tiles_timezone="UTC"),
        tiles=tiles_config,
        project_root=tmp_path,
        config_path=tmp_path / "tiles.yaml",
        db_path=tmp_path / "tiles.db",
        timezone=ZoneInfo("UTC"),
    )
