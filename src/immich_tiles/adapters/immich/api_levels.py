from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Iterator

from ...domain.models import ServerVersion
from .base import UnsupportedOperationError

API_BASE_PATH = "/api"


class ApiLevelName(str, Enum):
    V1_94 = "v1_94"
    V1_106 = "v1_106"
    V1_118 = "v1_118"
    V1_133 = "v1_133"


@dataclass(frozen=True, slots=True)
class ApiLevel:
    """Endpoint paths of one Immich API generation, relative to ``/api``."""

    name: ApiLevelName
    previous: ApiLevelName | None
    albums: str
    album_info: str
    memory_lane: str
    asset_info: str
    asset_download: str
    server_version: str
    search: str | None
    random_search: str | None
    video_stream: str
    memories_by_instant: bool = False

    def path(self, endpoint: str, item_id: str | None = None) -> str:
        template = getattr(self, endpoint)
        if template is None:
            raise UnsupportedOperationError(
                f"API level {self.name.value} does not support '{endpoint}'"
            )
        if item_id is None:
            return template
        return template.replace("{id}", item_id)


API_LEVELS: dict[ApiLevelName, ApiLevel] = {
    ApiLevelName.V1_94: ApiLevel(
        name=ApiLevelName.V1_94,
        previous=None,
        albums="/album",
        album_info="/album/{id}",
        memory_lane="/asset/memory-lane",
        asset_info="/asset/{id}",
        asset_download="/asset/file/{id}?isWeb=true",
        server_version="/server-info/version",
        search=None,
        random_search=None,
        video_stream="/asset/file/{id}?isWeb=true",
    ),
    ApiLevelName.V1_106: ApiLevel(
        name=ApiLevelName.V1_106,
        previous=ApiLevelName.V1_94,
        albums="/albums",
        album_info="/albums/{id}",
        memory_lane="/assets/memory-lane",
        asset_info="/assets/{id}",
        asset_download="/assets/{id}/thumbnail?size=preview",
        server_version="/server-info/version",
        search=None,
        random_search=None,
        video_stream="/assets/{id}/video",
    ),
    ApiLevelName.V1_118: ApiLevel(
        name=ApiLevelName.V1_118,
        previous=ApiLevelName.V1_106,
        albums="/albums",
        album_info="/albums/{id}",
        memory_lane="/assets/memory-lane",
        asset_info="/assets/{id}",
        asset_download="/assets/{id}/thumbnail?size=preview",
        server_version="/server/version",
        search="/search/smart",
        random_search=None,
        video_stream="/assets/{id}/video",
    ),
    ApiLevelName.V1_133: ApiLevel(
        name=ApiLevelName.V1_133,
        previous=ApiLevelName.V1_118,
        albums="/albums",
        album_info="/albums/{id}",
        memory_lane="/memories",
        asset_info="/assets/{id}",
        asset_download="/assets/{id}/thumbnail?size=preview",
        server_version="/server/version",
        search="/search/smart",
        random_search="/search/random",
        video_stream="/assets/{id}/video",
        memories_by_instant=True,
    ),
}

NEWEST_API_LEVEL = API_LEVELS[ApiLevelName.V1_133]


def fallback_chain(start: ApiLevel = NEWEST_API_LEVEL) -> Iterator[ApiLevel]:
    """Yield ``start`` and then every older level, each at most once."""
    seen: set[ApiLevelName] = set()
    level: ApiLevel | None = start
    while level is not None and level.name not in seen:
        seen.add(level.name)
        yield level
        level = API_LEVELS[level.previous] if level.previous is not None else None


def select_api_level(version: ServerVersion) -> ApiLevel:
    if version.major == 1:
        if 106 <= version.minor < 118:
            return API_LEVELS[ApiLevelName.V1_106]
        if version.minor < 106:
            return API_LEVELS[ApiLevelName.V1_94]
    return NEWEST_API_LEVEL
