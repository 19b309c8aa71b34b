from __future__ import annotations

import pytest

from immich_tiles.adapters.immich.api_levels import (
    API_LEVELS,
    NEWEST_API_LEVEL,
    ApiLevelName,
    fallback_chain,
    select_api_level,
)
from immich_tiles.adapters.immich.base import UnsupportedOperationError
from immich_tiles.domain.models import ServerVersion


def test_fallback_chain_walks_every_level_once_from_newest():
    names = [level.name for level in fallback_chain()]

    assert names == [
        ApiLevelName.V1_133,
        ApiLevelName.V1_118,
        ApiLevelName.V1_106,
        ApiLevelName.V1_94,
    ]


@pytest.mark.parametrize("start", list(ApiLevelName))
def test_fallback_chain_terminates_from_any_level(start: ApiLevelName):
    chain = list(fallback_chain(API_LEVELS[start]))

    assert len(chain) <= len(API_LEVELS)
    assert chain[0].name == start
    assert chain[-1].previous is None


@pytest.mark.parametrize(
    ("version", "expected"),
    [
        ((1, 105, 0), ApiLevelName.V1_94),
        ((1, 94, 1), ApiLevelName.V1_94),
        ((1, 106, 0), ApiLevelName.V1_106),
        ((1, 110, 2), ApiLevelName.V1_106),
        ((1, 117, 9), ApiLevelName.V1_106),
        ((1, 118, 0), ApiLevelName.V1_133),
        ((1, 120, 0), ApiLevelName.V1_133),
        ((2, 0, 0), ApiLevelName.V1_133),
    ],
)
def test_select_api_level_maps_version_ranges(version, expected):
    major, minor, patch = version
    server_version = ServerVersion(major=major, minor=minor, patch=patch)

    assert select_api_level(server_version).name == expected
    assert select_api_level(server_version) is select_api_level(server_version)


def test_paths_substitute_identifier():
    level = API_LEVELS[ApiLevelName("v1_106")]

    assert level.path("album_info", "abc") == "/albums/abc"
    assert level.path("asset_download", "abc") == "/assets/abc/thumbnail?size=preview"
    assert level.path("video_stream", "abc") == "/assets/abc/video"


def test_missing_endpoint_raises_unsupported_operation():
    level = API_LEVELS[ApiLevelName.V1_118]

    assert level.path("search") == "/search/smart"
    with pytest.raises(UnsupportedOperationError):
        level.path("random_search")


def test_only_newest_level_queries_memories_by_instant():
    assert NEWEST_API_LEVEL.memories_by_instant
    assert not any(
        level.memories_by_instant for level in API_LEVELS.values() if level is not NEWEST_API_LEVEL
    )
