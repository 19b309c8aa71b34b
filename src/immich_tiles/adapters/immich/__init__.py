from .api_levels import API_LEVELS, NEWEST_API_LEVEL, ApiLevel, ApiLevelName, select_api_level
from .base import (
    FetchResult,
    ImmichAdapterError,
    ImmichRequestError,
    NegotiationError,
    UnsupportedOperationError,
)
from .client import ImmichSession
from .pipeline import FilterSettings, build_tiles
from .proxy import IMAGE_PROXY_PREFIX, VIDEO_PROXY_PREFIX, MediaProxy, image_link, video_link

__all__ = [
    "API_LEVELS",
    "IMAGE_PROXY_PREFIX",
    "NEWEST_API_LEVEL",
    "VIDEO_PROXY_PREFIX",
    "ApiLevel",
    "ApiLevelName",
    "FetchResult",
    "FilterSettings",
    "ImmichAdapterError",
    "ImmichRequestError",
    "ImmichSession",
    "MediaProxy",
    "NegotiationError",
    "UnsupportedOperationError",
    "build_tiles",
    "image_link",
    "select_api_level",
    "video_link",
]
