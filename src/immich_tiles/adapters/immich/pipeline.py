from __future__ import annotations

import logging
import random
from dataclasses import dataclass
from typing import Callable, Iterable

from ...domain.models import RawAsset, TileMedia
from .proxy import image_link, video_link

LOGGER = logging.getLogger(__name__)

TIMESTAMP_SORT_KEYS = frozenset({"created", "modified", "taken"})


@dataclass(frozen=True, slots=True)
class FilterSettings:
    image_extensions: frozenset[str]
    video_extensions: frozenset[str]
    enable_videos: bool = False


def file_extension(name: str) -> str | None:
    if "." not in name:
        return None
    return name.rsplit(".", 1)[1].lower()


def has_valid_extension(name: str, valid_extensions: frozenset[str]) -> bool:
    extension = file_extension(name)
    return extension is not None and extension in valid_extensions


def is_displayable(asset: RawAsset, settings: FilterSettings) -> bool:
    name = asset.name_or_path
    type_hint = asset.type_hint
    ok_image = has_valid_extension(name, settings.image_extensions) or "image" in type_hint
    ok_video = settings.enable_videos and (
        has_valid_extension(name, settings.video_extensions) or "video" in type_hint
    )
    return ok_image or ok_video


def _strip_extension(file_name: str) -> str:
    if "." not in file_name:
        return file_name
    stem, extension = file_name.rsplit(".", 1)
    if not extension:
        return file_name
    return stem


def to_tile(asset: RawAsset, settings: FilterSettings) -> TileMedia:
    type_hint = asset.type_hint
    is_video = "video" in type_hint or (
        not type_hint and has_valid_extension(asset.name_or_path, settings.video_extensions)
    )
    title = _strip_extension(asset.original_file_name or "") or None
    exif_taken = asset.exif_info.date_time_original if asset.exif_info else None
    taken_at = exif_taken or asset.file_created_at or asset.file_modified_at or None

    if is_video:
        return TileMedia(
            kind="video",
            src=video_link(asset.id),
            poster_src=image_link(asset.id),
            title=title,
            taken_at=taken_at,
            album_name=asset.album_name,
        )
    return TileMedia(
        kind="image",
        src=image_link(asset.id),
        title=title,
        taken_at=taken_at,
        album_name=asset.album_name,
    )


def shuffle_tiles(tiles: list[TileMedia], rng: random.Random) -> list[TileMedia]:
    shuffled = list(tiles)
    for index in range(len(shuffled) - 1, 0, -1):
        swap = rng.randint(0, index)
        shuffled[index], shuffled[swap] = shuffled[swap], shuffled[index]
    return shuffled


def sort_tiles(
    tiles: list[TileMedia],
    sort_by: str,
    *,
    descending: bool = False,
    rng: random.Random | None = None,
) -> list[TileMedia]:
    key: Callable[[TileMedia], str] | None = None
    if sort_by == "name":
        key = lambda tile: tile.title or ""  # noqa: E731
    elif sort_by in TIMESTAMP_SORT_KEYS:
        # ISO strings compare lexicographically; mixed precision is not normalised.
        key = lambda tile: tile.taken_at or ""  # noqa: E731

    if key is not None:
        ordered = sorted(tiles, key=key)
    elif sort_by == "random":
        ordered = shuffle_tiles(tiles, rng or random.Random())
    else:
        ordered = list(tiles)

    if descending:
        ordered.reverse()
    return ordered


def build_tiles(
    raw_assets: Iterable[RawAsset],
    settings: FilterSettings,
    *,
    sort_by: str = "none",
    descending: bool = False,
    rng: random.Random | None = None,
) -> list[TileMedia]:
    assets = list(raw_assets)
    kept = [asset for asset in assets if is_displayable(asset, settings)]
    LOGGER.debug("Filtered assets by extension and kind (%s -> %s)", len(assets), len(kept))

    tiles = [to_tile(asset, settings) for asset in kept]
    return sort_tiles(tiles, sort_by, descending=descending, rng=rng)
