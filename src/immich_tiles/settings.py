from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Any, Literal
from urllib.parse import urlparse
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

PROJECT_ROOT = Path(__file__).resolve().parents[2]

RetrievalMode = Literal["memory", "album", "search", "random", "anniversary"]

DEFAULT_IMAGE_EXTENSIONS = "jpg,jpeg,png,gif,webp"
DEFAULT_VIDEO_EXTENSIONS = "mp4,mov,m4v,webm,avi,mkv,3gp"


def parse_extension_list(raw: str) -> frozenset[str]:
    """Split a comma separated extension list into a lowercase set without dots."""
    extensions: set[str] = set()
    for token in raw.lower().split(","):
        extension = token.strip().lstrip(".")
        if extension:
            extensions.add(extension)
    return frozenset(extensions)


class ImmichRemoteConfig(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True, populate_by_name=True)

    url: str
    api_key: str = Field(default="", alias="apiKey")
    timeout: int = Field(default=6000, ge=1, le=600_000)
    mode: RetrievalMode = "memory"
    num_days_to_include: int = Field(default=7, ge=1, le=366, alias="numDaysToInclude")
    album_id: list[str] | None = Field(default=None, alias="albumId")
    album_name: list[str] | None = Field(default=None, alias="albumName")
    query: dict[str, Any] | None = None
    query_size: int = Field(default=100, ge=1, le=1000, alias="querySize")
    anniversary_dates_back: int = Field(default=3, ge=0, le=180, alias="anniversaryDatesBack")
    anniversary_dates_forward: int = Field(default=3, ge=0, le=180, alias="anniversaryDatesForward")
    anniversary_start_year: int = Field(default=2020, ge=1900, le=2200, alias="anniversaryStartYear")
    anniversary_end_year: int = Field(default=2025, ge=1900, le=2200, alias="anniversaryEndYear")
    sort_images_by: str = Field(default="none", alias="sortImagesBy")
    sort_images_descending: bool = Field(default=False, alias="sortImagesDescending")

    @field_validator("url")
    @classmethod
    def validate_url(cls, value: str) -> str:
        text = value.strip().rstrip("/")
        parsed = urlparse(text)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ValueError("immichConfigs[].url must be an absolute http(s) URL")
        return text

    @field_validator("api_key")
    @classmethod
    def validate_api_key(cls, value: str) -> str:
        return value.strip()

    @field_validator("album_id", "album_name", mode="before")
    @classmethod
    def validate_string_or_list(cls, value: Any) -> list[str] | None:
        if value is None:
            return None
        if isinstance(value, (str, int)) and not isinstance(value, bool):
            items = [value]
        elif isinstance(value, (list, tuple)):
            items = list(value)
        else:
            raise ValueError("albumId and albumName must be a string or a list of strings")

        normalized: list[str] = []
        for item in items:
            if not isinstance(item, (str, int)) or isinstance(item, bool):
                raise ValueError("albumId and albumName entries must be strings")
            text = str(item).strip()
            if text:
                normalized.append(text)
        return normalized or None

    @field_validator("sort_images_by")
    @classmethod
    def validate_sort_images_by(cls, value: str) -> str:
        # Unknown keys are kept and treated as "none" when sorting.
        return value.strip().lower() or "none"

    @model_validator(mode="after")
    def validate_anniversary_years(self) -> ImmichRemoteConfig:
        if self.anniversary_end_year < self.anniversary_start_year:
            raise ValueError("anniversaryEndYear must be >= anniversaryStartYear")
        return self

    @property
    def timeout_seconds(self) -> float:
        return self.timeout / 1000


class RefreshSettings(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    interval_minutes: int = Field(default=60, ge=1, le=24 * 60, alias="intervalMinutes")
    jitter_seconds: int = Field(default=15, ge=0, le=300, alias="jitterSeconds")


class TilesConfig(BaseModel):
    """Module configuration as sent by the tile wall on registration."""

    model_config = ConfigDict(extra="ignore", frozen=True, populate_by_name=True)

    immich_configs: list[ImmichRemoteConfig] = Field(default_factory=list, alias="immichConfigs")
    active_immich_config_index: int = Field(default=0, ge=0, alias="activeImmichConfigIndex")
    valid_image_file_extensions: str = Field(
        default=DEFAULT_IMAGE_EXTENSIONS, alias="validImageFileExtensions"
    )
    valid_video_file_extensions: str = Field(
        default=DEFAULT_VIDEO_EXTENSIONS, alias="validVideoFileExtensions"
    )
    enable_videos: bool = Field(default=False, alias="enableVideos")
    debug: bool = False
    tile_rows: int = Field(default=2, ge=1, le=20, alias="tileRows")
    tile_cols: int = Field(default=3, ge=1, le=20, alias="tileCols")
    refresh: RefreshSettings = Field(default_factory=RefreshSettings)

    @field_validator("valid_image_file_extensions", "valid_video_file_extensions", mode="before")
    @classmethod
    def validate_extensions(cls, value: Any) -> str:
        if isinstance(value, (list, tuple)):
            value = ",".join(str(item) for item in value)
        if not isinstance(value, str):
            raise ValueError("file extension lists must be comma separated strings")
        return value

    @property
    def active_remote(self) -> ImmichRemoteConfig | None:
        if not self.immich_configs:
            return None
        if self.active_immich_config_index >= len(self.immich_configs):
            return self.immich_configs[0]
        return self.immich_configs[self.active_immich_config_index]

    @property
    def image_extensions(self) -> frozenset[str]:
        return parse_extension_list(self.valid_image_file_extensions)

    @property
    def video_extensions(self) -> frozenset[str]:
        return parse_extension_list(self.valid_video_file_extensions)

    @property
    def placeholder_count(self) -> int:
        return max(12, self.tile_rows * self.tile_cols * 3)


class EnvSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    tiles_env: Literal["dev", "test", "prod"] = "dev"
    tiles_timezone: str = "Europe/Berlin"
    tiles_config_path: Path = Path("config/tiles.yaml")
    tiles_db_path: Path = Path("data/tiles.db")

    @field_validator("tiles_timezone")
    @classmethod
    def validate_timezone(cls, value: str) -> str:
        try:
            ZoneInfo(value)
        except ZoneInfoNotFoundError as exc:
            raise ValueError(f"Unknown timezone: {value}") from exc
        return value


class AppSettings(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    env: EnvSettings
    tiles: TilesConfig
    project_root: Path
    config_path: Path
    db_path: Path
    timezone: ZoneInfo


def _resolve_project_path(path: Path) -> Path:
    if path.is_absolute():
        return path
    return (PROJECT_ROOT / path).resolve()


def _load_yaml_settings(path: Path) -> TilesConfig:
    if not path.exists():
        raise FileNotFoundError(f"Tiles config file not found: {path}")

    raw_config = yaml.safe_load(path.read_text(encoding="utf-8"))
    if raw_config is None:
        raw_config = {}
    if not isinstance(raw_config, dict):
        raise ValueError("Tiles config must be a YAML mapping/object at the top level")
    return TilesConfig.model_validate(raw_config)


def build_settings(env: EnvSettings) -> AppSettings:
    config_path = _resolve_project_path(env.tiles_config_path)
    db_path = _resolve_project_path(env.tiles_db_path)
    return AppSettings(
        env=env,
        tiles=_load_yaml_settings(config_path),
        project_root=PROJECT_ROOT,
        config_path=config_path,
        db_path=db_path,
        timezone=ZoneInfo(env.tiles_timezone),
    )


@lru_cache(maxsize=1)
def load_settings() -> AppSettings:
    return build_settings(EnvSettings())
