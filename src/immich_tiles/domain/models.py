from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator


class ExifInfo(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    date_time_original: str | None = Field(default=None, alias="dateTimeOriginal")


class RawAsset(BaseModel):
    """An Immich asset as returned by the remote API, reduced to the fields the tiles use."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    id: str
    original_file_name: str | None = Field(default=None, alias="originalFileName")
    original_path: str | None = Field(default=None, alias="originalPath")
    type: str | None = None
    file_created_at: str | None = Field(default=None, alias="fileCreatedAt")
    file_modified_at: str | None = Field(default=None, alias="fileModifiedAt")
    exif_info: ExifInfo | None = Field(default=None, alias="exifInfo")
    album_name: str | None = Field(default=None, alias="albumName")

    @field_validator("id")
    @classmethod
    def validate_id(cls, value: str) -> str:
        text = value.strip()
        if not text:
            raise ValueError("asset id must not be empty")
        return text

    @field_validator("exif_info", mode="before")
    @classmethod
    def validate_exif_info(cls, value: object) -> object:
        # Older servers send an empty list instead of null.
        if not isinstance(value, dict):
            return None
        return value

    @property
    def name_or_path(self) -> str:
        return self.original_path or self.original_file_name or ""

    @property
    def type_hint(self) -> str:
        return (self.type or "").lower()


class TileMedia(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True, populate_by_name=True)

    kind: Literal["image", "video"] = "image"
    src: str
    poster_src: str | None = Field(default=None, alias="posterSrc")
    title: str | None = None
    taken_at: str | None = Field(default=None, alias="takenAt")
    album_name: str | None = Field(default=None, alias="albumName")

    @field_validator("src")
    @classmethod
    def validate_src(cls, value: str) -> str:
        text = value.strip()
        if not text:
            raise ValueError("tile src must not be empty")
        return text

    def to_payload(self) -> dict[str, str]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class ServerVersion(BaseModel):
    model_config = ConfigDict(extra="ignore")

    major: int
    minor: int
    patch: int = 0
