from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from immich_tiles.settings import EnvSettings, ImmichRemoteConfig, TilesConfig, build_settings

YAML_CONFIG = """
enableVideos: true
valid_image_file_extensions: "JPG, heic"
tileRows: 4
refresh:
  intervalMinutes: 15
activeImmichConfigIndex: 1
immichConfigs:
  - url: "https://first.example/"
    apiKey: " key-1 "
  - url: "https://second.example"
    mode: anniversary
    albumName: Trip
    sortImagesBy: Taken
"""


def test_yaml_config_accepts_aliases_and_field_names(tmp_path: Path):
    config_path = tmp_path / "tiles.yaml"
    config_path.write_text(YAML_CONFIG, encoding="utf-8")

    settings = build_settings(
        EnvSettings(tiles_config_path=config_path, tiles_db_path=tmp_path / "tiles.db", tiles_timezone="UTC")
    )

    tiles = settings.tiles
    assert tiles.enable_videos is True
    assert tiles.image_extensions == frozenset({"jpg", "heic"})
    assert tiles.placeholder_count == 36
    assert tiles.refresh.interval_minutes == 15
    assert tiles.immich_configs[0].url == "https://first.example"
    assert tiles.immich_configs[0].api_key == "key-1"
    remote = tiles.active_remote
    assert remote.url == "https://second.example"
    assert remote.mode == "anniversary"
    assert remote.album_name == ["Trip"]
    assert remote.sort_images_by == "taken"
    assert remote.timeout_seconds == 6.0
    assert settings.db_path == tmp_path / "tiles.db"


def test_missing_config_file_is_reported(tmp_path: Path):
    with pytest.raises(FileNotFoundError):
        build_settings(EnvSettings(tiles_config_path=tmp_path / "missing.yaml"))


def test_non_mapping_yaml_is_rejected(tmp_path: Path):
    config_path = tmp_path / "tiles.yaml"
    config_path.write_text("- just\n- a list\n", encoding="utf-8")

    with pytest.raises(ValueError):
        build_settings(EnvSettings(tiles_config_path=config_path))


def test_remote_config_is_frozen_and_validated():
    remote = ImmichRemoteConfig(url="http://immich.local:2283")

    with pytest.raises(ValidationError):
        remote.mode = "album"
    with pytest.raises(ValidationError):
        ImmichRemoteConfig(url="ftp://immich.local")
    with pytest.raises(ValidationError):
        ImmichRemoteConfig(url="http://immich.local", mode="everything")
    with pytest.raises(ValidationError):
        ImmichRemoteConfig(url="http://immich.local", anniversaryStartYear=2024, anniversaryEndYear=2020)


def test_numeric_album_name_from_yaml_becomes_string(tmp_path: Path):
    config_path = tmp_path / "tiles.yaml"
    config_path.write_text(
        "immichConfigs:\n  - url: http://immich.local\n    mode: album\n    albumName: 2023\n",
        encoding="utf-8",
    )

    settings = build_settings(EnvSettings(tiles_config_path=config_path, tiles_timezone="UTC"))

    assert settings.tiles.active_remote.album_name == ["2023"]
    remote = ImmichRemoteConfig.model_validate({"url": "http://immich.local", "albumId": [" a1 ", 7, ""]})
    assert remote.album_id == ["a1", "7"]


@pytest.mark.parametrize("album_id", [{"a": "b"}, 1.5, True, [{"a": "b"}]])
def test_malformed_album_selection_is_a_validation_error(album_id):
    with pytest.raises(ValidationError):
        ImmichRemoteConfig.model_validate({"url": "http://immich.local", "albumId": album_id})


def test_active_remote_falls_back_to_first_entry():
    config = TilesConfig(
        immich_configs=[ImmichRemoteConfig(url="http://one.local")],
        active_immich_config_index=3,
    )

    assert config.active_remote.url == "http://one.local"
    assert TilesConfig().active_remote is None


def test_unknown_timezone_is_rejected():
    with pytest.raises(ValidationError):
        EnvSettings(tiles_timezone="Mars/Olympus")
