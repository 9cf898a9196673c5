from pathlib import Path
from typing import Any

import pytest
from planetary_computer import sign_inplace

from stac_cubes.config.constants import DEFAULT_STAC_API_URL, DEFAULT_THREADS
from stac_cubes.connectors.settings import SettingsResource
from stac_cubes.connectors.stac_client import STACResource

_ENV_VARS = [
    "STAC_API_URL",
    "TMP_DIR",
    "CUBE_THREADS",
    "CUBE_CHUNK_SIZE",
    "CUBE_URL_PREFIX",
    "CUBE_READ_RETRIES",
    "CLOUD_COVER_THRESHOLD",
]


@pytest.fixture
def clean_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> pytest.MonkeyPatch:
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("TMP_DIR", str(tmp_path / "work"))
    return monkeypatch


def test_settings_create_from_env(clean_env: pytest.MonkeyPatch, tmp_path: Path) -> None:
    """
    Test that SettingsResource correctly loads from environment variables.

    Verifies that all settings are correctly read from environment
    and the temporary directory is created.
    """
    clean_env.setenv("STAC_API_URL", "http://stac")
    clean_env.setenv("CUBE_THREADS", "8")
    clean_env.setenv("CUBE_CHUNK_SIZE", "2,128,64")
    clean_env.setenv("CUBE_URL_PREFIX", "/vsicurl/")
    clean_env.setenv("CUBE_READ_RETRIES", "5")
    clean_env.setenv("CLOUD_COVER_THRESHOLD", "30")

    settings = SettingsResource.create()
    assert settings.stac_api_url == "http://stac"
    assert settings.cube_threads == 8
    assert settings.get_chunk_size() == (2, 128, 64)
    assert settings.cloud_cover_threshold == 30
    assert (tmp_path / "work").is_dir()

    config = settings.cube_config()
    assert config.threads == 8
    assert config.chunk_size == (2, 128, 64)
    assert config.url_prefix == "/vsicurl/"
    assert config.read_retries == 5


def test_settings_defaults_apply_for_missing_and_empty_values(clean_env: pytest.MonkeyPatch) -> None:
    clean_env.setenv("CUBE_THREADS", "")

    settings = SettingsResource.create()
    assert settings.stac_api_url == DEFAULT_STAC_API_URL
    assert settings.cube_threads == DEFAULT_THREADS
    assert settings.get_chunk_size() == (1, 256, 256)
    assert settings.cube_config().url_prefix == ""


def test_settings_reject_invalid_values(clean_env: pytest.MonkeyPatch) -> None:
    """
    Test that invalid engine settings fail unless errors are swallowed.
    """
    clean_env.setenv("CUBE_CHUNK_SIZE", "256,256")
    with pytest.raises(ValueError, match="CUBE_CHUNK_SIZE"):
        SettingsResource.create()

    clean_env.setenv("CUBE_CHUNK_SIZE", "1,256,256")
    clean_env.setenv("CUBE_THREADS", "0")
    with pytest.raises(ValueError, match="CUBE_THREADS"):
        SettingsResource.create()
    assert SettingsResource.create(swallow_errors=True).cube_threads == 0


def test_stac_resource_creates_client(clean_env: pytest.MonkeyPatch) -> None:
    """
    Test that STACResource creates a STAC client with correct URL.

    Verifies that the resource correctly initializes the STAC client
    with the configured API URL.
    """
    created = {}

    class FakeClient:
        @staticmethod
        def open(url: str, modifier: Any = None) -> str:
            created["url"] = url
            created["modifier"] = modifier
            return "fake-client"

    clean_env.setattr("stac_cubes.connectors.stac_client.Client", FakeClient)
    clean_env.setenv("STAC_API_URL", "http://stac")

    settings = SettingsResource.create(swallow_errors=True)
    resource = STACResource(settings=settings)
    client = resource.create_client()
    assert client == "fake-client"
    assert created["url"] == "http://stac"
    assert created["modifier"] is None

    signing = STACResource(settings=settings, sign_assets=True)
    signing.create_client()
    assert created["modifier"] is sign_inplace
