"""Settings resource for managing configuration from environment variables."""

import os
from pathlib import Path
from typing import Any, Union, get_args, get_origin

from dagster import ConfigurableResource, EnvVar

from stac_cubes.config.constants import (
    DEFAULT_CHUNK_SIZE,
    DEFAULT_CLOUD_COVER_THRESHOLD,
    DEFAULT_READ_RETRIES,
    DEFAULT_STAC_API_URL,
    DEFAULT_THREADS,
    DEFAULT_TMP_DIR,
)
from stac_cubes.models.models import CubeConfig

_DEFAULTS: dict[str, Any] = {
    "stac_api_url": DEFAULT_STAC_API_URL,
    "tmp_dir": DEFAULT_TMP_DIR,
    "cube_threads": DEFAULT_THREADS,
    "cube_chunk_size": ",".join(str(size) for size in DEFAULT_CHUNK_SIZE),
    "cube_url_prefix": "",
    "cube_read_retries": DEFAULT_READ_RETRIES,
    "cloud_cover_threshold": DEFAULT_CLOUD_COVER_THRESHOLD,
}


class SettingsResource(ConfigurableResource[Any]):
    """Settings resource using EnvVar for runtime resolution in Dagster."""

    stac_api_url: str = DEFAULT_STAC_API_URL
    tmp_dir: str = DEFAULT_TMP_DIR
    cube_threads: int = DEFAULT_THREADS
    cube_chunk_size: str = _DEFAULTS["cube_chunk_size"]
    cube_url_prefix: str = ""
    cube_read_retries: int = DEFAULT_READ_RETRIES
    cloud_cover_threshold: int = DEFAULT_CLOUD_COVER_THRESHOLD

    @staticmethod
    def create(swallow_errors: bool = False) -> "SettingsResource":
        """Create SettingsResource from environment variables.

        :param swallow_errors: If True, ignore validation errors
        :returns: SettingsResource instance
        """
        env_values: dict[str, Any] = {}
        for attr_name, field_info in SettingsResource.model_fields.items():
            attr_type = field_info.annotation
            raw = os.environ.get(attr_name.upper())
            if raw is None or raw == "":
                env_values[attr_name] = _DEFAULTS.get(attr_name)
            elif attr_type is int:
                env_values[attr_name] = int(raw)
            else:
                env_values[attr_name] = raw

        settings = SettingsResource(**env_values)
        try:
            settings._post_init()
        except (TypeError, ValueError):
            if not swallow_errors:
                raise
        return settings

    def create_tmp_dir(self) -> None:
        """Create temporary directory if missing."""
        tmp_dir_value = self.tmp_dir.get_value() if isinstance(self.tmp_dir, EnvVar) else self.tmp_dir
        if tmp_dir_value:
            Path(tmp_dir_value).mkdir(parents=True, exist_ok=True)

    def get_chunk_size(self) -> tuple[int, int, int]:
        """Parse the "t,y,x" chunk size setting.

        :returns: Chunk size as (time, y, x)
        """
        parts = [int(part) for part in str(self.cube_chunk_size).split(",")]
        if len(parts) != 3:
            raise ValueError(f"CUBE_CHUNK_SIZE must be 't,y,x', got {self.cube_chunk_size!r}")
        return parts[0], parts[1], parts[2]

    def cube_config(self) -> CubeConfig:
        """Build the engine configuration threaded into cube construction.

        :returns: CubeConfig
        """
        return CubeConfig(
            threads=self.cube_threads,
            chunk_size=self.get_chunk_size(),
            url_prefix=self.cube_url_prefix or "",
            read_retries=self.cube_read_retries,
        )

    def validate_settings(self) -> None:
        """Validate all required settings are present."""
        missing_vars = []
        for attr_name, field_info in type(self).model_fields.items():
            attr_type = field_info.annotation
            attr_value = getattr(self, attr_name, None)
            is_optional = get_origin(attr_type) is Union and type(None) in get_args(attr_type)
            if isinstance(attr_value, EnvVar):
                if not is_optional and attr_value.get_value() is None:
                    missing_vars.append(attr_value.env_var_name)
            elif attr_value is None and not is_optional:
                missing_vars.append(attr_name.upper())
        if missing_vars:
            raise ValueError(f"Missing mandatory environment variables: {', '.join(missing_vars)}")
        if self.cube_threads < 1:
            raise ValueError(f"CUBE_THREADS must be at least 1, got {self.cube_threads}")
        self.get_chunk_size()

    def _post_init(self) -> None:
        self.create_tmp_dir()
        self.validate_settings()
