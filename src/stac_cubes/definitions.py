"""Dagster definitions for the NDVI composite pipeline."""

from dagster import Definitions, load_assets_from_modules

from stac_cubes import assets  # noqa: TID252
from stac_cubes.connectors.settings import SettingsResource
from stac_cubes.connectors.stac_client import STACResource
from stac_cubes.triggers.jobs import ndvi_composite_job

all_assets = load_assets_from_modules([assets])

settings = SettingsResource.create(swallow_errors=True)

defs = Definitions(
    assets=all_assets,
    jobs=[ndvi_composite_job],
    resources={
        "stac": STACResource(settings=settings),
        "settings": settings,
    },
)
