"""Dagster job definitions for asset materialization."""

from dagster import define_asset_job

ndvi_composite_job = define_asset_job(
    name="ndvi_composite_job",
    selection=["stac_features", "image_collection", "ndvi_composite"],
)
