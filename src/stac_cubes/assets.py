"""Dagster assets chaining STAC search, image collection and NDVI composite."""

from pathlib import Path

import rasterio.warp
from dagster import AssetExecutionContext, Config, Output, asset

from stac_cubes.config.constants import (
    NDVI_BANDS,
    SCL_ASSET,
    SCL_MASK_VALUES,
    SENTINEL2_COLLECTION,
)
from stac_cubes.connectors.settings import SettingsResource
from stac_cubes.connectors.stac_client import STACResource
from stac_cubes.geospatial.collection import ImageCollection, build_collection
from stac_cubes.geospatial.cube import RasterCube, raster_cube
from stac_cubes.geospatial.cube_view import CubeView, make_view
from stac_cubes.geospatial.stac_ops import search_features
from stac_cubes.models.models import Feature, MaskSpec, StacQuery


class StacSearchConfig(Config):
    """Search parameters for the composite area and period."""

    collection_id: str = SENTINEL2_COLLECTION
    bbox: list[float] = [7.1, 51.8, 7.3, 52.0]
    time_range: str = "2021-06-01/2021-09-30"
    limit: int = 100


class CompositeConfig(Config):
    """Target grid of the NDVI composite."""

    srs: str = "EPSG:32632"
    bbox: list[float] = [7.1, 51.8, 7.3, 52.0]
    time_range: str = "2021-06-01/2021-09-30"
    dx: float = 100.0
    dt: str = "P1M"
    aggregation: str = "median"
    resampling: str = "average"


def _stac_query(config: StacSearchConfig, settings: SettingsResource) -> StacQuery:
    """Build the STAC query, filtering on cloud cover server side.

    :param config: Search config
    :param settings: Settings resource
    :returns: StacQuery
    """
    return StacQuery(
        collection_id=config.collection_id,
        bbox=config.bbox,
        time_range=config.time_range,
        limit=config.limit,
        query={"eo:cloud_cover": {"lt": settings.cloud_cover_threshold}},
    )


def _composite_view(config: CompositeConfig) -> CubeView:
    """Create the cube view covering the configured WGS84 bbox.

    :param config: Composite config
    :returns: CubeView
    """
    left, bottom, right, top = rasterio.warp.transform_bounds("EPSG:4326", config.srs, *config.bbox, densify_pts=21)
    t0, t1 = config.time_range.split("/")
    return make_view(
        srs=config.srs,
        extent={"left": left, "right": right, "top": top, "bottom": bottom, "t0": t0, "t1": t1},
        dx=config.dx,
        dt=config.dt,
        aggregation=config.aggregation,
        resampling=config.resampling,
    )


def ndvi_pipeline(collection: ImageCollection, view: CubeView, settings: SettingsResource) -> RasterCube:
    """Cloud-masked NDVI, reduced to its median over time.

    :param collection: Image collection with red, nir and scl assets
    :param view: Target grid
    :param settings: Settings resource
    :returns: Lazy single-band cube named NDVI_median
    """
    red, nir = NDVI_BANDS["red"], NDVI_BANDS["nir"]
    cube = raster_cube(
        collection,
        view,
        mask=MaskSpec(band=SCL_ASSET, values=SCL_MASK_VALUES),
        config=settings.cube_config(),
    )
    return (
        cube.select_bands([red, nir])
        .apply_pixel(f"({nir} - {red}) / ({nir} + {red})", "NDVI")
        .reduce_time("median(NDVI)")
    )


@asset
def stac_features(
    context: AssetExecutionContext,
    config: StacSearchConfig,
    stac: STACResource,
    settings: SettingsResource,
) -> Output[list[Feature]]:
    """Search Sentinel-2 items for the configured area and period.

    :param context: Dagster context
    :param config: Search config
    :param stac: STAC resource
    :param settings: Settings resource
    :returns: Output with the returned features
    """
    result = search_features(stac.create_client(), _stac_query(config, settings))
    context.log.info(f"Found {result.returned_count} item(s) (matched: {result.matched_count})")
    return Output(
        result.features,
        metadata={
            "returned_count": result.returned_count,
            "matched_count": result.matched_count if result.matched_count is not None else -1,
        },
    )


@asset
def image_collection(
    context: AssetExecutionContext,
    settings: SettingsResource,
    stac_features: list[Feature],
) -> Output[ImageCollection]:
    """Index red, nir and scene classification assets of the found items.

    :param context: Dagster context
    :param settings: Settings resource
    :param stac_features: Features from the STAC search
    :returns: Output with the image collection
    """
    collection = build_collection(
        stac_features,
        asset_names=[NDVI_BANDS["red"], NDVI_BANDS["nir"], SCL_ASSET],
        property_filter={"eo:cloud_cover": {"lt": settings.cloud_cover_threshold}},
    )
    context.log.info(f"Image collection: {collection!r}")
    return Output(
        collection,
        metadata={"images": len(collection.image_ids), "entries": len(collection), "bands": ", ".join(collection.bands)},
    )


@asset
def ndvi_composite(
    context: AssetExecutionContext,
    config: CompositeConfig,
    settings: SettingsResource,
    image_collection: ImageCollection,
) -> Output[list[str]]:
    """Compute the median NDVI composite and write it as GeoTIFF.

    :param context: Dagster context
    :param config: Composite config
    :param settings: Settings resource
    :param image_collection: Image collection
    :returns: Output with the written file paths
    """
    view = _composite_view(config)
    context.log.info(f"Computing NDVI composite over {view}")
    cube = ndvi_pipeline(image_collection, view, settings)
    paths = cube.write_geotiff(Path(settings.tmp_dir) / "ndvi_composite", prefix="ndvi_median")
    return Output(
        [str(path) for path in paths],
        metadata={"paths": ", ".join(str(path) for path in paths), "bands": ", ".join(cube.bands)},
    )
