"""STAC operations for searching catalogs and preparing asset URLs."""

from typing import Any

from dagster import get_dagster_logger
from planetary_computer import sign

from stac_cubes.models.models import Feature, FeatureSearchResult, StacQuery

logger = get_dagster_logger()

VSICURL_PREFIX = "/vsicurl/"


def search_features(stac_client: Any, query: StacQuery) -> FeatureSearchResult:
    """Search a STAC API and convert the returned items to features.

    :param stac_client: pystac_client Client
    :param query: Search parameters
    :returns: Features with returned and matched counts
    """
    search = stac_client.search(
        collections=[query.collection_id],
        bbox=query.bbox,
        datetime=query.time_range,
        query=query.query,
        max_items=query.limit,
    )
    features = [Feature.from_stac_item(item) for item in search.items()]
    matched = search.matched()

    logger.info(
        f"STAC search on {query.collection_id} for {query.time_range}: "
        f"{len(features)} item(s) returned, {matched if matched is not None else 'unknown'} matched"
    )
    return FeatureSearchResult(features=features, returned_count=len(features), matched_count=matched)


def sign_url(url: str) -> str:
    """Sign an asset URL for Planetary Computer storage."""
    return sign(url)


def vsicurl_url(url: str) -> str:
    """Route an HTTP(S) URL through GDAL's range-read virtual file system."""
    if url.startswith(("http://", "https://")):
        return f"{VSICURL_PREFIX}{url}"
    return url
