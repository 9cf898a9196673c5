"""Data models for STAC features, image collections and cube configuration."""

from datetime import date, datetime, timezone
from typing import Any

from dateutil.parser import isoparse
from pydantic import BaseModel, ConfigDict, Field as PydanticField, field_validator

from stac_cubes.config.constants import (
    DEFAULT_CHUNK_SIZE,
    DEFAULT_READ_RETRIES,
    DEFAULT_RETRY_DELAY,
    DEFAULT_THREADS,
    GDAL_DEFAULT_OPTIONS,
)


def to_utc(value: Any) -> datetime:
    """Coerce an ISO string, date or datetime to a timezone-aware UTC datetime.

    :param value: ISO 8601 string, ``date`` or ``datetime``
    :returns: UTC datetime
    """
    if isinstance(value, str):
        value = isoparse(value)
    if not isinstance(value, date):
        raise ValueError(f"Expected an ISO 8601 string, date or datetime, got {value!r}")
    if not isinstance(value, datetime):
        value = datetime(value.year, value.month, value.day)
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class Asset(BaseModel):
    """One file referenced by a feature.

    :param href: Asset URL
    :param title: Optional human readable title
    :param roles: STAC asset roles
    :param eo_bands: Band metadata; its presence marks a spectral band asset
    :param band_index: 1-based band index inside the file
    """

    model_config = ConfigDict(frozen=True)

    href: str = PydanticField(..., description="URL of the asset")
    title: str | None = PydanticField(default=None, description="Asset title")
    roles: list[str] = PydanticField(default_factory=list, description="STAC asset roles")
    eo_bands: list[dict[str, Any]] | None = PydanticField(default=None, description="Band metadata")
    band_index: int = PydanticField(default=1, ge=1, description="1-based band index within the file")

    @property
    def has_band_metadata(self) -> bool:
        return bool(self.eo_bands)

    @classmethod
    def from_stac_asset(cls, asset: Any) -> "Asset":
        """Create Asset from a pystac Asset or an asset dictionary.

        Band metadata is taken from ``eo:bands`` (STAC eo extension) or ``bands`` (STAC 1.1).

        :param asset: pystac Asset or dict
        :returns: Asset instance
        """
        data = asset.to_dict() if hasattr(asset, "to_dict") else dict(asset)
        eo_bands = data.get("eo:bands") or data.get("bands")
        return cls(
            href=data["href"],
            title=data.get("title"),
            roles=list(data.get("roles") or []),
            eo_bands=eo_bands,
        )


class Feature(BaseModel):
    """A STAC feature (item) describing one captured image.

    :param id: Item identifier
    :param geometry: GeoJSON footprint in EPSG:4326
    :param bbox: Bounding box [west, south, east, north]
    :param acquired: Acquisition time (UTC)
    :param properties: Item properties
    :param assets: Assets by name
    """

    model_config = ConfigDict(frozen=True)

    id: str = PydanticField(..., description="Item identifier")
    geometry: dict[str, Any] | None = PydanticField(default=None, description="GeoJSON footprint")
    bbox: list[float] = PydanticField(..., min_length=4, description="Bounding box")
    acquired: datetime = PydanticField(..., description="Acquisition time")
    properties: dict[str, Any] = PydanticField(default_factory=dict, description="Item properties")
    assets: dict[str, Asset] = PydanticField(default_factory=dict, description="Assets by name")

    @field_validator("acquired", mode="before")
    @classmethod
    def _normalize_datetime(cls, value: Any) -> datetime:
        return to_utc(value)

    @classmethod
    def from_stac_item(cls, item: Any) -> "Feature":
        """Create Feature from a pystac Item or a GeoJSON item dictionary.

        :param item: pystac Item or dict
        :returns: Feature instance
        """
        data = item.to_dict() if hasattr(item, "to_dict") else dict(item)
        properties = dict(data.get("properties") or {})
        acquired = properties.get("datetime") or properties.get("start_datetime")
        if acquired is None:
            raise ValueError(f"Item {data.get('id')} has no datetime")
        return cls(
            id=data["id"],
            geometry=data.get("geometry"),
            bbox=list(data["bbox"]),
            acquired=acquired,
            properties=properties,
            assets={name: Asset.from_stac_asset(asset) for name, asset in (data.get("assets") or {}).items()},
        )


class StacQuery(BaseModel):
    """STAC API search parameters.

    :param collection_id: Collection to search
    :param bbox: Bounding box [west, south, east, north]
    :param time_range: ISO 8601 interval, e.g. "2024-01-01/2024-03-31"
    :param limit: Maximum number of items
    :param query: Optional property query (STAC query extension)
    """

    collection_id: str = PydanticField(..., description="Collection identifier")
    bbox: list[float] = PydanticField(..., min_length=4, max_length=4, description="Bounding box")
    time_range: str = PydanticField(..., description="ISO 8601 interval")
    limit: int = PydanticField(default=100, gt=0, description="Maximum number of returned items")
    query: dict[str, Any] | None = PydanticField(default=None, description="Property query")


class FeatureSearchResult(BaseModel):
    """Result of a STAC search.

    :param features: Returned features
    :param returned_count: Number of returned features
    :param matched_count: Number of matching items reported by the API, if any
    """

    features: list[Feature] = PydanticField(default_factory=list, description="Returned features")
    returned_count: int = PydanticField(..., description="Number of returned features")
    matched_count: int | None = PydanticField(default=None, description="Number of matched items")


class ImageCollectionEntry(BaseModel):
    """One (image, band) pair of an image collection."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    image_id: str
    asset_name: str
    url: str
    footprint: Any = PydanticField(..., description="Shapely footprint in EPSG:4326")
    acquisition_time: datetime
    band_index: int = 1

    @property
    def sort_key(self) -> tuple[datetime, str, str]:
        return self.acquisition_time, self.image_id, self.asset_name


class MaskSpec(BaseModel):
    """Per-pixel mask read from a collection band.

    :param band: Name of the mask band
    :param values: Invalid values; pixels equal to one of them are excluded
    :param invert: Exclude pixels whose value is NOT in ``values`` instead
    :param bits: Optional bit mask applied to the band values before comparison
    """

    model_config = ConfigDict(frozen=True)

    band: str = PydanticField(..., min_length=1, description="Mask band name")
    values: frozenset[int] = PydanticField(..., description="Invalid mask values")
    invert: bool = PydanticField(default=False, description="Invert the value set")
    bits: int | None = PydanticField(default=None, ge=0, description="Bit mask applied before comparison")


class CubeConfig(BaseModel):
    """Engine configuration threaded through cube construction.

    :param threads: Size of the chunk worker pool
    :param chunk_size: Chunk size as (time, y, x)
    :param url_prefix: Prefix applied to asset URLs when opening them
    :param read_retries: Retries of a single asset read
    :param retry_delay: Delay between retries in seconds
    :param gdal_options: GDAL configuration passed to rasterio.Env
    """

    model_config = ConfigDict(frozen=True)

    threads: int = PydanticField(default=DEFAULT_THREADS, ge=1)
    chunk_size: tuple[int, int, int] = PydanticField(default=DEFAULT_CHUNK_SIZE)
    url_prefix: str = PydanticField(default="")
    read_retries: int = PydanticField(default=DEFAULT_READ_RETRIES, ge=0)
    retry_delay: float = PydanticField(default=DEFAULT_RETRY_DELAY, ge=0)
    gdal_options: dict[str, str] = PydanticField(default_factory=lambda: dict(GDAL_DEFAULT_OPTIONS))

    @field_validator("chunk_size")
    @classmethod
    def _positive_chunk_size(cls, value: tuple[int, int, int]) -> tuple[int, int, int]:
        if any(size < 1 for size in value):
            raise ValueError(f"Chunk size must be positive in every dimension, got {value}")
        return value
