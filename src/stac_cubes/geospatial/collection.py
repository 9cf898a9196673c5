"""Feature catalog adapter: turns STAC features into an image collection."""

import warnings
from collections.abc import Callable, Iterable, Iterator, Mapping
from datetime import datetime
from itertools import groupby
from typing import Any

from dagster import get_dagster_logger
from pydantic import ValidationError
from shapely.geometry import box, shape
from shapely.ops import unary_union

from stac_cubes.errors import ConfigurationError, EmptyResultWarning
from stac_cubes.geospatial.expressions import Expression, compile_expression, compile_property_query
from stac_cubes.models.models import Feature, ImageCollectionEntry

logger = get_dagster_logger()

UrlRewrite = str | Callable[[str], str] | None
PropertyFilter = str | Mapping[str, Mapping[str, Any]] | None


class ImageCollection:
    """Immutable, ordered index of (image, band) entries.

    :param entries: Collection entries
    :param bands: Band (asset) names known to the collection, in order
    """

    def __init__(self, entries: Iterable[ImageCollectionEntry], bands: Iterable[str] = ()) -> None:
        self._entries = tuple(entries)
        known = list(dict.fromkeys(bands))
        for entry in self._entries:
            if entry.asset_name not in known:
                known.append(entry.asset_name)
        self._bands = tuple(known)

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[ImageCollectionEntry]:
        return iter(self._entries)

    def __repr__(self) -> str:
        return f"ImageCollection(images={len(self.image_ids)}, entries={len(self)}, bands={list(self.bands)})"

    @property
    def entries(self) -> tuple[ImageCollectionEntry, ...]:
        return self._entries

    @property
    def bands(self) -> tuple[str, ...]:
        return self._bands

    @property
    def image_ids(self) -> tuple[str, ...]:
        return tuple(dict.fromkeys(entry.image_id for entry in self._entries))

    @property
    def is_empty(self) -> bool:
        return not self._entries

    def images(self) -> list[tuple[str, list[ImageCollectionEntry]]]:
        """Entries grouped by image, ordered by acquisition time then image id."""
        ordered = sorted(self._entries, key=lambda entry: entry.sort_key)
        return [(image_id, list(group)) for image_id, group in groupby(ordered, key=lambda entry: entry.image_id)]

    def extent(self) -> dict[str, Any] | None:
        """Spatial (EPSG:4326) and temporal bounds of the collection, None when empty."""
        if not self._entries:
            return None
        west, south, east, north = unary_union([entry.footprint for entry in self._entries]).bounds
        times = [entry.acquisition_time for entry in self._entries]
        return {"left": west, "right": east, "top": north, "bottom": south, "t0": min(times), "t1": max(times)}


def compile_property_filter(property_filter: PropertyFilter) -> Expression | None:
    """Compile a property filter given as an expression string or a STAC query mapping.

    :param property_filter: Expression, query mapping or None
    :returns: Compiled expression or None
    :raises ConfigurationError: If the filter cannot be compiled
    """
    if property_filter is None:
        return None
    if isinstance(property_filter, str):
        return compile_expression(property_filter)
    if isinstance(property_filter, Mapping):
        return compile_property_query(property_filter)
    raise ConfigurationError(f"Property filter must be an expression string or a query mapping, got {property_filter!r}")


def _make_url_rewrite(url_rewrite: UrlRewrite) -> Callable[[str], str]:
    if url_rewrite is None:
        return lambda url: url
    if isinstance(url_rewrite, str):
        prefix = url_rewrite
        return lambda url: url if url.startswith(prefix) else f"{prefix}{url}"
    if callable(url_rewrite):
        return url_rewrite
    raise ConfigurationError(f"URL rewrite must be a prefix string or a callable, got {url_rewrite!r}")


def _matches(feature: Feature, expression: Expression) -> bool:
    missing = sorted(expression.names - set(feature.properties))
    if missing:
        logger.warning(f"Feature {feature.id} lacks propert(ies) {missing} required by filter; excluding it")
        return False
    try:
        return bool(expression.evaluate(feature.properties))
    except (TypeError, ValueError) as e:
        logger.warning(f"Filter {expression.source!r} could not be evaluated for feature {feature.id}: {e}")
        return False


def _feature_footprint(feature: Feature) -> Any:
    if feature.geometry:
        return shape(feature.geometry)
    bbox = feature.bbox
    west, south, east, north = (bbox[0], bbox[1], bbox[3], bbox[4]) if len(bbox) == 6 else bbox[:4]
    return box(west, south, east, north)


def _select_assets(feature: Feature, asset_names: list[str] | None) -> list[str]:
    if asset_names is None:
        return [name for name, asset in feature.assets.items() if asset.has_band_metadata]
    selected = []
    for name in asset_names:
        asset = feature.assets.get(name)
        if asset is None:
            logger.debug(f"Feature {feature.id} has no asset {name!r}")
            continue
        if not asset.has_band_metadata:
            logger.warning(f"Asset {name!r} of feature {feature.id} has no band metadata; including it as requested")
        selected.append(name)
    return selected


def build_collection(
    features: Iterable[Feature | Mapping[str, Any] | Any],
    asset_names: Iterable[str] | None = None,
    property_filter: PropertyFilter = None,
    url_rewrite: UrlRewrite = None,
) -> ImageCollection:
    """Build an image collection from STAC features.

    Only feature metadata is used; no asset is opened.

    :param features: Features, STAC item dictionaries or pystac Items
    :param asset_names: Assets to include; defaults to assets carrying band metadata
    :param property_filter: Expression string or STAC query mapping over item properties
    :param url_rewrite: URL prefix or callable applied to every asset URL
    :returns: ImageCollection, possibly empty
    :raises ConfigurationError: If the filter or rewrite rule is invalid
    """
    expression = compile_property_filter(property_filter)
    rewrite = _make_url_rewrite(url_rewrite)
    names = list(dict.fromkeys(asset_names)) if asset_names is not None else None

    entries: list[ImageCollectionEntry] = []
    seen: set[str] = set()
    excluded = 0
    skipped = 0
    for raw in features:
        try:
            feature = raw if isinstance(raw, Feature) else Feature.from_stac_item(raw)
        except (ValidationError, ValueError, KeyError, TypeError) as e:
            logger.warning(f"Skipping STAC item that cannot be converted to a feature: {e}")
            skipped += 1
            continue
        if feature.id in seen:
            logger.warning(f"Duplicate feature {feature.id}; keeping the first occurrence")
            continue
        seen.add(feature.id)

        if expression is not None and not _matches(feature, expression):
            excluded += 1
            continue

        footprint = _feature_footprint(feature)
        acquired: datetime = feature.acquired
        for name in _select_assets(feature, names):
            asset = feature.assets[name]
            entries.append(
                ImageCollectionEntry(
                    image_id=feature.id,
                    asset_name=name,
                    url=rewrite(asset.href),
                    footprint=footprint,
                    acquisition_time=acquired,
                    band_index=asset.band_index,
                )
            )

    collection = ImageCollection(entries, bands=names or ())
    logger.info(
        f"Built image collection with {len(collection.image_ids)} image(s), {len(collection)} entries "
        f"and bands {list(collection.bands)} ({excluded} feature(s) excluded by filter, {skipped} unreadable item(s) skipped)"
    )
    if collection.is_empty:
        warnings.warn("Image collection is empty after filtering", EmptyResultWarning, stacklevel=2)
    return collection
