"""Lazy raster data cubes built from image collections.

A cube is a description of a (band, time, y, x) array over the grid of a
:class:`CubeView`. Nothing is read until chunks are requested, either one at a
time with :meth:`RasterCube.read_chunk` or through one of the terminal
consumers (:meth:`RasterCube.to_numpy`, :meth:`RasterCube.to_xarray`,
:meth:`RasterCube.write_geotiff`).
"""

import math
import threading
import warnings
from collections import defaultdict
from collections.abc import Iterable, Iterator, Sequence
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any

import numpy as np
import rasterio
import rasterio.warp
import xarray as xr
from affine import Affine
from dagster import get_dagster_logger
from numpy.typing import NDArray
from shapely.geometry import box

from stac_cubes.config.constants import FOOTPRINT_CRS
from stac_cubes.errors import AssetReadError, ConfigurationError, EmptyResultWarning
from stac_cubes.geospatial.aggregators import reduce_stack
from stac_cubes.geospatial.collection import ImageCollection
from stac_cubes.geospatial.cube_view import CubeView
from stac_cubes.geospatial.raster_ops import AssetReader
from stac_cubes.models.models import CubeConfig, ImageCollectionEntry, MaskSpec

logger = get_dagster_logger()


@dataclass(frozen=True, order=True)
class ChunkCoords:
    """Position of a chunk in the chunk grid (time, y, x)."""

    t: int
    y: int
    x: int


def _as_coords(coords: "ChunkCoords | Sequence[int]") -> ChunkCoords:
    if isinstance(coords, ChunkCoords):
        return coords
    t, y, x = coords
    return ChunkCoords(int(t), int(y), int(x))


class RasterCube:
    """Base class of all cubes.

    Subclasses implement :meth:`_read`, returning a chunk for a subset of
    their bands so that band selections propagate down to the builder.

    :param view: Grid of the cube
    :param bands: Band names
    :param chunk_size: Chunk size as (time, y, x)
    :param config: Engine configuration
    """

    def __init__(
        self,
        view: CubeView,
        bands: Sequence[str],
        chunk_size: tuple[int, int, int],
        config: CubeConfig,
    ) -> None:
        self.view = view
        self.bands = tuple(bands)
        self.config = config
        self._nt = len(self.time_labels())
        nt, ny, nx = self._nt, view.ny, view.nx
        self.chunk_size = (min(chunk_size[0], nt), min(chunk_size[1], ny), min(chunk_size[2], nx))

    def __repr__(self) -> str:
        return f"{type(self).__name__}(bands={list(self.bands)}, shape={self.shape}, chunk_size={self.chunk_size})"

    def time_labels(self) -> list[datetime]:
        return self.view.time_labels()

    @property
    def nt(self) -> int:
        return self._nt

    @property
    def shape(self) -> tuple[int, int, int, int]:
        return len(self.bands), self.nt, self.view.ny, self.view.nx

    @property
    def chunk_grid(self) -> tuple[int, int, int]:
        _, nt, ny, nx = self.shape
        ct, cy, cx = self.chunk_size
        return math.ceil(nt / ct), math.ceil(ny / cy), math.ceil(nx / cx)

    def chunk_coords(self) -> Iterator[ChunkCoords]:
        """All chunk coordinates, time first, then rows, then columns."""
        gt, gy, gx = self.chunk_grid
        for t in range(gt):
            for y in range(gy):
                for x in range(gx):
                    yield ChunkCoords(t, y, x)

    def _check_coords(self, coords: ChunkCoords) -> None:
        gt, gy, gx = self.chunk_grid
        if not (0 <= coords.t < gt and 0 <= coords.y < gy and 0 <= coords.x < gx):
            raise IndexError(f"Chunk {coords} outside chunk grid {self.chunk_grid}")

    def chunk_slices(self, coords: ChunkCoords) -> tuple[slice, slice, slice]:
        """Index ranges of a chunk along time, y and x."""
        _, nt, ny, nx = self.shape
        ct, cy, cx = self.chunk_size
        return (
            slice(coords.t * ct, min((coords.t + 1) * ct, nt)),
            slice(coords.y * cy, min((coords.y + 1) * cy, ny)),
            slice(coords.x * cx, min((coords.x + 1) * cx, nx)),
        )

    def chunk_shape(self, coords: ChunkCoords) -> tuple[int, int, int]:
        return tuple(s.stop - s.start for s in self.chunk_slices(coords))  # type: ignore[return-value]

    def chunk_transform(self, coords: ChunkCoords) -> Affine:
        _, rows, cols = self.chunk_slices(coords)
        return self.view.transform * Affine.translation(cols.start, rows.start)

    def chunk_bounds(self, coords: ChunkCoords) -> tuple[float, float, float, float]:
        """Spatial bounds (left, bottom, right, top) of a chunk in the view SRS."""
        _, rows, cols = self.chunk_slices(coords)
        transform = self.view.transform
        left, top = transform * (cols.start, rows.start)
        right, bottom = transform * (cols.stop, rows.stop)
        return left, bottom, right, top

    def chunk_time_range(self, coords: ChunkCoords) -> tuple[datetime, datetime]:
        """Time range [start, end) covered by a chunk."""
        times, _, _ = self.chunk_slices(coords)
        start, _ = self.view.slice_bounds(times.start)
        _, end = self.view.slice_bounds(times.stop - 1)
        return start, end

    def empty_chunk(self, coords: ChunkCoords, n_bands: int | None = None) -> NDArray[np.floating]:
        ct, cy, cx = self.chunk_shape(coords)
        return np.full((len(self.bands) if n_bands is None else n_bands, ct, cy, cx), np.nan, dtype="float32")

    def _read(self, coords: ChunkCoords, bands: tuple[str, ...]) -> NDArray[np.floating]:
        raise NotImplementedError

    def read_chunk(self, coords: "ChunkCoords | Sequence[int]") -> NDArray[np.floating]:
        """Materialize one chunk.

        :param coords: Chunk coordinates (time, y, x)
        :returns: float32 array of shape (bands, ct, cy, cx), NaN for no-data
        """
        coords = _as_coords(coords)
        self._check_coords(coords)
        chunk = self._read(coords, self.bands)
        if np.isnan(chunk).all():
            logger.debug(f"Chunk {coords} contains no valid observations")
            warnings.warn("Chunk contains no valid observations", EmptyResultWarning, stacklevel=2)
        return chunk

    def iter_chunks(self) -> Iterator[tuple[ChunkCoords, NDArray[np.floating]]]:
        """Materialize chunks sequentially in grid order."""
        for coords in self.chunk_coords():
            yield coords, self.read_chunk(coords)

    def evaluate(
        self, threads: int | None = None, cancel: threading.Event | None = None
    ) -> Iterator[tuple[ChunkCoords, NDArray[np.floating]]]:
        """Materialize chunks in parallel, yielding them as they complete.

        At most ``threads`` chunks are in flight. Once ``cancel`` is set no new
        chunk is submitted; chunks already running are finished.

        :param threads: Worker count, defaults to the configured thread count
        :param cancel: Event stopping the submission of further chunks
        :yields: (coords, chunk) pairs in completion order
        """
        workers = threads or self.config.threads
        pending = self.chunk_coords()
        in_flight: dict[Future[NDArray[np.floating]], ChunkCoords] = {}

        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="cube-chunk") as executor:

            def submit_next() -> None:
                if cancel is not None and cancel.is_set():
                    return
                coords = next(pending, None)
                if coords is not None:
                    in_flight[executor.submit(self.read_chunk, coords)] = coords

            for _ in range(workers):
                submit_next()
            while in_flight:
                done, _ = wait(in_flight, return_when=FIRST_COMPLETED)
                for future in done:
                    coords = in_flight.pop(future)
                    yield coords, future.result()
                    submit_next()
            if cancel is not None and cancel.is_set():
                logger.info("Cube evaluation cancelled")

    def to_numpy(self, threads: int | None = None) -> NDArray[np.floating]:
        """Assemble the full (band, time, y, x) array."""
        result = np.full(self.shape, np.nan, dtype="float32")
        for coords, chunk in self.evaluate(threads=threads):
            times, rows, cols = self.chunk_slices(coords)
            result[:, times, rows, cols] = chunk
        if result.size and np.isnan(result).all():
            warnings.warn("Cube contains no valid observations", EmptyResultWarning, stacklevel=2)
        return result

    def to_xarray(self, threads: int | None = None) -> xr.DataArray:
        """Assemble the cube as an xarray DataArray with pixel centre coordinates."""
        left, _, top, _ = self.view.extent
        x = left + self.view.dx * (np.arange(self.view.nx) + 0.5)
        y = top - self.view.dy * (np.arange(self.view.ny) + 0.5)
        times = np.array([label.replace(tzinfo=None) for label in self.time_labels()], dtype="datetime64[ns]")
        return xr.DataArray(
            self.to_numpy(threads=threads),
            dims=("band", "time", "y", "x"),
            coords={"band": list(self.bands), "time": times, "y": y, "x": x},
            attrs={"crs": self.view.srs, "transform": tuple(self.view.transform)[:6], "nodata": np.nan},
        )

    def write_geotiff(self, directory: str | Path, prefix: str = "cube", threads: int | None = None) -> list[Path]:
        """Write one multiband GeoTIFF per time slice.

        :param directory: Output directory, created if missing
        :param prefix: File name prefix
        :param threads: Worker count
        :returns: Written paths
        """
        out_dir = Path(directory)
        out_dir.mkdir(parents=True, exist_ok=True)
        data = self.to_numpy(threads=threads)
        paths = []
        for index, label in enumerate(self.time_labels()):
            path = out_dir / f"{prefix}_{label.strftime('%Y%m%dT%H%M%S')}.tif"
            with rasterio.open(
                path,
                "w",
                driver="GTiff",
                height=self.view.ny,
                width=self.view.nx,
                count=len(self.bands),
                dtype="float32",
                crs=self.view.crs,
                transform=self.view.transform,
                nodata=np.nan,
            ) as dst:
                dst.write(data[:, index])
                for band_index, name in enumerate(self.bands, start=1):
                    dst.set_band_description(band_index, name)
            paths.append(path)
        logger.info(f"Wrote {len(paths)} GeoTIFF(s) to {out_dir}")
        return paths

    def select_bands(self, names: Iterable[str]) -> "RasterCube":
        from stac_cubes.geospatial.operators import select_bands

        return select_bands(self, names)

    def apply_pixel(
        self, expressions: str | Sequence[str], names: str | Sequence[str], keep_bands: bool = False
    ) -> "RasterCube":
        from stac_cubes.geospatial.operators import apply_pixel

        return apply_pixel(self, expressions, names, keep_bands=keep_bands)

    def filter_pixel(self, predicate: str) -> "RasterCube":
        from stac_cubes.geospatial.operators import filter_pixel

        return filter_pixel(self, predicate)

    def reduce_time(self, *expressions: str) -> "RasterCube":
        from stac_cubes.geospatial.operators import reduce_time

        return reduce_time(self, *expressions)


def mask_invalid(values: NDArray[np.floating], mask: MaskSpec) -> NDArray[np.bool_]:
    """Pixels excluded by a mask; pixels where the mask band has no data are kept.

    :param values: Mask band values in the chunk grid
    :param mask: Mask specification
    :returns: Boolean array, True where the pixel must be dropped
    """
    has_value = ~np.isnan(values)
    codes = np.where(has_value, values, 0).astype(np.int64)
    if mask.bits is not None:
        codes = codes & mask.bits
    listed = np.isin(codes, list(mask.values))
    return has_value & (~listed if mask.invert else listed)


class ImageCollectionCube(RasterCube):
    """Cube read directly from an image collection.

    :param collection: Source images
    :param view: Target grid
    :param mask: Optional mask applied to every image
    :param config: Engine configuration
    :param reader: Storage access layer, defaults to :class:`AssetReader`
    """

    def __init__(
        self,
        collection: ImageCollection,
        view: CubeView,
        mask: MaskSpec | None = None,
        config: CubeConfig | None = None,
        reader: Any = None,
    ) -> None:
        config = config or CubeConfig()
        if mask is not None and collection.bands and mask.band not in collection.bands:
            raise ConfigurationError(
                f"Mask band {mask.band!r} is not part of the collection bands {list(collection.bands)}"
            )
        super().__init__(view, collection.bands, config.chunk_size, config)
        self.collection = collection
        self.mask = mask
        self.reader = reader if reader is not None else AssetReader(config)

    def chunk_region(self, coords: ChunkCoords) -> Any:
        """Chunk footprint in the CRS of the collection footprints."""
        west, south, east, north = rasterio.warp.transform_bounds(
            self.view.crs, FOOTPRINT_CRS, *self.chunk_bounds(coords), densify_pts=21
        )
        return box(west, south, east, north)

    def select_entries(
        self, coords: "ChunkCoords | Sequence[int]", bands: Iterable[str] | None = None
    ) -> list[ImageCollectionEntry]:
        """Entries contributing to a chunk: footprint overlaps the chunk and time falls within it.

        :param coords: Chunk coordinates
        :param bands: Bands of interest, all bands when None; the mask band is always included
        :returns: Entries in deterministic order (time, image id, band)
        """
        coords = _as_coords(coords)
        self._check_coords(coords)
        wanted = set(self.bands if bands is None else bands)
        if self.mask is not None:
            wanted.add(self.mask.band)
        region = self.chunk_region(coords)
        start, end = self.chunk_time_range(coords)
        selected = [
            entry
            for entry in self.collection
            if entry.asset_name in wanted
            and start <= entry.acquisition_time < end
            and entry.footprint.intersects(region)
            and not entry.footprint.touches(region)
        ]
        return sorted(selected, key=lambda entry: entry.sort_key)

    def _read_mask(
        self, entry: ImageCollectionEntry, mask: MaskSpec, shape: tuple[int, int], transform: Affine
    ) -> NDArray[np.bool_]:
        values = self.reader.read(entry.url, entry.band_index, shape, transform, self.view.crs, "nearest")
        return mask_invalid(values, mask)

    def _read(self, coords: ChunkCoords, bands: tuple[str, ...]) -> NDArray[np.floating]:
        out = self.empty_chunk(coords, len(bands))
        entries = self.select_entries(coords, bands)
        if not entries:
            logger.debug(f"Chunk {coords} has no contributing images")
            return out

        times, _, _ = self.chunk_slices(coords)
        _, cy, cx = self.chunk_shape(coords)
        transform = self.chunk_transform(coords)
        band_positions = {name: index for index, name in enumerate(bands)}
        observations: dict[tuple[int, int], list[NDArray[np.floating]]] = defaultdict(list)

        by_image: dict[str, list[ImageCollectionEntry]] = defaultdict(list)
        for entry in entries:
            by_image[entry.image_id].append(entry)

        for image_id, image_entries in by_image.items():
            slice_index = self.view.time_index(image_entries[0].acquisition_time)
            if slice_index is None:
                continue
            local_t = slice_index - times.start
            by_band = {entry.asset_name: entry for entry in image_entries}
            if not any(band in band_positions for band in by_band):
                continue

            invalid = None
            mask = self.mask
            if mask is not None:
                mask_entry = by_band.get(mask.band)
                if mask_entry is None:
                    logger.warning(f"Image {image_id} has no mask band {mask.band!r}; skipping it")
                    continue
                try:
                    invalid = self._read_mask(mask_entry, mask, (cy, cx), transform)
                except AssetReadError as e:
                    logger.warning(f"Skipping image {image_id}, mask unreadable: {e}")
                    continue

            for band, entry in by_band.items():
                if band not in band_positions:
                    continue
                try:
                    values = self.reader.read(
                        entry.url, entry.band_index, (cy, cx), transform, self.view.crs, self.view.resampling
                    )
                except AssetReadError as e:
                    logger.warning(f"Skipping {band} of image {image_id}: {e}")
                    continue
                values = np.asarray(values, dtype="float32")
                if invalid is not None:
                    values = np.where(invalid, np.nan, values)
                observations[(band_positions[band], local_t)].append(values)

        for (band_index, local_t), stack in observations.items():
            out[band_index, local_t] = reduce_stack(self.view.aggregation, np.stack(stack))
        logger.debug(f"Chunk {coords}: {len(by_image)} image(s), {len(observations)} band/time slice(s) filled")
        return out


def raster_cube(
    collection: ImageCollection,
    view: CubeView,
    mask: MaskSpec | None = None,
    config: CubeConfig | None = None,
    reader: Any = None,
) -> ImageCollectionCube:
    """Describe a raster cube over an image collection; no data is read.

    :param collection: Source images
    :param view: Target grid
    :param mask: Optional mask specification
    :param config: Engine configuration
    :param reader: Storage access layer
    :returns: Lazy cube
    """
    cube = ImageCollectionCube(collection, view, mask=mask, config=config, reader=reader)
    logger.debug(f"Created raster cube {cube!r} over {view}")
    return cube


def read_chunk(cube: RasterCube, coords: "ChunkCoords | Sequence[int]") -> NDArray[np.floating]:
    """Materialize one chunk of any cube."""
    return cube.read_chunk(coords)
