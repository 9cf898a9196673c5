"""Storage access layer: windowed COG reads reprojected into a target grid."""

import math
from typing import Any

import numpy as np
import rasterio
import rasterio.warp
from dagster import get_dagster_logger
from numpy.typing import NDArray
from rasterio.enums import Resampling
from rasterio.errors import RasterioError, RasterioIOError, WindowError
from rasterio.transform import array_bounds
from rasterio.windows import Window, from_bounds
from reretry import retry

from stac_cubes.errors import AssetReadError
from stac_cubes.models.models import CubeConfig

logger = get_dagster_logger()

# Extra source pixels read around the window so interpolating kernels see their neighbours
_WINDOW_PADDING = {"nearest": 0, "average": 1, "bilinear": 1, "bicubic": 2}


def resampling_method(name: str) -> Resampling:
    """Map a resampling name to the rasterio enum."""
    return Resampling[name]


def source_window(src: Any, dst_bounds: tuple[float, float, float, float], dst_crs: Any, padding: int = 0) -> Window:
    """Smallest source window covering ``dst_bounds``, clipped to the dataset.

    :param src: Open rasterio dataset
    :param dst_bounds: (left, bottom, right, top) in ``dst_crs``
    :param dst_crs: CRS of the bounds
    :param padding: Pixels added on every side
    :returns: Window in source pixel coordinates
    :raises WindowError: If the bounds do not overlap the dataset
    """
    bounds = rasterio.warp.transform_bounds(dst_crs, src.crs, *dst_bounds, densify_pts=21)
    window = from_bounds(*bounds, transform=src.transform)
    col_off = math.floor(window.col_off) - padding
    row_off = math.floor(window.row_off) - padding
    width = math.ceil(window.col_off + window.width) + padding - col_off
    height = math.ceil(window.row_off + window.height) + padding - row_off
    return Window(col_off, row_off, width, height).intersection(Window(0, 0, src.width, src.height))


def resample_band_to_match(
    source_data: NDArray[np.floating],
    source_transform: Any,
    source_crs: Any,
    target_shape: tuple[int, ...],
    target_transform: Any,
    target_crs: Any,
    resampling: Resampling = Resampling.bilinear,
) -> NDArray[np.floating]:
    """Resample source data into the target grid, NaN marking no-data on both sides.

    :param source_data: Source band array
    :param source_transform: Source transform
    :param source_crs: Source CRS
    :param target_shape: Target shape
    :param target_transform: Target transform
    :param target_crs: Target CRS
    :param resampling: Resampling method
    :returns: Resampled array
    """
    dst_data = np.full(target_shape, np.nan, dtype="float32")
    rasterio.warp.reproject(
        source=source_data,
        destination=dst_data,
        src_transform=source_transform,
        src_crs=source_crs,
        dst_transform=target_transform,
        dst_crs=target_crs,
        src_nodata=np.nan,
        dst_nodata=np.nan,
        resampling=resampling,
    )
    return dst_data


class AssetReader:
    """Reads one band of one asset into a target grid.

    Only the source window covering the target grid is read, which keeps remote
    COG access to a few HTTP range requests. Failed reads are retried per asset.

    :param config: Engine configuration (URL prefix, retries, GDAL options)
    """

    def __init__(self, config: CubeConfig | None = None) -> None:
        self.config = config or CubeConfig()

    def _open_url(self, url: str) -> str:
        prefix = self.config.url_prefix
        if prefix and not url.startswith(prefix):
            return f"{prefix}{url}"
        return url

    def _read_once(
        self,
        url: str,
        band_index: int,
        dst_shape: tuple[int, int],
        dst_transform: Any,
        dst_crs: Any,
        resampling: str,
    ) -> NDArray[np.floating]:
        dst_bounds = array_bounds(dst_shape[0], dst_shape[1], dst_transform)
        west, south, east, north = dst_bounds
        with rasterio.Env(**self.config.gdal_options), rasterio.open(self._open_url(url)) as src:
            if src.crs is None:
                raise AssetReadError(url, "dataset has no CRS")
            try:
                window = source_window(src, (west, south, east, north), dst_crs, _WINDOW_PADDING[resampling])
            except WindowError:
                logger.debug(f"Asset {url} does not overlap the target grid")
                return np.full(dst_shape, np.nan, dtype="float32")
            data = src.read(band_index, window=window, masked=True).astype("float32").filled(np.nan)
            window_transform = src.window_transform(window)
            src_crs = src.crs

        return resample_band_to_match(
            source_data=data,
            source_transform=window_transform,
            source_crs=src_crs,
            target_shape=dst_shape,
            target_transform=dst_transform,
            target_crs=dst_crs,
            resampling=resampling_method(resampling),
        )

    def read(
        self,
        url: str,
        band_index: int,
        dst_shape: tuple[int, int],
        dst_transform: Any,
        dst_crs: Any,
        resampling: str = "nearest",
    ) -> NDArray[np.floating]:
        """Read a band into the target grid.

        :param url: Asset URL
        :param band_index: 1-based band index within the asset
        :param dst_shape: Target (rows, cols)
        :param dst_transform: Target affine transform
        :param dst_crs: Target CRS
        :param resampling: Resampling method name
        :returns: float32 array, NaN where no data
        :raises AssetReadError: If the asset cannot be read after all retries
        """
        read_with_retries = retry(
            exceptions=(RasterioIOError,),
            tries=self.config.read_retries + 1,
            delay=self.config.retry_delay,
            logger=logger,
        )(self._read_once)
        try:
            return read_with_retries(url, band_index, dst_shape, dst_transform, dst_crs, resampling)
        except AssetReadError:
            raise
        except (RasterioError, OSError, IndexError) as e:
            raise AssetReadError(url, str(e)) from e
