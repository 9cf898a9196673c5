from pathlib import Path

import numpy as np
import pytest
import rasterio
from affine import Affine
from numpy.typing import NDArray
from rasterio.errors import RasterioIOError

from stac_cubes.errors import AssetReadError
from stac_cubes.geospatial import raster_ops
from stac_cubes.models.models import CubeConfig

# 4x4 one-degree pixels with the top-left corner at (0, 4)
GRID_TRANSFORM = Affine.translation(0, 4) * Affine.scale(1, -1)


def _write_geotiff(
    path: Path,
    data: NDArray[np.floating],
    crs: str = "EPSG:4326",
    transform: Affine | None = None,
    nodata: float | None = None,
) -> None:
    """
    Helper function to write a GeoTIFF file for testing.

    Args:
      path: Path to write the GeoTIFF
      data: NumPy array with raster data
      crs: Coordinate reference system
      transform: Affine transform (defaults to the 4x4 test grid)
      nodata: Optional nodata value
    """
    height, width = data.shape
    transform = transform or GRID_TRANSFORM
    with rasterio.open(
        path,
        "w",
        driver="GTiff",
        height=height,
        width=width,
        count=1,
        dtype=data.dtype,
        crs=crs,
        transform=transform,
        nodata=nodata,
    ) as dst:
        dst.write(data, 1)


def _reader(**overrides: object) -> raster_ops.AssetReader:
    return raster_ops.AssetReader(CubeConfig(read_retries=0, retry_delay=0, **overrides))


def test_read_window_into_aligned_grid(tmp_path: Path) -> None:
    """
    Test that reading into a sub-grid of the source returns the matching pixels.
    """
    data = np.arange(16, dtype="float32").reshape(4, 4)
    tif_path = tmp_path / "band.tif"
    _write_geotiff(tif_path, data)

    dst_transform = Affine(1, 0, 1, 0, -1, 3)
    result = _reader().read(str(tif_path), 1, (2, 2), dst_transform, "EPSG:4326")
    assert result.dtype == np.float32
    np.testing.assert_allclose(result, data[1:3, 1:3])


def test_read_resamples_to_coarser_grid(tmp_path: Path) -> None:
    """
    Test that average resampling aggregates source pixels into larger target pixels.
    """
    data = np.arange(16, dtype="float32").reshape(4, 4)
    tif_path = tmp_path / "band.tif"
    _write_geotiff(tif_path, data)

    dst_transform = Affine(2, 0, 0, 0, -2, 4)
    result = _reader().read(str(tif_path), 1, (2, 2), dst_transform, "EPSG:4326", resampling="average")
    expected = data.reshape(2, 2, 2, 2).mean(axis=(1, 3))
    np.testing.assert_allclose(result, expected, rtol=1e-5)


def test_read_maps_nodata_to_nan(tmp_path: Path) -> None:
    data = np.ones((4, 4), dtype="float32")
    data[0, 0] = -9999
    tif_path = tmp_path / "band.tif"
    _write_geotiff(tif_path, data, nodata=-9999)

    result = _reader().read(str(tif_path), 1, (4, 4), GRID_TRANSFORM, "EPSG:4326")
    assert np.isnan(result[0, 0])
    assert np.count_nonzero(np.isnan(result)) == 1


def test_read_outside_dataset_is_all_nodata(tmp_path: Path) -> None:
    """
    Test that a target grid not overlapping the asset yields NaN without failing.
    """
    tif_path = tmp_path / "band.tif"
    _write_geotiff(tif_path, np.ones((4, 4), dtype="float32"))

    dst_transform = Affine(1, 0, 50, 0, -1, 50)
    result = _reader().read(str(tif_path), 1, (3, 3), dst_transform, "EPSG:4326")
    assert result.shape == (3, 3)
    assert np.isnan(result).all()


def test_read_reprojects_between_crs(tmp_path: Path) -> None:
    """
    Test that a constant band keeps its value when read into a projected grid.
    """
    tif_path = tmp_path / "band.tif"
    _write_geotiff(tif_path, np.full((4, 4), 7.0, dtype="float32"))

    dst_transform = Affine(10000, 0, 150000, 0, -10000, 300000)
    result = _reader().read(str(tif_path), 1, (5, 5), dst_transform, "EPSG:3857")
    valid = ~np.isnan(result)
    assert valid.any()
    np.testing.assert_allclose(result[valid], 7.0)


def test_missing_asset_raises_asset_read_error(tmp_path: Path) -> None:
    with pytest.raises(AssetReadError) as excinfo:
        _reader().read(str(tmp_path / "missing.tif"), 1, (2, 2), GRID_TRANSFORM, "EPSG:4326")
    assert excinfo.value.url.endswith("missing.tif")


def test_invalid_band_index_raises_asset_read_error(tmp_path: Path) -> None:
    tif_path = tmp_path / "band.tif"
    _write_geotiff(tif_path, np.ones((4, 4), dtype="float32"))
    with pytest.raises(AssetReadError):
        _reader().read(str(tif_path), 3, (4, 4), GRID_TRANSFORM, "EPSG:4326")


def test_url_prefix_is_applied_when_opening(tmp_path: Path) -> None:
    """
    Test that the configured URL prefix is prepended to asset URLs.
    """
    tif_path = tmp_path / "band.tif"
    _write_geotiff(tif_path, np.full((4, 4), 2.0, dtype="float32"))

    reader = _reader(url_prefix=f"{tmp_path}/")
    assert reader._open_url("band.tif") == str(tif_path)
    np.testing.assert_allclose(reader.read("band.tif", 1, (4, 4), GRID_TRANSFORM, "EPSG:4326"), 2.0)


def test_source_window_is_clipped_to_dataset(tmp_path: Path) -> None:
    tif_path = tmp_path / "band.tif"
    _write_geotiff(tif_path, np.ones((4, 4), dtype="float32"))
    with rasterio.open(tif_path) as src:
        window = raster_ops.source_window(src, (3, 1, 10, 3), "EPSG:4326", padding=1)
    assert (window.col_off, window.row_off, window.width, window.height) == (2, 0, 2, 4)


def test_transient_io_errors_are_retried(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """
    Test that I/O failures are retried up to the configured count.

    A single failure recovers on the next attempt; persistent failures surface
    as AssetReadError after read_retries + 1 attempts.
    """
    tif_path = tmp_path / "band.tif"
    _write_geotiff(tif_path, np.full((4, 4), 3.0, dtype="float32"))
    real_open = rasterio.open
    attempts = {"count": 0, "failures": 1}

    def flaky_open(url, *args, **kwargs):
        attempts["count"] += 1
        if attempts["count"] <= attempts["failures"]:
            raise RasterioIOError("connection reset")
        return real_open(url, *args, **kwargs)

    monkeypatch.setattr(raster_ops.rasterio, "open", flaky_open)
    reader = raster_ops.AssetReader(CubeConfig(read_retries=2, retry_delay=0))

    np.testing.assert_allclose(reader.read(str(tif_path), 1, (4, 4), GRID_TRANSFORM, "EPSG:4326"), 3.0)
    assert attempts["count"] == 2

    attempts.update(count=0, failures=10)
    with pytest.raises(AssetReadError, match="connection reset"):
        reader.read(str(tif_path), 1, (4, 4), GRID_TRANSFORM, "EPSG:4326")
    assert attempts["count"] == 3
