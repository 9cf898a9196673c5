"""Defaults and enumerations for cube construction."""

DEFAULT_TMP_DIR = "/tmp"
DEFAULT_STAC_API_URL = "https://earth-search.aws.element84.com/v1"
DEFAULT_CLOUD_COVER_THRESHOLD = 10
DEFAULT_THREADS = 4
DEFAULT_CHUNK_SIZE: tuple[int, int, int] = (1, 256, 256)
DEFAULT_READ_RETRIES = 2
DEFAULT_RETRY_DELAY = 0.5

FOOTPRINT_CRS = "EPSG:4326"

AGGREGATION_METHODS = frozenset({"median", "mean", "min", "max", "first", "count"})
RESAMPLING_METHODS = frozenset({"nearest", "bilinear", "bicubic", "average"})
TIME_REDUCERS = frozenset({"median", "mean", "min", "max", "sum", "prod", "count", "var", "sd", "first", "last"})

# Sentinel-2 scene classification: cloud shadows, medium and high probability clouds
SCL_MASK_VALUES = frozenset({3, 8, 9})

SENTINEL2_COLLECTION = "sentinel-2-l2a"
# Asset names of the Earth Search sentinel-2-l2a collection
NDVI_BANDS: dict[str, str] = {
    "red": "red",
    "nir": "nir",
}
SCL_ASSET = "scl"

GDAL_DEFAULT_OPTIONS: dict[str, str] = {
    "GDAL_DISABLE_READDIR_ON_OPEN": "EMPTY_DIR",
    "GDAL_HTTP_MERGE_CONSECUTIVE_RANGES": "YES",
    "CPL_VSIL_CURL_ALLOWED_EXTENSIONS": ".tif,.tiff,.TIF,.jp2",
}
