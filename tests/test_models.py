from datetime import date, datetime, timezone

import pytest
from pydantic import ValidationError

from stac_cubes.models.models import CubeConfig, Feature, MaskSpec, to_utc


def test_to_utc_normalizes_inputs() -> None:
    """
    Test that strings, dates and naive datetimes become aware UTC datetimes.
    """
    expected = datetime(2021, 6, 1, tzinfo=timezone.utc)
    assert to_utc("2021-06-01") == expected
    assert to_utc(date(2021, 6, 1)) == expected
    assert to_utc(datetime(2021, 6, 1)) == expected
    assert to_utc("2021-06-01T02:00:00+02:00") == expected
    with pytest.raises(ValueError):
        to_utc(42)


def test_feature_from_item_uses_start_datetime_for_ranges() -> None:
    item = {
        "id": "composite",
        "geometry": {"type": "Point", "coordinates": [0, 0]},
        "bbox": [0, 0, 0, 0],
        "properties": {"datetime": None, "start_datetime": "2021-06-01T00:00:00Z", "end_datetime": "2021-06-30"},
        "assets": {"data": {"href": "a.tif", "bands": [{"name": "b1"}], "roles": ["data"]}},
    }
    feature = Feature.from_stac_item(item)
    assert feature.acquired == datetime(2021, 6, 1, tzinfo=timezone.utc)
    assert feature.assets["data"].roles == ["data"]
    assert feature.assets["data"].has_band_metadata


def test_feature_without_datetime_is_rejected() -> None:
    item = {"id": "x", "geometry": {}, "bbox": [0, 0, 1, 1], "properties": {}}
    with pytest.raises(ValueError, match="x"):
        Feature.from_stac_item(item)


def test_cube_config_validation() -> None:
    assert CubeConfig().chunk_size == (1, 256, 256)
    with pytest.raises(ValidationError):
        CubeConfig(chunk_size=(1, 0, 256))
    with pytest.raises(ValidationError):
        CubeConfig(threads=0)


def test_mask_spec_values_are_frozen() -> None:
    mask = MaskSpec(band="scl", values=[3, 8, 9])
    assert mask.values == frozenset({3, 8, 9})
    assert not mask.invert
