from types import SimpleNamespace
from typing import Any

import pytest

from stac_cubes.geospatial import stac_ops
from stac_cubes.models.models import StacQuery


def _item_dict(item_id: str) -> dict[str, Any]:
    return {
        "type": "Feature",
        "id": item_id,
        "geometry": {"type": "Polygon", "coordinates": [[[0, 0], [1, 0], [1, 1], [0, 1], [0, 0]]]},
        "bbox": [0, 0, 1, 1],
        "properties": {"datetime": "2021-06-01T10:30:00+02:00", "eo:cloud_cover": 3.5},
        "assets": {"red": {"href": f"https://data/{item_id}/red.tif", "eo:bands": [{"name": "B04"}]}},
    }


class FakeSearch:
    def __init__(self, items: list[Any], matched: int | None) -> None:
        self._items = items
        self._matched = matched

    def items(self) -> list[Any]:
        return self._items

    def matched(self) -> int | None:
        return self._matched


def test_search_features_passes_query_and_converts_items() -> None:
    """
    Test that search parameters reach the client and items become features.

    Items exposing ``to_dict`` (pystac) are converted like plain dictionaries.
    """
    calls: dict[str, Any] = {}

    def search(**kwargs: Any) -> FakeSearch:
        calls.update(kwargs)
        items = [SimpleNamespace(to_dict=lambda: _item_dict("a")), _item_dict("b")]
        return FakeSearch(items, matched=7)

    client = SimpleNamespace(search=search)
    query = StacQuery(
        collection_id="sentinel-2-l2a",
        bbox=[0, 0, 1, 1],
        time_range="2021-06-01/2021-06-30",
        limit=2,
        query={"eo:cloud_cover": {"lt": 10}},
    )
    result = stac_ops.search_features(client, query)

    assert calls == {
        "collections": ["sentinel-2-l2a"],
        "bbox": [0, 0, 1, 1],
        "datetime": "2021-06-01/2021-06-30",
        "query": {"eo:cloud_cover": {"lt": 10}},
        "max_items": 2,
    }
    assert result.returned_count == 2
    assert result.matched_count == 7
    assert [feature.id for feature in result.features] == ["a", "b"]
    assert result.features[0].acquired.hour == 8
    assert result.features[0].assets["red"].has_band_metadata


def test_search_features_without_match_count() -> None:
    client = SimpleNamespace(search=lambda **_: FakeSearch([], matched=None))
    query = StacQuery(collection_id="c", bbox=[0, 0, 1, 1], time_range="2021-06-01/2021-06-30")
    result = stac_ops.search_features(client, query)
    assert result.returned_count == 0
    assert result.matched_count is None


def test_vsicurl_url() -> None:
    assert stac_ops.vsicurl_url("https://host/a.tif") == "/vsicurl/https://host/a.tif"
    assert stac_ops.vsicurl_url("/local/a.tif") == "/local/a.tif"


def test_sign_url_delegates_to_planetary_computer(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(stac_ops, "sign", lambda url: f"{url}?token")
    assert stac_ops.sign_url("https://pc/a.tif") == "https://pc/a.tif?token"
