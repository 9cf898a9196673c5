import numpy as np
import pytest

from stac_cubes.geospatial.aggregators import REDUCERS, reduce_stack

STACK = np.array(
    [
        [[1.0, np.nan], [np.nan, 4.0]],
        [[3.0, np.nan], [2.0, np.nan]],
        [[2.0, np.nan], [np.nan, 6.0]],
    ]
)


@pytest.mark.parametrize(
    ("method", "expected"),
    [
        ("median", [[2.0, np.nan], [2.0, 5.0]]),
        ("mean", [[2.0, np.nan], [2.0, 5.0]]),
        ("min", [[1.0, np.nan], [2.0, 4.0]]),
        ("max", [[3.0, np.nan], [2.0, 6.0]]),
        ("sum", [[6.0, np.nan], [2.0, 10.0]]),
        ("count", [[3.0, np.nan], [1.0, 2.0]]),
        ("first", [[1.0, np.nan], [2.0, 4.0]]),
        ("last", [[2.0, np.nan], [2.0, 6.0]]),
    ],
)
def test_reducers_ignore_nodata(method: str, expected: list[list[float]]) -> None:
    """
    Test that every reducer skips NaN and keeps all-NaN cells as no-data.
    """
    np.testing.assert_allclose(reduce_stack(method, STACK), expected)


def test_variance_uses_sample_estimator() -> None:
    result = reduce_stack("var", STACK)
    assert result[0, 0] == pytest.approx(1.0)
    assert result[1, 1] == pytest.approx(2.0)
    assert np.isnan(result[0, 1])


@pytest.mark.filterwarnings("error")
def test_all_nodata_stack_emits_no_runtime_warning() -> None:
    for method in REDUCERS:
        assert np.isnan(reduce_stack(method, np.full((2, 3), np.nan))).all()
