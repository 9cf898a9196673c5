import numpy as np
import pytest

from stac_cubes.errors import ConfigurationError
from stac_cubes.geospatial.expressions import (
    Call,
    Name,
    compile_expression,
    compile_property_query,
    parse_tree,
)


def test_ndvi_expression_is_vectorised() -> None:
    """
    Test that a band ratio evaluates element-wise over numpy arrays.
    """
    expression = compile_expression("(B08 - B04) / (B08 + B04)")
    result = expression.evaluate({"B04": np.array([1.0, 2.0]), "B08": np.array([3.0, 2.0])})
    np.testing.assert_allclose(result, [0.5, 0.0])
    assert expression.names == {"B04", "B08"}


def test_operator_precedence_and_power_alias() -> None:
    """
    Test that multiplication binds tighter than addition and ^ means power.
    """
    assert compile_expression("1 + 2 * 3").evaluate({}) == 7
    assert compile_expression("2 ^ 3").evaluate({}) == 8
    assert compile_expression("-2 ** 2").evaluate({}) == -4


def test_division_by_zero_yields_non_finite() -> None:
    """
    Test that undefined arithmetic produces inf or nan without raising.
    """
    result = compile_expression("a / b").evaluate({"a": np.array([1.0, 0.0]), "b": np.array([0.0, 0.0])})
    assert not np.isfinite(result).any()


def test_property_expression_with_colon_names_and_in() -> None:
    """
    Test boolean expressions over STAC property names.
    """
    expression = compile_expression("eo:cloud_cover < 20 and s2:mgrs_tile in ['32ULC', '32UMC']")
    assert expression.names == {"eo:cloud_cover", "s2:mgrs_tile"}
    assert expression.evaluate({"eo:cloud_cover": 5, "s2:mgrs_tile": "32ULC"})
    assert not expression.evaluate({"eo:cloud_cover": 5, "s2:mgrs_tile": "31UFT"})
    assert not expression.evaluate({"eo:cloud_cover": 50, "s2:mgrs_tile": "32ULC"})


def test_functions_are_applied() -> None:
    """
    Test that built-in functions are available in pixel expressions.
    """
    result = compile_expression("max(sqrt(a), 3)").evaluate({"a": np.array([4.0, 16.0])})
    np.testing.assert_allclose(result, [3.0, 4.0])


@pytest.mark.parametrize("text", ["", "   ", "B04 +", "(B04", "B04 $ B08", "median(B04)"])
def test_invalid_expressions_are_rejected(text: str) -> None:
    """
    Test that syntax errors and unknown functions raise ConfigurationError.
    """
    with pytest.raises(ConfigurationError):
        compile_expression(text)


def test_validate_names_reports_unknown_bands() -> None:
    """
    Test that references to missing bands fail before evaluation.
    """
    expression = compile_expression("B08 - B05")
    with pytest.raises(ConfigurationError, match="B05"):
        expression.validate_names(["B04", "B08"])


def test_parse_tree_accepts_reducer_calls() -> None:
    """
    Test that the raw parser leaves function names unchecked for reducer syntax.
    """
    node = parse_tree("median(NDVI)")
    assert isinstance(node, Call)
    assert node.func == "median"
    assert node.args == (Name("NDVI"),)


def test_property_query_mapping_combines_conditions() -> None:
    """
    Test that a STAC query mapping compiles to a conjunction of comparisons.
    """
    expression = compile_property_query({"eo:cloud_cover": {"gte": 1, "lt": 10}, "platform": {"in": ["sentinel-2a"]}})
    assert expression.evaluate({"eo:cloud_cover": 5, "platform": "sentinel-2a"})
    assert not expression.evaluate({"eo:cloud_cover": 0, "platform": "sentinel-2a"})
    assert not expression.evaluate({"eo:cloud_cover": 5, "platform": "sentinel-2b"})


def test_property_query_rejects_unknown_operator() -> None:
    with pytest.raises(ConfigurationError):
        compile_property_query({"eo:cloud_cover": {"like": 10}})
