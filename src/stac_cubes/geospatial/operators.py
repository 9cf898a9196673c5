"""Lazy operators on raster cubes.

Every operator wraps an upstream cube and validates its arguments when it is
created; data only flows when a chunk of the outermost cube is read.
"""

from collections.abc import Iterable, Sequence
from datetime import datetime

import numpy as np
from numpy.typing import NDArray

from stac_cubes.config.constants import TIME_REDUCERS
from stac_cubes.errors import ConfigurationError
from stac_cubes.geospatial.aggregators import reduce_stack
from stac_cubes.geospatial.cube import ChunkCoords, RasterCube
from stac_cubes.geospatial.expressions import Call, Expression, Name, compile_expression, parse_tree


def _band_env(bands: Sequence[str], data: NDArray[np.floating]) -> dict[str, NDArray[np.floating]]:
    return {name: data[index] for index, name in enumerate(bands)}


def _missing_inputs(expression: Expression, env: dict[str, NDArray[np.floating]]) -> NDArray[np.bool_] | bool:
    missing: NDArray[np.bool_] | bool = False
    for name in expression.names:
        missing = missing | np.isnan(env[name])
    return missing


class SelectBandsCube(RasterCube):
    """Restricts the band axis of its upstream cube."""

    def __init__(self, upstream: RasterCube, names: Iterable[str]) -> None:
        names = list(dict.fromkeys(names))
        if not names:
            raise ConfigurationError("select_bands needs at least one band name")
        missing = [name for name in names if name not in upstream.bands]
        if missing:
            raise ConfigurationError(f"Band(s) {missing} not found; available bands: {list(upstream.bands)}")
        self.upstream = upstream
        super().__init__(upstream.view, names, upstream.chunk_size, upstream.config)

    def time_labels(self) -> list[datetime]:
        return self.upstream.time_labels()

    def _read(self, coords: ChunkCoords, bands: tuple[str, ...]) -> NDArray[np.floating]:
        return self.upstream._read(coords, bands)


class ApplyPixelCube(RasterCube):
    """Computes new bands from per-pixel arithmetic expressions."""

    def __init__(
        self,
        upstream: RasterCube,
        expressions: Sequence[str],
        names: Sequence[str],
        keep_bands: bool = False,
    ) -> None:
        if len(expressions) != len(names) or not expressions:
            raise ConfigurationError(
                f"apply_pixel needs one output name per expression, got {len(expressions)} expression(s) "
                f"and {len(names)} name(s)"
            )
        compiled = [compile_expression(text) for text in expressions]
        for expression in compiled:
            expression.validate_names(upstream.bands)
        bands = [*upstream.bands, *names] if keep_bands else list(names)
        if len(set(bands)) != len(bands):
            raise ConfigurationError(f"Duplicate band names in apply_pixel output {bands}")
        self.upstream = upstream
        self.expressions = dict(zip(names, compiled))
        super().__init__(upstream.view, bands, upstream.chunk_size, upstream.config)

    def time_labels(self) -> list[datetime]:
        return self.upstream.time_labels()

    def _read(self, coords: ChunkCoords, bands: tuple[str, ...]) -> NDArray[np.floating]:
        needed: dict[str, None] = {}
        for band in bands:
            if band in self.expressions:
                needed.update(dict.fromkeys(sorted(self.expressions[band].names)))
            else:
                needed[band] = None
        inputs = tuple(needed)
        data = self.upstream._read(coords, inputs) if inputs else None
        env = _band_env(inputs, data) if data is not None else {}

        out = self.empty_chunk(coords, len(bands))
        for index, band in enumerate(bands):
            expression = self.expressions.get(band)
            if expression is None:
                out[index] = env[band]
                continue
            result = np.asarray(expression.evaluate(env), dtype="float64")
            result = np.broadcast_to(result, out.shape[1:]).copy()
            result[~np.isfinite(result) | _missing_inputs(expression, env)] = np.nan
            out[index] = result
        return out


class FilterPixelCube(RasterCube):
    """Sets all bands to no-data where a predicate does not hold."""

    def __init__(self, upstream: RasterCube, predicate: str) -> None:
        self.predicate = compile_expression(predicate)
        self.predicate.validate_names(upstream.bands)
        self.upstream = upstream
        super().__init__(upstream.view, upstream.bands, upstream.chunk_size, upstream.config)

    def time_labels(self) -> list[datetime]:
        return self.upstream.time_labels()

    def _read(self, coords: ChunkCoords, bands: tuple[str, ...]) -> NDArray[np.floating]:
        inputs = tuple(dict.fromkeys([*bands, *sorted(self.predicate.names)]))
        data = self.upstream._read(coords, inputs)
        env = _band_env(inputs, data)
        keep = np.broadcast_to(np.asarray(self.predicate.evaluate(env), dtype=bool), data.shape[1:])
        keep = keep & ~np.asarray(_missing_inputs(self.predicate, env), dtype=bool)
        out = np.stack([env[band] for band in bands]) if bands else self.empty_chunk(coords, 0)
        return np.where(keep, out, np.nan).astype("float32")


def parse_reducers(expressions: Sequence[str], bands: Sequence[str]) -> list[tuple[str, str, str]]:
    """Parse time reducer expressions such as ``median(B04)`` or a bare ``max``.

    :param expressions: Reducer expressions
    :param bands: Available bands
    :returns: (output name, reducer, band) triples
    :raises ConfigurationError: On unknown reducers, unknown bands or duplicates
    """
    if not expressions:
        raise ConfigurationError("reduce_time needs at least one reducer expression")
    reducers: list[tuple[str, str, str]] = []
    for text in expressions:
        node = parse_tree(text)
        if isinstance(node, Name):
            pairs = [(node.name, band) for band in bands]
        elif isinstance(node, Call) and len(node.args) == 1 and isinstance(node.args[0], Name):
            pairs = [(node.func, node.args[0].name)]
        else:
            raise ConfigurationError(f"Time reducer must look like 'reducer(band)' or 'reducer', got {text!r}")
        for reducer, band in pairs:
            if reducer not in TIME_REDUCERS:
                raise ConfigurationError(f"Unknown time reducer {reducer!r}; expected one of {sorted(TIME_REDUCERS)}")
            if band not in bands:
                raise ConfigurationError(f"Band {band!r} not found; available bands: {list(bands)}")
            reducers.append((f"{band}_{reducer}", reducer, band))
    names = [name for name, _, _ in reducers]
    if len(set(names)) != len(names):
        raise ConfigurationError(f"Duplicate reducer outputs {names}")
    return reducers


class ReduceTimeCube(RasterCube):
    """Collapses the time axis into a single slice."""

    def __init__(self, upstream: RasterCube, expressions: Sequence[str]) -> None:
        self.reducers = {name: (reducer, band) for name, reducer, band in parse_reducers(expressions, upstream.bands)}
        self.upstream = upstream
        _, cy, cx = upstream.chunk_size
        super().__init__(upstream.view, list(self.reducers), (1, cy, cx), upstream.config)

    def time_labels(self) -> list[datetime]:
        return self.upstream.time_labels()[:1]

    def _read(self, coords: ChunkCoords, bands: tuple[str, ...]) -> NDArray[np.floating]:
        inputs = tuple(dict.fromkeys(self.reducers[band][1] for band in bands))
        upstream_chunks = [
            self.upstream._read(ChunkCoords(t, coords.y, coords.x), inputs) for t in range(self.upstream.chunk_grid[0])
        ]
        series = np.concatenate(upstream_chunks, axis=1)
        positions = {band: index for index, band in enumerate(inputs)}

        out = self.empty_chunk(coords, len(bands))
        for index, band in enumerate(bands):
            reducer, source = self.reducers[band]
            out[index, 0] = reduce_stack(reducer, series[positions[source]])
        return out


def select_bands(cube: RasterCube, names: Iterable[str]) -> SelectBandsCube:
    """Keep only the named bands; unknown names fail immediately."""
    if isinstance(names, str):
        names = [names]
    return SelectBandsCube(cube, names)


def apply_pixel(
    cube: RasterCube,
    expressions: str | Sequence[str],
    names: str | Sequence[str],
    keep_bands: bool = False,
) -> ApplyPixelCube:
    """Compute bands from per-pixel expressions, e.g. ``(B08-B04)/(B08+B04)``.

    Undefined results (division by zero, log of negatives) and pixels with
    no-data inputs become no-data.

    :param cube: Upstream cube
    :param expressions: One expression or a list of expressions
    :param names: Output band name(s), one per expression
    :param keep_bands: Keep the upstream bands in front of the new ones
    :returns: Lazy cube
    """
    expressions = [expressions] if isinstance(expressions, str) else list(expressions)
    names = [names] if isinstance(names, str) else list(names)
    return ApplyPixelCube(cube, expressions, names, keep_bands=keep_bands)


def filter_pixel(cube: RasterCube, predicate: str) -> FilterPixelCube:
    """Drop pixels where ``predicate`` is false or cannot be evaluated."""
    return FilterPixelCube(cube, predicate)


def reduce_time(cube: RasterCube, *expressions: str) -> ReduceTimeCube:
    """Reduce the time axis, e.g. ``reduce_time(cube, "median(NDVI)")`` or ``reduce_time(cube, "max")``.

    Output bands are named ``<band>_<reducer>``; no-data is ignored and pixels
    without any valid observation stay no-data.
    """
    if len(expressions) == 1 and not isinstance(expressions[0], str):
        expressions = tuple(expressions[0])
    return ReduceTimeCube(cube, list(expressions))
