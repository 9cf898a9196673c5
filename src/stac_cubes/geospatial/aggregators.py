"""No-data aware aggregation of stacked observations.

Every function reduces axis 0 of a float array, ignores NaN and returns NaN
where a cell has no valid observation at all.
"""

import warnings
from collections.abc import Callable

import numpy as np
from numpy.typing import NDArray

Reducer = Callable[[NDArray[np.floating]], NDArray[np.floating]]


def _without_empty(func: Callable[[NDArray[np.floating]], NDArray[np.floating]]) -> Reducer:
    def reduce(stack: NDArray[np.floating]) -> NDArray[np.floating]:
        valid = ~np.isnan(stack)
        with warnings.catch_warnings():
            # all-NaN cells are handled below
            warnings.simplefilter("ignore", RuntimeWarning)
            reduced = np.asarray(func(stack), dtype="float64")
        reduced[~valid.any(axis=0)] = np.nan
        return reduced

    return reduce


def _first(stack: NDArray[np.floating]) -> NDArray[np.floating]:
    index = np.argmax(~np.isnan(stack), axis=0)
    return np.take_along_axis(stack, index[np.newaxis], axis=0)[0]


def _last(stack: NDArray[np.floating]) -> NDArray[np.floating]:
    return _first(stack[::-1])


REDUCERS: dict[str, Reducer] = {
    "median": _without_empty(lambda stack: np.nanmedian(stack, axis=0)),
    "mean": _without_empty(lambda stack: np.nanmean(stack, axis=0)),
    "min": _without_empty(lambda stack: np.nanmin(stack, axis=0)),
    "max": _without_empty(lambda stack: np.nanmax(stack, axis=0)),
    "sum": _without_empty(lambda stack: np.nansum(stack, axis=0)),
    "prod": _without_empty(lambda stack: np.nanprod(stack, axis=0)),
    "count": _without_empty(lambda stack: np.count_nonzero(~np.isnan(stack), axis=0)),
    "var": _without_empty(lambda stack: np.nanvar(stack, axis=0, ddof=1)),
    "sd": _without_empty(lambda stack: np.nanstd(stack, axis=0, ddof=1)),
    "first": _without_empty(_first),
    "last": _without_empty(_last),
}


def reduce_stack(method: str, stack: NDArray[np.floating]) -> NDArray[np.floating]:
    """Reduce observations stacked along axis 0 with a named reducer.

    :param method: Reducer name, e.g. "median"
    :param stack: Array of shape (n, ...)
    :returns: Reduced array of shape (...)
    """
    return REDUCERS[method](np.asarray(stack, dtype="float64"))
