"""Input compatibility layer for array and DataFrame inputs.

Public constructors accept NumPy arrays and pandas DataFrames/Series.
This module adds transparent support for Polars: when a user passes a
``polars.DataFrame`` (or ``polars.LazyFrame``/``polars.Series``) it is
converted to pandas at the boundary so that internal code, which
operates on float NumPy arrays, remains unchanged.

Polars is **not** a required dependency.  If it is not installed, the
converter simply handles NumPy and pandas objects.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, TypeAlias

import numpy as np
import pandas as pd

from .exceptions import ReferenceModelError

if TYPE_CHECKING:
    import polars as pl

    DataFrameLike: TypeAlias = (
        np.ndarray | pd.DataFrame | pl.DataFrame | pl.LazyFrame
    )
else:
    DataFrameLike: TypeAlias = np.ndarray | pd.DataFrame

# Runtime detection of the optional Polars dependency.
try:
    import polars as pl

    _HAS_POLARS = True
except ImportError:
    _HAS_POLARS = False


def _to_pandas(obj: object) -> object:
    """Convert Polars containers to pandas; pass anything else through."""
    if _HAS_POLARS:
        if isinstance(obj, pl.LazyFrame):
            return obj.collect().to_pandas()
        if isinstance(obj, (pl.DataFrame, pl.Series)):
            return obj.to_pandas()
    return obj


def as_design_matrix(
    obj: DataFrameLike, *, name: str = "X"
) -> tuple[np.ndarray, list[str]]:
    """Convert *obj* to a float matrix and a list of column names.

    Accepted types:
        * ``numpy.ndarray`` (2-D) — columns named ``x0 … x{p-1}``.
        * ``pandas.DataFrame`` — column labels become names.
        * ``polars.DataFrame`` / ``polars.LazyFrame`` — converted via
          pandas.

    Args:
        obj: Covariate matrix of shape ``(n, p)``.
        name: Label used in error messages.

    Returns:
        ``(matrix, names)`` with ``matrix`` of dtype float64.

    Raises:
        ReferenceModelError: If *obj* is not 2-D or not numeric.
    """
    obj = _to_pandas(obj)
    if isinstance(obj, pd.DataFrame):
        names = [str(c) for c in obj.columns]
        values = obj.to_numpy()
    else:
        values = np.asarray(obj)
        if values.ndim != 2:
            raise ReferenceModelError(
                f"'{name}' must be 2-dimensional, got shape {values.shape}."
            )
        names = [f"x{j}" for j in range(values.shape[1])]
    try:
        matrix = values.astype(float)
    except (TypeError, ValueError):
        raise ReferenceModelError(f"'{name}' must be numeric.") from None
    return matrix, names


def as_vector(obj: object, *, name: str = "y") -> np.ndarray:
    """Convert a response-like object to a 1-D float array.

    Single-column DataFrames are flattened; anything with more than
    one column is rejected.
    """
    obj = _to_pandas(obj)
    if isinstance(obj, pd.DataFrame):
        if obj.shape[1] != 1:
            raise ReferenceModelError(
                f"'{name}' must have exactly one column, got {obj.shape[1]}."
            )
        obj = obj.iloc[:, 0]
    values = np.asarray(obj)
    if values.ndim == 2 and 1 in values.shape:
        values = values.ravel()
    if values.ndim != 1:
        raise ReferenceModelError(
            f"'{name}' must be 1-dimensional, got shape {values.shape}."
        )
    try:
        return values.astype(float)
    except (TypeError, ValueError):
        raise ReferenceModelError(f"'{name}' must be numeric.") from None
