"""Shared type aliases for the projection_selection package."""

from collections.abc import Sequence

import numpy as np

# Variable subsets are ordered tuples of candidate column indices.
VariableSubset = tuple[int, ...]

# Anything that can be read as a variable subset.
SubsetLike = Sequence[int] | np.ndarray
