"""
CPU reference histogram binner for per-block statistics.
"""

from __future__ import annotations

from typing import Optional

import numpy as np

VALUE_RANGE = 256


def bin_width(num_bins: int) -> int:
    """Width of one bin over [0, 256), truncated by integer division."""
    if num_bins <= 0:
        raise ValueError(f"num_bins must be positive, got {num_bins}")
    width = VALUE_RANGE // num_bins
    if width == 0:
        raise ValueError(f"num_bins {num_bins} leaves bins of zero width")
    return width


def bin_indices(values: np.ndarray, num_bins: int) -> np.ndarray:
    """
    Bin index floor(v / bin_width) for each value.

    Values outside [0, 256) or landing past the last bin violate the caller contract and
    raise ValueError.
    """
    values = np.asarray(values, dtype=np.float64)
    if values.size and (values.min() < 0 or values.max() >= VALUE_RANGE):
        raise ValueError(
            f"Values must lie in [0, {VALUE_RANGE}), got range "
            f"[{values.min()}, {values.max()}]"
        )
    idx = np.floor(values / bin_width(num_bins)).astype(np.int64)
    if idx.size and idx.max() >= num_bins:
        raise ValueError(
            f"Value {values[idx.argmax()]} maps to bin {idx.max()} but only {num_bins} bins exist"
        )
    return idx


def cpu_average_histogram(average: np.ndarray, num_bins: int) -> np.ndarray:
    """
    Count of blocks whose average falls into each bin.

    Returns:
        int64 array of length num_bins
    """
    bins = np.zeros(num_bins, dtype=np.int64)
    for interval in bin_indices(average, num_bins):
        bins[interval] += 1
    return bins


def cpu_variance_histogram(
    average: np.ndarray,
    num_bins: int,
    variance: Optional[np.ndarray] = None,
) -> np.ndarray:
    """
    Variance histogram keyed by each block's average.

    Without variance: count of blocks per average bin (int64).
    With variance: the bin picked by a block's average accumulates that block's variance
    (float64).
    """
    if variance is None:
        return cpu_average_histogram(average, num_bins)

    if len(variance) != len(average):
        raise ValueError(
            f"average and variance differ in length: {len(average)} vs {len(variance)}"
        )

    bins = np.zeros(num_bins, dtype=np.float64)
    for interval, increment in zip(bin_indices(average, num_bins), variance):
        bins[interval] += increment
    return bins
