"""
CPU reference implementation of per-block average and population variance.

Blocks are visited with a cursor that starts at the plane origin, advances by one block
width after every block and wraps to the next block row as soon as another block would
no longer fit. Every accelerated backend must enumerate blocks in this same order.
"""

from __future__ import annotations

from typing import Iterator, Tuple

import numpy as np

from common.frame import PlaneLayout


def iter_block_origins(
    num_blocks: int,
    block_width: int,
    block_height: int,
    plane_width: int,
) -> Iterator[Tuple[int, int]]:
    """
    Yield the (x, y) top-left pixel of each block in traversal order.
    """
    x = 0
    y = 0
    for _ in range(num_blocks):
        yield x, y
        x += block_width
        if x + block_width > plane_width:
            x = 0
            y += block_height


def _block_pixels(
    frame: np.ndarray,
    layout: PlaneLayout,
    x: int,
    y: int,
    block_width: int,
    block_height: int,
) -> np.ndarray:
    start = layout.offset + y * layout.stride + x * layout.step
    rows = []
    for i in range(block_height):
        row_start = start + i * layout.stride
        rows.append(frame[row_start:row_start + block_width * layout.step:layout.step])
    return np.concatenate(rows).astype(np.float64)


def cpu_block_average(
    frame: np.ndarray,
    layout: PlaneLayout,
    plane_width: int,
    num_blocks: int,
    block_size: int,
    block_width: int,
    block_height: int,
) -> np.ndarray:
    """
    Average of every block: pixel sum divided by block_size.

    Args:
        frame: flat buffer holding the plane (uint8 or any integer dtype)
        layout: offset/stride/step of the plane inside frame
        plane_width: width of the channel plane (not the enclosing stride)

    Returns:
        float64 array of length num_blocks
    """
    average = np.zeros(num_blocks, dtype=np.float64)
    origins = iter_block_origins(num_blocks, block_width, block_height, plane_width)
    for block, (x, y) in enumerate(origins):
        pixels = _block_pixels(frame, layout, x, y, block_width, block_height)
        average[block] = pixels.sum() / block_size
    return average


def cpu_block_variance(
    frame: np.ndarray,
    layout: PlaneLayout,
    plane_width: int,
    num_blocks: int,
    block_size: int,
    block_width: int,
    block_height: int,
    average: np.ndarray,
) -> np.ndarray:
    """
    Population variance of every block around the supplied block averages.
    """
    if len(average) != num_blocks:
        raise ValueError(f"Expected {num_blocks} averages, got {len(average)}")

    variance = np.zeros(num_blocks, dtype=np.float64)
    origins = iter_block_origins(num_blocks, block_width, block_height, plane_width)
    for block, (x, y) in enumerate(origins):
        pixels = _block_pixels(frame, layout, x, y, block_width, block_height)
        deviation = pixels - average[block]
        variance[block] = (deviation * deviation).sum() / block_size
    return variance


def cpu_block_statistics(
    frame: np.ndarray,
    layout: PlaneLayout,
    plane_width: int,
    num_blocks: int,
    block_size: int,
    block_width: int,
    block_height: int,
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Single traversal computing average and variance together.

    Returns:
        (average, variance), both float64 arrays of length num_blocks
    """
    average = np.zeros(num_blocks, dtype=np.float64)
    variance = np.zeros(num_blocks, dtype=np.float64)
    origins = iter_block_origins(num_blocks, block_width, block_height, plane_width)
    for block, (x, y) in enumerate(origins):
        pixels = _block_pixels(frame, layout, x, y, block_width, block_height)
        avg = pixels.sum() / block_size
        deviation = pixels - avg
        average[block] = avg
        variance[block] = (deviation * deviation).sum() / block_size
    return average, variance
