from __future__ import annotations

import csv
from pathlib import Path
from typing import Iterable, Sequence

import cv2
import numpy as np

from common.geometry import Channel, FrameGeometry


def write_csv(path: Path, header: Sequence[str], rows: Iterable[Sequence]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", newline="", encoding="utf-8") as f:
        writer = csv.writer(f)
        writer.writerow(header)
        for row in rows:
            writer.writerow(row)


def save_block_map(average: np.ndarray, geometry: FrameGeometry, channel: Channel, path: Path) -> None:
    """
    Render per-block averages as a grayscale image, one flat tile per block, and save.
    """
    cg = geometry.channel(channel)
    grid = np.asarray(average, dtype=np.float32).reshape(cg.blocks_per_column, cg.blocks_per_row)
    img = np.clip(np.rint(grid), 0, 255).astype(np.uint8)
    img = cv2.resize(
        img,
        (cg.covered_width, cg.covered_height),
        interpolation=cv2.INTER_NEAREST,
    )
    path.parent.mkdir(parents=True, exist_ok=True)
    cv2.imwrite(str(path), img)


def save_numpy(path: Path, array: np.ndarray) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    np.save(path, array)


def max_abs_diff(a: np.ndarray, b: np.ndarray) -> float:
    diff = np.asarray(a, dtype=np.float64) - np.asarray(b, dtype=np.float64)
    return float(np.max(np.abs(diff))) if diff.size else 0.0


def constant_frame(geometry: FrameGeometry, value: int) -> np.ndarray:
    return np.full(geometry.image_size, value, dtype=np.uint8)


def random_frame(geometry: FrameGeometry, seed: int = 0) -> np.ndarray:
    rng = np.random.default_rng(seed)
    return rng.integers(0, 256, size=geometry.image_size, dtype=np.uint8)
