from __future__ import annotations

from pathlib import Path
from typing import Iterable, List

import cv2
import numpy as np

from common.geometry import Format


def load_frames(video_path: str | Path, frame_indices: Iterable[int]) -> List[np.ndarray]:
    """
    Load specific frames from a video file.

    Args:
        video_path: Path to the video file.
        frame_indices: Iterable of zero-based frame indices to fetch.

    Returns:
        List of frames as BGR numpy arrays in the same order as requested.
    """
    path = Path(video_path)
    if not path.exists():
        raise FileNotFoundError(f"Video not found: {path}")

    cap = cv2.VideoCapture(str(path))
    if not cap.isOpened():
        raise RuntimeError(f"Failed to open video: {path}")

    frames = []
    try:
        for idx in frame_indices:
            cap.set(cv2.CAP_PROP_POS_FRAMES, idx)
            ok, frame = cap.read()
            if not ok:
                raise RuntimeError(f"Could not read frame {idx} from {path}")
            frames.append(frame)
    finally:
        cap.release()
    return frames


def bgr_to_raw_frame(frame: np.ndarray, fmt: Format = Format.YUV) -> np.ndarray:
    """
    Convert a BGR (or grayscale) image to a flat I420 or NV12 buffer.

    Width and height must be even, as 4:2:0 subsampling requires.
    """
    if frame.ndim == 2:
        frame = cv2.cvtColor(frame, cv2.COLOR_GRAY2BGR)

    h, w = frame.shape[:2]
    if h % 2 or w % 2:
        raise ValueError(f"4:2:0 conversion needs even dimensions, got {w}x{h}")

    # OpenCV returns I420 as a (h * 3 / 2, w) image: Y rows, then U, then V
    i420 = cv2.cvtColor(frame, cv2.COLOR_BGR2YUV_I420).reshape(-1)
    if fmt is Format.YUV:
        return i420

    y_size = w * h
    c_size = (w // 2) * (h // 2)
    nv12 = np.empty_like(i420)
    nv12[:y_size] = i420[:y_size]
    nv12[y_size::2] = i420[y_size:y_size + c_size]
    nv12[y_size + 1::2] = i420[y_size + c_size:]
    return nv12


def load_raw_frames(
    video_path: str | Path,
    frame_indices: Iterable[int],
    fmt: Format = Format.YUV,
) -> List[np.ndarray]:
    """
    Convenience helper: load video frames and convert each to a flat 4:2:0 buffer.
    """
    return [bgr_to_raw_frame(f, fmt) for f in load_frames(video_path, frame_indices)]
