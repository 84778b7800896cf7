"""
Raw frame buffers: plane layout per format, input normalisation and raw file loading.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict

import numpy as np

from common.geometry import Channel, Format, FrameGeometry


@dataclass(frozen=True)
class PlaneLayout:
    """
    Where one channel lives inside the flat frame buffer.

    offset: index of the plane's first sample
    stride: distance between two rows of the enclosing buffer
    step: distance between two horizontally adjacent samples (2 for NV12 chroma)
    """

    offset: int
    stride: int
    step: int


def plane_layouts(geometry: FrameGeometry) -> Dict[Channel, PlaneLayout]:
    """
    Per-channel layout for every channel of the frame, active or not.
    """
    w, h = geometry.image_width, geometry.image_height
    y_size = geometry.y_size
    chroma_w = w // 2

    if geometry.format is Format.NV12:
        # Single interleaved UVUV... plane after luma
        return {
            Channel.Y: PlaneLayout(0, w, 1),
            Channel.U: PlaneLayout(y_size, 2 * chroma_w, 2),
            Channel.V: PlaneLayout(y_size + 1, 2 * chroma_w, 2),
        }

    return {
        Channel.Y: PlaneLayout(0, w, 1),
        Channel.U: PlaneLayout(y_size, chroma_w, 1),
        Channel.V: PlaneLayout(y_size + geometry.u_size, chroma_w, 1),
    }


def as_frame_buffer(frame: Any, geometry: FrameGeometry) -> np.ndarray:
    """
    Normalise frame input to a flat uint8 array of geometry.image_size samples.

    Buffer-protocol objects (bytes, bytearray, memoryview, mmap) are wrapped without a copy;
    NumPy arrays are flattened; other sequences are copied. Non-integer input and integer
    input outside 0-255 are rejected rather than truncated or wrapped.
    """
    if isinstance(frame, (bytes, bytearray, memoryview)):
        buf = np.frombuffer(frame, dtype=np.uint8)
    elif isinstance(frame, np.ndarray):
        buf = frame.reshape(-1)
    else:
        try:
            buf = np.frombuffer(frame, dtype=np.uint8)
        except TypeError:
            buf = np.asarray(frame).reshape(-1)

    if buf.size != geometry.image_size:
        raise ValueError(
            f"Frame has {buf.size} samples, expected {geometry.image_size} for "
            f"{geometry.image_width}x{geometry.image_height} {geometry.format.value}"
        )

    if buf.dtype != np.uint8:
        if not np.issubdtype(buf.dtype, np.integer):
            raise ValueError(f"Frame samples must be 8-bit integers, got dtype {buf.dtype}")
        if buf.size and (buf.min() < 0 or buf.max() > 255):
            raise ValueError("Frame samples must be 8-bit magnitudes in [0, 255]")
        buf = buf.astype(np.uint8)

    return buf


def plane_view(frame: np.ndarray, layout: PlaneLayout, width: int, height: int) -> np.ndarray:
    """
    Read-only (height, width) view of one channel plane inside the flat frame buffer.
    """
    itemsize = frame.itemsize
    view = np.lib.stride_tricks.as_strided(
        frame[layout.offset:],
        shape=(height, width),
        strides=(layout.stride * itemsize, layout.step * itemsize),
        writeable=False,
    )
    return view


def channel_plane(frame: np.ndarray, geometry: FrameGeometry, channel: Channel) -> np.ndarray:
    cg = geometry.channel(channel)
    layout = plane_layouts(geometry)[Channel(channel)]
    return plane_view(frame, layout, cg.plane_width, cg.plane_height)


def load_raw_frame(path: str | Path, geometry: FrameGeometry) -> np.ndarray:
    """
    Load one raw I420/NV12 frame from disk.

    The file must hold exactly one frame of the configured geometry.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Frame file not found: {path}")

    file_size = path.stat().st_size
    if file_size != geometry.image_size:
        raise ValueError(
            f"{path} holds {file_size} bytes, expected {geometry.image_size} for "
            f"{geometry.image_width}x{geometry.image_height} {geometry.format.value}"
        )

    return np.fromfile(path, dtype=np.uint8)


def save_raw_frame(path: str | Path, frame: np.ndarray) -> None:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    np.asarray(frame, dtype=np.uint8).tofile(path)
