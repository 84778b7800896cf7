"""
Frame geometry for planar 4:2:0 frames: plane sizes, block sizes and block counts per channel.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum, IntEnum
from typing import Tuple

from common.errors import ConfigurationError


class Format(Enum):
    YUV = "YUV"
    NV12 = "NV12"


class Color(Enum):
    CHROMATIC = "Chromatic"
    GRAYSCALE = "Grayscale"


class Channel(IntEnum):
    Y = 0
    U = 1
    V = 2


def adjust_dimension(dimension: int, divisor: int) -> int:
    """
    Largest multiple of divisor not exceeding dimension.

    A zero divisor leaves the dimension untouched.
    """
    if divisor == 0:
        return dimension
    return dimension - (dimension % divisor)


@dataclass(frozen=True)
class ChannelGeometry:
    channel: Channel
    plane_width: int
    plane_height: int
    block_width: int
    block_height: int

    @property
    def plane_size(self) -> int:
        return self.plane_width * self.plane_height

    @property
    def block_size(self) -> int:
        return self.block_width * self.block_height

    @property
    def blocks_per_row(self) -> int:
        if self.block_width == 0:
            return 0
        return self.plane_width // self.block_width

    @property
    def blocks_per_column(self) -> int:
        if self.block_height == 0:
            return 0
        return self.plane_height // self.block_height

    @property
    def num_blocks(self) -> int:
        return self.blocks_per_row * self.blocks_per_column

    @property
    def covered_width(self) -> int:
        """Plane width covered by whole blocks; columns beyond it are ignored."""
        return adjust_dimension(self.plane_width, self.block_width)

    @property
    def covered_height(self) -> int:
        return adjust_dimension(self.plane_height, self.block_height)


@dataclass(frozen=True)
class FrameGeometry:
    """
    Derived, read-only geometry of one frame configuration.

    Build it with compute_geometry(); a change of image or block size means a new instance.
    """

    format: Format
    color: Color
    image_width: int
    image_height: int
    block_width: int
    block_height: int
    channels: Tuple[ChannelGeometry, ChannelGeometry, ChannelGeometry]

    @property
    def y_size(self) -> int:
        return self.channels[Channel.Y].plane_size

    @property
    def u_size(self) -> int:
        return self.channels[Channel.U].plane_size

    @property
    def v_size(self) -> int:
        return self.channels[Channel.V].plane_size

    @property
    def image_size(self) -> int:
        return self.y_size + self.u_size + self.v_size

    @property
    def active_channels(self) -> Tuple[Channel, ...]:
        if self.color is Color.GRAYSCALE:
            return (Channel.Y,)
        return (Channel.Y, Channel.U, Channel.V)

    def channel(self, channel: Channel) -> ChannelGeometry:
        return self.channels[Channel(channel)]

    def is_active(self, channel: Channel) -> bool:
        return Channel(channel) in self.active_channels

    @property
    def work_grid(self) -> Tuple[int, int]:
        """
        (columns, rows) of the widest/tallest block grid among active channels.

        One accelerator launch covers this grid once per active channel.
        """
        cols = max(self.channels[c].blocks_per_row for c in self.active_channels)
        rows = max(self.channels[c].blocks_per_column for c in self.active_channels)
        return cols, rows


def compute_geometry(
    fmt: Format,
    color: Color,
    image_width: int,
    image_height: int,
    block_width: int,
    block_height: int,
) -> FrameGeometry:
    """
    Derive per-channel geometry and reject configurations that cannot produce blocks.

    Chroma planes are half the image in each direction and chroma blocks are half the
    luma block (floor). Raises ConfigurationError for non-positive sizes, odd image
    sizes in chromatic mode, zero-sized chroma blocks or channels without a single block.
    """
    for name, value in (
        ("image_width", image_width),
        ("image_height", image_height),
        ("block_width", block_width),
        ("block_height", block_height),
    ):
        if not isinstance(value, int) or value <= 0:
            raise ConfigurationError(f"{name} must be a positive integer, got {value!r}")

    if color is Color.CHROMATIC and (image_width % 2 or image_height % 2):
        raise ConfigurationError(
            f"Chromatic 4:2:0 frames need even dimensions, got {image_width}x{image_height}"
        )

    luma = ChannelGeometry(Channel.Y, image_width, image_height, block_width, block_height)
    chroma = [
        ChannelGeometry(ch, image_width // 2, image_height // 2, block_width // 2, block_height // 2)
        for ch in (Channel.U, Channel.V)
    ]
    geometry = FrameGeometry(
        format=fmt,
        color=color,
        image_width=image_width,
        image_height=image_height,
        block_width=block_width,
        block_height=block_height,
        channels=(luma, chroma[0], chroma[1]),
    )

    for ch in geometry.active_channels:
        cg = geometry.channels[ch]
        if cg.block_width == 0 or cg.block_height == 0:
            raise ConfigurationError(
                f"Block {block_width}x{block_height} gives a zero-sized {ch.name} block "
                f"({cg.block_width}x{cg.block_height})"
            )
        if cg.num_blocks == 0:
            raise ConfigurationError(
                f"Block {cg.block_width}x{cg.block_height} does not fit the "
                f"{cg.plane_width}x{cg.plane_height} {ch.name} plane"
            )

    return geometry
