from __future__ import annotations

from typing import Any

from common.config import VarianceMode
from common.frame import as_frame_buffer, plane_layouts
from common.geometry import FrameGeometry
from common.results import ChannelStatistics, FrameStatistics
from cpu.block_stats import cpu_block_statistics
from cpu.histogram import cpu_average_histogram, cpu_variance_histogram


def run_cpu_reference(
    frame: Any,
    geometry: FrameGeometry,
    num_bins: int,
    variance_mode: VarianceMode = VarianceMode.WEIGHTED,
) -> FrameStatistics:
    """
    Sequential reference: block statistics then histograms for every active channel.

    Channels are independent; none reads another's output.
    """
    buf = as_frame_buffer(frame, geometry)
    layouts = plane_layouts(geometry)

    stats: FrameStatistics = {}
    for channel in geometry.active_channels:
        cg = geometry.channel(channel)
        average, variance = cpu_block_statistics(
            buf,
            layouts[channel],
            cg.plane_width,
            cg.num_blocks,
            cg.block_size,
            cg.block_width,
            cg.block_height,
        )
        weights = variance if variance_mode is VarianceMode.WEIGHTED else None
        stats[channel] = ChannelStatistics(
            average_histogram=cpu_average_histogram(average, num_bins),
            variance_histogram=cpu_variance_histogram(average, num_bins, weights),
            average=average,
            variance=variance,
        )
    return stats
