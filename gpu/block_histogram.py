"""
GPU block statistics and histograms using CuPy RawKernels.
"""

from __future__ import annotations

from typing import Any, Dict, Optional

import numpy as np

from common.config import Detail, VarianceMode
from common.errors import DeviceError
from common.frame import plane_layouts
from common.geometry import Channel, FrameGeometry
from common.results import ChannelStatistics
from cpu.histogram import bin_width

try:
    import cupy as cp
    from cupy import RawKernel
except Exception as exc:  # pragma: no cover
    cp = None
    RawKernel = None
    _gpu_import_error = exc
else:
    _gpu_import_error = None


# One thread per block; grid z selects the channel so Y, U and V go out in one launch.
# layout rows: offset, stride, step, block_w, block_h, blocks_per_row, num_blocks, out_base
_block_histogram_kernel_code = """
extern "C" __global__
void block_histograms(
    const unsigned char* frame,
    const int* layout,
    int num_bins,
    int bin_width,
    int weighted,
    float* average,
    float* variance,
    int* average_hist,
    int* count_hist,
    float* weighted_hist
) {
    const int channel = blockIdx.z;
    const int* p = layout + channel * 8;
    const int offset = p[0];
    const int stride = p[1];
    const int step = p[2];
    const int bw = p[3];
    const int bh = p[4];
    const int blocks_per_row = p[5];
    const int num_blocks = p[6];
    const int out_base = p[7];

    int bx = blockIdx.x * blockDim.x + threadIdx.x;
    int by = blockIdx.y;
    if (bx >= blocks_per_row) return;
    int block = by * blocks_per_row + bx;
    if (block >= num_blocks) return;

    int start = offset + by * bh * stride + bx * bw * step;
    int size = bw * bh;

    int sum = 0;
    for (int i = 0; i < bh; i++) {
        int row = start + i * stride;
        for (int j = 0; j < bw; j++) {
            sum += frame[row + j * step];
        }
    }
    float avg = (float)sum / (float)size;

    float acc = 0.0f;
    for (int i = 0; i < bh; i++) {
        int row = start + i * stride;
        for (int j = 0; j < bw; j++) {
            float d = (float)frame[row + j * step] - avg;
            acc += d * d;
        }
    }
    float var = acc / (float)size;

    average[out_base + block] = avg;
    variance[out_base + block] = var;

    // Integer form of floor(avg / bin_width)
    int bin = sum / (size * bin_width);
    int h = channel * num_bins + bin;
    atomicAdd(&average_hist[h], 1);
    if (weighted) {
        atomicAdd(&weighted_hist[h], var);
    } else {
        atomicAdd(&count_hist[h], 1);
    }
}
"""

_block_histogram_kernel = None


def _get_block_histogram_kernel():
    """Get or compile the block histogram kernel."""
    global _block_histogram_kernel
    if _block_histogram_kernel is None and cp is not None:
        _block_histogram_kernel = RawKernel(_block_histogram_kernel_code, "block_histograms")
    return _block_histogram_kernel


def gpu_available() -> bool:
    if cp is None:
        return False
    try:
        return cp.cuda.runtime.getDeviceCount() > 0
    except Exception:  # CUDARuntimeError when no driver is present
        return False


class GpuBackend:
    """
    Device-resident buffers plus one kernel launch per calculate call.

    Per-block vectors always exist on the device because binning needs them; summary
    mode just skips copying them back.
    """

    name = "GPU"

    def __init__(self, threads_per_block: int = 128) -> None:
        if cp is None:
            raise DeviceError(f"CuPy not available for GPU block histograms: {_gpu_import_error}")
        self.threads_per_block = threads_per_block
        self._geometry: Optional[FrameGeometry] = None
        self._num_bins = 0
        self._variance_mode = VarianceMode.WEIGHTED
        self._offsets: Dict[Channel, int] = {}

    def allocate(self, geometry: FrameGeometry, num_bins: int, variance_mode: VarianceMode) -> None:
        active = geometry.active_channels
        layouts = plane_layouts(geometry)

        rows = []
        out_base = 0
        offsets = {}
        for channel in active:
            cg = geometry.channel(channel)
            lay = layouts[channel]
            rows.append([
                lay.offset, lay.stride, lay.step,
                cg.block_width, cg.block_height,
                cg.blocks_per_row, cg.num_blocks, out_base,
            ])
            offsets[channel] = out_base
            out_base += cg.num_blocks

        n_channels = len(active)
        self._geometry = geometry
        self._num_bins = num_bins
        self._variance_mode = variance_mode
        self._offsets = offsets

        self._d_frame = cp.zeros(geometry.image_size, dtype=cp.uint8)
        self._d_layout = cp.asarray(np.asarray(rows, dtype=np.int32))
        self._d_average = cp.zeros(out_base, dtype=cp.float32)
        self._d_variance = cp.zeros(out_base, dtype=cp.float32)
        self._d_average_hist = cp.zeros((n_channels, num_bins), dtype=cp.int32)
        self._d_count_hist = cp.zeros((n_channels, num_bins), dtype=cp.int32)
        self._d_weighted_hist = cp.zeros((n_channels, num_bins), dtype=cp.float32)

    def upload(self, frame: np.ndarray) -> None:
        if self._geometry is None:
            raise DeviceError("GpuBackend.upload called before allocate")
        self._d_frame.set(np.ascontiguousarray(frame, dtype=np.uint8))
        cp.cuda.Stream.null.synchronize()

    def run(self, detail: Detail) -> float:
        """Launch the kernel for all active channels; returns device milliseconds."""
        if self._geometry is None:
            raise DeviceError("GpuBackend.run called before allocate")

        kernel = _get_block_histogram_kernel()
        if kernel is None:
            raise DeviceError("Failed to compile block histogram kernel")

        # Histograms accumulate with atomics, so clear them every pass
        self._d_average_hist.fill(0)
        self._d_count_hist.fill(0)
        self._d_weighted_hist.fill(0)

        cols, rows = self._geometry.work_grid
        n_channels = len(self._geometry.active_channels)
        threads = self.threads_per_block
        grid = ((cols + threads - 1) // threads, rows, n_channels)
        weighted = 1 if self._variance_mode is VarianceMode.WEIGHTED else 0

        # Use CUDA events for accurate timing
        start_event = cp.cuda.Event()
        end_event = cp.cuda.Event()
        start_event.record()

        kernel(
            grid,
            (threads, 1, 1),
            (
                self._d_frame,
                self._d_layout,
                np.int32(self._num_bins),
                np.int32(bin_width(self._num_bins)),
                np.int32(weighted),
                self._d_average,
                self._d_variance,
                self._d_average_hist,
                self._d_count_hist,
                self._d_weighted_hist,
            ),
        )

        end_event.record()
        end_event.synchronize()
        return float(cp.cuda.get_elapsed_time(start_event, end_event))

    def read(self, channel: Channel, detail: Detail) -> ChannelStatistics:
        row = list(self._offsets).index(channel)
        average_hist = cp.asnumpy(self._d_average_hist[row]).astype(np.int64)
        if self._variance_mode is VarianceMode.WEIGHTED:
            variance_hist = cp.asnumpy(self._d_weighted_hist[row])
        else:
            variance_hist = cp.asnumpy(self._d_count_hist[row]).astype(np.int64)

        if detail is Detail.EXCLUDE:
            return ChannelStatistics(average_hist, variance_hist)

        base = self._offsets[channel]
        n = self._geometry.channel(channel).num_blocks
        return ChannelStatistics(
            average_histogram=average_hist,
            variance_histogram=variance_hist,
            average=cp.asnumpy(self._d_average[base:base + n]),
            variance=cp.asnumpy(self._d_variance[base:base + n]),
        )

    def describe(self) -> Dict[str, Any]:
        device = cp.cuda.Device()
        props = cp.cuda.runtime.getDeviceProperties(device.id)
        name = props.get("name", b"")
        if isinstance(name, bytes):
            name = name.decode(errors="replace")
        return {
            "backend": self.name,
            "device": name,
            "device_id": device.id,
            "compute_capability": device.compute_capability,
            "cupy": cp.__version__,
            "threads_per_block": self.threads_per_block,
        }
