"""
Histogram computation context dispatching to GPU (CuPy), CPU (NumPy) or AUTO backends.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import numpy as np

try:
    from gpu.block_histogram import GpuBackend, gpu_available
except Exception as exc:
    GpuBackend = None
    gpu_available = None
    _gpu_import_error = exc
else:
    _gpu_import_error = None

from common.config import Backend, Detail, ErrorLevel, HistogramConfig, parse_enum
from common.errors import DeviceError, HistogramError
from common.frame import as_frame_buffer
from common.geometry import Channel, FrameGeometry, compute_geometry
from common.results import ChannelStatistics, DispatchResult, ErrorCode
from cpu.vectorized import VectorizedBackend

logger = logging.getLogger(__name__)


class HistogramContext:
    """
    Reusable per-configuration state: geometry, backend buffers and the latest results.

    Typical use:
        ctx = HistogramContext(config)
        ctx.setup_environment()
        ctx.write_input(frame)
        result = ctx.calculate_histograms(Detail.INCLUDE)
        if result:
            avg = ctx.get_average(Channel.Y)

    Reconfiguration (image size, block size, bin count) must not interleave with a
    calculate call; each one regenerates every derived buffer.
    """

    def __init__(self, config: Optional[HistogramConfig] = None) -> None:
        self.config = config or HistogramConfig()
        # Fail fast on a geometry that can never work
        self.geometry: FrameGeometry = self._compute_geometry(self.config)
        self.backend = None
        self.environment_set_up = False
        self.elapsed_ms = 0.0
        self.last_result: Optional[DispatchResult] = None
        self._input_written = False
        self._results: List[Optional[ChannelStatistics]] = [None, None, None]

    def clone(self) -> "HistogramContext":
        """Copy of the configuration only; the copy has to be set up again."""
        return HistogramContext(self.config)

    @staticmethod
    def _compute_geometry(config: HistogramConfig) -> FrameGeometry:
        return compute_geometry(
            config.format,
            config.color,
            config.image_width,
            config.image_height,
            config.block_width,
            config.block_height,
        )

    # Environment

    def setup_environment(self) -> DispatchResult:
        """
        Select and bind the backend, then allocate all buffers for the current geometry.
        """
        try:
            self.backend = self._select_backend()
            self._allocate()
        except DeviceError as exc:
            self.backend = None
            self.environment_set_up = False
            return self._fail(ErrorCode.DEVICE_ERROR, f"Environment setup failed: {exc}")

        self.environment_set_up = True
        logger.debug("Histogram environment ready: %s", self.describe_environment())
        return DispatchResult(ok=True)

    def _select_backend(self):
        mode = self.config.backend
        threads = self.config.threads_per_block

        if mode is Backend.CPU:
            return VectorizedBackend()

        if mode is Backend.AUTO:
            if GpuBackend is not None and gpu_available():
                return GpuBackend(threads)
            return VectorizedBackend()

        if mode is Backend.GPU:
            try:
                if GpuBackend is None:
                    raise DeviceError(f"GPU block histograms unavailable: {_gpu_import_error}")
                if not gpu_available():
                    raise DeviceError("No CUDA device available")
                return GpuBackend(threads)
            except DeviceError as exc:
                if not self.config.allow_failover:
                    raise
                logger.warning("GPU backend unavailable (%s); falling back to CPU", exc)
                return VectorizedBackend()

        raise ValueError(f"Unknown backend mode: {mode}")

    def _allocate(self) -> None:
        try:
            self.backend.allocate(self.geometry, self.config.num_bins, self.config.variance_mode)
        except DeviceError:
            raise
        except Exception as exc:  # cupy allocation / runtime errors
            raise DeviceError(f"Buffer allocation failed: {exc}") from exc
        self._input_written = False
        self._results = [None, None, None]

    def describe_environment(self) -> Dict[str, Any]:
        info: Dict[str, Any] = {
            "format": self.config.format.value,
            "color": self.config.color.value,
            "image": f"{self.config.image_width}x{self.config.image_height}",
            "block": f"{self.config.block_width}x{self.config.block_height}",
            "num_bins": self.config.num_bins,
            "variance_mode": self.config.variance_mode.value,
        }
        for ch in self.geometry.active_channels:
            cg = self.geometry.channel(ch)
            info[f"{ch.name.lower()}_blocks"] = cg.num_blocks
        if self.backend is not None:
            info.update(self.backend.describe())
        return info

    # Configuration

    def set_image_size(self, image_width: int, image_height: int) -> DispatchResult:
        return self._reconfigure(image_width=image_width, image_height=image_height)

    def set_block_size(self, block_width: int, block_height: int) -> DispatchResult:
        return self._reconfigure(block_width=block_width, block_height=block_height)

    def set_num_bins(self, num_bins: int) -> DispatchResult:
        return self._reconfigure(num_bins=num_bins)

    def set_error_level(self, error_level: ErrorLevel) -> None:
        self.config = self.config.with_changes(error_level=error_level)

    def _reconfigure(self, **changes: Any) -> DispatchResult:
        """
        Swap in a new config and geometry together, then reallocate if already set up.

        ConfigurationError propagates and leaves the previous state untouched.
        """
        config = self.config.with_changes(**changes)
        geometry = self._compute_geometry(config)
        self.config = config
        self.geometry = geometry
        self._results = [None, None, None]
        self._input_written = False

        if not self.environment_set_up:
            return DispatchResult(ok=True)
        try:
            self._allocate()
        except DeviceError as exc:
            self.environment_set_up = False
            return self._fail(ErrorCode.DEVICE_ERROR, f"Reallocation failed: {exc}")
        return DispatchResult(ok=True)

    # Input

    def write_input(self, frame: Any) -> DispatchResult:
        """
        Transfer one frame to the backend. Not included in elapsed_ms.
        """
        if not self.environment_set_up:
            return self._fail(ErrorCode.NOT_PREPARED, "Environment not set up")

        buf = as_frame_buffer(frame, self.geometry)
        try:
            self.backend.upload(buf)
        except Exception as exc:
            self._input_written = False
            return self._fail(ErrorCode.DEVICE_ERROR, f"Write input failed: {exc}")

        self._input_written = True
        return DispatchResult(ok=True)

    # Computation

    def calculate_histograms(self, detail: Detail = Detail.EXCLUDE) -> DispatchResult:
        """
        Compute histograms (and per-block vectors for Detail.INCLUDE) for all active channels.

        Returns a failed DispatchResult rather than raising when the context is not
        prepared, no frame was written or the backend fails.
        An unknown detail value raises ConfigurationError.
        """
        detail = parse_enum(Detail, detail, "detail")
        self.elapsed_ms = 0.0
        self._results = [None, None, None]

        if not self.environment_set_up:
            return self._fail(ErrorCode.NOT_PREPARED, "Environment not set up")
        if not self._input_written:
            return self._fail(ErrorCode.NO_INPUT, "No frame written before calculate_histograms")

        try:
            elapsed_ms = self.backend.run(detail)
            results: List[Optional[ChannelStatistics]] = [None, None, None]
            for channel in self.geometry.active_channels:
                results[channel] = self.backend.read(channel, detail)
        except Exception as exc:
            return self._fail(ErrorCode.DEVICE_ERROR, f"Execution failed: {exc}")

        self.elapsed_ms = elapsed_ms
        self._results = results
        self.last_result = DispatchResult(ok=True, elapsed_ms=elapsed_ms)
        return self.last_result

    # Results

    def _channel_results(self, channel: Channel) -> ChannelStatistics:
        channel = Channel(channel)
        if not self.geometry.is_active(channel):
            raise HistogramError(
                f"Channel {channel.name} is not computed in {self.config.color.value} mode"
            )
        stats = self._results[channel]
        if stats is None:
            failed = self.last_result is not None and not self.last_result.ok
            reason = self.last_result.message if failed else ""
            raise HistogramError(f"No valid results for channel {channel.name}. {reason}".strip())
        return stats

    def _detail_vector(self, channel: Channel, attr: str) -> np.ndarray:
        stats = self._channel_results(channel)
        vector = getattr(stats, attr)
        if vector is None:
            raise HistogramError(
                f"Per-block {attr} not available; calculate_histograms(Detail.INCLUDE) is required"
            )
        return vector

    def get_average(self, channel: Channel) -> np.ndarray:
        return self._detail_vector(channel, "average")

    def get_variance(self, channel: Channel) -> np.ndarray:
        return self._detail_vector(channel, "variance")

    def get_average_histogram(self, channel: Channel) -> np.ndarray:
        return self._channel_results(channel).average_histogram

    def get_variance_histogram(self, channel: Channel) -> np.ndarray:
        return self._channel_results(channel).variance_histogram

    def get_statistics(self, channel: Channel) -> ChannelStatistics:
        return self._channel_results(channel)

    # Errors

    def _fail(self, code: ErrorCode, message: str) -> DispatchResult:
        result = DispatchResult(ok=False, error_code=code, message=message)
        self.last_result = result
        if self.config.error_level is ErrorLevel.VERBOSE:
            logger.error("%s: %s", code.value, message)
        else:
            logger.debug("%s: %s", code.value, message)
        return result
