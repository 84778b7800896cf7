"""Tests for HistogramContext: lifecycle, reconfiguration and backend parity."""

import logging
import sys
from pathlib import Path

_ROOT = Path(__file__).resolve().parents[1]
if str(_ROOT) not in sys.path:
    sys.path.insert(0, str(_ROOT))

import numpy as np
import pytest

import common.histogram_dispatch as dispatch
from common.config import Backend, Color, Detail, ErrorLevel, Format, HistogramConfig, VarianceMode
from common.errors import ConfigurationError, HistogramError
from common.geometry import Channel
from common.histogram_dispatch import HistogramContext
from common.results import ErrorCode
from common.validation import all_passed, validate_frame
from cpu.pipeline import run_cpu_reference
from tests.helpers import constant_frame, random_frame

try:
    from gpu.block_histogram import gpu_available
except Exception:
    def gpu_available():
        return False


def _config(**overrides):
    values = dict(
        format=Format.YUV,
        color=Color.CHROMATIC,
        image_width=64,
        image_height=32,
        block_width=8,
        block_height=8,
        num_bins=16,
        backend=Backend.CPU,
    )
    values.update(overrides)
    return HistogramConfig(**values)


@pytest.fixture
def ctx():
    context = HistogramContext(_config())
    assert context.setup_environment()
    return context


class TestLifecycle:
    def test_calculate_before_setup(self):
        context = HistogramContext(_config())
        result = context.calculate_histograms()
        assert not result
        assert result.error_code is ErrorCode.NOT_PREPARED
        with pytest.raises(HistogramError):
            context.get_average_histogram(Channel.Y)

    def test_write_before_setup(self):
        context = HistogramContext(_config())
        result = context.write_input(constant_frame(context.geometry, 0))
        assert result.error_code is ErrorCode.NOT_PREPARED

    def test_calculate_without_input(self, ctx):
        result = ctx.calculate_histograms(Detail.INCLUDE)
        assert result.error_code is ErrorCode.NO_INPUT
        assert ctx.elapsed_ms == 0.0
        with pytest.raises(HistogramError, match="No valid results"):
            ctx.get_variance_histogram(Channel.Y)
        with pytest.raises(HistogramError, match="No frame written"):
            ctx.get_average_histogram(Channel.U)

    def test_include_matches_reference(self, ctx):
        frame = random_frame(ctx.geometry, seed=7)
        assert ctx.write_input(frame)
        result = ctx.calculate_histograms(Detail.INCLUDE)
        assert result
        assert result.elapsed_ms == ctx.elapsed_ms >= 0.0

        reference = run_cpu_reference(frame, ctx.geometry, 16)
        for ch in ctx.geometry.active_channels:
            np.testing.assert_array_equal(ctx.get_average(ch), reference[ch].average)
            np.testing.assert_allclose(ctx.get_variance(ch), reference[ch].variance, rtol=1e-9)
            np.testing.assert_array_equal(ctx.get_average_histogram(ch), reference[ch].average_histogram)
            np.testing.assert_allclose(
                ctx.get_variance_histogram(ch), reference[ch].variance_histogram, rtol=1e-9
            )
            assert ctx.get_average_histogram(ch).sum() == ctx.geometry.channel(ch).num_blocks

    def test_exclude_hides_block_vectors(self, ctx):
        ctx.write_input(random_frame(ctx.geometry, seed=1))
        assert ctx.calculate_histograms(Detail.EXCLUDE)
        assert ctx.get_average_histogram(Channel.U).shape == (16,)
        with pytest.raises(HistogramError, match="Detail.INCLUDE"):
            ctx.get_average(Channel.Y)

    def test_default_detail_is_exclude(self, ctx):
        ctx.write_input(random_frame(ctx.geometry, seed=1))
        assert ctx.calculate_histograms()
        with pytest.raises(HistogramError):
            ctx.get_variance(Channel.V)

    def test_grayscale_has_no_chroma_results(self):
        context = HistogramContext(_config(color=Color.GRAYSCALE))
        assert context.setup_environment()
        context.write_input(constant_frame(context.geometry, 200))
        assert context.calculate_histograms(Detail.INCLUDE)
        assert np.all(context.get_average(Channel.Y) == 200)
        with pytest.raises(HistogramError, match="Grayscale"):
            context.get_average_histogram(Channel.U)

    def test_context_reused_across_frames(self, ctx):
        for value in (0, 64, 255):
            assert ctx.write_input(constant_frame(ctx.geometry, value))
            assert ctx.calculate_histograms(Detail.INCLUDE)
            assert np.all(ctx.get_average(Channel.Y) == value)
            assert np.all(ctx.get_variance(Channel.Y) == 0)

    def test_input_is_copied(self, ctx):
        frame = constant_frame(ctx.geometry, 10)
        ctx.write_input(frame)
        frame[:] = 250
        ctx.calculate_histograms(Detail.INCLUDE)
        assert np.all(ctx.get_average(Channel.Y) == 10)

    def test_bytes_input(self, ctx):
        ctx.write_input(bytes(constant_frame(ctx.geometry, 33)))
        assert ctx.calculate_histograms(Detail.INCLUDE)
        assert np.all(ctx.get_average(Channel.V) == 33)

    def test_out_of_range_input(self, ctx):
        data = [0] * ctx.geometry.image_size
        data[0] = 256
        with pytest.raises(ValueError):
            ctx.write_input(data)

    def test_nv12(self):
        context = HistogramContext(_config(format=Format.NV12))
        assert context.setup_environment()
        frame = random_frame(context.geometry, seed=4)
        context.write_input(frame)
        assert context.calculate_histograms(Detail.INCLUDE)
        reference = run_cpu_reference(frame, context.geometry, 16)
        candidate = {ch: context.get_statistics(ch) for ch in context.geometry.active_channels}
        assert all_passed(validate_frame(reference, candidate, Detail.INCLUDE))

    def test_count_variance_mode(self):
        context = HistogramContext(_config(variance_mode=VarianceMode.COUNT))
        assert context.setup_environment()
        context.write_input(random_frame(context.geometry, seed=2))
        assert context.calculate_histograms()
        np.testing.assert_array_equal(
            context.get_variance_histogram(Channel.Y), context.get_average_histogram(Channel.Y)
        )

    def test_clone_needs_setup(self, ctx):
        copy = ctx.clone()
        assert copy.config == ctx.config
        assert not copy.environment_set_up
        assert copy.write_input(constant_frame(copy.geometry, 1)).error_code is ErrorCode.NOT_PREPARED


class TestReconfiguration:
    def test_block_size_change_reallocates(self, ctx):
        ctx.write_input(random_frame(ctx.geometry, seed=3))
        assert ctx.calculate_histograms()
        assert ctx.set_block_size(16, 16)
        assert ctx.geometry.channel(Channel.Y).num_blocks == 8
        # input and results were cleared
        with pytest.raises(HistogramError):
            ctx.get_average_histogram(Channel.Y)
        assert ctx.calculate_histograms().error_code is ErrorCode.NO_INPUT

        ctx.write_input(random_frame(ctx.geometry, seed=3))
        assert ctx.calculate_histograms()
        assert ctx.get_average_histogram(Channel.Y).sum() == 8

    def test_invalid_block_size_keeps_state(self, ctx):
        before = ctx.config
        with pytest.raises(ConfigurationError):
            ctx.set_block_size(0, 8)
        with pytest.raises(ConfigurationError):
            ctx.set_block_size(128, 8)
        assert ctx.config == before
        assert ctx.geometry.block_width == 8

    def test_bins_must_divide_range(self, ctx):
        with pytest.raises(ConfigurationError):
            ctx.set_num_bins(3)
        assert ctx.config.num_bins == 16
        assert ctx.set_num_bins(32)
        ctx.write_input(random_frame(ctx.geometry, seed=8))
        assert ctx.calculate_histograms()
        assert ctx.get_average_histogram(Channel.Y).shape == (32,)

    def test_image_size_before_setup(self):
        context = HistogramContext(_config())
        assert context.set_image_size(128, 64)
        assert context.geometry.image_size == 128 * 64 * 3 // 2
        assert context.setup_environment()
        context.write_input(constant_frame(context.geometry, 5))
        assert context.calculate_histograms()

    def test_describe_environment(self, ctx):
        info = ctx.describe_environment()
        assert info["backend"] == "CPU"
        assert info["y_blocks"] == 32
        assert info["u_blocks"] == 32


class TestErrors:
    def test_backend_failure_becomes_device_error(self, ctx, monkeypatch):
        def boom(detail):
            raise RuntimeError("kernel launch failed")

        ctx.write_input(random_frame(ctx.geometry, seed=0))
        monkeypatch.setattr(ctx.backend, "run", boom)
        result = ctx.calculate_histograms()
        assert result.error_code is ErrorCode.DEVICE_ERROR
        assert "kernel launch failed" in result.message
        assert ctx.last_result is result
        with pytest.raises(HistogramError, match="kernel launch failed"):
            ctx.get_average_histogram(Channel.Y)

    def test_verbose_logs_failures(self, caplog):
        context = HistogramContext(_config(error_level=ErrorLevel.VERBOSE))
        with caplog.at_level(logging.DEBUG, logger="common.histogram_dispatch"):
            context.calculate_histograms()
        errors = [r for r in caplog.records if r.levelno == logging.ERROR]
        assert errors and "NOT_PREPARED" in errors[0].getMessage()

    def test_silent_keeps_failures_at_debug(self, caplog):
        context = HistogramContext(_config(error_level=ErrorLevel.SILENT))
        with caplog.at_level(logging.DEBUG, logger="common.histogram_dispatch"):
            context.calculate_histograms()
        assert not [r for r in caplog.records if r.levelno >= logging.WARNING]
        context.set_error_level(ErrorLevel.VERBOSE)
        assert context.config.error_level is ErrorLevel.VERBOSE

    @pytest.mark.skipif(gpu_available(), reason="CUDA device present")
    def test_gpu_without_failover(self):
        context = HistogramContext(_config(backend=Backend.GPU, allow_failover=False))
        result = context.setup_environment()
        assert result.error_code is ErrorCode.DEVICE_ERROR
        assert not context.environment_set_up

    @pytest.mark.skipif(gpu_available(), reason="CUDA device present")
    def test_gpu_failover_to_cpu(self):
        context = HistogramContext(_config(backend=Backend.GPU, allow_failover=True))
        assert context.setup_environment()
        assert context.backend.name == "CPU"

    def test_auto_always_sets_up(self):
        context = HistogramContext(_config(backend=Backend.AUTO))
        assert context.setup_environment()
        expected = "GPU" if dispatch.GpuBackend is not None and gpu_available() else "CPU"
        assert context.backend.name == expected


# (image_width, image_height, block_width, block_height); the last three leave uncovered edges
PARITY_GEOMETRIES = [
    (96, 48, 8, 8),
    (96, 48, 16, 4),
    (96, 48, 6, 6),
    (20, 12, 8, 8),
    (30, 22, 6, 4),
    (50, 34, 14, 10),
]


def _run_and_compare(config, seed, rtol=1e-9, atol=0.0):
    context = HistogramContext(config)
    assert context.setup_environment()
    frame = random_frame(context.geometry, seed=seed)
    assert context.write_input(frame)
    assert context.calculate_histograms(Detail.INCLUDE)

    reference = run_cpu_reference(frame, context.geometry, config.num_bins, config.variance_mode)
    assert list(reference) == list(context.geometry.active_channels)
    for ch in context.geometry.active_channels:
        np.testing.assert_allclose(context.get_average(ch), reference[ch].average, rtol=1e-6)
        np.testing.assert_allclose(context.get_variance(ch), reference[ch].variance, rtol=rtol, atol=atol)
        np.testing.assert_array_equal(context.get_average_histogram(ch), reference[ch].average_histogram)
        np.testing.assert_allclose(
            context.get_variance_histogram(ch), reference[ch].variance_histogram, rtol=rtol, atol=atol
        )
    return context


class TestCpuBackendParity:
    @pytest.mark.parametrize("fmt", [Format.YUV, Format.NV12])
    @pytest.mark.parametrize("color", [Color.CHROMATIC, Color.GRAYSCALE])
    @pytest.mark.parametrize("size", PARITY_GEOMETRIES[3:])
    @pytest.mark.parametrize("mode", [VarianceMode.WEIGHTED, VarianceMode.COUNT])
    def test_non_dividing_blocks(self, fmt, color, size, mode):
        w, h, bw, bh = size
        config = _config(format=fmt, color=color, image_width=w, image_height=h,
                         block_width=bw, block_height=bh, variance_mode=mode)
        context = _run_and_compare(config, seed=w + h)
        y = context.geometry.channel(Channel.Y)
        assert y.covered_width < w or y.covered_height < h

    def test_odd_grayscale_single_pixel_blocks(self):
        config = _config(color=Color.GRAYSCALE, image_width=15, image_height=9,
                         block_width=1, block_height=1)
        context = _run_and_compare(config, seed=15)
        assert np.all(context.get_variance(Channel.Y) == 0)
        assert context.get_average_histogram(Channel.Y).sum() == 15 * 9

    def test_white_frame_fills_last_bin(self):
        context = HistogramContext(_config(num_bins=256))
        assert context.setup_environment()
        context.write_input(constant_frame(context.geometry, 255))
        assert context.calculate_histograms()
        for ch in context.geometry.active_channels:
            hist = context.get_average_histogram(ch)
            assert hist[255] == context.geometry.channel(ch).num_blocks
            assert hist[:255].sum() == 0


class TestDetailOption:
    def test_detail_given_by_value(self, ctx):
        ctx.write_input(random_frame(ctx.geometry, seed=6))
        assert ctx.calculate_histograms("exclude")
        with pytest.raises(HistogramError, match="Detail.INCLUDE"):
            ctx.get_average(Channel.Y)
        assert ctx.calculate_histograms("INCLUDE")
        assert ctx.get_average(Channel.Y).shape == (32,)

    def test_unknown_detail(self, ctx):
        ctx.write_input(random_frame(ctx.geometry, seed=6))
        with pytest.raises(ConfigurationError, match="detail"):
            ctx.calculate_histograms("everything")


@pytest.mark.skipif(not gpu_available(), reason="CUDA device not available")
class TestGpuParity:
    @pytest.mark.parametrize("fmt", [Format.YUV, Format.NV12])
    @pytest.mark.parametrize("color", [Color.CHROMATIC, Color.GRAYSCALE])
    @pytest.mark.parametrize("size", PARITY_GEOMETRIES)
    def test_matches_reference(self, fmt, color, size):
        w, h, bw, bh = size
        config = _config(format=fmt, color=color, image_width=w, image_height=h,
                         block_width=bw, block_height=bh, backend=Backend.GPU)
        context = _run_and_compare(config, seed=12, rtol=1e-4, atol=1e-2)
        assert context.backend.name == "GPU"

    @pytest.mark.parametrize("size", PARITY_GEOMETRIES[3:])
    def test_count_mode(self, size):
        w, h, bw, bh = size
        config = _config(image_width=w, image_height=h, block_width=bw, block_height=bh,
                         backend=Backend.GPU, variance_mode=VarianceMode.COUNT)
        _run_and_compare(config, seed=3, rtol=1e-4, atol=1e-2)
