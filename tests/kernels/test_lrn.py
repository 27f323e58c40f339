# Copyright (c) 2025, LRNKit Authors
"""Tests for the portable (torch) LRN kernels against brute-force references.

Tests cover:
1. Literal 4-channel fixture
2. Window sums match brute-force recomputation (odd and even windows)
3. Boundary channels when the window is wider than the channel axis
4. Output equals bottom * scale^(-beta), including zero and negative input
5. Backward matches finite differences and the autograd reference
6. Reduced-precision storage agrees with the float32 computation
7. Repeated forward calls reuse the scale buffer without hidden state
"""

import concurrent.futures
import threading

import pytest
import torch
import torch.nn.functional as F

from lrnkit import LRN, LRNConfig, Precision, PrecisionError, lrn, lrn_func
from lrnkit.kernels.lrn import _KERNEL_CACHE, lrn_diff, lrn_output, lrn_scale_fill
from lrnkit.kernels.lrn.ref import (
    lrn_backward_pytorch,
    lrn_pytorch,
    lrn_scale_per_task,
    lrn_scale_pytorch,
)
from lrnkit.utils.testing import reference_atol, verify_kernel

BACKEND = "torch"

SHAPES = [
    (1, 1, 1, 1),  # minimal
    (2, 3, 2, 2),  # fewer channels than most windows
    (2, 7, 3, 5),  # non-square spatial
    (1, 16, 4, 4),
    (3, 10, 1, 1),  # no spatial extent
]

SIZES = [1, 2, 3, 4, 5, 7, 9]


# =============================================================================
# Forward scale
# =============================================================================


def test_scale_literal_fixture():
    """C=4, size=3, alpha=1, k=1, in=[1, 2, 3, 4]."""
    x = torch.tensor([1.0, 2.0, 3.0, 4.0]).view(1, 4, 1, 1)
    config = LRNConfig(size=3, alpha=1.0, beta=0.75, k=1.0)

    scale = lrn_scale_fill(x, config, backend=BACKEND)

    expected = torch.tensor([1 + 5 / 3, 1 + 14 / 3, 1 + 29 / 3, 1 + 25 / 3])
    torch.testing.assert_close(scale.view(-1), expected)

    top = lrn_output(x, scale, config, backend=BACKEND)
    torch.testing.assert_close(top.view(-1), torch.tensor([1.0, 2.0, 3.0, 4.0]) * expected.pow(-0.75))


@pytest.mark.parametrize("shape", SHAPES)
@pytest.mark.parametrize("size", SIZES)
def test_scale_matches_brute_force(shape, size):
    torch.manual_seed(0)
    x = torch.randn(shape, dtype=torch.float64)
    config = LRNConfig(size=size, alpha=0.7, beta=0.75, k=2.0)

    scale = lrn_scale_fill(x, config, backend=BACKEND)
    scale_ref = lrn_scale_pytorch(x, size, alpha=0.7, k=2.0)

    torch.testing.assert_close(scale, scale_ref)


@pytest.mark.parametrize("size", [1, 3, 4, 5, 8])
def test_scale_matches_per_task_reference(size):
    torch.manual_seed(1)
    x = torch.randn(2, 6, 2, 3, dtype=torch.float64)
    config = LRNConfig(size=size, alpha=1.3, beta=0.75, k=1.5)

    scale = lrn_scale_fill(x, config, backend=BACKEND)

    torch.testing.assert_close(scale, lrn_scale_per_task(x, config))


@pytest.mark.parametrize("channels,size", [(3, 5), (2, 7), (1, 9), (4, 4)])
def test_window_wider_than_channels(channels, size):
    """Every channel whose window covers the whole axis sees the sum over all channels."""
    torch.manual_seed(2)
    x = torch.randn(2, channels, 3, 3, dtype=torch.float64)
    config = LRNConfig(size=size, alpha=1.0, beta=0.75, k=1.0)

    scale = lrn_scale_fill(x, config, backend=BACKEND)

    full = 1.0 + (1.0 / size) * x.pow(2).sum(dim=1, keepdim=True)
    for c in range(channels):
        if c - config.pre_pad <= 0 and c + config.post_pad >= channels - 1:
            torch.testing.assert_close(scale[:, c : c + 1], full)
    torch.testing.assert_close(scale, lrn_scale_pytorch(x, size, alpha=1.0, k=1.0))


def test_even_window_alignment():
    """size=4 covers [c - 1, c + 2] in the forward pass."""
    x = torch.zeros(1, 6, 1, 1)
    x[0, 3] = 1.0
    config = LRNConfig(size=4, alpha=2.0, beta=0.75, k=1.0)

    scale = lrn_scale_fill(x, config, backend=BACKEND).view(-1)

    expected = torch.tensor([1.0, 1.5, 1.5, 1.5, 1.5, 1.0])
    torch.testing.assert_close(scale, expected)


# =============================================================================
# Forward output
# =============================================================================


def test_output_is_bottom_times_scale_power():
    x = torch.tensor([0.0, -1.5, 2.0, -0.0, 3.25, -4.0, 0.5, 0.0]).view(1, 8, 1, 1)
    config = LRNConfig(size=5, alpha=1e-2, beta=0.75, k=2.0)

    scale = lrn_scale_fill(x, config, backend=BACKEND)
    top = lrn_output(x, scale, config, backend=BACKEND)

    torch.testing.assert_close(top, x * scale.pow(-0.75))
    assert (scale > 0).all()
    assert torch.equal(top == 0, x == 0)
    assert torch.equal(top < 0, x < 0)


@pytest.mark.parametrize("size", [1, 3, 5, 7])
def test_matches_torch_local_response_norm(size):
    torch.manual_seed(3)
    x = torch.randn(2, 10, 5, 4)

    out = lrn_func(x, size, alpha=0.5, beta=0.75, k=2.0, backend=BACKEND)
    out_ref = F.local_response_norm(x, size, alpha=0.5, beta=0.75, k=2.0)

    torch.testing.assert_close(out, out_ref, atol=1e-5, rtol=1e-5)


def test_forward_writes_into_given_top():
    torch.manual_seed(4)
    x = torch.randn(2, 5, 3, 3)
    top = torch.empty_like(x)
    layer = LRN(size=3, alpha=1.0, backend=BACKEND)

    out = layer.forward(x, top)

    assert out.data_ptr() == top.data_ptr()
    torch.testing.assert_close(top, lrn_pytorch(x, 3, alpha=1.0, beta=0.75, k=1.0))


def test_repeated_forward_is_idempotent():
    torch.manual_seed(5)
    x = torch.randn(2, 8, 4, 4)
    layer = LRN(size=5, alpha=1.0, beta=0.75, k=2.0, backend=BACKEND)

    out1 = layer.forward(x).clone()
    scale1 = layer.scale.clone()
    scale_ptr = layer.scale.data_ptr()
    out2 = layer.forward(x)

    assert layer.scale.data_ptr() == scale_ptr
    assert torch.equal(out1, out2)
    assert torch.equal(scale1, layer.scale)


def test_scale_buffer_follows_input_shape():
    layer = LRN(size=3, backend=BACKEND)
    layer.forward(torch.randn(1, 4, 2, 2))
    assert layer.scale.shape == (1, 4, 2, 2)

    layer.forward(torch.randn(2, 6, 3, 3, dtype=torch.float64))
    assert layer.scale.shape == (2, 6, 3, 3)
    assert layer.scale.dtype == torch.float64


# =============================================================================
# Backward
# =============================================================================


@pytest.mark.parametrize("size", [1, 2, 3, 4, 5, 6, 7])
def test_backward_gradcheck(size):
    torch.manual_seed(6)
    x = torch.randn(2, 6, 3, 2, dtype=torch.float64, requires_grad=True)

    assert torch.autograd.gradcheck(lambda t: lrn_func(t, size, 0.9, 0.75, 2.0, BACKEND), (x,))


@pytest.mark.parametrize("shape", [(2, 3, 2, 2), (2, 7, 3, 5), (1, 16, 4, 4)])
@pytest.mark.parametrize("size", [2, 3, 5])
def test_layer_backward_matches_autograd_reference(shape, size):
    torch.manual_seed(7)
    x = torch.randn(shape)
    dy = torch.randn(shape)
    layer = LRN(size=size, alpha=1.0, beta=0.75, k=2.0, backend=BACKEND)

    top = layer.forward(x)
    dx = layer.backward(dy, x, top)

    dx_ref = lrn_backward_pytorch(dy, x, size, alpha=1.0, beta=0.75, k=2.0)
    torch.testing.assert_close(dx, dx_ref, atol=1e-5, rtol=1e-4)


def test_backward_free_function_matches_layer():
    torch.manual_seed(8)
    x = torch.randn(2, 9, 3, 3)
    dy = torch.randn_like(x)
    config = LRNConfig(size=5, alpha=1.0, beta=0.6, k=1.5)

    scale = lrn_scale_fill(x, config, backend=BACKEND)
    top = lrn_output(x, scale, config, backend=BACKEND)
    dx = lrn_diff(x, top, scale, dy, config, backend=BACKEND)

    layer = LRN(config, backend=BACKEND)
    top_layer = layer.forward(x)
    assert torch.equal(top, top_layer)
    assert torch.equal(dx, layer.backward(dy, x, top_layer))


def test_backward_before_forward_raises():
    layer = LRN(size=3, backend=BACKEND)
    x = torch.randn(1, 4, 2, 2)
    with pytest.raises(RuntimeError, match="before forward"):
        layer.backward(x, x, x)


def test_backward_with_stale_scale_shape_raises():
    layer = LRN(size=3, backend=BACKEND)
    layer.forward(torch.randn(1, 4, 2, 2))
    x = torch.randn(1, 5, 2, 2)
    with pytest.raises(RuntimeError, match="scale buffer has shape"):
        layer.backward(x, x, x)


@pytest.mark.parametrize("dtype", [torch.float32, torch.float16, torch.bfloat16])
def test_verify_against_reference(dtype):
    torch.manual_seed(9)
    x = torch.randn(2, 12, 4, 4).to(dtype)

    verify_kernel(
        f"lrn[{BACKEND}]",
        lambda t, *a: lrn_func(t, *a, backend=BACKEND),
        lrn_pytorch,
        x,
        5,
        1.0,
        0.75,
        2.0,
    )


# =============================================================================
# Precision
# =============================================================================


@pytest.mark.parametrize("dtype", [torch.float16, torch.bfloat16])
def test_reduced_precision_matches_float32(dtype):
    torch.manual_seed(10)
    x = torch.randn(2, 16, 5, 5).to(dtype)
    dy = torch.randn(2, 16, 5, 5).to(dtype)
    eps = torch.finfo(dtype).eps

    low = LRN(size=5, alpha=1.0, beta=0.75, k=2.0, backend=BACKEND)
    top_low = low.forward(x)
    dx_low = low.backward(dy, x, top_low)
    assert top_low.dtype == dtype and dx_low.dtype == dtype
    assert low.scale.dtype == dtype

    wide = LRN(size=5, alpha=1.0, beta=0.75, k=2.0, backend=BACKEND)
    top_wide = wide.forward(x.float())
    dx_wide = wide.backward(dy.float(), x.float(), top_wide)

    top_err = (top_low.float() - top_wide).abs().max().item()
    assert top_err <= 5 * eps * max(top_wide.abs().max().item(), 1.0)

    dx_err = (dx_low.float() - dx_wide).abs().max().item()
    assert dx_err <= 20 * eps * max(dx_wide.abs().max().item(), 1.0)


def test_float64_accumulation_for_float32_storage():
    torch.manual_seed(11)
    x = torch.randn(2, 8, 3, 3)
    layer = LRN(size=5, alpha=1.0, beta=0.75, k=2.0, backend=BACKEND, accum_dtype=torch.float64)

    top = layer.forward(x)

    assert top.dtype == torch.float32
    torch.testing.assert_close(top, lrn_pytorch(x.double(), 5, 1.0, 0.75, 2.0).float())


def test_unsupported_accumulation_dtype_raises():
    layer = LRN(size=3, backend=BACKEND, accum_dtype=torch.float16)
    with pytest.raises(PrecisionError):
        layer.forward(torch.randn(1, 4, 2, 2))


def test_precision_storage_mismatch_raises():
    x = torch.randn(1, 4, 2, 2)
    with pytest.raises(PrecisionError):
        lrn_scale_fill(x, LRNConfig(size=3), backend=BACKEND, precision=Precision.for_dtype(torch.float16))


# =============================================================================
# Argument checks and direct call
# =============================================================================


def test_non_4d_input_raises():
    with pytest.raises(ValueError, match="4D"):
        lrn_scale_fill(torch.randn(4, 2, 2), LRNConfig(size=3), backend=BACKEND)


def test_output_buffer_checks():
    x = torch.randn(1, 4, 2, 2)
    config = LRNConfig(size=3)
    scale = lrn_scale_fill(x, config, backend=BACKEND)

    with pytest.raises(ValueError, match="dtype"):
        lrn_output(x, scale, config, torch.empty_like(x, dtype=torch.float64), backend=BACKEND)
    with pytest.raises(ValueError, match="contiguous"):
        lrn_output(x, scale, config, torch.empty(1, 2, 2, 4).transpose(1, 3), backend=BACKEND)
    with pytest.raises(ValueError, match="shape"):
        lrn_output(x, scale[:, :2], config, backend=BACKEND)


def test_non_contiguous_input():
    torch.manual_seed(12)
    x = torch.randn(2, 3, 4, 6).transpose(2, 3)
    assert not x.is_contiguous()

    out = lrn_func(x, 3, 1.0, 0.75, 2.0, BACKEND)

    torch.testing.assert_close(out, lrn_pytorch(x.contiguous(), 3, 1.0, 0.75, 2.0))


def test_gpu_backend_on_cpu_tensor_raises():
    with pytest.raises(RuntimeError, match="requires CUDA"):
        lrn_scale_fill(torch.randn(1, 4, 2, 2), LRNConfig(size=3), backend="triton")


def test_direct_call_caches_config():
    _KERNEL_CACHE.clear()
    x = torch.randn(1, 6, 3, 3)

    out1 = lrn(x, size=3, alpha=0.5, beta=0.75, k=2.0, backend=BACKEND)
    out2 = lrn(x, size=3, alpha=0.5, beta=0.75, k=2.0, backend=BACKEND)
    lrn(x, size=5, alpha=0.5, beta=0.75, k=2.0, backend=BACKEND)

    assert len(_KERNEL_CACHE) == 2
    assert all(isinstance(config, LRNConfig) for config in _KERNEL_CACHE.values())
    assert torch.equal(out1, out2)
    assert out1.data_ptr() != out2.data_ptr()
    torch.testing.assert_close(out1, lrn_pytorch(x, 3, 0.5, 0.75, 2.0))


def test_direct_call_from_many_threads():
    torch.manual_seed(13)
    xs = [torch.randn(2, 16, 8, 8) * (i + 1) for i in range(8)]
    expected = [lrn_pytorch(x, 5, 1e-2, 0.75, 2.0) for x in xs]
    start = threading.Barrier(len(xs))

    def worker(i):
        start.wait()
        mismatches = 0
        for _ in range(20):
            out = lrn(xs[i], size=5, alpha=1e-2, beta=0.75, k=2.0, backend=BACKEND)
            if not torch.allclose(out, expected[i], atol=1e-5, rtol=1e-5):
                mismatches += 1
        return mismatches

    with concurrent.futures.ThreadPoolExecutor(max_workers=len(xs)) as pool:
        mismatches = list(pool.map(worker, range(len(xs))))

    assert mismatches == [0] * len(xs)


def test_reference_atol_scales_with_dtype():
    x = torch.randn(1, 4, 2, 2)
    assert reference_atol(lrn_pytorch, x.half(), 3) > reference_atol(lrn_pytorch, x, 3)


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
