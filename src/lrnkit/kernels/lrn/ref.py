# Copyright (c) 2025, LRNKit Authors
"""Reference LRN implementations for testing and benchmarking.

Provides brute-force PyTorch references that recompute every window from
scratch, and a per-task scalar reference driven through the task launcher,
for correctness checks of the sliding-window kernels.
"""

import torch

from lrnkit.config import LRNConfig
from .grid import TaskGrid, launch


def _accum_dtype(x):
    return torch.float64 if x.dtype == torch.float64 else torch.float32


def _window_sum(sq, size):
    """Sum of ``sq`` over the forward window of every channel, truncated at the edges."""
    pre_pad = (size - 1) // 2
    post_pad = size - pre_pad - 1
    channels = sq.shape[1]
    sums = []
    for c in range(channels):
        lo = max(c - pre_pad, 0)
        hi = min(c + post_pad + 1, channels)
        sums.append(sq[:, lo:hi].sum(dim=1))
    return torch.stack(sums, dim=1)


# =============================================================================
# PyTorch Reference
# =============================================================================


def lrn_scale_pytorch(x, size, alpha=1.0, k=1.0):
    """Brute-force cross-channel LRN scale.

    Args:
        x: (N, C, H, W)
        size: window length
        alpha, k: float

    Returns:
        (N, C, H, W) in the dtype of ``x``, computed in float32 (float64 for
        float64 input)
    """
    sq = x.to(_accum_dtype(x)).pow(2)
    scale = k + (alpha / size) * _window_sum(sq, size)
    return scale.to(x.dtype)


def lrn_pytorch(x, size, alpha=1.0, beta=0.75, k=1.0):
    """Pure PyTorch LRN forward, differentiable with autograd.

    Returns:
        (N, C, H, W) in the dtype of ``x``
    """
    xa = x.to(_accum_dtype(x))
    scale = k + (alpha / size) * _window_sum(xa * xa, size)
    return (xa * scale.pow(-beta)).to(x.dtype)


def lrn_backward_pytorch(dout, x, size, alpha=1.0, beta=0.75, k=1.0):
    """Gradient of :func:`lrn_pytorch` with respect to ``x``, via autograd.

    Returns:
        dx: (N, C, H, W) in the dtype of ``x``
    """
    acc = _accum_dtype(x)
    with torch.enable_grad():
        xa = x.detach().to(acc).requires_grad_(True)
        out = lrn_pytorch(xa, size, alpha, beta, k)
        (dx,) = torch.autograd.grad(out, xa, dout.to(acc))
    return dx.to(x.dtype)


# =============================================================================
# Per-task Reference
# =============================================================================


def lrn_scale_per_task(x, config: LRNConfig):
    """Scale computed one task at a time with Python scalars.

    Each task reads its channel column from the flat buffer starting at
    ``grid.offset(task_id)`` with stride ``grid.channel_stride``. Intended for
    small tensors only.
    """
    grid = TaskGrid.for_tensor(x)
    flat = x.contiguous().view(-1).tolist()
    out = [0.0] * len(flat)

    def task(task_id):
        base = grid.offset(task_id)
        stride = grid.channel_stride
        for c in range(grid.channels):
            lo = max(c - config.pre_pad, 0)
            hi = min(c + config.post_pad, grid.channels - 1)
            total = sum(flat[base + j * stride] ** 2 for j in range(lo, hi + 1))
            out[base + c * stride] = config.k + config.alpha_over_size * total

    launch(grid, task)
    return torch.tensor(out, dtype=torch.float64).view(grid.shape)


__all__ = [
    "lrn_scale_pytorch",
    "lrn_pytorch",
    "lrn_backward_pytorch",
    "lrn_scale_per_task",
]
