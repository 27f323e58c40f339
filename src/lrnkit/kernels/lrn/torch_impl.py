# Copyright (c) 2025, LRNKit Authors
"""Portable LRN kernels written with PyTorch tensor ops.

Each sliding-window kernel evaluates every task of the grid in lock-step:
``columns[:, c]`` is a (N, H*W) slice holding channel ``c`` of all tasks, so
one step along the channel axis advances every task at once. Runs on any
device PyTorch supports.
"""

import torch
from torch import Tensor

from lrnkit.config import LRNConfig
from lrnkit.precision import Precision
from .grid import TaskGrid


def scale_fill(bottom: Tensor, scale: Tensor, config: LRNConfig, precision: Precision) -> Tensor:
    """scale = k + alpha/size * (sum of squares over the forward window)."""
    grid = TaskGrid.for_tensor(bottom)
    x = grid.columns(bottom)
    s = grid.columns(scale)

    channels = grid.channels
    size = config.size
    post_pad = config.post_pad
    k = config.k
    alpha_over_size = config.alpha_over_size

    def square(c):
        v = precision.widen(x[:, c])
        return v * v

    def emit(c, accum):
        s[:, c] = precision.narrow(accum * alpha_over_size + k)

    accum = torch.zeros((grid.num, grid.spatial), dtype=precision.accum, device=bottom.device)

    # Warm-up: fill the trailing side of the first window
    warmup = min(post_pad, channels)
    for head in range(warmup):
        accum += square(head)

    for head in range(warmup, channels):
        accum += square(head)
        if head - size >= 0:
            accum -= square(head - size)
        emit(head - post_pad, accum)

    # Drain: only elements leaving the window
    for head in range(channels, channels + post_pad):
        if head - size >= 0:
            accum -= square(head - size)
        if head - post_pad >= 0:
            emit(head - post_pad, accum)

    return scale


def output_compute(bottom: Tensor, scale: Tensor, top: Tensor, config: LRNConfig, precision: Precision) -> Tensor:
    """top = bottom * scale^(-beta), elementwise."""
    out = precision.widen(bottom) * precision.widen(scale).pow(-config.beta)
    top.copy_(precision.narrow(out))
    return top


def diff_compute(
    bottom: Tensor,
    top: Tensor,
    scale: Tensor,
    top_diff: Tensor,
    bottom_diff: Tensor,
    config: LRNConfig,
    precision: Precision,
) -> Tensor:
    """bottom_diff = top_diff * scale^(-beta) - cache_ratio * bottom * accum_ratio.

    ``accum_ratio`` sums ``top_diff * top / scale`` over the backward window.
    """
    grid = TaskGrid.for_tensor(bottom)
    x = grid.columns(bottom)
    y = grid.columns(top)
    s = grid.columns(scale)
    dy = grid.columns(top_diff)
    dx = grid.columns(bottom_diff)

    channels = grid.channels
    size = config.size
    post_pad = config.backward_post_pad
    neg_beta = -config.beta
    cache_ratio = config.cache_ratio

    def ratio(c):
        return precision.widen(dy[:, c]) * precision.widen(y[:, c]) / precision.widen(s[:, c])

    def emit(c, accum_ratio):
        direct = precision.widen(dy[:, c]) * precision.widen(s[:, c]).pow(neg_beta)
        dx[:, c] = precision.narrow(direct - cache_ratio * precision.widen(x[:, c]) * accum_ratio)

    accum_ratio = torch.zeros((grid.num, grid.spatial), dtype=precision.accum, device=bottom.device)

    warmup = min(post_pad, channels)
    for head in range(warmup):
        accum_ratio += ratio(head)

    for head in range(warmup, channels):
        accum_ratio += ratio(head)
        if head - size >= 0:
            accum_ratio -= ratio(head - size)
        emit(head - post_pad, accum_ratio)

    for head in range(channels, channels + post_pad):
        if head - size >= 0:
            accum_ratio -= ratio(head - size)
        if head - post_pad >= 0:
            emit(head - post_pad, accum_ratio)

    return bottom_diff
