# Copyright (c) 2025, LRNKit Authors
"""Triton LRN kernels.

The two sliding-window kernels launch one program per ``BLOCK`` tasks; each
lane of a program owns one spatial location and walks the channel axis in
steps of ``spatial`` elements. The output kernel is a plain elementwise loop.
"""

import torch
import triton
import triton.language as tl

from lrnkit.config import LRNConfig
from lrnkit.precision import Precision
from .grid import TaskGrid

BLOCK_TASKS = 128
BLOCK_ELEMENTS = 1024


@triton.jit
def _lrn_fill_scale_kernel(
    X,
    Scale,
    num_tasks,
    spatial,
    channels,
    size,
    post_pad,
    warmup,
    Params,
    ACC_FP64: tl.constexpr,
    BLOCK: tl.constexpr,
):
    pid = tl.program_id(0)
    tasks = pid * BLOCK + tl.arange(0, BLOCK)
    mask = tasks < num_tasks

    n = (tasks // spatial).to(tl.int64)
    hw = (tasks % spatial).to(tl.int64)
    X += n * channels * spatial + hw
    Scale += n * channels * spatial + hw

    if ACC_FP64:
        accum = tl.zeros((BLOCK,), dtype=tl.float64)
    else:
        accum = tl.zeros((BLOCK,), dtype=tl.float32)
    # Params holds (k, alpha / size) in the accumulation dtype
    k = tl.load(Params)
    alpha_over_size = tl.load(Params + 1)

    for head in range(0, warmup):
        x = tl.load(X + head * spatial, mask=mask, other=0.0).to(accum.dtype)
        accum += x * x

    for head in range(warmup, channels):
        x = tl.load(X + head * spatial, mask=mask, other=0.0).to(accum.dtype)
        accum += x * x
        if head >= size:
            x_out = tl.load(X + (head - size) * spatial, mask=mask, other=0.0).to(accum.dtype)
            accum -= x_out * x_out
        s = k + accum * alpha_over_size
        tl.store(Scale + (head - post_pad) * spatial, s.to(Scale.dtype.element_ty), mask=mask)

    for head in range(channels, channels + post_pad):
        if head >= size:
            x_out = tl.load(X + (head - size) * spatial, mask=mask, other=0.0).to(accum.dtype)
            accum -= x_out * x_out
        if head >= post_pad:
            s = k + accum * alpha_over_size
            tl.store(Scale + (head - post_pad) * spatial, s.to(Scale.dtype.element_ty), mask=mask)


@triton.jit
def _lrn_output_kernel(
    X,
    Scale,
    Y,
    n_elements,
    Params,
    ACC_FP64: tl.constexpr,
    BLOCK: tl.constexpr,
):
    offsets = tl.program_id(0).to(tl.int64) * BLOCK + tl.arange(0, BLOCK)
    mask = offsets < n_elements

    if ACC_FP64:
        x = tl.load(X + offsets, mask=mask, other=0.0).to(tl.float64)
        s = tl.load(Scale + offsets, mask=mask, other=1.0).to(tl.float64)
    else:
        x = tl.load(X + offsets, mask=mask, other=0.0).to(tl.float32)
        s = tl.load(Scale + offsets, mask=mask, other=1.0).to(tl.float32)

    neg_beta = tl.load(Params)
    # scale > 0, so scale^(-beta) == exp(-beta * log(scale))
    y = x * tl.exp(neg_beta * tl.log(s))
    tl.store(Y + offsets, y.to(Y.dtype.element_ty), mask=mask)


@triton.jit
def _lrn_diff_kernel(
    X,
    Y,
    Scale,
    dY,
    dX,
    num_tasks,
    spatial,
    channels,
    size,
    post_pad,
    warmup,
    Params,
    ACC_FP64: tl.constexpr,
    BLOCK: tl.constexpr,
):
    pid = tl.program_id(0)
    tasks = pid * BLOCK + tl.arange(0, BLOCK)
    mask = tasks < num_tasks

    n = (tasks // spatial).to(tl.int64)
    hw = (tasks % spatial).to(tl.int64)
    base = n * channels * spatial + hw
    X += base
    Y += base
    Scale += base
    dY += base
    dX += base

    if ACC_FP64:
        accum_ratio = tl.zeros((BLOCK,), dtype=tl.float64)
    else:
        accum_ratio = tl.zeros((BLOCK,), dtype=tl.float32)
    # Params holds (-beta, cache_ratio) in the accumulation dtype
    neg_beta = tl.load(Params)
    cache_ratio = tl.load(Params + 1)

    for head in range(0, warmup):
        off = head * spatial
        dy = tl.load(dY + off, mask=mask, other=0.0).to(accum_ratio.dtype)
        y = tl.load(Y + off, mask=mask, other=0.0).to(accum_ratio.dtype)
        s = tl.load(Scale + off, mask=mask, other=1.0).to(accum_ratio.dtype)
        accum_ratio += dy * y / s

    for head in range(warmup, channels):
        off = head * spatial
        dy = tl.load(dY + off, mask=mask, other=0.0).to(accum_ratio.dtype)
        y = tl.load(Y + off, mask=mask, other=0.0).to(accum_ratio.dtype)
        s = tl.load(Scale + off, mask=mask, other=1.0).to(accum_ratio.dtype)
        accum_ratio += dy * y / s
        if head >= size:
            off = (head - size) * spatial
            dy = tl.load(dY + off, mask=mask, other=0.0).to(accum_ratio.dtype)
            y = tl.load(Y + off, mask=mask, other=0.0).to(accum_ratio.dtype)
            s = tl.load(Scale + off, mask=mask, other=1.0).to(accum_ratio.dtype)
            accum_ratio -= dy * y / s

        off = (head - post_pad) * spatial
        dy = tl.load(dY + off, mask=mask, other=0.0).to(accum_ratio.dtype)
        s = tl.load(Scale + off, mask=mask, other=1.0).to(accum_ratio.dtype)
        x = tl.load(X + off, mask=mask, other=0.0).to(accum_ratio.dtype)
        dx = dy * tl.exp(neg_beta * tl.log(s)) - cache_ratio * x * accum_ratio
        tl.store(dX + off, dx.to(dX.dtype.element_ty), mask=mask)

    for head in range(channels, channels + post_pad):
        if head >= size:
            off = (head - size) * spatial
            dy = tl.load(dY + off, mask=mask, other=0.0).to(accum_ratio.dtype)
            y = tl.load(Y + off, mask=mask, other=0.0).to(accum_ratio.dtype)
            s = tl.load(Scale + off, mask=mask, other=1.0).to(accum_ratio.dtype)
            accum_ratio -= dy * y / s
        if head >= post_pad:
            off = (head - post_pad) * spatial
            dy = tl.load(dY + off, mask=mask, other=0.0).to(accum_ratio.dtype)
            s = tl.load(Scale + off, mask=mask, other=1.0).to(accum_ratio.dtype)
            x = tl.load(X + off, mask=mask, other=0.0).to(accum_ratio.dtype)
            dx = dy * tl.exp(neg_beta * tl.log(s)) - cache_ratio * x * accum_ratio
            tl.store(dX + off, dx.to(dX.dtype.element_ty), mask=mask)


def _check_cuda(*tensors):
    for t in tensors:
        if not t.is_cuda:
            raise RuntimeError(f"Triton LRN backend requires CUDA tensors, got device {t.device}")


def _params(precision: Precision, device, *values):
    # Triton passes Python floats as fp32 scalars; constants are loaded in the accumulation dtype instead
    return torch.tensor(values, dtype=precision.accum, device=device)


def scale_fill(bottom, scale, config: LRNConfig, precision: Precision):
    _check_cuda(bottom, scale)
    grid = TaskGrid.for_tensor(bottom)
    if grid.num_tasks == 0:
        return scale
    _lrn_fill_scale_kernel[(triton.cdiv(grid.num_tasks, BLOCK_TASKS),)](
        bottom,
        scale,
        grid.num_tasks,
        grid.spatial,
        grid.channels,
        config.size,
        config.post_pad,
        min(config.post_pad, grid.channels),
        _params(precision, bottom.device, config.k, config.alpha_over_size),
        ACC_FP64=precision.accum == torch.float64,
        BLOCK=BLOCK_TASKS,
    )
    return scale


def output_compute(bottom, scale, top, config: LRNConfig, precision: Precision):
    _check_cuda(bottom, scale, top)
    n_elements = bottom.numel()
    if n_elements == 0:
        return top
    _lrn_output_kernel[(triton.cdiv(n_elements, BLOCK_ELEMENTS),)](
        bottom,
        scale,
        top,
        n_elements,
        _params(precision, bottom.device, -config.beta),
        ACC_FP64=precision.accum == torch.float64,
        BLOCK=BLOCK_ELEMENTS,
    )
    return top


def diff_compute(bottom, top, scale, top_diff, bottom_diff, config: LRNConfig, precision: Precision):
    _check_cuda(bottom, top, scale, top_diff, bottom_diff)
    grid = TaskGrid.for_tensor(bottom)
    if grid.num_tasks == 0:
        return bottom_diff
    _lrn_diff_kernel[(triton.cdiv(grid.num_tasks, BLOCK_TASKS),)](
        bottom,
        top,
        scale,
        top_diff,
        bottom_diff,
        grid.num_tasks,
        grid.spatial,
        grid.channels,
        config.size,
        config.backward_post_pad,
        min(config.backward_post_pad, grid.channels),
        _params(precision, bottom.device, -config.beta, config.cache_ratio),
        ACC_FP64=precision.accum == torch.float64,
        BLOCK=BLOCK_TASKS,
    )
    return bottom_diff
