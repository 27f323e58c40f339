# Copyright (c) 2025, LRNKit Authors
import logging
from typing import Dict, Tuple, Type, Any

import torch
from torch import Tensor
import cuda.bindings.driver as cuda
import cutlass
import cutlass.cute as cute
from cutlass import Float32, Int32, const_expr

from quack.cute_dsl_utils import torch2cute_dtype_map
from quack.compile_utils import make_fake_tensor as fake_tensor

from lrnkit.config import LRNConfig
from lrnkit.precision import Precision, PrecisionError
from .grid import TaskGrid

logger = logging.getLogger(__name__)


class LRNImpl:
    """
    Cross-channel LRN kernels for SM80+.

    One thread per spatial location, grid-stride over tasks. The channel
    count and window are compile-time constants, so the three phases of each
    sweep are fully unrolled and every window-boundary test is resolved at
    trace time.
    """

    def __init__(self, dtype: Type[cutlass.Numeric], channels: int, config: LRNConfig):
        self.dtype = dtype
        self.channels = channels
        self.size = config.size
        self.post_pad = config.post_pad
        self.backward_post_pad = config.backward_post_pad
        self.k = config.k
        self.alpha_over_size = config.alpha_over_size
        self.neg_beta = -config.beta
        self.cache_ratio = config.cache_ratio

    @staticmethod
    def _grid(num_tasks: Int32):
        num_threads = 256
        num_blocks = (num_tasks + num_threads - 1) // num_threads
        return [min(num_blocks, 65535), 1, 1], [num_threads, 1, 1]

    @cute.jit
    def fill_scale(self, mX: cute.Tensor, mScale: cute.Tensor, num_tasks: Int32, stream: cuda.CUstream):
        grid, block = self._grid(num_tasks)
        self.fill_scale_kernel(mX, mScale, num_tasks).launch(grid=grid, block=block, stream=stream)

    @cute.kernel
    def fill_scale_kernel(self, mX: cute.Tensor, mScale: cute.Tensor, num_tasks: Int32):
        tidx, _, _ = cute.arch.thread_idx()
        bidx, _, _ = cute.arch.block_idx()
        num_threads, _, _ = cute.arch.block_dim()
        num_blocks, _, _ = cute.arch.grid_dim()

        start = bidx * num_threads + tidx
        stride = num_blocks * num_threads
        spatial = mX.shape[2]

        C = const_expr(self.channels)
        size = const_expr(self.size)
        post_pad = const_expr(self.post_pad)
        warmup = const_expr(min(self.post_pad, self.channels))
        k = Float32(self.k)
        alpha_over_size = Float32(self.alpha_over_size)

        for t in range(start, num_tasks, stride):
            n = t // spatial
            hw = t % spatial
            accum = Float32(0.0)

            for head in cutlass.range_constexpr(warmup):
                x = mX[n, head, hw].to(Float32)
                accum += x * x

            for head in cutlass.range_constexpr(warmup, C):
                x = mX[n, head, hw].to(Float32)
                accum += x * x
                if const_expr(head >= size):
                    x_out = mX[n, head - size, hw].to(Float32)
                    accum -= x_out * x_out
                mScale[n, head - post_pad, hw] = (k + accum * alpha_over_size).to(mScale.element_type)

            for head in cutlass.range_constexpr(C, C + post_pad):
                if const_expr(head >= size):
                    x_out = mX[n, head - size, hw].to(Float32)
                    accum -= x_out * x_out
                if const_expr(head >= post_pad):
                    mScale[n, head - post_pad, hw] = (k + accum * alpha_over_size).to(mScale.element_type)

    @cute.jit
    def output(
        self,
        mX: cute.Tensor,
        mScale: cute.Tensor,
        mY: cute.Tensor,
        n_elements: Int32,
        stream: cuda.CUstream,
    ):
        grid, block = self._grid(n_elements)
        self.output_kernel(mX, mScale, mY, n_elements).launch(grid=grid, block=block, stream=stream)

    @cute.kernel
    def output_kernel(self, mX: cute.Tensor, mScale: cute.Tensor, mY: cute.Tensor, n_elements: Int32):
        tidx, _, _ = cute.arch.thread_idx()
        bidx, _, _ = cute.arch.block_idx()
        num_threads, _, _ = cute.arch.block_dim()
        num_blocks, _, _ = cute.arch.grid_dim()

        start = bidx * num_threads + tidx
        stride = num_blocks * num_threads
        neg_beta = Float32(self.neg_beta)

        for i in range(start, n_elements, stride):
            x = mX[i].to(Float32)
            s = mScale[i].to(Float32)
            y = x * cute.math.exp2(neg_beta * cute.math.log2(s))
            mY[i] = y.to(mY.element_type)

    @cute.jit
    def diff(
        self,
        mX: cute.Tensor,
        mY: cute.Tensor,
        mScale: cute.Tensor,
        mdY: cute.Tensor,
        mdX: cute.Tensor,
        num_tasks: Int32,
        stream: cuda.CUstream,
    ):
        grid, block = self._grid(num_tasks)
        self.diff_kernel(mX, mY, mScale, mdY, mdX, num_tasks).launch(grid=grid, block=block, stream=stream)

    @cute.kernel
    def diff_kernel(
        self,
        mX: cute.Tensor,
        mY: cute.Tensor,
        mScale: cute.Tensor,
        mdY: cute.Tensor,
        mdX: cute.Tensor,
        num_tasks: Int32,
    ):
        tidx, _, _ = cute.arch.thread_idx()
        bidx, _, _ = cute.arch.block_idx()
        num_threads, _, _ = cute.arch.block_dim()
        num_blocks, _, _ = cute.arch.grid_dim()

        start = bidx * num_threads + tidx
        stride = num_blocks * num_threads
        spatial = mX.shape[2]

        C = const_expr(self.channels)
        size = const_expr(self.size)
        post_pad = const_expr(self.backward_post_pad)
        warmup = const_expr(min(self.backward_post_pad, self.channels))
        neg_beta = Float32(self.neg_beta)
        cache_ratio = Float32(self.cache_ratio)

        for t in range(start, num_tasks, stride):
            n = t // spatial
            hw = t % spatial
            accum_ratio = Float32(0.0)

            for head in cutlass.range_constexpr(warmup):
                accum_ratio += (
                    mdY[n, head, hw].to(Float32) * mY[n, head, hw].to(Float32) / mScale[n, head, hw].to(Float32)
                )

            for head in cutlass.range_constexpr(warmup, C + post_pad):
                if const_expr(head < C):
                    accum_ratio += (
                        mdY[n, head, hw].to(Float32) * mY[n, head, hw].to(Float32) / mScale[n, head, hw].to(Float32)
                    )
                if const_expr(head >= size):
                    c_out = head - size
                    accum_ratio -= (
                        mdY[n, c_out, hw].to(Float32) * mY[n, c_out, hw].to(Float32) / mScale[n, c_out, hw].to(Float32)
                    )
                if const_expr(head >= post_pad):
                    c = head - post_pad
                    s = mScale[n, c, hw].to(Float32)
                    direct = mdY[n, c, hw].to(Float32) * cute.math.exp2(neg_beta * cute.math.log2(s))
                    dx = direct - cache_ratio * mX[n, c, hw].to(Float32) * accum_ratio
                    mdX[n, c, hw] = dx.to(mdX.element_type)


class LRNSM80:
    """Compiles and caches :class:`LRNImpl` per (dtype, channels, config)."""

    _compile_cache: Dict[Tuple, Any] = {}

    def __init__(self, config: LRNConfig):
        self.config = config

    @staticmethod
    def _check(precision: Precision, *tensors: Tensor):
        if precision.accum != torch.float32 or precision.storage not in torch2cute_dtype_map:
            raise PrecisionError(f"CuTe LRN backend accumulates in float32 only, got {precision}")
        for t in tensors:
            if not t.is_cuda:
                raise RuntimeError(f"CuTe LRN backend requires CUDA tensors, got device {t.device}")

    def _compile(self, kind: str, dtype: torch.dtype, channels: int, *fake_args):
        compile_key = (kind, dtype, channels, self.config)
        if compile_key not in LRNSM80._compile_cache:
            logger.debug("Compiling CuTe LRN %s kernel: dtype=%s channels=%d %s", kind, dtype, channels, self.config)
            impl = LRNImpl(torch2cute_dtype_map[dtype], channels, self.config)
            LRNSM80._compile_cache[compile_key] = cute.compile(
                getattr(impl, kind),
                *fake_args,
                cute.runtime.make_fake_stream(use_tvm_ffi_env_stream=True),
                options="--enable-tvm-ffi",
            )
        return LRNSM80._compile_cache[compile_key]

    def scale_fill(self, bottom: Tensor, scale: Tensor, precision: Precision) -> Tensor:
        self._check(precision, bottom, scale)
        grid = TaskGrid.for_tensor(bottom)
        if grid.num_tasks == 0:
            return scale
        cute_dtype = torch2cute_dtype_map[bottom.dtype]
        n_sym, hw_sym = cute.sym_int(), cute.sym_int()
        shape = (n_sym, grid.channels, hw_sym)
        kernel = self._compile(
            "fill_scale",
            bottom.dtype,
            grid.channels,
            fake_tensor(cute_dtype, shape),
            fake_tensor(cute_dtype, shape),
            Int32(0),
        )
        kernel(grid.columns(bottom), grid.columns(scale), grid.num_tasks)
        return scale

    def output_compute(self, bottom: Tensor, scale: Tensor, top: Tensor, precision: Precision) -> Tensor:
        self._check(precision, bottom, scale, top)
        n_elements = bottom.numel()
        if n_elements == 0:
            return top
        cute_dtype = torch2cute_dtype_map[bottom.dtype]
        num_sym = cute.sym_int()
        kernel = self._compile(
            "output",
            bottom.dtype,
            0,
            fake_tensor(cute_dtype, (num_sym,)),
            fake_tensor(cute_dtype, (num_sym,)),
            fake_tensor(cute_dtype, (num_sym,)),
            Int32(0),
        )
        kernel(bottom.view(-1), scale.view(-1), top.view(-1), n_elements)
        return top

    def diff_compute(
        self,
        bottom: Tensor,
        top: Tensor,
        scale: Tensor,
        top_diff: Tensor,
        bottom_diff: Tensor,
        precision: Precision,
    ) -> Tensor:
        self._check(precision, bottom, top, scale, top_diff, bottom_diff)
        grid = TaskGrid.for_tensor(bottom)
        if grid.num_tasks == 0:
            return bottom_diff
        cute_dtype = torch2cute_dtype_map[bottom.dtype]
        n_sym, hw_sym = cute.sym_int(), cute.sym_int()
        shape = (n_sym, grid.channels, hw_sym)
        kernel = self._compile(
            "diff",
            bottom.dtype,
            grid.channels,
            *[fake_tensor(cute_dtype, shape) for _ in range(5)],
            Int32(0),
        )
        kernel(
            grid.columns(bottom),
            grid.columns(top),
            grid.columns(scale),
            grid.columns(top_diff),
            grid.columns(bottom_diff),
            grid.num_tasks,
        )
        return bottom_diff


def scale_fill(bottom: Tensor, scale: Tensor, config: LRNConfig, precision: Precision) -> Tensor:
    return LRNSM80(config).scale_fill(bottom, scale, precision)


def output_compute(bottom: Tensor, scale: Tensor, top: Tensor, config: LRNConfig, precision: Precision) -> Tensor:
    return LRNSM80(config).output_compute(bottom, scale, top, precision)


def diff_compute(
    bottom: Tensor,
    top: Tensor,
    scale: Tensor,
    top_diff: Tensor,
    bottom_diff: Tensor,
    config: LRNConfig,
    precision: Precision,
) -> Tensor:
    return LRNSM80(config).diff_compute(bottom, top, scale, top_diff, bottom_diff, precision)
