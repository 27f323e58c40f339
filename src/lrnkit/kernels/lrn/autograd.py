# Copyright (c) 2025, LRNKit Authors
"""torch.autograd bridge for the LRN kernels.

Usage:
    from lrnkit.kernels.lrn.autograd import lrn_func

    y = lrn_func(x, size=5, alpha=1e-4, beta=0.75, k=2.0)
    y.sum().backward()
"""

from typing import Optional

import torch
from torch import Tensor

from lrnkit.config import LRNConfig
from lrnkit.precision import Precision
from .dispatch import check_backend, lrn_diff, lrn_output, lrn_scale_fill


class LRNFunction(torch.autograd.Function):
    """Cross-channel LRN with the scale saved for the backward pass."""

    @staticmethod
    def forward(ctx, x, config, backend="auto", accum_dtype=None):
        precision = Precision.for_dtype(x.dtype, accum_dtype)
        x = x.contiguous()

        scale = lrn_scale_fill(x, config, backend=backend, precision=precision)
        y = lrn_output(x, scale, config, backend=backend, precision=precision)

        ctx.save_for_backward(x, y, scale)
        ctx.config = config
        ctx.backend = backend
        ctx.precision = precision
        return y

    @staticmethod
    def backward(ctx, dy):
        x, y, scale = ctx.saved_tensors
        dx = lrn_diff(
            x,
            y,
            scale,
            dy.contiguous(),
            ctx.config,
            backend=ctx.backend,
            precision=ctx.precision,
        )
        return dx, None, None, None


def lrn_func(
    x: Tensor,
    size: int = 5,
    alpha: float = 1e-4,
    beta: float = 0.75,
    k: float = 1.0,
    backend: str = "auto",
    accum_dtype: Optional[torch.dtype] = None,
) -> Tensor:
    """Differentiable cross-channel LRN of a (N, C, H, W) tensor."""
    config = LRNConfig(size=size, alpha=alpha, beta=beta, k=k)
    return LRNFunction.apply(x, config, check_backend(backend), accum_dtype)


__all__ = ["LRNFunction", "lrn_func"]
