# Copyright (c) 2025, LRNKit Authors
import logging
from typing import Optional

import torch

from lrnkit.config import LRNConfig, LRNConfigError, NormRegion
from lrnkit.precision import Precision
from .autograd import LRNFunction, lrn_func
from .dispatch import BACKENDS, check_backend, lrn_diff, lrn_output, lrn_scale_fill
from .grid import TaskGrid, launch

logger = logging.getLogger(__name__)

# Global config cache for the direct-call function
# Key: (size, alpha, beta, k)
_KERNEL_CACHE: dict[tuple, LRNConfig] = {}


class LRN:
    """Cross-channel Local Response Normalization layer.

    Owns the scale buffer: ``forward`` fills it and ``backward`` reads it, so
    ``backward`` must follow the ``forward`` call whose output it
    differentiates. The buffer is reused across calls and reallocated when
    the input shape, dtype or device changes.

    Args:
        config: Layer hyperparameters. Keyword arguments build one when None.
        backend: "auto", "torch", "triton" or "cute"
        accum_dtype: Accumulation dtype (default depends on the input dtype)

    Example:
        >>> layer = LRN(size=5, alpha=1e-4, beta=0.75, k=2.0)
        >>> top = layer.forward(bottom)
        >>> bottom_diff = layer.backward(top_diff, bottom, top)
    """

    def __init__(
        self,
        config: Optional[LRNConfig] = None,
        *,
        backend: str = "auto",
        accum_dtype: Optional[torch.dtype] = None,
        **kwargs,
    ):
        if config is None:
            config = LRNConfig(**kwargs)
        elif kwargs:
            raise TypeError(f"Pass either a config or keyword hyperparameters, not both: {sorted(kwargs)}")

        self.config = config
        self.backend = check_backend(backend)
        self.accum_dtype = accum_dtype
        self.scale: Optional[torch.Tensor] = None

        dispatch = {
            NormRegion.ACROSS_CHANNELS: (self._cross_channel_forward, self._cross_channel_backward),
        }
        if config.norm_region not in dispatch:
            raise LRNConfigError(f"LRN norm_region {config.norm_region.name} is not supported")
        self._forward_impl, self._backward_impl = dispatch[config.norm_region]

    def _precision(self, x: torch.Tensor) -> Precision:
        return Precision.for_dtype(x.dtype, self.accum_dtype)

    def _scale_buffer(self, bottom: torch.Tensor) -> torch.Tensor:
        scale = self.scale
        if scale is None or scale.shape != bottom.shape or scale.dtype != bottom.dtype or scale.device != bottom.device:
            logger.debug(
                "Allocating LRN scale buffer: shape=%s dtype=%s device=%s",
                tuple(bottom.shape),
                bottom.dtype,
                bottom.device,
            )
            self.scale = torch.empty_like(bottom, memory_format=torch.contiguous_format)
        return self.scale

    def _cross_channel_forward(self, bottom, top):
        precision = self._precision(bottom)
        scale = lrn_scale_fill(
            bottom, self.config, self._scale_buffer(bottom), backend=self.backend, precision=precision
        )
        return lrn_output(bottom, scale, self.config, top, backend=self.backend, precision=precision)

    def _cross_channel_backward(self, top_diff, bottom, top, bottom_diff):
        if self.scale is None:
            raise RuntimeError("LRN.backward called before forward: no scale buffer")
        if self.scale.shape != bottom.shape:
            raise RuntimeError(
                f"LRN scale buffer has shape {tuple(self.scale.shape)} but bottom has shape {tuple(bottom.shape)}; "
                "call forward on this input first"
            )
        return lrn_diff(
            bottom,
            top,
            self.scale,
            top_diff,
            self.config,
            bottom_diff,
            backend=self.backend,
            precision=self._precision(bottom),
        )

    def forward(self, bottom: torch.Tensor, top: Optional[torch.Tensor] = None) -> torch.Tensor:
        """Normalize ``bottom`` (N, C, H, W); writes into ``top`` when given."""
        return self._forward_impl(bottom, top)

    def backward(
        self,
        top_diff: torch.Tensor,
        bottom: torch.Tensor,
        top: torch.Tensor,
        bottom_diff: Optional[torch.Tensor] = None,
    ) -> torch.Tensor:
        """Gradient with respect to ``bottom`` given the gradient of ``top``."""
        return self._backward_impl(top_diff, bottom, top, bottom_diff)

    def __call__(self, bottom: torch.Tensor) -> torch.Tensor:
        return self.forward(bottom)


def lrn(
    x: torch.Tensor,
    size: int = 5,
    alpha: float = 1e-4,
    beta: float = 0.75,
    k: float = 1.0,
    backend: str = "auto",
    accum_dtype: Optional[torch.dtype] = None,
) -> torch.Tensor:
    """Apply cross-channel LRN to a (N, C, H, W) tensor.

    Direct-call function backed by a module-level cache of validated
    configurations. The scale is allocated per call, so concurrent callers
    never share a buffer. No autograd; use :func:`lrn_func` for that.

    Example:
        >>> x = torch.randn(8, 96, 55, 55, device="cuda")
        >>> y = lrn(x, size=5, alpha=1e-4, beta=0.75, k=2.0)
    """
    cache_key = (size, alpha, beta, k)
    config = _KERNEL_CACHE.get(cache_key)
    if config is None:
        config = _KERNEL_CACHE.setdefault(cache_key, LRNConfig(size=size, alpha=alpha, beta=beta, k=k))

    check_backend(backend)
    precision = Precision.for_dtype(x.dtype, accum_dtype)
    scale = lrn_scale_fill(x, config, backend=backend, precision=precision)
    return lrn_output(x, scale, config, backend=backend, precision=precision)


__all__ = [
    "LRN",
    "lrn",
    "LRNFunction",
    "lrn_func",
    "lrn_scale_fill",
    "lrn_output",
    "lrn_diff",
    "BACKENDS",
    "TaskGrid",
    "launch",
]
