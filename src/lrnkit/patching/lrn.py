# Copyright (c) 2025, LRNKit Authors
"""LRNKit kernels behind torch.nn.LocalResponseNorm."""

import types

import torch.nn as nn
import torch.nn.functional as F
from torch import Tensor

from lrnkit.kernels.lrn import lrn_func


def supports_module(module: nn.LocalResponseNorm) -> bool:
    """LRNKit centers even windows one channel later than PyTorch, so only odd sizes match."""
    return module.size % 2 == 1


def _lrn_nd(input: Tensor, size: int, alpha: float, beta: float, k: float, backend: str) -> Tensor:
    """LRN over dim 1 of a (N, C, *) tensor, trailing dims flattened into the task grid."""
    if input.dim() < 3:
        raise ValueError(f"Expected 3D or higher dimensional input (got {input.dim()} dimensions)")
    shape = input.shape
    x = input.reshape(shape[0], shape[1], -1, 1)
    return lrn_func(x, size, alpha, beta, k, backend).view(shape)


class LRNKitLocalResponseNorm(nn.LocalResponseNorm):
    """Drop-in replacement for nn.LocalResponseNorm using the LRNKit kernels.

    Falls back to the PyTorch implementation for even ``size``.
    """

    def __init__(
        self,
        size: int,
        alpha: float = 1e-4,
        beta: float = 0.75,
        k: float = 1.0,
        backend: str = "auto",
    ) -> None:
        super().__init__(size, alpha=alpha, beta=beta, k=k)
        self.backend = backend

    def forward(self, input: Tensor) -> Tensor:
        if supports_module(self):
            return _lrn_nd(input, self.size, self.alpha, self.beta, self.k, self.backend)
        return F.local_response_norm(input, self.size, self.alpha, self.beta, self.k)

    def extra_repr(self) -> str:
        return super().extra_repr() + f", backend={self.backend}"


def make_lrn_forward(backend: str = "auto"):
    """Create LRNKit forward for LocalResponseNorm layers."""

    def forward(self, input: Tensor) -> Tensor:
        return _lrn_nd(input, self.size, self.alpha, self.beta, self.k, backend)

    return forward


def patch_lrn(module: nn.LocalResponseNorm, backend: str = "auto") -> bool:
    """Patch a LocalResponseNorm module with the LRNKit forward.

    Returns False, leaving the module untouched, for even window sizes.
    """
    if hasattr(module, "_lrnkit_original_forward"):
        return True  # Already patched
    if not supports_module(module):
        return False

    module._lrnkit_original_forward = module.forward
    module.forward = types.MethodType(make_lrn_forward(backend), module)
    return True


def unpatch_lrn(module: nn.LocalResponseNorm) -> None:
    """Restore original LocalResponseNorm forward."""
    if hasattr(module, "_lrnkit_original_forward"):
        module.forward = module._lrnkit_original_forward
        del module._lrnkit_original_forward
