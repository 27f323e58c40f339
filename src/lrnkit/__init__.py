# Copyright (c) 2025, LRNKit Authors
"""LRNKit: cross-channel Local Response Normalization kernels for PyTorch.

Forward scale, forward output and backward gradient kernels with PyTorch,
Triton and CuTe DSL backends, a layer object that owns the scale buffer, an
autograd function, and patching for existing nn.LocalResponseNorm layers.

Example:
    >>> import torch
    >>> import lrnkit
    >>>
    >>> x = torch.randn(8, 96, 55, 55, device="cuda", requires_grad=True)
    >>> y = lrnkit.lrn_func(x, size=5, alpha=1e-4, beta=0.75, k=2.0)
    >>> y.sum().backward()
    >>>
    >>> # Swap the kernels into an existing model
    >>> lrnkit.patch(model)
"""

__version__ = "0.1.0"

from lrnkit.config import LRNConfig, LRNConfigError, NormRegion
from lrnkit.precision import Precision, PrecisionError
from lrnkit.kernels.lrn import LRN, lrn, lrn_func, LRNFunction, lrn_scale_fill, lrn_output, lrn_diff
from lrnkit.patching import LRNKitLocalResponseNorm
from lrnkit.patch import patch, unpatch, is_patched

__all__ = [
    # Configuration
    "LRNConfig",
    "LRNConfigError",
    "NormRegion",
    # Precision
    "Precision",
    "PrecisionError",
    # Kernels
    "LRN",
    "lrn",
    "lrn_func",
    "LRNFunction",
    "lrn_scale_fill",
    "lrn_output",
    "lrn_diff",
    # Modules
    "LRNKitLocalResponseNorm",
    # Others
    "patch",
    "unpatch",
    "is_patched",
    "__version__",
]
