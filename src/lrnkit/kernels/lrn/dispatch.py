# Copyright (c) 2025, LRNKit Authors
"""Backend selection and argument checking for the three LRN kernels.

Backends:
    torch:  PyTorch tensor ops, any device
    triton: Triton kernels, CUDA only
    cute:   CuTe DSL kernels (SM80+), CUDA only, float32 accumulation
    auto:   triton for CUDA tensors, torch otherwise
"""

import importlib
from typing import Optional

import torch
from torch import Tensor

from lrnkit.config import LRNConfig, LRNConfigError
from lrnkit.precision import Precision, PrecisionError

BACKENDS = ("auto", "torch", "triton", "cute")

_BACKEND_MODULES = {
    "torch": "lrnkit.kernels.lrn.torch_impl",
    "triton": "lrnkit.kernels.lrn.triton_impl",
    "cute": "lrnkit.kernels.lrn.sm80",
}


def check_backend(backend: str) -> str:
    if backend not in BACKENDS:
        raise LRNConfigError(f"Unknown LRN backend: {backend!r}. Supported: {list(BACKENDS)}")
    return backend


def resolve_backend(backend: str, device: torch.device) -> str:
    """Turn ``backend`` into a concrete backend name for tensors on ``device``."""
    check_backend(backend)
    if backend == "auto":
        return "triton" if device.type == "cuda" else "torch"
    if backend != "torch" and device.type != "cuda":
        raise RuntimeError(f"LRN backend {backend!r} requires CUDA tensors, got device {device}")
    return backend


def _backend_module(backend: str):
    # GPU backends import their compilers on first use
    return importlib.import_module(_BACKEND_MODULES[backend])


def _precision_for(x: Tensor, precision: Optional[Precision]) -> Precision:
    if precision is None:
        return Precision.for_dtype(x.dtype)
    if precision.storage != x.dtype:
        raise PrecisionError(f"Precision storage dtype {precision.storage} does not match tensor dtype {x.dtype}")
    return precision


def _check_input(name: str, t: Tensor, like: Tensor) -> Tensor:
    if t.shape != like.shape:
        raise ValueError(f"{name} has shape {tuple(t.shape)}, expected {tuple(like.shape)}")
    if t.dtype != like.dtype:
        raise ValueError(f"{name} has dtype {t.dtype}, expected {like.dtype}")
    if t.device != like.device:
        raise ValueError(f"{name} is on {t.device}, expected {like.device}")
    return t.contiguous()


def _output(name: str, out: Optional[Tensor], like: Tensor) -> Tensor:
    if out is None:
        return torch.empty_like(like, memory_format=torch.contiguous_format)
    _check_input(name, out, like)
    if not out.is_contiguous():
        raise ValueError(f"{name} must be contiguous")
    return out


def _check_bottom(bottom: Tensor) -> Tensor:
    if bottom.dim() != 4:
        raise ValueError(f"LRN kernels expect a 4D (N, C, H, W) tensor, got shape {tuple(bottom.shape)}")
    return bottom.contiguous()


def lrn_scale_fill(
    bottom: Tensor,
    config: LRNConfig,
    scale: Optional[Tensor] = None,
    *,
    backend: str = "auto",
    precision: Optional[Precision] = None,
) -> Tensor:
    """Compute the LRN scale of ``bottom`` into ``scale`` (allocated when None)."""
    bottom = _check_bottom(bottom)
    precision = _precision_for(bottom, precision)
    scale = _output("scale", scale, bottom)
    impl = _backend_module(resolve_backend(backend, bottom.device))
    return impl.scale_fill(bottom, scale, config, precision)


def lrn_output(
    bottom: Tensor,
    scale: Tensor,
    config: LRNConfig,
    top: Optional[Tensor] = None,
    *,
    backend: str = "auto",
    precision: Optional[Precision] = None,
) -> Tensor:
    """Compute ``top = bottom * scale^(-beta)``."""
    bottom = _check_bottom(bottom)
    precision = _precision_for(bottom, precision)
    scale = _check_input("scale", scale, bottom)
    top = _output("top", top, bottom)
    impl = _backend_module(resolve_backend(backend, bottom.device))
    return impl.output_compute(bottom, scale, top, config, precision)


def lrn_diff(
    bottom: Tensor,
    top: Tensor,
    scale: Tensor,
    top_diff: Tensor,
    config: LRNConfig,
    bottom_diff: Optional[Tensor] = None,
    *,
    backend: str = "auto",
    precision: Optional[Precision] = None,
) -> Tensor:
    """Compute the gradient of the LRN output with respect to ``bottom``.

    ``scale`` must come from the forward pass that produced ``top``.
    """
    bottom = _check_bottom(bottom)
    precision = _precision_for(bottom, precision)
    top = _check_input("top", top, bottom)
    scale = _check_input("scale", scale, bottom)
    top_diff = _check_input("top_diff", top_diff, bottom)
    bottom_diff = _output("bottom_diff", bottom_diff, bottom)
    impl = _backend_module(resolve_backend(backend, bottom.device))
    return impl.diff_compute(bottom, top, scale, top_diff, bottom_diff, config, precision)


__all__ = [
    "BACKENDS",
    "check_backend",
    "resolve_backend",
    "lrn_scale_fill",
    "lrn_output",
    "lrn_diff",
]
