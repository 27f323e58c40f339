# Copyright (c) 2025, LRNKit Authors
"""Patching logic for models built from torch.nn.LocalResponseNorm layers."""

import logging

import torch.nn as nn

from lrnkit.kernels.lrn.dispatch import check_backend
from lrnkit.patching import patch_lrn, unpatch_lrn

logger = logging.getLogger(__name__)


def patch(model: nn.Module, backend: str = "auto") -> None:
    """
    Patch every nn.LocalResponseNorm in a model with the LRNKit kernels.

    This function modifies the model in-place, replacing forward methods.
    Layers with an even window size keep the PyTorch forward.

    Args:
        model: Any torch.nn.Module (e.g. torchvision.models.googlenet())
        backend: Kernel backend ("auto", "torch", "triton", "cute")

    Example:
        >>> import torch
        >>> import torchvision
        >>> import lrnkit
        >>>
        >>> model = torchvision.models.alexnet()
        >>> model.features.insert(2, torch.nn.LocalResponseNorm(5, alpha=1e-4, beta=0.75, k=2.0))
        >>> lrnkit.patch(model)
    """
    check_backend(backend)
    patched, skipped = 0, 0

    for name, module in model.named_modules():
        if not isinstance(module, nn.LocalResponseNorm):
            continue
        if patch_lrn(module, backend=backend):
            patched += 1
        else:
            logger.warning(f"Skipping {name or type(module).__name__}: even LRN size {module.size} is not supported")
            skipped += 1

    logger.info(f"LRNKit patched model: {patched} LocalResponseNorm layers" + (f", {skipped} skipped" if skipped else ""))

    # Mark model as patched
    model._lrnkit_patched = True


def unpatch(model: nn.Module) -> None:
    """
    Remove LRNKit patches from a model, restoring original forward methods.

    Args:
        model: An LRNKit-patched model
    """
    if not getattr(model, "_lrnkit_patched", False):
        logger.warning("Model does not appear to be patched by LRNKit")
        return

    unpatched = 0
    for name, module in model.named_modules():
        if hasattr(module, "_lrnkit_original_forward"):
            unpatch_lrn(module)
            unpatched += 1

    logger.info(f"LRNKit unpatched model: {unpatched} LocalResponseNorm layers")

    del model._lrnkit_patched


def is_patched(model: nn.Module) -> bool:
    """Check if a model has been patched by LRNKit."""
    return getattr(model, "_lrnkit_patched", False)
